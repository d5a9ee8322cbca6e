"""initial push delivery schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Tenants and their domains anchor every subscriber and notification.
    op.create_table(
        "clients",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "client_domains",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_id", "domain", name="uq_client_domains_client_domain"),
    )
    op.create_index("ix_client_domains_client_id", "client_domains", ["client_id"])

    # Endpoint uniqueness is global so one browser subscription maps to exactly one subscriber row.
    op.create_table(
        "push_subscribers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("domain_id", sa.String(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh_key", sa.Text(), nullable=False),
        sa.Column("auth_key", sa.Text(), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["domain_id"], ["client_domains.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("endpoint"),
    )
    op.create_index("ix_push_subscribers_client_active", "push_subscribers", ["client_id", "is_active"])
    op.create_index("ix_push_subscribers_domain_id", "push_subscribers", ["domain_id"])

    op.create_table(
        "push_notifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("icon_url", sa.String(), nullable=True),
        sa.Column("badge_url", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("target_url", sa.String(), nullable=True),
        sa.Column("domain_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("total_subscribers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_sends", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_sends", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("click_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('draft', 'scheduled', 'sending', 'sent', 'failed')",
            name="ck_push_notifications_status",
        ),
    )
    # Due sweep filters on status and orders by scheduled_at; stuck sweep filters on status and updated_at.
    op.create_index(
        "ix_push_notifications_status_scheduled", "push_notifications", ["status", "scheduled_at"]
    )
    op.create_index("ix_push_notifications_status_updated", "push_notifications", ["status", "updated_at"])
    op.create_index("ix_push_notifications_client_created", "push_notifications", ["client_id", "created_at"])

    # The (notification, subscriber) unique key is what makes fan-out retries idempotent.
    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["notification_id"], ["push_notifications.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscriber_id"], ["push_subscribers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("notification_id", "subscriber_id", name="uq_notification_deliveries_pair"),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'clicked')",
            name="ck_notification_deliveries_status",
        ),
    )
    op.create_index(
        "ix_notification_deliveries_notification_status",
        "notification_deliveries",
        ["notification_id", "status"],
    )
    op.create_index("ix_notification_deliveries_subscriber_id", "notification_deliveries", ["subscriber_id"])

    # Key history is retained across rotations; the partial index allows one active row per tenant.
    op.create_table(
        "vapid_keys",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column("private_key", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_vapid_keys_client_id", "vapid_keys", ["client_id"])
    op.create_index(
        "uq_vapid_keys_client_active",
        "vapid_keys",
        ["client_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("subscriber_id", sa.String(), nullable=True),
        sa.Column("notification_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscriber_id"], ["push_subscribers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["notification_id"], ["push_notifications.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analytics_events_client_created", "analytics_events", ["client_id", "created_at"])
    op.create_index("ix_analytics_events_notification_id", "analytics_events", ["notification_id"])


def downgrade() -> None:
    op.drop_index("ix_analytics_events_notification_id", table_name="analytics_events")
    op.drop_index("ix_analytics_events_client_created", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_index("uq_vapid_keys_client_active", table_name="vapid_keys")
    op.drop_index("ix_vapid_keys_client_id", table_name="vapid_keys")
    op.drop_table("vapid_keys")
    op.drop_index("ix_notification_deliveries_subscriber_id", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_notification_status", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_push_notifications_client_created", table_name="push_notifications")
    op.drop_index("ix_push_notifications_status_updated", table_name="push_notifications")
    op.drop_index("ix_push_notifications_status_scheduled", table_name="push_notifications")
    op.drop_table("push_notifications")
    op.drop_index("ix_push_subscribers_domain_id", table_name="push_subscribers")
    op.drop_index("ix_push_subscribers_client_active", table_name="push_subscribers")
    op.drop_table("push_subscribers")
    op.drop_index("ix_client_domains_client_id", table_name="client_domains")
    op.drop_table("client_domains")
    op.drop_table("clients")
