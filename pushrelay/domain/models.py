from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Notification lifecycle; draft/scheduled are authored externally, the pipeline owns the rest.
NOTIFICATION_STATUS_DRAFT = "draft"
NOTIFICATION_STATUS_SCHEDULED = "scheduled"
NOTIFICATION_STATUS_SENDING = "sending"
NOTIFICATION_STATUS_SENT = "sent"
NOTIFICATION_STATUS_FAILED = "failed"
NOTIFICATION_STATUSES = (
    NOTIFICATION_STATUS_DRAFT,
    NOTIFICATION_STATUS_SCHEDULED,
    NOTIFICATION_STATUS_SENDING,
    NOTIFICATION_STATUS_SENT,
    NOTIFICATION_STATUS_FAILED,
)
NOTIFICATION_TERMINAL_STATUSES = (NOTIFICATION_STATUS_SENT, NOTIFICATION_STATUS_FAILED)

DELIVERY_STATUS_PENDING = "pending"
DELIVERY_STATUS_SENT = "sent"
DELIVERY_STATUS_FAILED = "failed"
DELIVERY_STATUS_CLICKED = "clicked"
DELIVERY_STATUSES = (
    DELIVERY_STATUS_PENDING,
    DELIVERY_STATUS_SENT,
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_CLICKED,
)

# Portable JSON column: JSONB on Postgres, plain JSON elsewhere (tests run on sqlite).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str] = mapped_column(String)
    company_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Suspended tenants keep their data but receive no new subscriptions.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ClientDomain(Base):
    __tablename__ = "client_domains"
    __table_args__ = (UniqueConstraint("client_id", "domain", name="uq_client_domains_client_domain"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    domain: Mapped[str] = mapped_column(String)
    # Verification is owned by the domain workflow; the pipeline only reads the flag.
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PushSubscriber(Base):
    __tablename__ = "push_subscribers"
    __table_args__ = (
        Index("ix_push_subscribers_client_active", "client_id", "is_active"),
        Index("ix_push_subscribers_domain_id", "domain_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id", ondelete="CASCADE"))
    domain_id: Mapped[str] = mapped_column(String, ForeignKey("client_domains.id", ondelete="CASCADE"))
    # Endpoints are globally unique; two subscriptions can never share one.
    endpoint: Mapped[str] = mapped_column(Text, unique=True)
    p256dh_key: Mapped[str] = mapped_column(Text)
    auth_key: Mapped[str] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Deactivate instead of deleting so delivery history keeps its subscriber reference.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    unsubscribed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PushNotification(Base):
    __tablename__ = "push_notifications"
    __table_args__ = (
        # Serve the due sweep: status predicate first, then oldest-due ordering.
        Index("ix_push_notifications_status_scheduled", "status", "scheduled_at"),
        Index("ix_push_notifications_status_updated", "status", "updated_at"),
        Index("ix_push_notifications_client_created", "client_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    icon_url: Mapped[str | None] = mapped_column(String, nullable=True)
    badge_url: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    target_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Optional domain scope; null or empty means every active domain of the tenant.
    domain_ids: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String, default=NOTIFICATION_STATUS_DRAFT, nullable=False)
    total_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_sends: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_sends: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    click_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        # One ledger row per (notification, subscriber) pair is the dedup guarantee.
        UniqueConstraint("notification_id", "subscriber_id", name="uq_notification_deliveries_pair"),
        Index("ix_notification_deliveries_notification_status", "notification_id", "status"),
        Index("ix_notification_deliveries_subscriber_id", "subscriber_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_id: Mapped[str] = mapped_column(
        String, ForeignKey("push_notifications.id", ondelete="CASCADE")
    )
    subscriber_id: Mapped[str] = mapped_column(String, ForeignKey("push_subscribers.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String, default=DELIVERY_STATUS_PENDING, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VapidKey(Base):
    __tablename__ = "vapid_keys"
    __table_args__ = (
        # Rotation keeps history, but only one key pair may sign for a tenant at a time.
        Index(
            "uq_vapid_keys_client_active",
            "client_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    public_key: Mapped[str] = mapped_column(Text)
    # Stored as provisioned; at-rest encryption is the storage layer's concern.
    private_key: Mapped[str] = mapped_column(Text)
    subject: Mapped[str] = mapped_column(String, default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("ix_analytics_events_client_created", "client_id", "created_at"),
        Index("ix_analytics_events_notification_id", "notification_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str | None] = mapped_column(String, ForeignKey("clients.id", ondelete="CASCADE"), nullable=True)
    subscriber_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("push_subscribers.id", ondelete="SET NULL"), nullable=True
    )
    # Click-tracking rows are owned by their notification and removed with it by retention.
    notification_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("push_notifications.id", ondelete="CASCADE"), nullable=True
    )
    # subscribe, unsubscribe, notification_sent, notification_clicked
    event_type: Mapped[str] = mapped_column(String)
    event_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
