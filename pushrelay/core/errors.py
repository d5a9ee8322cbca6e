from __future__ import annotations


class PushRelayError(Exception):
    """Base error for pushrelay."""


class VapidKeyNotFoundError(PushRelayError):
    """No active VAPID key pair is configured for the tenant."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"No active VAPID key configured for tenant {tenant_id}")
        self.tenant_id = tenant_id


class NoActiveSubscribersError(PushRelayError):
    """The notification resolved to an empty subscriber set."""

    def __init__(self) -> None:
        super().__init__("No active subscribers found")


class NotificationNotClaimedError(PushRelayError):
    """Dispatch was requested for a notification that is not in the sending state."""


class NotificationClaimLostError(PushRelayError):
    """The notification left the sending state while this process was dispatching it."""

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification {notification_id} was taken out of the sending state mid-dispatch")
        self.notification_id = notification_id


class InvalidSubscriptionError(PushRelayError):
    """Subscription payload is missing its endpoint or encryption keys."""


class SubscriptionTargetError(PushRelayError):
    """Client or domain is unknown, inactive, or unverified."""


class SubscriptionConflictError(PushRelayError):
    """The push endpoint is already registered to a different client."""


class InvalidNotificationError(PushRelayError):
    """Notification content or targeting is not acceptable."""
