"""Outbound notifications for runguard."""

from runguard.notifications.models import NotificationConfig, NotificationStatus
from runguard.notifications.webhook import WebhookNotifier

__all__ = [
    "WebhookNotifier",
    "NotificationConfig",
    "NotificationStatus",
]
