from .notification_provider import WebhookNotificationProvider
from .release_provider import LocalReleaseProvider

__all__ = [
    "WebhookNotificationProvider",
    "LocalReleaseProvider"
]
