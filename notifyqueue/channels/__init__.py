"""Delivery channels for queued notifications.

Components:
- base.py: DeliveryChannel interface and delivery error types
- logging_channel.py: Simulated delivery (logs only)
- webhook.py: HTTP webhook delivery via httpx
"""

from notifyqueue.channels.base import (
    DeliveryChannel,
    DeliveryError,
    PermanentDeliveryError,
)
from notifyqueue.channels.logging_channel import LoggingChannel
from notifyqueue.channels.webhook import WebhookChannel
from notifyqueue.config import Settings, get_settings
from notifyqueue.models.notification import NotificationChannel


def build_channels(
    settings: Settings | None = None,
) -> dict[NotificationChannel, DeliveryChannel]:
    """Build one delivery channel per NotificationChannel from settings.

    A channel with a webhook URL configured posts to it; any other channel
    falls back to simulated delivery.
    """
    settings = settings or get_settings()
    urls = {
        NotificationChannel.EMAIL: settings.EMAIL_WEBHOOK_URL,
        NotificationChannel.PUSH: settings.PUSH_WEBHOOK_URL,
        NotificationChannel.IN_APP: settings.IN_APP_WEBHOOK_URL,
    }
    channels: dict[NotificationChannel, DeliveryChannel] = {}
    for channel, url in urls.items():
        if url:
            channels[channel] = WebhookChannel(channel.value, url)
        else:
            channels[channel] = LoggingChannel(channel.value)
    return channels


__all__ = [
    "DeliveryChannel",
    "DeliveryError",
    "PermanentDeliveryError",
    "LoggingChannel",
    "WebhookChannel",
    "build_channels",
]
