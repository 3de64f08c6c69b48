"""Simulated delivery channel.

Logs the notification instead of sending it. Used for any channel that
has no transport configured, so the queue can run end to end locally.
"""

import logging
from typing import Any

from notifyqueue.channels.base import DeliveryChannel

logger = logging.getLogger(__name__)


class LoggingChannel(DeliveryChannel):
    """Channel that records deliveries in the log and always succeeds."""

    def __init__(self, name: str = "simulated") -> None:
        self._name = name

    @property
    def channel_name(self) -> str:
        return self._name

    def deliver(
        self,
        recipient: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> None:
        logger.info(
            "[SIMULATED] Delivering notification",
            extra={
                "channel": self._name,
                "recipient": recipient,
                "subject": payload.get("subject") or payload.get("title"),
            },
        )
