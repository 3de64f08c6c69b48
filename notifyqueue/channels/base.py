"""Delivery channel abstraction.

A channel hands one notification to an external transport. Channels
signal failure by raising:

- DeliveryError: transient, the record is retried with backoff
- PermanentDeliveryError: unrecoverable, the record is dead-lettered

Any other exception is treated as transient.
"""

from abc import ABC, abstractmethod
from typing import Any


class DeliveryError(Exception):
    """Transient delivery failure (network error, channel busy, timeout).

    `code` is a short machine-readable reason (for example "http_503")
    stored with the record for dead-letter triage.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class PermanentDeliveryError(DeliveryError):
    """Delivery failure that retrying cannot fix."""


class DeliveryChannel(ABC):
    """Abstract base class for delivery transports."""

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Return the channel name for logging."""
        pass

    @abstractmethod
    def deliver(
        self,
        recipient: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> None:
        """Deliver a notification.

        Args:
            recipient: Opaque addressee reference
            payload: Notification content
            timeout: Seconds the transport should wait before giving up

        Raises:
            DeliveryError: On transient failure
            PermanentDeliveryError: On unrecoverable failure
        """
        pass

    def close(self) -> None:
        """Release transport resources."""
