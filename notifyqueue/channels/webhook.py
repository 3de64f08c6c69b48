"""HTTP webhook delivery channel.

POSTs a JSON envelope to a configured endpoint (an email relay, push
gateway or in-app notification service). Status codes decide whether a
failure is worth retrying.
"""

import logging
from typing import Any

import httpx

from notifyqueue.channels.base import (
    DeliveryChannel,
    DeliveryError,
    PermanentDeliveryError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# 4xx responses that still mean "try again later"
_RETRYABLE_4XX = {408, 429}


class WebhookChannel(DeliveryChannel):
    """Delivers notifications by POSTing them to an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the webhook channel.

        Args:
            name: Channel name (email, push, in_app)
            url: Endpoint receiving the POST
            headers: Extra request headers
            client: Preconfigured HTTP client (created lazily if omitted)
        """
        self._name = name
        self.url = url
        self.headers = headers or {}
        self._client = client

    @property
    def channel_name(self) -> str:
        return self._name

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialize HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        return self._client

    def deliver(
        self,
        recipient: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> None:
        body = {"channel": self._name, "recipient": recipient, "payload": payload}
        try:
            response = self.client.post(
                self.url,
                json=body,
                headers=self.headers,
                timeout=timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS,
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise DeliveryError(f"{self._name} webhook timed out", code="timeout") from e

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            message = f"{self._name} webhook returned HTTP {status_code}"
            code = f"http_{status_code}"
            if 400 <= status_code < 500 and status_code not in _RETRYABLE_4XX:
                raise PermanentDeliveryError(message, code=code) from e
            raise DeliveryError(message, code=code) from e

        except httpx.HTTPError as e:
            raise DeliveryError(
                f"{self._name} webhook unreachable: {e}", code="unreachable"
            ) from e

        logger.debug(
            "Webhook delivery accepted",
            extra={"channel": self._name, "status_code": response.status_code},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None
