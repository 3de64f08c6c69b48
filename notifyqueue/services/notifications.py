"""Notification enqueue service.

Producers (report and work-order workflows) call enqueue() to create a
PENDING record; everything after that belongs to the dispatch workers.
"""

import logging
from datetime import datetime
from typing import Any

from notifyqueue.config import get_settings
from notifyqueue.models.notification import (
    NotificationChannel,
    NotificationCreate,
    NotificationRecord,
    NotificationStatus,
)
from notifyqueue.services.queue_store import QueueStore

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates queued notifications on behalf of upstream producers."""

    def __init__(
        self,
        store: QueueStore | None = None,
        default_max_retries: int | None = None,
    ) -> None:
        self.store = store or QueueStore()
        if default_max_retries is None:
            default_max_retries = get_settings().DEFAULT_MAX_RETRIES
        self.default_max_retries = default_max_retries

    def enqueue(
        self,
        recipient: str,
        payload: dict[str, Any],
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_retries: int | None = None,
        channel: NotificationChannel = NotificationChannel.EMAIL,
        expires_at: datetime | None = None,
    ) -> NotificationRecord:
        """Create a PENDING notification record.

        Args:
            recipient: Opaque addressee reference (email, device token, user id)
            payload: Delivery content, stored as-is
            priority: Higher values are dispatched first
            scheduled_for: Earliest delivery time (None = immediately)
            max_retries: Retry budget (defaults to DEFAULT_MAX_RETRIES)
            channel: Delivery channel to use
            expires_at: Drop the notification if not delivered by this time

        Returns:
            The persisted record

        Raises:
            ValueError: If the arguments are inconsistent
        """
        if not recipient:
            raise ValueError("recipient is required")
        if max_retries is None:
            max_retries = self.default_max_retries
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if scheduled_for and expires_at and expires_at <= scheduled_for:
            raise ValueError("expires_at must be after scheduled_for")

        record = NotificationRecord(
            channel=channel,
            recipient=recipient,
            payload=payload or {},
            priority=priority,
            status=NotificationStatus.PENDING,
            scheduled_for=scheduled_for,
            expires_at=expires_at,
            max_retries=max_retries,
        )
        record = self.store.add(record)

        logger.info(
            "Notification enqueued",
            extra={
                "notification_id": str(record.id),
                "channel": record.channel.value,
                "priority": record.priority,
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
            },
        )
        return record

    def enqueue_request(self, request: NotificationCreate) -> NotificationRecord:
        """Enqueue from a validated NotificationCreate schema."""
        return self.enqueue(
            recipient=request.recipient,
            payload=request.payload,
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            max_retries=request.max_retries,
            channel=request.channel,
            expires_at=request.expires_at,
        )
