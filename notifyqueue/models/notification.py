"""NotificationRecord entity model for the delivery queue."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

from notifyqueue.models.types import UTCDateTime


class NotificationChannel(str, Enum):
    """Notification delivery channels."""

    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationStatus(str, Enum):
    """Notification lifecycle status.

    PROCESSING is the in-flight claim marker held by exactly one
    dispatcher between claim and outcome write-back.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED_RETRYABLE = "failed_retryable"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({NotificationStatus.SENT, NotificationStatus.DEAD})


class NotificationRecord(SQLModel, table=True):
    """Queued notification database model."""

    __tablename__ = "notification_queue"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    channel: NotificationChannel = Field(default=NotificationChannel.EMAIL)
    recipient: str = Field(max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    priority: int = Field(default=0, index=True)
    status: NotificationStatus = Field(
        default=NotificationStatus.PENDING, index=True
    )
    scheduled_for: datetime | None = Field(
        default=None, sa_type=UTCDateTime, index=True
    )
    expires_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    # Retry bookkeeping
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_retry_at: datetime | None = Field(
        default=None, sa_type=UTCDateTime, index=True
    )
    error_message: str | None = Field(default=None)
    error_code: str | None = Field(default=None, max_length=50)

    # In-flight claim
    claimed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    claim_token: UUID | None = Field(default=None, index=True)

    sent_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    failed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=UTCDateTime
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


class NotificationCreate(SQLModel):
    """Schema for enqueuing a notification."""

    channel: NotificationChannel = NotificationChannel.EMAIL
    recipient: str = Field(max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    max_retries: int | None = Field(default=None, ge=0)


class NotificationResponse(SQLModel):
    """Schema for notification response."""

    id: UUID
    channel: NotificationChannel
    recipient: str
    payload: dict[str, Any]
    priority: int
    status: NotificationStatus
    scheduled_for: datetime | None
    expires_at: datetime | None
    retry_count: int
    max_retries: int
    next_retry_at: datetime | None
    error_message: str | None
    error_code: str | None
    sent_at: datetime | None
    failed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(SQLModel):
    """Schema for notification list response."""

    notifications: list[NotificationResponse]
    total: int


class QueueStats(SQLModel):
    """Point-in-time queue counters for monitoring."""

    counts: dict[str, int]
    queue_depth: int
    in_flight: int
    dead_letters: int
