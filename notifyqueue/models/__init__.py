"""SQLModel entities for the notification queue."""

from notifyqueue.models.notification import (
    TERMINAL_STATUSES,
    NotificationChannel,
    NotificationCreate,
    NotificationListResponse,
    NotificationRecord,
    NotificationResponse,
    NotificationStatus,
    QueueStats,
)

__all__ = [
    "NotificationRecord",
    "NotificationCreate",
    "NotificationResponse",
    "NotificationListResponse",
    "NotificationChannel",
    "NotificationStatus",
    "TERMINAL_STATUSES",
    "QueueStats",
]
