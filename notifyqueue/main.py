"""FastAPI application exposing queue health and monitoring endpoints."""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query

from notifyqueue.db.session import create_db_and_tables
from notifyqueue.models.notification import (
    NotificationListResponse,
    NotificationResponse,
    NotificationStatus,
    QueueStats,
)
from notifyqueue.services.queue_store import QueueStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    create_db_and_tables()
    yield


app = FastAPI(
    title="Notification Queue Monitoring API",
    description="Queue depth, status counts and dead letters for the delivery queue",
    version="1.0.0",
    lifespan=lifespan,
)


def get_queue_store() -> QueueStore:
    """Dependency providing the queue store."""
    return QueueStore()


@app.get("/health")
def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/notifications/stats", response_model=QueueStats)
def queue_stats(store: QueueStore = Depends(get_queue_store)) -> QueueStats:
    """Counts by status, queue depth, in-flight and dead-letter totals."""
    return store.stats()


@app.get("/notifications/dead-letters", response_model=NotificationListResponse)
def dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: QueueStore = Depends(get_queue_store),
) -> NotificationListResponse:
    """List dead-lettered notifications for manual inspection."""
    records = store.list_dead_letters(limit=limit, offset=offset)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(r) for r in records],
        total=store.count_by_status(NotificationStatus.DEAD),
    )


@app.get(
    "/notifications/recipients/{recipient}",
    response_model=NotificationListResponse,
)
def recipient_notifications(
    recipient: str,
    status: NotificationStatus | None = Query(default=None, description="Filter by status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: QueueStore = Depends(get_queue_store),
) -> NotificationListResponse:
    """List one recipient's queued notifications, newest first."""
    records, total = store.list_for_recipient(
        recipient, status=status, limit=limit, offset=offset
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(r) for r in records],
        total=total,
    )
