"""Retention sweeper for terminal notification records."""

from datetime import datetime, timedelta

from notifyqueue.models.notification import NotificationStatus
from notifyqueue.services.queue_store import QueueStore
from notifyqueue.workers.base import WorkerBase, WorkerResult

PURGEABLE_STATUSES = frozenset(s for s in NotificationStatus if s.is_terminal)


class RetentionSweeper(WorkerBase):
    """Deletes SENT and DEAD records older than the retention window.

    Pending, retryable and in-flight records are never touched,
    whatever their age.
    """

    def __init__(
        self,
        store: QueueStore,
        retention_window: timedelta = timedelta(days=30),
        batch_size: int | None = 500,
    ) -> None:
        super().__init__(store)
        self.retention_window = retention_window
        self.batch_size = batch_size

    @property
    def worker_name(self) -> str:
        return "RetentionSweeper"

    def process_cycle(self, now: datetime) -> WorkerResult:
        cutoff = now - self.retention_window
        removed = self.store.purge_older_than(
            PURGEABLE_STATUSES, cutoff, batch_size=self.batch_size
        )
        return WorkerResult.from_counts(
            processed=removed,
            failed=0,
            metadata={"cutoff": cutoff.isoformat()},
        )
