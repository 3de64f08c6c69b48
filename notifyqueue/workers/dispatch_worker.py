"""Notification dispatch worker.

One tick of the delivery scheduler:
1. Releases claims abandoned by crashed dispatchers
2. Selects eligible records (priority desc, due-time asc)
3. Claims them; records claimed by another scheduler drop out
4. Hands the claimed batch to the Dispatcher worker pool
"""

from datetime import datetime, timedelta

from notifyqueue.services.queue_store import QueueStore
from notifyqueue.workers.base import WorkerBase, WorkerResult
from notifyqueue.workers.dispatcher import Dispatcher


class DispatchWorker(WorkerBase):
    """Worker that claims due notifications and dispatches them."""

    def __init__(
        self,
        store: QueueStore,
        dispatcher: Dispatcher,
        batch_size: int = 50,
        claim_timeout_seconds: int = 300,
    ) -> None:
        """Initialize the dispatch worker.

        Args:
            store: Queue store to select and claim from
            dispatcher: Worker pool that delivers claimed records
            batch_size: Maximum records claimed per tick
            claim_timeout_seconds: Age after which an in-flight claim is stale
        """
        super().__init__(store)
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    @property
    def worker_name(self) -> str:
        return "DispatchWorker"

    def process_cycle(self, now: datetime) -> WorkerResult:
        released = self.store.release_stale_claims(now - self.claim_timeout, now=now)

        candidates = self.store.select_eligible(self.batch_size, now=now)
        if not candidates:
            return WorkerResult.from_counts(0, 0, metadata={"released": released})

        claimed_ids = self.store.claim([c.id for c in candidates], now=now)

        # Keep selection order so higher-priority work starts first
        rank = {c.id: i for i, c in enumerate(candidates)}
        claimed = sorted(
            self.store.get_claimed(claimed_ids),
            key=lambda record: rank[record.id],
        )

        self._logger.info(
            f"[{self.worker_name}] Claimed {len(claimed)} of {len(candidates)} eligible"
        )

        report = self.dispatcher.dispatch(claimed, now=now)

        return WorkerResult.from_counts(
            processed=report.sent,
            failed=report.failed,
            errors=report.errors,
            metadata={
                "selected": len(candidates),
                "claimed": len(claimed),
                "retry_scheduled": report.retry_scheduled,
                "dead": report.dead,
                "timed_out": report.timed_out,
                "released": released,
            },
        )
