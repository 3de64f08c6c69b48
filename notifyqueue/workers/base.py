"""Base worker abstraction for queue background jobs.

A worker runs one processing cycle per call to run():
1. process_cycle() does the job-specific work against the queue store
2. run() times the cycle, logs a summary and contains store outages

Store unavailability fails the cycle (logged at ERROR) but never
escapes run(), so the scheduler loop simply tries again next tick.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from notifyqueue.services.queue_store import QueueStore, StoreUnavailableError

logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    """Status of a worker run."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items processed, some failed
    FAILED = "failed"
    NO_WORK = "no_work"


@dataclass
class WorkerResult:
    """Result of a worker processing cycle.

    Attributes:
        status: Overall status of the worker run
        processed_count: Number of items successfully processed
        failed_count: Number of items that failed
        duration_ms: Time taken for the processing cycle
        errors: List of error details for failed items
        metadata: Additional worker-specific metadata
    """

    status: WorkerStatus
    processed_count: int = 0
    failed_count: int = 0
    duration_ms: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_counts(
        cls,
        processed: int,
        failed: int,
        errors: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "WorkerResult":
        """Build a result, deriving the overall status from the counts."""
        if failed == 0 and processed > 0:
            status = WorkerStatus.SUCCESS
        elif processed > 0 and failed > 0:
            status = WorkerStatus.PARTIAL
        elif failed > 0:
            status = WorkerStatus.FAILED
        else:
            status = WorkerStatus.NO_WORK

        return cls(
            status=status,
            processed_count=processed,
            failed_count=failed,
            errors=errors or [],
            metadata=metadata or {},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "status": self.status.value,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "metadata": self.metadata,
        }


class WorkerBase(ABC):
    """Abstract base class for queue background workers.

    Subclasses implement worker_name and process_cycle().
    """

    def __init__(self, store: QueueStore) -> None:
        """Initialize the worker.

        Args:
            store: Queue store the worker operates on
        """
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def worker_name(self) -> str:
        """Return the worker name for logging."""
        pass

    @abstractmethod
    def process_cycle(self, now: datetime) -> WorkerResult:
        """Do one unit of work.

        Args:
            now: Reference time for the cycle

        Returns:
            WorkerResult with processing statistics

        Raises:
            StoreUnavailableError: If the queue store cannot be used
        """
        pass

    def run(self, now: datetime | None = None) -> WorkerResult:
        """Execute one processing cycle.

        This is the main entry point for worker execution.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            WorkerResult with processing statistics
        """
        start_time = datetime.now(timezone.utc)
        now = now or start_time

        self._logger.debug(f"[{self.worker_name}] Starting processing cycle")

        try:
            result = self.process_cycle(now)
        except StoreUnavailableError as e:
            self._logger.error(
                f"[{self.worker_name}] Worker cycle aborted, queue store unavailable",
                extra={"error": str(e)},
                exc_info=True,
            )
            return WorkerResult(
                status=WorkerStatus.FAILED,
                duration_ms=self._elapsed_ms(start_time),
                errors=[{"error": str(e)}],
            )

        result.duration_ms = self._elapsed_ms(start_time)

        if result.status == WorkerStatus.NO_WORK:
            self._logger.debug(f"[{self.worker_name}] No pending items")
        else:
            self._logger.info(
                f"[{self.worker_name}] Cycle complete",
                extra=result.to_dict(),
            )

        return result

    def _elapsed_ms(self, start: datetime) -> float:
        """Calculate elapsed time in milliseconds."""
        return (datetime.now(timezone.utc) - start).total_seconds() * 1000
