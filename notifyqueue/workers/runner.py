"""Worker runner for the notification queue.

Provides easy-to-use entry points for running workers:
- run_worker_once(): One dispatch tick plus one retention sweep
- run_worker_loop(): Dispatch every poll interval, sweep on its own cadence

Several runners may point at the same database; claiming in the queue
store keeps them from delivering the same record twice.
"""

import logging
import signal
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from notifyqueue.channels import DeliveryChannel, build_channels
from notifyqueue.config import get_settings
from notifyqueue.models.notification import NotificationChannel
from notifyqueue.services.backoff import BackoffPolicy
from notifyqueue.services.queue_store import QueueStore
from notifyqueue.workers.base import WorkerBase, WorkerResult
from notifyqueue.workers.dispatch_worker import DispatchWorker
from notifyqueue.workers.dispatcher import Dispatcher
from notifyqueue.workers.retention import RetentionSweeper

logger = logging.getLogger(__name__)


@dataclass
class RunnerResult:
    """Delivery and retention outcome of one runner pass.

    `sent`, `retry_scheduled` and `dead_lettered` come from the dispatch
    worker; `purged` from the retention sweeper. `total_processed` and
    `total_failed` sum every worker's counts.
    """

    started_at: datetime
    completed_at: datetime | None = None
    workers_run: int = 0
    total_processed: int = 0
    total_failed: int = 0
    sent: int = 0
    retry_scheduled: int = 0
    dead_lettered: int = 0
    purged: int = 0
    worker_results: dict[str, WorkerResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def add(self, worker: WorkerBase, worker_result: WorkerResult) -> None:
        """Fold one worker's cycle result into the totals."""
        self.worker_results[worker.worker_name] = worker_result
        self.workers_run += 1
        self.total_processed += worker_result.processed_count
        self.total_failed += worker_result.failed_count

        if isinstance(worker, RetentionSweeper):
            self.purged += worker_result.processed_count
        elif isinstance(worker, DispatchWorker):
            self.sent += worker_result.processed_count
            self.retry_scheduled += worker_result.metadata.get("retry_scheduled", 0)
            self.dead_lettered += worker_result.metadata.get("dead", 0)

    def summary(self) -> str:
        return (
            f"sent={self.sent} retry_scheduled={self.retry_scheduled} "
            f"dead_lettered={self.dead_lettered} purged={self.purged} "
            f"errors={len(self.errors)}"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "sent": self.sent,
            "retry_scheduled": self.retry_scheduled,
            "dead_lettered": self.dead_lettered,
            "purged": self.purged,
            "worker_results": {
                name: result.to_dict()
                for name, result in self.worker_results.items()
            },
            "errors": self.errors,
        }


class WorkerRunner:
    """Orchestrates the dispatch worker and the retention sweeper.

    Usage:
        runner = WorkerRunner()
        result = runner.run_once()
    """

    def __init__(
        self,
        store: QueueStore | None = None,
        channels: Mapping[NotificationChannel, DeliveryChannel] | None = None,
        batch_size: int | None = None,
        pool_size: int | None = None,
    ) -> None:
        """Initialize the worker runner.

        Args:
            store: Queue store (built from settings if omitted)
            channels: Delivery channels (built from settings if omitted)
            batch_size: Override default batch size
            pool_size: Override default worker pool size
        """
        settings = get_settings()
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.pool_size = pool_size or settings.WORKER_POOL_SIZE
        self.poll_interval_ms = settings.WORKER_POLL_INTERVAL_MS
        self.retention_interval_seconds = settings.RETENTION_INTERVAL_SECONDS

        self.store = store or QueueStore(backoff=BackoffPolicy.from_settings(settings))
        self.dispatcher = Dispatcher(
            self.store,
            channels if channels is not None else build_channels(settings),
            pool_size=self.pool_size,
            delivery_timeout=settings.DELIVERY_TIMEOUT_MS / 1000,
        )
        self.dispatch_worker = DispatchWorker(
            self.store,
            self.dispatcher,
            batch_size=self.batch_size,
            claim_timeout_seconds=settings.CLAIM_TIMEOUT_SECONDS,
        )
        self.retention_sweeper = RetentionSweeper(
            self.store,
            retention_window=timedelta(days=settings.RETENTION_WINDOW_DAYS),
            batch_size=settings.RETENTION_BATCH_SIZE,
        )

        self._logger = logging.getLogger(self.__class__.__name__)
        self._shutdown_requested = False

    def run_once(self, include_retention: bool = True) -> RunnerResult:
        """Execute one complete processing cycle.

        Args:
            include_retention: Also run the retention sweeper

        Returns:
            RunnerResult with aggregated statistics
        """
        workers: list[WorkerBase] = [self.dispatch_worker]
        if include_retention:
            workers.append(self.retention_sweeper)
        return self._run_workers(workers)

    def _run_workers(self, workers: list[WorkerBase]) -> RunnerResult:
        result = RunnerResult(started_at=datetime.now(timezone.utc))

        for worker in workers:
            try:
                result.add(worker, worker.run())

            except Exception as e:
                error_msg = f"{worker.worker_name} failed: {str(e)}"
                result.errors.append(error_msg)
                self._logger.error(
                    error_msg,
                    extra={"worker": worker.worker_name},
                    exc_info=True,
                )

        result.completed_at = datetime.now(timezone.utc)
        self._logger.debug("Worker run completed", extra=result.to_dict())
        return result

    def run_loop(
        self,
        interval_ms: int | None = None,
        max_iterations: int | None = None,
    ) -> None:
        """Run workers continuously in a loop.

        The dispatch worker runs every interval; the retention sweeper runs
        at most once per RETENTION_INTERVAL_SECONDS.

        Args:
            interval_ms: Milliseconds between dispatch ticks (default from config)
            max_iterations: Max ticks to run (None for infinite)
        """
        interval = (interval_ms or self.poll_interval_ms) / 1000
        iterations = 0
        next_sweep_at = time.monotonic()

        # Setup signal handlers for clean shutdown
        self._setup_signal_handlers()

        self._logger.info(
            "Starting worker loop",
            extra={
                "interval_seconds": interval,
                "max_iterations": max_iterations,
                "batch_size": self.batch_size,
                "pool_size": self.pool_size,
            },
        )

        try:
            while not self._shutdown_requested:
                if max_iterations is not None and iterations >= max_iterations:
                    self._logger.info(
                        f"Reached max iterations ({max_iterations}), stopping"
                    )
                    break

                workers: list[WorkerBase] = [self.dispatch_worker]
                if time.monotonic() >= next_sweep_at:
                    workers.append(self.retention_sweeper)
                    next_sweep_at = time.monotonic() + self.retention_interval_seconds

                result = self._run_workers(workers)
                iterations += 1

                if result.total_processed or result.total_failed:
                    self._logger.info(f"Tick {iterations}: {result.summary()}")

                if not self._shutdown_requested:
                    time.sleep(interval)

        except KeyboardInterrupt:
            self._logger.info("Keyboard interrupt received, shutting down")

        finally:
            self.close()

        self._logger.info(
            "Worker loop stopped",
            extra={"total_iterations": iterations},
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def handle_signal(signum, frame):
            self._logger.info(f"Received signal {signum}, requesting shutdown")
            self._shutdown_requested = True

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the loop."""
        self._shutdown_requested = True

    def close(self) -> None:
        """Release the worker pool and channel resources."""
        self.dispatcher.close()


# Convenience functions for easy usage


def run_worker_once(
    batch_size: int | None = None,
    pool_size: int | None = None,
    include_retention: bool = True,
) -> RunnerResult:
    """Run one dispatch tick and, unless disabled, one retention sweep.

    Example:
        >>> from notifyqueue.workers import run_worker_once
        >>> result = run_worker_once()
        >>> print(f"Processed: {result.total_processed}")
    """
    runner = WorkerRunner(batch_size=batch_size, pool_size=pool_size)
    try:
        return runner.run_once(include_retention=include_retention)
    finally:
        runner.close()


def run_worker_loop(
    interval_ms: int | None = None,
    max_iterations: int | None = None,
    batch_size: int | None = None,
    pool_size: int | None = None,
) -> None:
    """Run workers continuously until interrupted or max_iterations reached.

    Example:
        >>> from notifyqueue.workers import run_worker_loop
        >>> run_worker_loop(interval_ms=2000)  # Ctrl+C to stop
    """
    runner = WorkerRunner(batch_size=batch_size, pool_size=pool_size)
    runner.run_loop(interval_ms=interval_ms, max_iterations=max_iterations)


# Configure logging for worker runs
def configure_worker_logging(level: int = logging.INFO) -> None:
    """Configure logging for worker processes.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Set specific loggers
    logging.getLogger("notifyqueue").setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
