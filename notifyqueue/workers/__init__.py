"""Background workers for notification delivery.

This module provides the delivery pipeline workers:
- Dispatch worker (select, claim, deliver)
- Dispatcher worker pool
- Retention sweeper

Workers can be started via:
- run_worker_once(): Single processing cycle
- run_worker_loop(): Continuous processing with interval
"""

from notifyqueue.workers.base import (
    WorkerBase,
    WorkerResult,
    WorkerStatus,
)
from notifyqueue.workers.dispatcher import Dispatcher, DispatchReport
from notifyqueue.workers.dispatch_worker import DispatchWorker
from notifyqueue.workers.retention import RetentionSweeper
from notifyqueue.workers.runner import (
    WorkerRunner,
    RunnerResult,
    run_worker_once,
    run_worker_loop,
    configure_worker_logging,
)

__all__ = [
    # Base classes
    "WorkerBase",
    "WorkerResult",
    "WorkerStatus",
    # Workers
    "Dispatcher",
    "DispatchReport",
    "DispatchWorker",
    "RetentionSweeper",
    # Runner
    "WorkerRunner",
    "RunnerResult",
    "run_worker_once",
    "run_worker_loop",
    "configure_worker_logging",
]
