"""Bounded worker pool that delivers claimed notifications.

Delivery calls run on a fixed-size thread pool so a large batch cannot
overwhelm the external channel. Outcomes are written back to the queue
store from the dispatching thread, one record at a time:

- delivered          -> record_success
- transient failure  -> record_failure (retry with backoff or dead)
- permanent failure  -> record_failure(permanent=True)
- attempt timed out  -> record_failure

Each attempt has a hard timeout measured from the moment it starts. The
batch as a whole also has a deadline, counted from submission, of one
timeout per "round" of the pool (ceil(batch / pool_size) timeouts). When
it passes, attempts still queued behind hung calls are cancelled and
failed, so a channel that ignores its timeout cannot hold a tick open.

A timed-out call is abandoned rather than cancelled; its eventual result
is ignored. If abandoned calls are still running when the batch ends,
the pool is replaced so the next batch starts with free slots.
"""

import logging
import math
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from notifyqueue.channels.base import DeliveryChannel, PermanentDeliveryError
from notifyqueue.models.notification import (
    NotificationChannel,
    NotificationRecord,
    NotificationStatus,
)
from notifyqueue.services.queue_store import QueueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

# Upper bound on how long the dispatcher sleeps between timeout checks
_WAIT_SLICE_SECONDS = 0.1


@dataclass
class DispatchReport:
    """Outcome counts for one dispatched batch."""

    sent: int = 0
    retry_scheduled: int = 0
    dead: int = 0
    timed_out: int = 0
    write_back_errors: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.retry_scheduled + self.dead + self.write_back_errors


class Dispatcher:
    """Delivers claimed records through their channel on a bounded pool."""

    def __init__(
        self,
        store: QueueStore,
        channels: Mapping[NotificationChannel, DeliveryChannel],
        pool_size: int = 4,
        delivery_timeout: float = 10.0,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Queue store for outcome write-back
            channels: Delivery channel per NotificationChannel
            pool_size: Maximum concurrent delivery attempts
            delivery_timeout: Hard per-attempt timeout in seconds
        """
        if pool_size <= 0:
            raise ValueError("pool_size must be positive")
        if delivery_timeout <= 0:
            raise ValueError("delivery_timeout must be positive")

        self.store = store
        self.channels = dict(channels)
        self.pool_size = pool_size
        self.delivery_timeout = delivery_timeout
        self._executor = self._new_executor()

    def dispatch(
        self, records: Sequence[NotificationRecord], now: datetime | None = None
    ) -> DispatchReport:
        """Deliver a batch of claimed records and write back every outcome.

        Returns within about ceil(len(records) / pool_size) delivery
        timeouts, plus store round-trips, whatever the channels do.

        Args:
            records: Records in PROCESSING state, in preferred start order
            now: Reference time for expiry checks

        Returns:
            DispatchReport with per-outcome counts
        """
        now = now or datetime.now(timezone.utc)
        report = DispatchReport()

        futures: dict[Future, NotificationRecord] = {}
        started_at: dict[UUID, float] = {}

        for record in records:
            channel = self.channels.get(record.channel)
            if channel is None:
                self._fail(
                    report, record,
                    f"no delivery channel configured for {record.channel.value}",
                    permanent=True,
                    code="no_channel",
                )
                continue
            if record.is_expired(now):
                self._fail(report, record, "expired", permanent=True, code="expired")
                continue

            future = self._executor.submit(self._attempt, channel, record, started_at)
            futures[future] = record

        rounds = math.ceil(len(futures) / self.pool_size)
        batch_deadline = time.monotonic() + self.delivery_timeout * rounds
        abandoned: list[Future] = []

        pending = set(futures)
        while pending:
            done, pending = wait(
                pending,
                timeout=self._wait_timeout(pending, futures, started_at, batch_deadline),
                return_when=FIRST_COMPLETED,
            )

            for future in done:
                record = futures[future]
                error = future.exception()
                if error is None:
                    self._succeed(report, record)
                else:
                    self._fail(
                        report, record,
                        self._describe(error),
                        permanent=isinstance(error, PermanentDeliveryError),
                        code=getattr(error, "code", None),
                    )

            clock = time.monotonic()
            for future in list(pending):
                if future.done():
                    continue
                record = futures[future]
                start = started_at.get(record.id)
                if start is not None and clock - start >= self.delivery_timeout:
                    error = f"delivery timed out after {self.delivery_timeout:g}s"
                elif clock >= batch_deadline:
                    error = (
                        "delivery timed out, not completed within the batch deadline "
                        f"of {self.delivery_timeout * rounds:g}s"
                    )
                else:
                    continue

                pending.discard(future)
                if not future.cancel():
                    abandoned.append(future)
                report.timed_out += 1
                self._fail(report, record, error, permanent=False, code="timeout")

        if any(not future.done() for future in abandoned):
            self._replace_executor()

        return report

    def close(self) -> None:
        """Stop accepting work; abandoned attempts are not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        for channel in self.channels.values():
            channel.close()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self.pool_size, thread_name_prefix="notify-delivery"
        )

    def _replace_executor(self) -> None:
        # Hung threads keep running on the old pool until their call returns
        logger.warning(
            "Replacing delivery pool held by timed-out attempts",
            extra={"pool_size": self.pool_size},
        )
        old = self._executor
        self._executor = self._new_executor()
        old.shutdown(wait=False, cancel_futures=True)

    def _attempt(
        self,
        channel: DeliveryChannel,
        record: NotificationRecord,
        started_at: dict[UUID, float],
    ) -> None:
        started_at[record.id] = time.monotonic()
        channel.deliver(record.recipient, record.payload, timeout=self.delivery_timeout)

    def _wait_timeout(
        self,
        pending: set[Future],
        futures: dict[Future, NotificationRecord],
        started_at: dict[UUID, float],
        batch_deadline: float,
    ) -> float:
        deadlines = [batch_deadline] + [
            started_at[futures[f].id] + self.delivery_timeout
            for f in pending
            if futures[f].id in started_at
        ]
        return max(0.0, min(min(deadlines) - time.monotonic(), _WAIT_SLICE_SECONDS))

    def _succeed(self, report: DispatchReport, record: NotificationRecord) -> None:
        try:
            self.store.record_success(record.id, claim_token=record.claim_token)
        except StoreUnavailableError as e:
            self._write_back_failed(report, record, e)
            return

        report.sent += 1
        logger.info(
            "Notification delivered",
            extra={
                "notification_id": str(record.id),
                "channel": record.channel.value,
                "attempt": record.retry_count + 1,
            },
        )

    def _fail(
        self,
        report: DispatchReport,
        record: NotificationRecord,
        error: str,
        permanent: bool,
        code: str | None = None,
    ) -> None:
        try:
            status = self.store.record_failure(
                record.id,
                error,
                claim_token=record.claim_token,
                permanent=permanent,
                error_code=code,
            )
        except StoreUnavailableError as e:
            self._write_back_failed(report, record, e)
            return

        if status == NotificationStatus.DEAD:
            report.dead += 1
        elif status == NotificationStatus.FAILED_RETRYABLE:
            report.retry_scheduled += 1

        report.errors.append({
            "notification_id": str(record.id),
            "error": error,
            "error_code": code,
            "status": status.value if status else None,
        })
        logger.warning(
            "Notification delivery failed",
            extra={
                "notification_id": str(record.id),
                "channel": record.channel.value,
                "error": error,
                "error_code": code,
                "permanent": permanent,
                "new_status": status.value if status else None,
            },
        )

    def _write_back_failed(
        self,
        report: DispatchReport,
        record: NotificationRecord,
        error: StoreUnavailableError,
    ) -> None:
        # The claim stays in PROCESSING until release_stale_claims() picks it up
        report.write_back_errors += 1
        report.errors.append({
            "notification_id": str(record.id),
            "error": f"write-back failed: {error}",
            "status": None,
        })
        logger.error(
            "Outcome write-back failed",
            extra={"notification_id": str(record.id), "error": str(error)},
        )

    @staticmethod
    def _describe(error: BaseException) -> str:
        message = str(error)
        if not message:
            return error.__class__.__name__
        return f"{error.__class__.__name__}: {message}"
