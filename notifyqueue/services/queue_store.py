"""Durable queue store for notification records.

The store is the only shared mutable state in the delivery pipeline.
Every mutation is a single conditional UPDATE (or DELETE) guarded by the
record's current status, so several scheduler processes can work against
the same table without coordinating in-process:

- claim() moves eligible rows to PROCESSING and tags them with a fresh
  claim token; a row claimed by someone else no longer matches.
- record_success()/record_failure() only act on PROCESSING rows (and on
  the caller's claim token when given), which makes repeated write-backs
  no-ops instead of double transitions.
"""

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from notifyqueue.db.session import get_engine
from notifyqueue.models.notification import (
    NotificationRecord,
    NotificationStatus,
    QueueStats,
)
from notifyqueue.services.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
MAX_ERROR_CODE_LENGTH = 50
CLAIM_EXPIRED_ERROR = "claim expired"
CLAIM_EXPIRED_CODE = "claim_expired"


class StoreUnavailableError(RuntimeError):
    """The queue database could not be reached or rejected a statement."""


def _eligible(now: datetime):
    """SQL predicate for records that may be dispatched at `now`."""
    R = NotificationRecord
    return or_(
        and_(
            col(R.status) == NotificationStatus.PENDING,
            or_(col(R.scheduled_for).is_(None), col(R.scheduled_for) <= now),
        ),
        and_(
            col(R.status) == NotificationStatus.FAILED_RETRYABLE,
            col(R.next_retry_at) <= now,
            col(R.retry_count) < col(R.max_retries),
        ),
    )


def _due_at():
    """SQL expression for the time a record became due."""
    R = NotificationRecord
    return case(
        (col(R.status) == NotificationStatus.FAILED_RETRYABLE, col(R.next_retry_at)),
        else_=func.coalesce(col(R.scheduled_for), col(R.created_at)),
    )


def _terminal_before(status: NotificationStatus, cutoff: datetime):
    R = NotificationRecord
    stamp = col(R.sent_at) if status == NotificationStatus.SENT else col(R.failed_at)
    return and_(col(R.status) == status, stamp < cutoff)


class QueueStore:
    """Notification queue persistence with atomic lifecycle transitions.

    Each public method runs in its own short transaction. Database errors
    are raised as StoreUnavailableError so callers can abort a tick
    without knowing about SQLAlchemy.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self.engine = engine or get_engine()
        self.backoff = backoff or BackoffPolicy.from_settings()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Queue store operation failed", extra={"error": str(e)})
            raise StoreUnavailableError(str(e)) from e

    # ------------------------------------------------------------------
    # Basic persistence
    # ------------------------------------------------------------------

    def add(self, record: NotificationRecord) -> NotificationRecord:
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get(self, notification_id: UUID) -> NotificationRecord | None:
        with self._session() as session:
            return session.get(NotificationRecord, notification_id)

    # ------------------------------------------------------------------
    # Selection and claiming
    # ------------------------------------------------------------------

    def select_eligible(
        self, limit: int, now: datetime | None = None
    ) -> list[NotificationRecord]:
        """Return up to `limit` eligible records, best candidates first.

        Ordered by priority (highest first), then by how long the record
        has been due (oldest first), then by creation time.
        """
        if limit <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        R = NotificationRecord

        with self._session() as session:
            records = session.exec(
                select(R)
                .where(_eligible(now))
                .order_by(
                    col(R.priority).desc(),
                    _due_at().asc(),
                    col(R.created_at).asc(),
                )
                .limit(limit)
            ).all()
            return list(records)

    def claim(
        self, ids: Iterable[UUID], now: datetime | None = None
    ) -> set[UUID]:
        """Claim records for dispatch.

        Only rows that are still eligible at `now` are moved to PROCESSING.
        Rows claimed concurrently by another caller, or whose state changed
        since they were selected, are silently left out of the result.
        """
        ids = list(ids)
        if not ids:
            return set()
        now = now or datetime.now(timezone.utc)
        token = uuid4()
        R = NotificationRecord

        with self._session() as session:
            session.execute(
                update(R)
                .where(col(R.id).in_(ids))
                .where(_eligible(now))
                .values(
                    status=NotificationStatus.PROCESSING,
                    claim_token=token,
                    claimed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

            claimed = session.exec(
                select(R.id).where(col(R.claim_token) == token)
            ).all()

        claimed_ids = set(claimed)
        if len(claimed_ids) < len(ids):
            logger.debug(
                "Claim conflicts excluded from batch",
                extra={"requested": len(ids), "claimed": len(claimed_ids)},
            )
        return claimed_ids

    def get_claimed(self, ids: Iterable[UUID]) -> list[NotificationRecord]:
        """Load claimed records for dispatch."""
        ids = list(ids)
        if not ids:
            return []
        R = NotificationRecord
        with self._session() as session:
            return list(
                session.exec(
                    select(R)
                    .where(col(R.id).in_(ids))
                    .where(col(R.status) == NotificationStatus.PROCESSING)
                ).all()
            )

    # ------------------------------------------------------------------
    # Outcome write-back
    # ------------------------------------------------------------------

    def record_success(
        self,
        notification_id: UUID,
        claim_token: UUID | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark a claimed record as SENT.

        Returns:
            True if the record transitioned, False if it was not in flight
            (already sent, dead, or claimed under another token)
        """
        now = now or datetime.now(timezone.utc)
        R = NotificationRecord

        stmt = update(R).where(
            col(R.id) == notification_id,
            col(R.status) == NotificationStatus.PROCESSING,
        )
        if claim_token is not None:
            stmt = stmt.where(col(R.claim_token) == claim_token)

        with self._session() as session:
            result = session.execute(
                stmt.values(
                    status=NotificationStatus.SENT,
                    sent_at=now,
                    error_message=None,
                    error_code=None,
                    next_retry_at=None,
                    claim_token=None,
                    claimed_at=None,
                ).execution_options(synchronize_session=False)
            )
            session.commit()

        updated = result.rowcount == 1
        if not updated:
            logger.debug(
                "Ignored success write-back for record not in flight",
                extra={"notification_id": str(notification_id)},
            )
        return updated

    def record_failure(
        self,
        notification_id: UUID,
        error: str,
        claim_token: UUID | None = None,
        permanent: bool = False,
        now: datetime | None = None,
        error_code: str | None = None,
    ) -> NotificationStatus | None:
        """Record a failed delivery attempt for a claimed record.

        Increments retry_count (never past max_retries). The record becomes
        FAILED_RETRYABLE with a backed-off next_retry_at while budget
        remains, otherwise DEAD. Permanent failures go straight to DEAD.
        `error_code` is a short machine-readable reason kept next to the
        message for dead-letter triage.

        Returns:
            The new status, or None if the record was not in flight
        """
        now = now or datetime.now(timezone.utc)

        with self._session() as session:
            record = session.exec(
                select(NotificationRecord)
                .where(col(NotificationRecord.id) == notification_id)
                .with_for_update()
            ).first()

            if record is None or record.status != NotificationStatus.PROCESSING:
                logger.debug(
                    "Ignored failure write-back for record not in flight",
                    extra={"notification_id": str(notification_id)},
                )
                return None
            if claim_token is not None and record.claim_token != claim_token:
                return None

            status = self._apply_failure(
                session, record, error, permanent, now, error_code
            )
            session.commit()
            return status

    def _apply_failure(
        self,
        session: Session,
        record: NotificationRecord,
        error: str,
        permanent: bool,
        now: datetime,
        error_code: str | None = None,
    ) -> NotificationStatus | None:
        R = NotificationRecord
        retry_count = min(record.retry_count + 1, record.max_retries)

        values: dict = {
            "retry_count": retry_count,
            "error_message": error[:MAX_ERROR_LENGTH] if error else None,
            "error_code": error_code[:MAX_ERROR_CODE_LENGTH] if error_code else None,
            "claim_token": None,
            "claimed_at": None,
        }
        if permanent or retry_count >= record.max_retries:
            values.update(
                status=NotificationStatus.DEAD,
                failed_at=now,
                next_retry_at=None,
            )
        else:
            values.update(
                status=NotificationStatus.FAILED_RETRYABLE,
                next_retry_at=self.backoff.next_retry_at(record.retry_count, now),
            )

        token_guard = (
            col(R.claim_token).is_(None)
            if record.claim_token is None
            else col(R.claim_token) == record.claim_token
        )
        result = session.execute(
            update(R)
            .where(
                col(R.id) == record.id,
                col(R.status) == NotificationStatus.PROCESSING,
                col(R.retry_count) == record.retry_count,
                token_guard,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return values["status"]

    def release_stale_claims(
        self, older_than: datetime, now: datetime | None = None
    ) -> int:
        """Fail records whose claim is older than `older_than`.

        A record stays PROCESSING forever if its dispatcher died mid-batch.
        Treating the lost attempt as a failure puts it back into the retry
        cycle while still spending retry budget, so a record that keeps
        crashing its worker eventually dies.

        Returns:
            Number of records released
        """
        now = now or datetime.now(timezone.utc)
        R = NotificationRecord
        released = 0

        with self._session() as session:
            stale = session.exec(
                select(R)
                .where(col(R.status) == NotificationStatus.PROCESSING)
                .where(col(R.claimed_at) < older_than)
                .with_for_update()
            ).all()
            for record in stale:
                if self._apply_failure(
                    session, record, CLAIM_EXPIRED_ERROR, False, now,
                    error_code=CLAIM_EXPIRED_CODE,
                ):
                    released += 1
            session.commit()

        if released:
            logger.warning(
                "Released stale claims",
                extra={"released": released, "older_than": older_than.isoformat()},
            )
        return released

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_older_than(
        self,
        statuses: Iterable[NotificationStatus],
        cutoff: datetime,
        batch_size: int | None = None,
    ) -> int:
        """Delete terminal records whose terminal timestamp precedes `cutoff`.

        Non-terminal statuses in `statuses` are ignored. With `batch_size`,
        rows are deleted in separate transactions of at most that size.

        Returns:
            Number of records removed
        """
        terminal = [
            NotificationStatus(s) for s in statuses
            if NotificationStatus(s).is_terminal
        ]
        if not terminal:
            return 0

        R = NotificationRecord
        clause = or_(*(_terminal_before(s, cutoff) for s in terminal))
        removed = 0

        with self._session() as session:
            if batch_size is None:
                result = session.execute(
                    delete(R)
                    .where(clause)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount

            while True:
                batch = session.exec(
                    select(R.id).where(clause).limit(batch_size)
                ).all()
                if not batch:
                    break
                result = session.execute(
                    delete(R)
                    .where(col(R.id).in_(batch))
                    .where(clause)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                removed += result.rowcount
                if len(batch) < batch_size:
                    break

        return removed

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def count_by_status(self, status: NotificationStatus) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count())
                .select_from(NotificationRecord)
                .where(col(NotificationRecord.status) == status)
            ).one()

    def stats(self) -> QueueStats:
        """Counts per status plus derived depth, in-flight and dead-letter totals."""
        with self._session() as session:
            rows = session.exec(
                select(NotificationRecord.status, func.count()).group_by(
                    NotificationRecord.status
                )
            ).all()

        counts = {status.value: 0 for status in NotificationStatus}
        for status, count in rows:
            counts[NotificationStatus(status).value] = count

        return QueueStats(
            counts=counts,
            queue_depth=counts[NotificationStatus.PENDING.value]
            + counts[NotificationStatus.FAILED_RETRYABLE.value],
            in_flight=counts[NotificationStatus.PROCESSING.value],
            dead_letters=counts[NotificationStatus.DEAD.value],
        )

    def list_dead_letters(
        self, limit: int = 50, offset: int = 0
    ) -> Sequence[NotificationRecord]:
        """Dead-lettered records, most recently failed first."""
        R = NotificationRecord
        with self._session() as session:
            return session.exec(
                select(R)
                .where(col(R.status) == NotificationStatus.DEAD)
                .order_by(col(R.failed_at).desc())
                .offset(offset)
                .limit(limit)
            ).all()

    def list_for_recipient(
        self,
        recipient: str,
        status: NotificationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[NotificationRecord], int]:
        """A recipient's queued notifications, newest first, with the total count."""
        R = NotificationRecord
        query = select(R).where(col(R.recipient) == recipient)
        count_query = (
            select(func.count())
            .select_from(R)
            .where(col(R.recipient) == recipient)
        )
        if status is not None:
            query = query.where(col(R.status) == status)
            count_query = count_query.where(col(R.status) == status)

        with self._session() as session:
            total = session.exec(count_query).one()
            records = session.exec(
                query.order_by(col(R.created_at).desc()).offset(offset).limit(limit)
            ).all()
        return records, total
