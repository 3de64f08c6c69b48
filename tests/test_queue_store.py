"""Tests for the queue store.

Tests cover:
- Eligibility and ordering of select_eligible
- Exclusive claiming, including concurrent claimers
- Success and failure write-back, retry budget and dead-lettering
- Stale claim recovery
- Retention purge
- Observability counters
"""

import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

from notifyqueue.db.session import build_engine
from notifyqueue.models.notification import NotificationStatus
from notifyqueue.services.queue_store import (
    CLAIM_EXPIRED_CODE,
    CLAIM_EXPIRED_ERROR,
    MAX_ERROR_LENGTH,
    QueueStore,
    StoreUnavailableError,
)

from tests.conftest import NOW, make_record


def fail_attempt(store, record_id, now, **kwargs):
    """Claim a record at `now` and report a failed attempt."""
    assert store.claim([record_id], now=now) == {record_id}
    return store.record_failure(record_id, "smtp timeout", now=now, **kwargs)


# ============================================================================
# Selection Tests
# ============================================================================

class TestSelectEligible:
    """Tests for select_eligible."""

    def test_pending_without_schedule_is_eligible(self, store, add_record):
        """Unscheduled PENDING records are due immediately."""
        record = add_record()

        selected = store.select_eligible(10, now=NOW)

        assert [r.id for r in selected] == [record.id]

    def test_future_schedule_not_returned(self, store, add_record):
        """Records scheduled in the future are skipped."""
        add_record(scheduled_for=NOW + timedelta(minutes=5))
        due = add_record(scheduled_for=NOW - timedelta(minutes=5))
        exactly_now = add_record(scheduled_for=NOW)

        selected = {r.id for r in store.select_eligible(10, now=NOW)}

        assert selected == {due.id, exactly_now.id}

    def test_retryable_only_after_next_retry_at(self, store, add_record):
        """FAILED_RETRYABLE records wait for next_retry_at."""
        add_record(
            status=NotificationStatus.FAILED_RETRYABLE,
            retry_count=1,
            next_retry_at=NOW + timedelta(seconds=30),
        )
        due = add_record(
            status=NotificationStatus.FAILED_RETRYABLE,
            retry_count=1,
            next_retry_at=NOW - timedelta(seconds=30),
        )

        selected = store.select_eligible(10, now=NOW)

        assert [r.id for r in selected] == [due.id]

    def test_exhausted_budget_not_returned(self, store, add_record):
        """Records without retry budget left are never selected."""
        add_record(
            status=NotificationStatus.FAILED_RETRYABLE,
            retry_count=3,
            max_retries=3,
            next_retry_at=NOW - timedelta(hours=1),
        )

        assert store.select_eligible(10, now=NOW) == []

    @pytest.mark.parametrize(
        "status",
        [NotificationStatus.SENT, NotificationStatus.DEAD, NotificationStatus.PROCESSING],
    )
    def test_terminal_and_in_flight_never_returned(self, store, add_record, status):
        """SENT, DEAD and PROCESSING records are not eligible."""
        add_record(status=status, next_retry_at=NOW - timedelta(hours=1))

        assert store.select_eligible(10, now=NOW) == []

    def test_higher_priority_first_regardless_of_creation(self, store, add_record):
        """Priority 10 beats priority 5 even when created later."""
        low = add_record(priority=5, created_at=NOW - timedelta(hours=2))
        high = add_record(priority=10, created_at=NOW - timedelta(minutes=1))

        selected = store.select_eligible(10, now=NOW)

        assert [r.id for r in selected] == [high.id, low.id]

    def test_longer_overdue_first_within_priority(self, store, add_record):
        """Within a priority, the record due longest ago comes first."""
        retry = add_record(
            status=NotificationStatus.FAILED_RETRYABLE,
            retry_count=1,
            next_retry_at=NOW - timedelta(minutes=10),
            created_at=NOW - timedelta(days=1),
        )
        scheduled = add_record(scheduled_for=NOW - timedelta(minutes=30))
        unscheduled = add_record(created_at=NOW - timedelta(minutes=5))

        selected = store.select_eligible(10, now=NOW)

        assert [r.id for r in selected] == [scheduled.id, retry.id, unscheduled.id]

    def test_limit_bounds_batch(self, store, add_record):
        """No more than `limit` records are returned."""
        for _ in range(5):
            add_record()

        assert len(store.select_eligible(3, now=NOW)) == 3
        assert store.select_eligible(0, now=NOW) == []


# ============================================================================
# Claim Tests
# ============================================================================

class TestClaim:
    """Tests for claim."""

    def test_claim_marks_in_flight(self, store, add_record):
        """Claimed records move to PROCESSING with a claim token."""
        record = add_record()

        claimed = store.claim([record.id], now=NOW)

        assert claimed == {record.id}
        stored = store.get(record.id)
        assert stored.status == NotificationStatus.PROCESSING
        assert stored.claim_token is not None
        assert stored.claimed_at == NOW

    def test_second_claim_gets_nothing(self, engine, backoff, add_record):
        """When two callers claim the same id, exactly one succeeds."""
        record = add_record()
        first = QueueStore(engine, backoff=backoff)
        second = QueueStore(engine, backoff=backoff)

        results = [first.claim([record.id], now=NOW), second.claim([record.id], now=NOW)]

        assert results == [{record.id}, set()]

    def test_claim_skips_records_that_changed_since_selection(self, store, add_record):
        """A record that is no longer eligible is excluded silently."""
        fresh = add_record()
        sent = add_record(status=NotificationStatus.SENT, sent_at=NOW)
        not_due = add_record(scheduled_for=NOW + timedelta(hours=1))

        claimed = store.claim([fresh.id, sent.id, not_due.id, uuid4()], now=NOW)

        assert claimed == {fresh.id}
        assert store.get(sent.id).status == NotificationStatus.SENT
        assert store.get(not_due.id).status == NotificationStatus.PENDING

    def test_claim_empty_ids(self, store):
        """Claiming nothing is a no-op."""
        assert store.claim([], now=NOW) == set()

    def test_concurrent_claims_are_exclusive(self, tmp_path, backoff):
        """Concurrent claimers on a shared database never overlap."""
        engine = build_engine(f"sqlite:///{tmp_path / 'queue.db'}")
        SQLModel.metadata.create_all(engine)
        store = QueueStore(engine, backoff=backoff)
        ids = [store.add(make_record()).id for _ in range(10)]

        barrier = threading.Barrier(4)
        results: list[set] = []
        lock = threading.Lock()

        def claimer():
            barrier.wait()
            claimed = QueueStore(engine, backoff=backoff).claim(ids, now=NOW)
            with lock:
                results.append(claimed)

        threads = [threading.Thread(target=claimer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(results) == 4
        assert set().union(*results) == set(ids)
        assert sum(len(r) for r in results) == len(ids)
        engine.dispose()


# ============================================================================
# Write-back Tests
# ============================================================================

class TestRecordSuccess:
    """Tests for record_success."""

    def test_success_sets_sent(self, store, add_record):
        """A delivered record becomes SENT with sent_at and no claim."""
        record = add_record()
        store.claim([record.id], now=NOW)

        assert store.record_success(record.id, now=NOW) is True

        stored = store.get(record.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.sent_at == NOW
        assert stored.failed_at is None
        assert stored.claim_token is None

    def test_success_is_idempotent(self, store, add_record):
        """A second success call leaves sent_at unchanged."""
        record = add_record()
        store.claim([record.id], now=NOW)
        store.record_success(record.id, now=NOW)

        assert store.record_success(record.id, now=NOW + timedelta(minutes=5)) is False
        assert store.get(record.id).sent_at == NOW

    def test_success_requires_matching_token(self, store, add_record, claim_records):
        """A write-back from another claim is ignored."""
        record = add_record()
        (claimed,) = claim_records(record)

        assert store.record_success(record.id, claim_token=uuid4(), now=NOW) is False
        assert store.record_success(
            record.id, claim_token=claimed.claim_token, now=NOW
        ) is True

    def test_success_on_unclaimed_record_is_noop(self, store, add_record):
        """Only in-flight records can be marked SENT."""
        record = add_record()

        assert store.record_success(record.id, now=NOW) is False
        assert store.get(record.id).status == NotificationStatus.PENDING


class TestRecordFailure:
    """Tests for record_failure."""

    def test_three_failures_reach_dead(self, store, add_record):
        """max_retries=3: PENDING -> RETRYABLE -> RETRYABLE -> DEAD."""
        record = add_record(max_retries=3)
        now = NOW
        statuses = []

        for _ in range(3):
            statuses.append(fail_attempt(store, record.id, now))
            stored = store.get(record.id)
            if stored.status == NotificationStatus.FAILED_RETRYABLE:
                assert stored.failed_at is None
                assert stored.next_retry_at >= now
                now = stored.next_retry_at

        assert statuses == [
            NotificationStatus.FAILED_RETRYABLE,
            NotificationStatus.FAILED_RETRYABLE,
            NotificationStatus.DEAD,
        ]
        stored = store.get(record.id)
        assert stored.retry_count == 3
        assert stored.failed_at == now
        assert stored.sent_at is None
        assert stored.next_retry_at is None
        assert stored.error_message == "smtp timeout"

    def test_error_code_stored_and_cleared_on_success(self, store, add_record):
        """The failure reason code is kept until the record is delivered."""
        record = add_record()
        fail_attempt(store, record.id, NOW, error_code="http_503")
        assert store.get(record.id).error_code == "http_503"

        retry_at = store.get(record.id).next_retry_at
        assert store.claim([record.id], now=retry_at) == {record.id}
        assert store.record_success(record.id, now=retry_at) is True

        stored = store.get(record.id)
        assert stored.error_code is None
        assert stored.error_message is None

    def test_retry_scheduled_with_backoff(self, store, add_record):
        """First retry is about one base delay after the failure."""
        record = add_record()

        fail_attempt(store, record.id, NOW)

        stored = store.get(record.id)
        assert stored.retry_count == 1
        assert NOW + timedelta(seconds=48) <= stored.next_retry_at
        assert stored.next_retry_at <= NOW + timedelta(seconds=72)

    def test_retryable_not_selected_before_backoff(self, store, add_record):
        """A failed record is not eligible again until its retry time."""
        record = add_record()
        fail_attempt(store, record.id, NOW)

        assert store.select_eligible(10, now=NOW + timedelta(seconds=1)) == []
        later = store.get(record.id).next_retry_at
        assert [r.id for r in store.select_eligible(10, now=later)] == [record.id]

    def test_repeated_write_back_not_double_counted(self, store, add_record):
        """A retried failure write-back for the same attempt is a no-op."""
        record = add_record()
        fail_attempt(store, record.id, NOW)

        assert store.record_failure(record.id, "again", now=NOW) is None
        stored = store.get(record.id)
        assert stored.retry_count == 1
        assert stored.error_message == "smtp timeout"

    def test_failure_after_success_ignored(self, store, add_record):
        """No transition leaves a terminal state."""
        record = add_record()
        store.claim([record.id], now=NOW)
        store.record_success(record.id, now=NOW)

        assert store.record_failure(record.id, "late", now=NOW) is None
        stored = store.get(record.id)
        assert stored.status == NotificationStatus.SENT
        assert stored.retry_count == 0

    def test_permanent_failure_goes_dead(self, store, add_record):
        """Permanent failures skip the remaining retry budget."""
        record = add_record(max_retries=5)

        status = fail_attempt(store, record.id, NOW, permanent=True)

        assert status == NotificationStatus.DEAD
        stored = store.get(record.id)
        assert stored.retry_count == 1
        assert stored.failed_at == NOW

    def test_zero_retry_budget_dies_without_exceeding(self, store, add_record):
        """max_retries=0 dies on first failure with retry_count still 0."""
        record = add_record(max_retries=0)

        status = fail_attempt(store, record.id, NOW)

        assert status == NotificationStatus.DEAD
        assert store.get(record.id).retry_count == 0

    def test_error_message_truncated(self, store, add_record):
        """Long errors are truncated."""
        record = add_record()
        store.claim([record.id], now=NOW)

        store.record_failure(record.id, "x" * 2000, now=NOW)

        assert len(store.get(record.id).error_message) == MAX_ERROR_LENGTH

    def test_failure_with_stale_token_ignored(self, store, add_record):
        """A write-back carrying another claim's token is rejected."""
        record = add_record()
        store.claim([record.id], now=NOW)

        assert store.record_failure(record.id, "boom", claim_token=uuid4(), now=NOW) is None
        assert store.get(record.id).status == NotificationStatus.PROCESSING


class TestReleaseStaleClaims:
    """Tests for release_stale_claims."""

    def test_stale_claim_counts_as_failure(self, store, add_record):
        """Abandoned claims re-enter the retry cycle."""
        record = add_record()
        store.claim([record.id], now=NOW)

        released = store.release_stale_claims(
            older_than=NOW + timedelta(seconds=1), now=NOW + timedelta(minutes=10)
        )

        assert released == 1
        stored = store.get(record.id)
        assert stored.status == NotificationStatus.FAILED_RETRYABLE
        assert stored.retry_count == 1
        assert stored.error_message == CLAIM_EXPIRED_ERROR
        assert stored.error_code == CLAIM_EXPIRED_CODE
        assert stored.claim_token is None

    def test_recent_claim_left_alone(self, store, add_record):
        """Claims younger than the cutoff stay in flight."""
        record = add_record()
        store.claim([record.id], now=NOW)

        assert store.release_stale_claims(older_than=NOW - timedelta(minutes=5)) == 0
        assert store.get(record.id).status == NotificationStatus.PROCESSING

    def test_stale_claim_with_no_budget_dies(self, store, add_record):
        """A record that keeps losing its worker is eventually dead-lettered."""
        record = add_record(max_retries=1)
        store.claim([record.id], now=NOW)

        store.release_stale_claims(older_than=NOW + timedelta(seconds=1), now=NOW)

        assert store.get(record.id).status == NotificationStatus.DEAD


# ============================================================================
# Retention Tests
# ============================================================================

class TestPurgeOlderThan:
    """Tests for purge_older_than."""

    def _seed(self, add_record):
        old = NOW - timedelta(days=40)
        return {
            "old_sent": add_record(status=NotificationStatus.SENT, sent_at=old),
            "new_sent": add_record(
                status=NotificationStatus.SENT, sent_at=NOW - timedelta(days=1)
            ),
            "old_dead": add_record(status=NotificationStatus.DEAD, failed_at=old),
            "ancient_pending": add_record(created_at=NOW - timedelta(days=400)),
            "ancient_retryable": add_record(
                status=NotificationStatus.FAILED_RETRYABLE,
                retry_count=1,
                next_retry_at=old,
                created_at=NOW - timedelta(days=400),
            ),
            "ancient_in_flight": add_record(
                status=NotificationStatus.PROCESSING, claimed_at=old
            ),
        }

    def test_removes_only_old_terminal_records(self, store, add_record):
        """Only SENT/DEAD records past the cutoff are deleted."""
        records = self._seed(add_record)

        removed = store.purge_older_than(
            {NotificationStatus.SENT, NotificationStatus.DEAD},
            NOW - timedelta(days=30),
        )

        assert removed == 2
        assert store.get(records["old_sent"].id) is None
        assert store.get(records["old_dead"].id) is None
        for key in ("new_sent", "ancient_pending", "ancient_retryable", "ancient_in_flight"):
            assert store.get(records[key].id) is not None

    def test_batched_purge(self, store, add_record):
        """Batched deletion removes the same set."""
        for _ in range(5):
            add_record(status=NotificationStatus.SENT, sent_at=NOW - timedelta(days=90))
        keep = add_record(status=NotificationStatus.SENT, sent_at=NOW)

        removed = store.purge_older_than(
            [NotificationStatus.SENT], NOW - timedelta(days=30), batch_size=2
        )

        assert removed == 5
        assert store.count_by_status(NotificationStatus.SENT) == 1
        assert store.get(keep.id) is not None

    def test_non_terminal_statuses_ignored(self, store, add_record):
        """Asking to purge non-terminal statuses deletes nothing."""
        self._seed(add_record)

        removed = store.purge_older_than(
            [NotificationStatus.PENDING, NotificationStatus.FAILED_RETRYABLE],
            NOW + timedelta(days=1000),
        )

        assert removed == 0

    def test_only_requested_statuses(self, store, add_record):
        """DEAD records survive a SENT-only purge."""
        records = self._seed(add_record)

        store.purge_older_than([NotificationStatus.SENT], NOW - timedelta(days=30))

        assert store.get(records["old_dead"].id) is not None


# ============================================================================
# Observability Tests
# ============================================================================

class TestObservability:
    """Tests for counters and dead-letter listing."""

    def test_count_by_status(self, store, add_record):
        """count_by_status counts one status."""
        add_record()
        add_record()
        add_record(status=NotificationStatus.DEAD, failed_at=NOW)

        assert store.count_by_status(NotificationStatus.PENDING) == 2
        assert store.count_by_status(NotificationStatus.DEAD) == 1
        assert store.count_by_status(NotificationStatus.SENT) == 0

    def test_stats(self, store, add_record):
        """stats derives depth, in-flight and dead-letter totals."""
        add_record()
        add_record(
            status=NotificationStatus.FAILED_RETRYABLE,
            retry_count=1,
            next_retry_at=NOW,
        )
        add_record(status=NotificationStatus.PROCESSING, claimed_at=NOW)
        add_record(status=NotificationStatus.SENT, sent_at=NOW)
        add_record(status=NotificationStatus.DEAD, failed_at=NOW)

        stats = store.stats()

        assert stats.counts == {
            "pending": 1,
            "processing": 1,
            "sent": 1,
            "failed_retryable": 1,
            "dead": 1,
        }
        assert stats.queue_depth == 2
        assert stats.in_flight == 1
        assert stats.dead_letters == 1

    def test_list_dead_letters_newest_first(self, store, add_record):
        """Dead letters are listed most recently failed first."""
        older = add_record(status=NotificationStatus.DEAD, failed_at=NOW - timedelta(hours=1))
        newer = add_record(status=NotificationStatus.DEAD, failed_at=NOW)
        add_record()

        dead = store.list_dead_letters()

        assert [r.id for r in dead] == [newer.id, older.id]
        assert [r.id for r in store.list_dead_letters(limit=1, offset=1)] == [older.id]

    def test_list_for_recipient(self, store, add_record):
        """A recipient's notifications are listed newest first with a total."""
        first = add_record(
            recipient="tenant@example.com", created_at=NOW - timedelta(hours=2)
        )
        second = add_record(
            recipient="tenant@example.com",
            status=NotificationStatus.DEAD,
            failed_at=NOW,
            created_at=NOW - timedelta(hours=1),
        )
        add_record(recipient="other@example.com")

        records, total = store.list_for_recipient("tenant@example.com")
        assert total == 2
        assert [r.id for r in records] == [second.id, first.id]

        records, total = store.list_for_recipient(
            "tenant@example.com", status=NotificationStatus.PENDING
        )
        assert total == 1
        assert [r.id for r in records] == [first.id]

        records, total = store.list_for_recipient(
            "tenant@example.com", limit=1, offset=1
        )
        assert total == 2
        assert [r.id for r in records] == [first.id]


class TestStoreUnavailable:
    """Tests for infrastructure failure surfacing."""

    def test_database_errors_become_store_unavailable(self, backoff):
        """SQLAlchemy errors surface as StoreUnavailableError."""
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = QueueStore(engine, backoff=backoff)  # schema never created

        with pytest.raises(StoreUnavailableError):
            store.select_eligible(10, now=NOW)
        with pytest.raises(StoreUnavailableError):
            store.claim([uuid4()], now=NOW)


class TestTimestamps:
    """Tests for timezone handling of stored timestamps."""

    def test_timestamps_come_back_as_aware_utc(self, store, add_record):
        """Stored datetimes are read back timezone-aware in UTC."""
        record = add_record()
        store.claim([record.id], now=NOW)

        stored = store.get(record.id)

        assert stored.created_at.tzinfo is not None
        assert stored.claimed_at == NOW
        assert stored.claimed_at.utcoffset() == timedelta(0)

    def test_other_offsets_normalized_to_utc(self, store, add_record):
        """A scheduled time in another zone is the same instant in UTC."""
        local = timezone(timedelta(hours=5))
        record = add_record(scheduled_for=datetime(2026, 1, 15, 17, 0, 0, tzinfo=local))

        stored = store.get(record.id)

        assert stored.scheduled_for == NOW
        assert stored.scheduled_for.utcoffset() == timedelta(0)
        assert [r.id for r in store.select_eligible(10, now=NOW)] == [record.id]

    def test_naive_values_taken_as_utc(self, store, add_record):
        """Naive datetimes are stored as UTC rather than rejected."""
        record = add_record(scheduled_for=NOW.replace(tzinfo=None))

        assert store.get(record.id).scheduled_for == NOW
