"""Shared fixtures for notification queue tests."""

import random
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

from notifyqueue.channels.base import DeliveryChannel
from notifyqueue.models.notification import (
    NotificationChannel,
    NotificationRecord,
    NotificationStatus,
)
from notifyqueue.services.backoff import BackoffPolicy
from notifyqueue.services.queue_store import QueueStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeChannel(DeliveryChannel):
    """In-memory channel that records calls and raises on demand."""

    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.delivered: list[tuple[str, dict[str, Any]]] = []

    @property
    def channel_name(self) -> str:
        return "fake"

    def deliver(self, recipient, payload, timeout=None) -> None:
        if recipient in self.errors:
            raise self.errors[recipient]
        self.delivered.append((recipient, payload))


def make_record(**overrides: Any) -> NotificationRecord:
    """Build a PENDING email record created an hour before NOW."""
    values: dict[str, Any] = {
        "channel": NotificationChannel.EMAIL,
        "recipient": "facilities@example.com",
        "payload": {"subject": "Work order updated"},
        "priority": 0,
        "status": NotificationStatus.PENDING,
        "max_retries": 3,
        "created_at": datetime(2026, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return NotificationRecord(**values)


@pytest.fixture
def engine():
    """In-memory SQLite engine with the queue schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def backoff() -> BackoffPolicy:
    return BackoffPolicy(
        base_seconds=60, cap_seconds=3600, jitter=0.2, rng=random.Random(7)
    )


@pytest.fixture
def store(engine, backoff) -> QueueStore:
    return QueueStore(engine, backoff=backoff)


@pytest.fixture
def add_record(store):
    """Persist a record built by make_record()."""
    def _add(**overrides: Any) -> NotificationRecord:
        return store.add(make_record(**overrides))
    return _add


@pytest.fixture
def claim_records(store):
    """Claim the given records at NOW and return them in PROCESSING state."""
    def _claim(*records: NotificationRecord) -> list[NotificationRecord]:
        ids = store.claim([r.id for r in records], now=NOW)
        return store.get_claimed(ids)
    return _claim
