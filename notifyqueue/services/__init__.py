"""Services module for the notification queue.

Services:
- queue_store.py: Durable queue with atomic claim and outcome write-back
- backoff.py: Retry backoff policy
- notifications.py: Enqueue entry point for producers
"""

from notifyqueue.services.backoff import BackoffPolicy, next_retry_at
from notifyqueue.services.notifications import NotificationService
from notifyqueue.services.queue_store import QueueStore, StoreUnavailableError

__all__ = [
    "BackoffPolicy",
    "next_retry_at",
    "QueueStore",
    "StoreUnavailableError",
    "NotificationService",
]
