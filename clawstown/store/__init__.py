"""Work store adapters."""

from clawstown.store.base import WorkStore
from clawstown.store.memory import ManualClock, MemoryStore
from clawstown.store.retrying import RetryingStore, call_with_retries

__all__ = [
    "WorkStore",
    "MemoryStore",
    "ManualClock",
    "RetryingStore",
    "call_with_retries",
]
