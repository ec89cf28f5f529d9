"""
Bounded retry for store calls.

Wraps any WorkStore so every call retries TransientStoreError with
exponential backoff. After the last attempt the failure surfaces as
StoreUnavailable, which the work loop turns into a `blocked` label instead
of stalling the worker.
"""

import logging
import time
from typing import Callable

from clawstown.lib.errors import StoreUnavailable, TransientStoreError
from clawstown.lib.types import ChangeState
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60.0


def call_with_retries(
    operation: str,
    fn: Callable,
    attempts: int,
    base_delay: float,
    sleep: Callable[[float], None] = time.sleep,
):
    """Run fn(), retrying transient failures up to attempts times."""
    delay = base_delay
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientStoreError as e:
            last_error = e
            if attempt == attempts:
                break
            logger.warning(f"[STORE] {operation} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.1f}s")
            sleep(delay)
            delay = min(delay * 2, MAX_BACKOFF_SECONDS)
    logger.error(f"[STORE] {operation} gave up after {attempts} attempt(s): {last_error}")
    raise StoreUnavailable(operation, attempts, last_error)


class RetryingStore(WorkStore):
    """WorkStore proxy adding bounded retry to every call."""

    def __init__(
        self,
        inner: WorkStore,
        attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.attempts = attempts
        self.base_delay = base_delay
        self.sleep = sleep

    @property
    def supports_conditional_update(self) -> bool:
        return self.inner.supports_conditional_update

    def _call(self, operation: str, *args, **kwargs):
        method = getattr(self.inner, operation)
        return call_with_retries(
            operation,
            lambda: method(*args, **kwargs),
            self.attempts,
            self.base_delay,
            self.sleep,
        )

    def create_item(self, title, body, labels):
        return self._call("create_item", title, body, labels)

    def get_item(self, item_id):
        return self._call("get_item", item_id)

    def list_items(self, present=(), absent=(), include_closed=False):
        return self._call("list_items", present, absent, include_closed)

    def update_item_labels(self, item_id, add=(), remove=(), expected_revision=None):
        return self._call("update_item_labels", item_id, add, remove, expected_revision)

    def assign_item(self, item_id, worker_id, expected_revision=None):
        return self._call("assign_item", item_id, worker_id, expected_revision)

    def unassign_item(self, item_id, worker_id):
        return self._call("unassign_item", item_id, worker_id)

    def append_comment(self, item_id, text, author=None):
        return self._call("append_comment", item_id, text, author)

    def close_item(self, item_id, comment=None):
        return self._call("close_item", item_id, comment)

    def create_change(self, branch, title, body, closes_item_id, author):
        return self._call("create_change", branch, title, body, closes_item_id, author)

    def get_change(self, change_id):
        return self._call("get_change", change_id)

    def list_changes(self, state=ChangeState.OPEN, present=()):
        return self._call("list_changes", state, present)

    def update_change_labels(self, change_id, add=(), remove=()):
        return self._call("update_change_labels", change_id, add, remove)

    def add_review(self, change_id, reviewer, verdict, comments):
        return self._call("add_review", change_id, reviewer, verdict, comments)

    def request_review(self, change_id, author):
        return self._call("request_review", change_id, author)

    def merge_change(self, change_id):
        return self._call("merge_change", change_id)

    def close_change(self, change_id, comment=None):
        return self._call("close_change", change_id, comment)
