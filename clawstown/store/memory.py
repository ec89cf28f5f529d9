"""
In-memory work store.

A faithful stand-in for a remote, eventually-consistent store. It is used by
the test suite and by `clawstown run --store memory` for dry runs:

- visibility_lag: a write only becomes visible to reads once the clock has
  moved that many seconds past it. Conditional updates always check
  against the latest true revision, like a server-side precondition.
- conditional_updates: when False, expected_revision is ignored and callers
  must use write-then-verify.
- fail_next(): inject TransientStoreError into upcoming calls.

Time comes from an injectable clock so tests can step through interleavings
deterministically (see ManualClock).
"""

import itertools
import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from clawstown.lib.constants import LABEL_REVIEW
from clawstown.lib.errors import ChangeNotFound, ItemNotFound, StoreConflict, TransientStoreError
from clawstown.lib.types import (
    Change,
    ChangeState,
    Comment,
    MergeOutcome,
    Review,
    Verdict,
    WorkItem,
)
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)


class ManualClock:
    """Clock that only moves when told to. sleep() advances it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class MemoryStore(WorkStore):
    """Work store held in process memory."""

    def __init__(
        self,
        conditional_updates: bool = True,
        visibility_lag: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.supports_conditional_update = conditional_updates
        self.visibility_lag = visibility_lag
        self.clock = clock

        # id -> [(written_at, snapshot)], oldest first
        self._items: dict[str, list[tuple[float, WorkItem]]] = {}
        self._changes: dict[str, list[tuple[float, Change]]] = {}
        self._unmergeable: set[str] = set()
        self._ids = itertools.count(1)
        self._revisions = itertools.count(1)
        self._last_stamp = 0.0
        self._faults: list[str | None] = []
        self._lock = threading.RLock()

        # Integration side effects, in order. One entry per real merge.
        self.merged: list[str] = []

    # --- test hooks ---

    def fail_next(self, count: int = 1, operation: str | None = None) -> None:
        """Make the next count calls (of operation, or any) raise TransientStoreError."""
        with self._lock:
            self._faults.extend([operation] * count)

    def set_mergeable(self, change_id: str, mergeable: bool) -> None:
        with self._lock:
            if mergeable:
                self._unmergeable.discard(change_id)
            else:
                self._unmergeable.add(change_id)

    def latest_item(self, item_id: str) -> WorkItem:
        """The true current state, ignoring visibility lag."""
        with self._lock:
            if item_id not in self._items:
                raise ItemNotFound(item_id)
            return self._items[item_id][-1][1]

    def latest_change(self, change_id: str) -> Change:
        with self._lock:
            if change_id not in self._changes:
                raise ChangeNotFound(change_id)
            return self._changes[change_id][-1][1]

    # --- internals ---

    def _check_fault(self, operation: str) -> None:
        for i, target in enumerate(self._faults):
            if target is None or target == operation:
                del self._faults[i]
                raise TransientStoreError(f"injected failure in {operation}")

    def _stamp(self) -> datetime:
        """Record timestamp, strictly increasing across writes."""
        stamp = max(self.clock(), self._last_stamp + 0.001)
        self._last_stamp = stamp
        return datetime.fromtimestamp(stamp, tz=timezone.utc)

    def _visible(self, history: list[tuple[float, object]]):
        horizon = self.clock() - self.visibility_lag
        visible = None
        for written_at, snapshot in history:
            if written_at <= horizon:
                visible = snapshot
        return visible

    def _read_item(self, item_id: str) -> WorkItem:
        history = self._items.get(item_id)
        item = self._visible(history) if history else None
        if item is None:
            raise ItemNotFound(item_id)
        return item

    def _read_change(self, change_id: str) -> Change:
        history = self._changes.get(change_id)
        change = self._visible(history) if history else None
        if change is None:
            raise ChangeNotFound(change_id)
        return change

    def _write_item(self, item_id: str, expected_revision: str | None, **updates) -> WorkItem:
        current = self.latest_item(item_id)
        if expected_revision is not None and self.supports_conditional_update:
            if current.revision != expected_revision:
                raise StoreConflict(
                    f"item {item_id} moved from revision {expected_revision} to {current.revision}"
                )
        updated = replace(current, revision=str(next(self._revisions)), **updates)
        self._items[item_id].append((self.clock(), updated))
        return updated

    def _write_change(self, change_id: str, **updates) -> Change:
        current = self.latest_change(change_id)
        updated = replace(current, **updates)
        self._changes[change_id].append((self.clock(), updated))
        return updated

    # --- work items ---

    def create_item(self, title: str, body: str, labels: Iterable[str]) -> str:
        with self._lock:
            self._check_fault("create_item")
            item_id = str(next(self._ids))
            item = WorkItem(
                id=item_id,
                title=title,
                body=body,
                labels=frozenset(labels),
                created_at=self._stamp(),
                revision=str(next(self._revisions)),
            )
            self._items[item_id] = [(self.clock(), item)]
            logger.debug(f"[MEMSTORE] created item {item_id}: {title}")
            return item_id

    def get_item(self, item_id: str) -> WorkItem:
        with self._lock:
            self._check_fault("get_item")
            return self._read_item(item_id)

    def list_items(self, present=(), absent=(), include_closed=False) -> list[WorkItem]:
        with self._lock:
            self._check_fault("list_items")
            present, absent = set(present), set(absent)
            found = []
            for history in self._items.values():
                item = self._visible(history)
                if item is None or (item.closed and not include_closed):
                    continue
                if present <= item.labels and not (absent & item.labels):
                    found.append(item)
            return found

    def update_item_labels(self, item_id, add=(), remove=(), expected_revision=None) -> None:
        with self._lock:
            self._check_fault("update_item_labels")
            current = self.latest_item(item_id)
            labels = (current.labels | set(add)) - set(remove)
            self._write_item(item_id, expected_revision, labels=frozenset(labels))

    def assign_item(self, item_id, worker_id, expected_revision=None) -> None:
        with self._lock:
            self._check_fault("assign_item")
            current = self.latest_item(item_id)
            if worker_id in current.assignees:
                self._write_item(item_id, expected_revision)
                return
            self._write_item(item_id, expected_revision, assignees=current.assignees + (worker_id,))

    def unassign_item(self, item_id, worker_id) -> None:
        with self._lock:
            self._check_fault("unassign_item")
            current = self.latest_item(item_id)
            if worker_id not in current.assignees:
                return
            remaining = tuple(a for a in current.assignees if a != worker_id)
            self._write_item(item_id, None, assignees=remaining)

    def append_comment(self, item_id, text, author=None) -> None:
        with self._lock:
            self._check_fault("append_comment")
            current = self.latest_item(item_id)
            comment = Comment(author=author, body=text, created_at=self._stamp())
            self._write_item(item_id, None, comments=current.comments + [comment])

    def close_item(self, item_id, comment=None) -> None:
        with self._lock:
            self._check_fault("close_item")
            if comment:
                current = self.latest_item(item_id)
                note = Comment(author=None, body=comment, created_at=self._stamp())
                self._write_item(item_id, None, comments=current.comments + [note], closed=True)
            else:
                self._write_item(item_id, None, closed=True)

    # --- changes ---

    def create_change(self, branch, title, body, closes_item_id, author) -> str:
        with self._lock:
            self._check_fault("create_change")
            change_id = str(next(self._ids))
            stamp = self._stamp()
            change = Change(
                id=change_id,
                branch=branch,
                title=title,
                body=body,
                author=author,
                closes_item=closes_item_id,
                created_at=stamp,
                last_pushed_at=stamp,
            )
            self._changes[change_id] = [(self.clock(), change)]
            logger.debug(f"[MEMSTORE] created change {change_id} from {branch}")
            return change_id

    def get_change(self, change_id) -> Change:
        with self._lock:
            self._check_fault("get_change")
            return self._read_change(change_id)

    def list_changes(self, state=ChangeState.OPEN, present=()) -> list[Change]:
        with self._lock:
            self._check_fault("list_changes")
            present = set(present)
            found = []
            for history in self._changes.values():
                change = self._visible(history)
                if change is None:
                    continue
                if state is not None and change.state != state:
                    continue
                if present <= change.labels:
                    found.append(change)
            return found

    def update_change_labels(self, change_id, add=(), remove=()) -> None:
        with self._lock:
            self._check_fault("update_change_labels")
            current = self.latest_change(change_id)
            labels = (current.labels | set(add)) - set(remove)
            self._write_change(change_id, labels=frozenset(labels))

    def add_review(self, change_id, reviewer, verdict, comments) -> None:
        with self._lock:
            self._check_fault("add_review")
            current = self.latest_change(change_id)
            review = Review(
                reviewer=reviewer,
                verdict=Verdict(verdict),
                comments=comments,
                submitted_at=self._stamp(),
            )
            self._write_change(change_id, reviews=current.reviews + [review])

    def request_review(self, change_id, author) -> None:
        with self._lock:
            self._check_fault("request_review")
            current = self.latest_change(change_id)
            self._write_change(
                change_id,
                last_pushed_at=self._stamp(),
                labels=current.labels | {LABEL_REVIEW},
            )

    def merge_change(self, change_id) -> MergeOutcome:
        with self._lock:
            self._check_fault("merge_change")
            current = self.latest_change(change_id)
            if current.state == ChangeState.MERGED:
                return MergeOutcome.ALREADY_MERGED
            if current.state == ChangeState.CLOSED or change_id in self._unmergeable:
                return MergeOutcome.NOT_MERGEABLE
            self._write_change(change_id, state=ChangeState.MERGED)
            self.merged.append(change_id)
            logger.debug(f"[MEMSTORE] merged change {change_id}")
            return MergeOutcome.OK

    def close_change(self, change_id, comment=None) -> None:
        with self._lock:
            self._check_fault("close_change")
            current = self.latest_change(change_id)
            if current.state == ChangeState.MERGED:
                return
            self._write_change(change_id, state=ChangeState.CLOSED)
