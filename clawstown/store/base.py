"""
Work store capability interface.

The store is the swarm's only shared state and its only communication
channel. Implementations may be eventually consistent: a read can miss
recent writes from other workers. The protocol only relies on:

- conditional updates keyed on an item revision, when
  supports_conditional_update is True;
- otherwise, reads that eventually reflect every write.
"""

from abc import ABC, abstractmethod
from typing import Iterable

from clawstown.lib.types import Change, ChangeState, MergeOutcome, Verdict, WorkItem


class WorkStore(ABC):
    """Abstract work store. See clawstown.store.memory and clawstown.store.github."""

    supports_conditional_update: bool = False

    # --- work items ---

    @abstractmethod
    def create_item(self, title: str, body: str, labels: Iterable[str]) -> str:
        """Create a work item and return its id."""

    @abstractmethod
    def get_item(self, item_id: str) -> WorkItem:
        """Return the item. Raises ItemNotFound."""

    @abstractmethod
    def list_items(
        self,
        present: Iterable[str] = (),
        absent: Iterable[str] = (),
        include_closed: bool = False,
    ) -> list[WorkItem]:
        """Items carrying every label in present and none in absent."""

    @abstractmethod
    def update_item_labels(
        self,
        item_id: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
        expected_revision: str | None = None,
    ) -> None:
        """Add/remove labels. Raises StoreConflict if the revision moved."""

    @abstractmethod
    def assign_item(self, item_id: str, worker_id: str, expected_revision: str | None = None) -> None:
        """Record worker_id as an assignee. Raises StoreConflict if the revision moved."""

    @abstractmethod
    def unassign_item(self, item_id: str, worker_id: str) -> None:
        """Remove worker_id from the assignees (no-op if absent)."""

    @abstractmethod
    def append_comment(self, item_id: str, text: str, author: str | None = None) -> None:
        """Append a comment to an item."""

    @abstractmethod
    def close_item(self, item_id: str, comment: str | None = None) -> None:
        """Close an item, optionally with a final comment."""

    # --- changes ---

    @abstractmethod
    def create_change(self, branch: str, title: str, body: str, closes_item_id: str, author: str) -> str:
        """Open a change from branch that closes the given item."""

    @abstractmethod
    def get_change(self, change_id: str) -> Change:
        """Return the change. Raises ChangeNotFound."""

    @abstractmethod
    def list_changes(self, state: ChangeState | None = ChangeState.OPEN, present: Iterable[str] = ()) -> list[Change]:
        """Changes in the given state (None for all) carrying every label in present."""

    @abstractmethod
    def update_change_labels(self, change_id: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        """Add/remove labels on a change."""

    @abstractmethod
    def add_review(self, change_id: str, reviewer: str, verdict: Verdict, comments: str) -> None:
        """Record a review."""

    @abstractmethod
    def request_review(self, change_id: str, author: str) -> None:
        """Author pushed follow-ups: bump last_pushed_at and re-add the review label."""

    @abstractmethod
    def merge_change(self, change_id: str) -> MergeOutcome:
        """Squash-merge the change into the integration branch."""

    @abstractmethod
    def close_change(self, change_id: str, comment: str | None = None) -> None:
        """Close a change without merging."""
