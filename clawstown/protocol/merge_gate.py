"""Merge gate: peer-consensus check plus idempotent integration.

Any worker may run the gate on any change. The non-author approval
precondition is what prevents self-merge, so no dedicated merge queue is
needed.

A change is ready when:
- at least `quorum` distinct non-authors have approve as their latest verdict;
- no request-changes review is newer than the author's last push.

Merging squashes the branch, marks the change and its item done, and closes
the item.
"""

import logging
from enum import Enum

from clawstown.lib.constants import (
    LABEL_BLOCKED,
    LABEL_DONE,
    LABEL_IN_PROGRESS,
    LABEL_REVIEW,
)
from clawstown.lib.errors import ChangeNotFound, ItemNotFound
from clawstown.lib.types import Change, ChangeState, MergeOutcome, Verdict
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)


class MergeResult(str, Enum):
    MERGED = "merged"
    NOT_READY = "not_ready"
    CONFLICT = "conflict"


def readiness(change: Change, quorum: int = 1) -> tuple[bool, str]:
    """Evaluate the quorum policy. Returns (ready, reason)."""
    if change.state != ChangeState.OPEN:
        return False, f"change is {change.state.value}"

    approvers = change.approvers()
    if len(approvers) < quorum:
        return False, f"{len(approvers)}/{quorum} non-author approval(s)"

    outstanding = change.outstanding_change_requests()
    if outstanding:
        who = ", ".join(sorted({r.reviewer for r in outstanding}))
        return False, f"changes requested by {who}"

    return True, f"approved by {', '.join(sorted(approvers))}"


def finish_item(store: WorkStore, item_id: str, change_id: str) -> None:
    """Mark the item closed by a merged change as done."""
    item = store.get_item(item_id)
    store.update_item_labels(
        item_id,
        add=[LABEL_DONE],
        remove=[LABEL_IN_PROGRESS, LABEL_REVIEW, LABEL_BLOCKED],
    )
    for worker in item.assignees:
        store.unassign_item(item_id, worker)
    if not item.closed:
        store.close_item(item_id, f"Completed by change #{change_id}.")


class MergeGate:
    """Quorum-gated, idempotent merge."""

    def __init__(self, store: WorkStore, quorum: int = 1):
        self.store = store
        self.quorum = quorum

    def try_merge(self, change_id: str, invoker: str | None = None) -> MergeResult:
        try:
            change = self.store.get_change(change_id)
        except ChangeNotFound:
            logger.info(f"[MERGE] change {change_id} not found")
            return MergeResult.NOT_READY

        if change.state == ChangeState.MERGED:
            logger.debug(f"[MERGE] change {change_id} already merged")
            return MergeResult.MERGED

        ready, reason = readiness(change, self.quorum)
        if not ready:
            logger.info(f"[MERGE] change {change_id} not ready: {reason}")
            return MergeResult.NOT_READY

        outcome = self.store.merge_change(change_id)

        if outcome == MergeOutcome.ALREADY_MERGED:
            logger.info(f"[MERGE] change {change_id} was merged concurrently")
            return MergeResult.MERGED

        if outcome == MergeOutcome.NOT_MERGEABLE:
            logger.warning(f"[MERGE] change {change_id} does not merge cleanly")
            if invoker and invoker != change.author:
                self.store.add_review(
                    change_id,
                    invoker,
                    Verdict.REQUEST_CHANGES,
                    "The branch no longer merges cleanly. Integrate the base branch "
                    "with a follow-up commit (no force-push) and re-request review.",
                )
            return MergeResult.CONFLICT

        logger.info(f"[MERGE] merged change {change_id} ({reason})")
        self.store.update_change_labels(change_id, add=[LABEL_DONE], remove=[LABEL_REVIEW])
        try:
            finish_item(self.store, change.closes_item, change_id)
        except ItemNotFound:
            logger.warning(f"[MERGE] change {change_id} closes unknown item {change.closes_item}")
        return MergeResult.MERGED
