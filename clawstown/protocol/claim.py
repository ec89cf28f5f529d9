"""
Claim resolution.

Decides whether a worker owns a work item. Two strategies, picked by what
the store offers:

Conditional update: assign with the revision we read. A concurrent mutation
makes the store reject the write and we yield.

Write-then-verify: record our claim, wait settle_delay, re-read. If several
workers raced, the lexicographically smallest identity wins and every other
claimant withdraws its own entry. With a store whose reads lag writes by at
most L seconds this guarantees a single owner when settle_delay >= 2 * L:
either a late claimant's pre-read sees the earlier claim and backs off, or
both claims land within L of each other and both verifications see both.
Losses that slip past verification are caught by confirm_claim().
"""

import logging
import time
from enum import Enum
from typing import Callable

from clawstown.lib.constants import LABEL_IN_PROGRESS
from clawstown.lib.errors import ClawstownError, ItemNotFound, StoreConflict
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


class ClaimResolver:
    """Stateless claim logic shared by every worker."""

    def __init__(
        self,
        store: WorkStore,
        settle_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settle_delay = settle_delay
        self.sleep = sleep

    def try_claim(self, item_id: str, worker_id: str) -> ClaimResult:
        """Attempt to become the owner of item_id."""
        early = self.write_claim(item_id, worker_id)
        if early is not None:
            return early
        if self.store.supports_conditional_update:
            return ClaimResult.CLAIMED
        self.sleep(self.settle_delay)
        return self.verify_claim(item_id, worker_id)

    def write_claim(self, item_id: str, worker_id: str) -> ClaimResult | None:
        """Pre-check and record the claim.

        Returns a final result, or None when a write-then-verify claim was
        recorded and still needs verify_claim().
        """
        try:
            item = self.store.get_item(item_id)
        except ItemNotFound:
            logger.info(f"[CLAIM] {worker_id}: item {item_id} not found")
            return ClaimResult.NOT_FOUND

        # A claim is never resumed implicitly, not even our own from a
        # previous life; releasing it takes an explicit unblock.
        if not item.is_free:
            logger.debug(f"[CLAIM] {worker_id}: item {item_id} held by {item.assignee or '?'}")
            return ClaimResult.ALREADY_CLAIMED

        if self.store.supports_conditional_update:
            try:
                self.store.assign_item(item_id, worker_id, expected_revision=item.revision)
            except StoreConflict:
                try:
                    current = self.store.get_item(item_id)
                    holder = current.assignee or "?"
                except ItemNotFound:
                    holder = "?"
                logger.info(f"[CLAIM] {worker_id}: lost race for item {item_id} to {holder}")
                return ClaimResult.ALREADY_CLAIMED
            self._mark_in_progress(item_id, worker_id)
            logger.info(f"[CLAIM] {worker_id}: claimed item {item_id}")
            return ClaimResult.CLAIMED

        self.store.assign_item(item_id, worker_id)
        self._mark_in_progress(item_id, worker_id)
        return None

    def _mark_in_progress(self, item_id: str, worker_id: str) -> None:
        """Label a freshly assigned item, or take the assignment back.

        An assignee without `in-progress` is invisible to both Find-Work and
        status, so a failed label write must not leave our entry behind.
        """
        try:
            self.store.update_item_labels(item_id, add=[LABEL_IN_PROGRESS])
        except ClawstownError:
            logger.warning(f"[CLAIM] {worker_id}: could not label item {item_id}; withdrawing claim")
            try:
                self.store.unassign_item(item_id, worker_id)
            except ClawstownError as e:
                logger.error(f"[CLAIM] {worker_id}: could not withdraw claim on item {item_id}: {e}")
            raise

    def verify_claim(self, item_id: str, worker_id: str) -> ClaimResult:
        """Re-read after settling and apply the smallest-identity tie break."""
        try:
            item = self.store.get_item(item_id)
        except ItemNotFound:
            return ClaimResult.NOT_FOUND

        if worker_id not in item.assignees:
            logger.info(f"[CLAIM] {worker_id}: claim on item {item_id} was overwritten")
            return ClaimResult.ALREADY_CLAIMED

        winner = min(item.assignees)
        if winner != worker_id:
            logger.info(f"[CLAIM] {worker_id}: yielding item {item_id} to {winner}")
            self.store.unassign_item(item_id, worker_id)
            return ClaimResult.ALREADY_CLAIMED

        logger.info(f"[CLAIM] {worker_id}: claimed item {item_id}")
        return ClaimResult.CLAIMED

    def confirm_claim(self, item_id: str, worker_id: str) -> bool:
        """Check the claim still stands; withdraw if a smaller identity showed up.

        Only our own entry is ever cleared. The in-progress label stays
        because it belongs to the winner now.
        """
        try:
            item = self.store.get_item(item_id)
        except ItemNotFound:
            return False
        if worker_id not in item.assignees:
            logger.warning(f"[CLAIM] {worker_id}: no longer assigned to item {item_id}")
            return False
        if min(item.assignees) != worker_id:
            logger.warning(f"[CLAIM] {worker_id}: late loss on item {item_id} to {min(item.assignees)}; withdrawing")
            self.store.unassign_item(item_id, worker_id)
            return False
        return True

    def release(self, item_id: str, worker_ids, labels_to_remove=(LABEL_IN_PROGRESS,)) -> None:
        """Clear the given claims and labels. This is the only way a held item frees up."""
        self.store.update_item_labels(item_id, remove=list(labels_to_remove))
        for worker_id in worker_ids:
            self.store.unassign_item(item_id, worker_id)
            logger.info(f"[CLAIM] released claim of {worker_id} on item {item_id}")
