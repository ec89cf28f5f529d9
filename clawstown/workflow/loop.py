"""
Per-worker work loop.

Drives a WorkerFSM against the shared store. Every step re-reads the store;
nothing is carried between steps except the id of an item just claimed.

    Find-Work -> Implement -> Find-Work
              -> Review-Peers -> Respond-to-Reviews -> Check-Progress -> Find-Work
              -> Check-Progress -> Find-Work

Errors never leave the loop. Anything tied to an item marks that item
`blocked` with a comment; everything else is logged and the worker goes
back to Find-Work.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable

from clawstown.lib.config import SwarmConfig
from clawstown.lib.constants import (
    LABEL_BLOCKED,
    LABEL_DONE,
    LABEL_IN_PROGRESS,
    LABEL_REVIEW,
    LABEL_TASK,
)
from clawstown.lib.errors import (
    CapabilityError,
    ChangeNotFound,
    ClawstownError,
    ItemNotFound,
    StoreUnavailable,
    WorkerStuck,
)
from clawstown.lib.markers import render_marker
from clawstown.lib.types import ChangeState, branch_name
from clawstown.protocol.bootstrap import BootstrapCoordinator
from clawstown.protocol.claim import ClaimResolver, ClaimResult
from clawstown.protocol.feedback import FeedbackLoop
from clawstown.protocol.merge_gate import MergeGate, MergeResult
from clawstown.protocol.progress import ProgressChecker
from clawstown.store.base import WorkStore
from clawstown.workflow.fsm import WorkerFSM

logger = logging.getLogger(__name__)

# Failures that end work on one item but not the worker
ITEM_FAILURES = (WorkerStuck, CapabilityError, StoreUnavailable)


def read_goals(config: SwarmConfig) -> str:
    """Goal document from the target repo, or "" if it is missing."""
    path = Path(config.workdir) / config.goals_path
    try:
        return path.read_text()
    except OSError as e:
        logger.warning(f"[WORKER] cannot read goals from {path}: {e}")
        return ""


class Worker:
    """One swarm worker."""

    def __init__(
        self,
        config: SwarmConfig,
        store: WorkStore,
        capability,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.time,
        goals_loader: Callable[[], str] | None = None,
    ):
        self.config = config
        self.worker_id = config.agent_id
        self.store = store
        self.capability = capability
        self._stop_event = threading.Event()
        self.sleep = sleep or self._stop_event.wait
        self.goals_loader = goals_loader or (lambda: read_goals(config))

        self.claims = ClaimResolver(store, settle_delay=config.settle_delay, sleep=self.sleep)
        self.gate = MergeGate(store, quorum=config.quorum)
        self.feedback = FeedbackLoop(
            store, capability.validate, settle_delay=config.settle_delay, sleep=self.sleep,
        )
        self.bootstrapper = BootstrapCoordinator(store, capability)
        self.progress = ProgressChecker(
            store,
            capability,
            self.feedback,
            self.bootstrapper,
            stale_review_seconds=config.stale_review_seconds,
            clock=clock,
        )
        self.fsm = WorkerFSM(self.worker_id)

        self.current_item: str | None = None
        self.steps = 0
        self.consecutive_failures = 0

    # --- driving ---

    def run(self, max_steps: int | None = None) -> int:
        """Loop until stop() or max_steps. Returns the number of steps taken."""
        logger.info(f"[WORKER] {self.worker_id} starting")
        while not self._stop_event.is_set():
            if max_steps is not None and self.steps >= max_steps:
                break
            self.step()
        logger.info(f"[WORKER] {self.worker_id} stopped after {self.steps} step(s)")
        return self.steps

    def run_cycle(self, limit: int = 10) -> int:
        """One pass from Find-Work back to Find-Work (start-up steps included)."""
        start = self.steps
        while self.fsm.state in ("idle", "bootstrap") and not self.stopped:
            self.step()
        if not self.stopped:
            self.step()
        while self.fsm.state != "find_work" and self.steps - start < limit and not self.stopped:
            self.step()
        return self.steps - start

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def step(self) -> str:
        """Run the handler for the current state. Returns the new state."""
        state = self.fsm.state
        handler = getattr(self, f"_do_{state}")
        self.steps += 1
        try:
            handler()
        except ClawstownError as e:
            self.consecutive_failures += 1
            delay = min(self.config.retry_delay * 2 ** (self.consecutive_failures - 1), self.config.poll_interval)
            logger.error(f"[WORKER] {self.worker_id}: {state} failed: {e}; backing off {delay:.1f}s")
            self.current_item = None
            self.fsm.recover()
            self.sleep(delay)
        else:
            self.consecutive_failures = 0
        return self.fsm.state

    # --- states ---

    def _do_idle(self) -> None:
        if self.bootstrapper.needs_bootstrap():
            self.fsm.start_bootstrap()
        else:
            self.fsm.seek_work()

    def _do_bootstrap(self) -> None:
        goals = self.goals_loader()
        if not goals.strip():
            logger.warning(f"[WORKER] {self.worker_id}: no goals to bootstrap from")
        else:
            try:
                self.bootstrapper.bootstrap(self.worker_id, goals)
            except CapabilityError as e:
                logger.error(f"[WORKER] {self.worker_id}: bootstrap failed: {e}")
        self.fsm.seek_work()

    def _do_find_work(self) -> None:
        candidates = [
            item for item in self.store.list_items(
                present=[LABEL_TASK],
                absent=[LABEL_IN_PROGRESS, LABEL_BLOCKED, LABEL_DONE],
            )
            if item.is_free
        ]
        candidates.sort(key=lambda i: (i.created_at is None, i.created_at, len(i.id), i.id))

        for item in candidates:
            result = self.claims.try_claim(item.id, self.worker_id)
            if result == ClaimResult.CLAIMED:
                self.current_item = item.id
                self.fsm.claimed()
                return

        if self._has_review_work():
            self.fsm.review()
        else:
            self.fsm.check()

    def _do_implement(self) -> None:
        item_id = self.current_item
        self.current_item = None
        if item_id is not None:
            try:
                self.implement(item_id)
            except ITEM_FAILURES as e:
                self._block(item_id, f"Implementation stopped: {e}")
        self.fsm.seek_work()

    def _do_review_peers(self) -> None:
        for change in self.store.list_changes(state=ChangeState.OPEN, present=[LABEL_REVIEW]):
            try:
                self.review_change(change.id)
            except ChangeNotFound:
                continue
            except ITEM_FAILURES as e:
                logger.error(f"[WORKER] {self.worker_id}: review of change {change.id} failed: {e}")
        self.fsm.respond()

    def _do_respond_reviews(self) -> None:
        for change in self.store.list_changes(state=ChangeState.OPEN):
            if change.author != self.worker_id or not change.outstanding_change_requests():
                continue
            try:
                self.respond_to(change.id)
            except ITEM_FAILURES as e:
                self._block(change.closes_item, f"Could not address review on change #{change.id}: {e}")
        self.fsm.reviewed()

    def _do_check_progress(self) -> None:
        report = self.progress.check(self.worker_id, self.goals_loader())
        if not report.found_work:
            self.sleep(self.config.poll_interval)
        self.fsm.seek_work()

    # --- work ---

    def implement(self, item_id: str) -> str | None:
        """Implement a claimed item and open its change. Returns the change id."""
        if not self.claims.confirm_claim(item_id, self.worker_id):
            logger.info(f"[WORKER] {self.worker_id}: lost item {item_id} before starting")
            return None

        item = self.store.get_item(item_id)
        branch = branch_name(self.config.namespace, item.id, item.title)
        result = self.capability.implement(item, branch)

        if not self.claims.confirm_claim(item_id, self.worker_id):
            logger.warning(
                f"[WORKER] {self.worker_id}: lost item {item_id} while implementing; "
                f"branch {result.branch} left unmerged"
            )
            return None

        change_id = self.store.create_change(
            result.branch,
            item.title,
            result.summary,
            item.id,
            self.worker_id,
        )
        self.store.update_change_labels(change_id, add=[LABEL_REVIEW])
        self.store.update_item_labels(item.id, remove=[LABEL_IN_PROGRESS])
        logger.info(f"[WORKER] {self.worker_id}: opened change {change_id} for item {item.id}")
        return change_id

    def review_change(self, change_id: str) -> MergeResult | None:
        """Review a peer's change if due, then try to merge it."""
        change = self.store.get_change(change_id)
        if change.state != ChangeState.OPEN:
            return None

        if change.author != self.worker_id and not change.reviewed_since_push(self.worker_id):
            try:
                item = self.store.get_item(change.closes_item)
            except ItemNotFound:
                logger.warning(f"[WORKER] change {change.id} closes unknown item {change.closes_item}")
                return None

            decision = self.capability.review(change, item)
            if decision.redundant:
                self._close_redundant(change.id, item.id, decision.comments)
                return None

            self.store.add_review(change.id, self.worker_id, decision.verdict, decision.comments)
            logger.info(f"[WORKER] {self.worker_id}: {decision.verdict.value} on change {change.id}")

        result = self.gate.try_merge(change.id, invoker=self.worker_id)
        if result == MergeResult.MERGED:
            outcome = self.feedback.run(merged_change_id=change.id)
            if not outcome.passed:
                logger.warning(
                    f"[WORKER] validation failing after change {change.id}; tracked by item {outcome.item_id}"
                )
        return result

    def respond_to(self, change_id: str) -> None:
        """Push follow-up commits for requested changes and re-request review."""
        change = self.store.get_change(change_id)
        requests = change.outstanding_change_requests()
        if not requests:
            return
        item = self.store.get_item(change.closes_item)
        self.capability.respond(change, item, requests)
        self.store.request_review(change.id, self.worker_id)
        logger.info(f"[WORKER] {self.worker_id}: addressed {len(requests)} review(s) on change {change.id}")

    # --- helpers ---

    def _has_review_work(self) -> bool:
        for change in self.store.list_changes(state=ChangeState.OPEN):
            if change.author == self.worker_id:
                if change.outstanding_change_requests():
                    return True
            elif LABEL_REVIEW in change.labels and not change.reviewed_since_push(self.worker_id):
                return True
        return False

    def _close_redundant(self, change_id: str, item_id: str, reason: str) -> None:
        logger.info(f"[WORKER] {self.worker_id}: change {change_id} is redundant; closing")
        note = f"Closed as redundant by `{self.worker_id}`: {reason}"
        self.store.close_change(change_id, note)
        self.store.update_item_labels(item_id, add=[LABEL_DONE], remove=[LABEL_IN_PROGRESS, LABEL_REVIEW])
        self.store.close_item(item_id, f"Duplicate. {note}")

    def _block(self, item_id: str, reason: str) -> None:
        """Mark an item blocked, if the store lets us."""
        logger.warning(f"[WORKER] {self.worker_id}: blocking item {item_id}: {reason}")
        try:
            self.store.update_item_labels(item_id, add=[LABEL_BLOCKED], remove=[LABEL_IN_PROGRESS])
            self.store.append_comment(
                item_id,
                f"{render_marker('blocked', worker=self.worker_id)}\n{reason}",
                author=self.worker_id,
            )
        except ClawstownError as e:
            logger.error(f"[WORKER] {self.worker_id}: could not mark item {item_id} blocked: {e}")
