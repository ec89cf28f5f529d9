"""
Check-Progress evaluation.

Runs when a worker finds nothing to claim or review:

1. reconcile changes that merged without their item being finished
   (a worker crashed between merge and bookkeeping);
2. nudge reviewers about changes nobody has looked at;
3. validate the integration branch, feeding failures back as work;
4. when no work is open, ask for gaps against the goals;
5. when nothing is left and validation passes, post the terminal status.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from clawstown.lib.constants import (
    LABEL_DONE,
    LABEL_REVIEW,
    LABEL_TASK,
    STATUS_ITEM_TITLE,
    TERMINAL_STATUS_TEXT,
)
from clawstown.lib.errors import ItemNotFound
from clawstown.lib.markers import find_marker, parse_markers, render_marker
from clawstown.lib.types import ChangeState
from clawstown.protocol.bootstrap import BootstrapCoordinator
from clawstown.protocol.feedback import FeedbackLoop
from clawstown.protocol.merge_gate import finish_item
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)


@dataclass
class ProgressReport:
    reconciled: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    validation_passed: bool | None = None
    failing_item: str | None = None
    failing_created: bool = False
    gap_items: list[str] = field(default_factory=list)
    complete: bool = False

    @property
    def found_work(self) -> bool:
        """The check changed the store in a way Find-Work should see right away.

        A failure that was already tracked does not count.
        """
        return bool(self.reconciled or self.gap_items or self.failing_created)


class ProgressChecker:
    """Swarm-wide housekeeping any worker can run."""

    def __init__(
        self,
        store: WorkStore,
        capability,
        feedback: FeedbackLoop,
        bootstrap: BootstrapCoordinator,
        stale_review_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.capability = capability
        self.feedback = feedback
        self.bootstrap = bootstrap
        self.stale_review_seconds = stale_review_seconds
        self.clock = clock

    def check(self, worker_id: str, goals: str) -> ProgressReport:
        report = ProgressReport()
        report.reconciled = self.reconcile_merged()
        report.stale = self.nudge_stale_changes(worker_id)

        result = self.capability.validate()
        report.validation_passed = result.passed
        if not result.passed:
            outcome = self.feedback.report_failure(result.details)
            report.failing_item = outcome.item_id
            report.failing_created = outcome.created
            return report

        if self.open_work():
            return report

        if not goals.strip():
            logger.warning("[PROGRESS] no goals available; skipping gap analysis")
            return report

        report.gap_items = self.bootstrap.create_gap_items(worker_id, goals)
        if report.gap_items:
            return report

        report.complete = True
        self.post_terminal_status(worker_id)
        return report

    def open_work(self) -> bool:
        """Any unfinished task item or open change."""
        if self.store.list_items(present=[LABEL_TASK], absent=[LABEL_DONE]):
            return True
        return bool(self.store.list_changes(state=ChangeState.OPEN))

    def reconcile_merged(self) -> list[str]:
        repaired = []
        for change in self.store.list_changes(state=ChangeState.MERGED):
            try:
                item = self.store.get_item(change.closes_item)
            except ItemNotFound:
                continue
            if item.has(LABEL_DONE) and item.closed:
                continue
            logger.info(f"[PROGRESS] finishing item {item.id} for merged change {change.id}")
            finish_item(self.store, item.id, change.id)
            if LABEL_REVIEW in change.labels or LABEL_DONE not in change.labels:
                self.store.update_change_labels(change.id, add=[LABEL_DONE], remove=[LABEL_REVIEW])
            repaired.append(item.id)
        return repaired

    def nudge_stale_changes(self, worker_id: str) -> list[str]:
        """Comment once on the item of each review change left unreviewed too long."""
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        nudged = []
        for change in self.store.list_changes(state=ChangeState.OPEN, present=[LABEL_REVIEW]):
            if change.reviews:
                continue
            since = change.last_pushed_at or change.created_at
            if since is None or (now - since).total_seconds() < self.stale_review_seconds:
                continue
            try:
                item = self.store.get_item(change.closes_item)
            except ItemNotFound:
                continue
            already = any(
                kind == "stale" and fields.get("change") == change.id
                for comment in item.comments
                for kind, fields in parse_markers(comment.body)
            )
            if already:
                continue
            hours = int((now - since).total_seconds() // 3600)
            self.store.append_comment(
                item.id,
                f"{render_marker('stale', change=change.id)}\n"
                f"Change #{change.id} has waited {hours}h without a review.",
                author=worker_id,
            )
            logger.info(f"[PROGRESS] change {change.id} is stale; nudged on item {item.id}")
            nudged.append(change.id)
        return nudged

    def status_item_id(self) -> str:
        """The unlabeled status item, created on demand. Smallest id wins a creation race."""
        candidates = [
            i for i in self.store.list_items(include_closed=True)
            if i.title == STATUS_ITEM_TITLE and not i.has(LABEL_TASK)
        ]
        if candidates:
            return min(candidates, key=lambda i: (len(i.id), i.id)).id
        return self.store.create_item(
            STATUS_ITEM_TITLE,
            "Swarm status reports are posted here.\n",
            [],
        )

    def post_terminal_status(self, worker_id: str) -> bool:
        """Post the completion comment unless this completion was already reported."""
        done_count = len(self.store.list_items(present=[LABEL_TASK, LABEL_DONE], include_closed=True))
        status_id = self.status_item_id()
        try:
            comments = self.store.get_item(status_id).comments
        except ItemNotFound:
            comments = []
        for comment in comments:
            marker = find_marker(comment.body, "terminal")
            if marker and marker.get("done") == str(done_count):
                return False
        self.store.append_comment(
            status_id,
            f"{render_marker('terminal', done=str(done_count))}\n{TERMINAL_STATUS_TEXT}",
            author=worker_id,
        )
        logger.info(f"[PROGRESS] all goals satisfied ({done_count} item(s) done)")
        return True
