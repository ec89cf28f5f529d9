"""
Shared data types for the swarm.

Records returned by a WorkStore are snapshots: workers read them fresh on
every loop iteration and never keep them beyond it.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from clawstown.lib.constants import (
    LABEL_IN_PROGRESS,
    MAX_SLUG_LEN,
)


class Verdict(str, Enum):
    """Review verdicts."""
    APPROVE = "approve"
    REQUEST_CHANGES = "request-changes"


class ChangeState(str, Enum):
    """Merge state of a change."""
    OPEN = "open"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"


class MergeOutcome(str, Enum):
    """Store-level result of a merge call."""
    OK = "ok"
    ALREADY_MERGED = "already_merged"
    NOT_MERGEABLE = "not_mergeable"


@dataclass(frozen=True)
class Comment:
    author: str | None
    body: str
    created_at: datetime


@dataclass(frozen=True)
class Review:
    """A single review record on a change."""
    reviewer: str
    verdict: Verdict
    comments: str
    submitted_at: datetime


@dataclass
class WorkItem:
    """A claimable unit of work."""
    id: str
    title: str
    body: str
    labels: frozenset[str] = frozenset()
    assignees: tuple[str, ...] = ()
    created_at: datetime | None = None
    comments: list[Comment] = field(default_factory=list)
    revision: str = ""
    closed: bool = False

    @property
    def assignee(self) -> str | None:
        """The effective claimant: smallest identity when several raced."""
        if not self.assignees:
            return None
        return min(self.assignees)

    def has(self, label: str) -> bool:
        return label in self.labels

    @property
    def is_free(self) -> bool:
        return LABEL_IN_PROGRESS not in self.labels and not self.assignees


@dataclass
class Change:
    """A reviewable modification closing one work item."""
    id: str
    branch: str
    title: str
    body: str
    author: str
    closes_item: str
    reviews: list[Review] = field(default_factory=list)
    state: ChangeState = ChangeState.OPEN
    labels: frozenset[str] = frozenset()
    created_at: datetime | None = None
    last_pushed_at: datetime | None = None

    def latest_reviews(self) -> dict[str, Review]:
        """Latest review per reviewer."""
        latest: dict[str, Review] = {}
        for review in sorted(self.reviews, key=lambda r: r.submitted_at):
            latest[review.reviewer] = review
        return latest

    def approvers(self) -> set[str]:
        """Non-author reviewers whose latest verdict is approve."""
        return {
            reviewer
            for reviewer, review in self.latest_reviews().items()
            if reviewer != self.author and review.verdict == Verdict.APPROVE
        }

    def outstanding_change_requests(self) -> list[Review]:
        """request-changes reviews newer than the author's last push."""
        return [
            r for r in self.reviews
            if r.verdict == Verdict.REQUEST_CHANGES
            and r.reviewer != self.author
            and (self.last_pushed_at is None or r.submitted_at > self.last_pushed_at)
        ]

    def reviewed_since_push(self, reviewer: str) -> bool:
        """True if reviewer already reviewed the current head."""
        for r in self.reviews:
            if r.reviewer != reviewer:
                continue
            if self.last_pushed_at is None or r.submitted_at > self.last_pushed_at:
                return True
        return False

    @property
    def status(self) -> ChangeState:
        if self.state == ChangeState.OPEN and self.approvers() and not self.outstanding_change_requests():
            return ChangeState.APPROVED
        return self.state


@dataclass
class PlannedItem:
    """A work item proposed by decomposition or gap analysis."""
    title: str
    criteria: list[str]
    context: str = ""


@dataclass
class ReviewDecision:
    verdict: Verdict
    comments: str
    redundant: bool = False


@dataclass
class ImplementResult:
    branch: str
    summary: str
    commit_sha: str | None = None


@dataclass
class ValidationResult:
    passed: bool
    details: str = ""


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower()).strip("-")
    slug = slug[:MAX_SLUG_LEN].rstrip("-")
    return slug or "item"


def branch_name(namespace: str, item_id: str, title: str) -> str:
    """Deterministic branch for an item: <namespace>/<item-id>-<slug>."""
    return f"{namespace}/{item_id}-{slugify(title)}"


def render_item_body(criteria: list[str], context: str = "") -> str:
    """Render acceptance criteria as a markdown checklist."""
    lines = []
    if context:
        lines.extend([context.strip(), ""])
    lines.append("## Acceptance criteria")
    lines.append("")
    for criterion in criteria:
        lines.append(f"- [ ] {criterion}")
    return "\n".join(lines) + "\n"

