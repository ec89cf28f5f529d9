"""
GitHub realization of the work store, via the gh CLI.

Issues are work items, pull requests are changes. Every agent usually
shares one GitHub token, so GitHub's own author/assignee/review fields
cannot tell workers apart. Worker identities therefore travel in hidden
markers (see clawstown.lib.markers):

- claim/release comments on issues carry the assignee set;
- the PR body carries the author and the item it closes;
- review comments carry reviewer and verdict;
- re-request comments bump last_pushed_at.

GitHub has no compare-and-set on issues, so supports_conditional_update is
False and claims fall back to write-then-verify.
"""

import json
import logging
import subprocess
from datetime import datetime, timezone
from typing import Iterable

from clawstown.lib.constants import DEFAULT_LABEL_PREFIX, LABEL_REVIEW, LABEL_SPECS
from clawstown.lib.errors import ChangeNotFound, ItemNotFound, TransientStoreError
from clawstown.lib.markers import find_marker, parse_markers, render_marker, strip_markers
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

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

LIST_LIMIT = 200

ISSUE_FIELDS = "number,title,body,labels,createdAt,updatedAt,comments,state"
PR_FIELDS = "number,title,body,headRefName,labels,createdAt,comments,commits,state"

_NOT_FOUND_HINTS = ("could not resolve to", "not found", "no pull requests found")
_UNMERGEABLE_HINTS = ("not mergeable", "merge conflict", "is not clean", "conflicts")

_PR_STATES = {
    "OPEN": ChangeState.OPEN,
    "MERGED": ChangeState.MERGED,
    "CLOSED": ChangeState.CLOSED,
}


class _GhNotFound(TransientStoreError):
    """gh reported a missing issue, PR or label.

    Lookups by id turn this into ItemNotFound or ChangeNotFound. Anywhere
    else (a label that was never set up on create, say) it stays a store
    error the worker retries and then recovers from.
    """


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def _number_from_url(url: str) -> str:
    """gh prints the new issue/PR URL; the id is its last path segment."""
    number = url.strip().rstrip("/").split("/")[-1]
    if not number.isdigit():
        raise TransientStoreError(f"Unexpected gh output: {url.strip()!r}")
    return number


def check_gh_available() -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    try:
        result = subprocess.run(["gh", "--version"], capture_output=True, timeout=5)
        if result.returncode != 0:
            return False, "GitHub CLI (gh) not installed\n  Install: https://cli.github.com/"

        result = subprocess.run(["gh", "auth", "status"], capture_output=True, text=True, timeout=10)
        if result.returncode != 0:
            return False, "GitHub CLI not authenticated\n  Run: gh auth login"

        return True, ""

    except FileNotFoundError:
        return False, "GitHub CLI (gh) not found\n  Install: https://cli.github.com/"
    except subprocess.TimeoutExpired:
        return False, "GitHub CLI timed out"


class GitHubStore(WorkStore):
    """WorkStore backed by GitHub issues and pull requests."""

    supports_conditional_update = False

    def __init__(self, repo: str, base_branch: str = "main", label_prefix: str = DEFAULT_LABEL_PREFIX):
        self.repo = repo
        self.base_branch = base_branch
        self.label_prefix = label_prefix

    # --- gh plumbing ---

    def _gh(self, args: list[str]) -> str:
        cmd = ["gh", *args, "--repo", self.repo]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=GH_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            raise TransientStoreError(f"gh {args[0]} {args[1]} timed out") from None
        except OSError as e:
            raise TransientStoreError(f"Failed to run gh: {e}") from None

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if any(hint in stderr.lower() for hint in _NOT_FOUND_HINTS):
                raise _GhNotFound(f"gh {args[0]} {args[1]} failed: {stderr}")
            raise TransientStoreError(f"gh {args[0]} {args[1]} failed: {stderr}")
        return result.stdout

    def _gh_json(self, args: list[str]):
        out = self._gh(args)
        try:
            return json.loads(out)
        except json.JSONDecodeError:
            raise TransientStoreError(f"Invalid JSON from gh {args[0]} {args[1]}") from None

    def _wire(self, labels: Iterable[str]) -> list[str]:
        return [f"{self.label_prefix}{label}" for label in labels]

    def _logical(self, raw_labels: list[dict]) -> frozenset[str]:
        names = set()
        for label in raw_labels:
            name = label.get("name", "")
            if name.startswith(self.label_prefix):
                names.add(name[len(self.label_prefix):])
        return frozenset(names)

    def _label_args(self, add: Iterable[str], remove: Iterable[str]) -> list[str]:
        args = []
        add, remove = list(add), list(remove)
        if add:
            args += ["--add-label", ",".join(self._wire(add))]
        if remove:
            args += ["--remove-label", ",".join(self._wire(remove))]
        return args

    @staticmethod
    def _comments(data: dict) -> list[Comment]:
        comments = []
        for raw in data.get("comments") or []:
            body = raw.get("body", "")
            by = find_marker(body, "by")
            author = by.get("worker") if by else (raw.get("author") or {}).get("login")
            comments.append(Comment(author=author, body=body, created_at=_parse_time(raw.get("createdAt"))))
        return comments

    def _to_item(self, data: dict) -> WorkItem:
        comments = self._comments(data)
        assignees: list[str] = []
        for comment in comments:
            for kind, fields in parse_markers(comment.body):
                worker = fields.get("worker")
                if not worker:
                    continue
                if kind == "claim" and worker not in assignees:
                    assignees.append(worker)
                elif kind == "release" and worker in assignees:
                    assignees.remove(worker)
        return WorkItem(
            id=str(data["number"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            labels=self._logical(data.get("labels") or []),
            assignees=tuple(assignees),
            created_at=_parse_time(data.get("createdAt")),
            comments=comments,
            revision=data.get("updatedAt", ""),
            closed=data.get("state", "OPEN").upper() != "OPEN",
        )

    def _to_change(self, data: dict) -> Change:
        body = data.get("body", "")
        meta = find_marker(body, "change") or {}
        comments = self._comments(data)

        reviews = []
        pushed = [_parse_time(c.get("committedDate")) for c in data.get("commits") or []]
        for comment in comments:
            review = find_marker(comment.body, "review")
            if review and review.get("reviewer") and review.get("verdict") in {v.value for v in Verdict}:
                reviews.append(Review(
                    reviewer=review["reviewer"],
                    verdict=Verdict(review["verdict"]),
                    comments=strip_markers(comment.body),
                    submitted_at=comment.created_at,
                ))
            if find_marker(comment.body, "rereview"):
                pushed.append(comment.created_at)

        pushed = [p for p in pushed if p is not None]
        created_at = _parse_time(data.get("createdAt"))
        return Change(
            id=str(data["number"]),
            branch=data.get("headRefName", ""),
            title=data.get("title", ""),
            body=body,
            author=meta.get("author", ""),
            closes_item=meta.get("item", ""),
            reviews=reviews,
            state=_PR_STATES.get(data.get("state", "OPEN").upper(), ChangeState.OPEN),
            labels=self._logical(data.get("labels") or []),
            created_at=created_at,
            last_pushed_at=max(pushed) if pushed else created_at,
        )

    # --- labels ---

    def setup_labels(self) -> None:
        """Create or update the swarm's labels (idempotent)."""
        for name, (color, description) in LABEL_SPECS.items():
            self._gh([
                "label", "create", f"{self.label_prefix}{name}",
                "--color", color,
                "--description", description,
                "--force",
            ])
            logger.info(f"[GITHUB] label {self.label_prefix}{name} ready")

    # --- work items ---

    def create_item(self, title, body, labels) -> str:
        args = ["issue", "create", "--title", title, "--body", body]
        for label in self._wire(labels):
            args += ["--label", label]
        return _number_from_url(self._gh(args))

    def get_item(self, item_id) -> WorkItem:
        try:
            data = self._gh_json(["issue", "view", str(item_id), "--json", ISSUE_FIELDS])
        except _GhNotFound:
            raise ItemNotFound(item_id) from None
        return self._to_item(data)

    def list_items(self, present=(), absent=(), include_closed=False) -> list[WorkItem]:
        args = [
            "issue", "list",
            "--state", "all" if include_closed else "open",
            "--limit", str(LIST_LIMIT),
            "--json", ISSUE_FIELDS,
        ]
        for label in self._wire(present):
            args += ["--label", label]
        absent = set(absent)
        items = [self._to_item(d) for d in self._gh_json(args)]
        return [item for item in items if not (absent & item.labels)]

    def update_item_labels(self, item_id, add=(), remove=(), expected_revision=None) -> None:
        args = self._label_args(add, remove)
        if not args:
            return
        try:
            self._gh(["issue", "edit", str(item_id), *args])
        except _GhNotFound:
            raise ItemNotFound(item_id) from None

    def assign_item(self, item_id, worker_id, expected_revision=None) -> None:
        text = f"{render_marker('claim', worker=worker_id)}\nClaimed by `{worker_id}`."
        self.append_comment(item_id, text, author=worker_id)

    def unassign_item(self, item_id, worker_id) -> None:
        text = f"{render_marker('release', worker=worker_id)}\nReleased by `{worker_id}`."
        self.append_comment(item_id, text, author=worker_id)

    def append_comment(self, item_id, text, author=None) -> None:
        if author:
            text = f"{render_marker('by', worker=author)}\n{text}"
        try:
            self._gh(["issue", "comment", str(item_id), "--body", text])
        except _GhNotFound:
            raise ItemNotFound(item_id) from None

    def close_item(self, item_id, comment=None) -> None:
        args = ["issue", "close", str(item_id)]
        if comment:
            args += ["--comment", comment]
        try:
            self._gh(args)
        except _GhNotFound:
            raise ItemNotFound(item_id) from None

    # --- changes ---

    def create_change(self, branch, title, body, closes_item_id, author) -> str:
        marker = render_marker("change", author=author, item=str(closes_item_id))
        full_body = f"{marker}\n{body.rstrip()}\n\nCloses #{closes_item_id}\n"
        url = self._gh([
            "pr", "create",
            "--base", self.base_branch,
            "--head", branch,
            "--title", title,
            "--body", full_body,
        ])
        return _number_from_url(url)

    def get_change(self, change_id) -> Change:
        try:
            data = self._gh_json(["pr", "view", str(change_id), "--json", PR_FIELDS])
        except _GhNotFound:
            raise ChangeNotFound(change_id) from None
        return self._to_change(data)

    def list_changes(self, state=ChangeState.OPEN, present=()) -> list[Change]:
        gh_state = {
            None: "all",
            ChangeState.OPEN: "open",
            ChangeState.APPROVED: "open",
            ChangeState.MERGED: "merged",
            ChangeState.CLOSED: "closed",
        }[state]
        args = ["pr", "list", "--state", gh_state, "--limit", str(LIST_LIMIT), "--json", PR_FIELDS]
        for label in self._wire(present):
            args += ["--label", label]
        return [self._to_change(d) for d in self._gh_json(args)]

    def update_change_labels(self, change_id, add=(), remove=()) -> None:
        args = self._label_args(add, remove)
        if not args:
            return
        try:
            self._gh(["pr", "edit", str(change_id), *args])
        except _GhNotFound:
            raise ChangeNotFound(change_id) from None

    def _pr_comment(self, change_id, text: str) -> None:
        try:
            self._gh(["pr", "comment", str(change_id), "--body", text])
        except _GhNotFound:
            raise ChangeNotFound(change_id) from None

    def add_review(self, change_id, reviewer, verdict, comments) -> None:
        verdict = Verdict(verdict)
        marker = render_marker("review", reviewer=reviewer, verdict=verdict.value)
        self._pr_comment(change_id, f"{marker}\n**{verdict.value}** from `{reviewer}`\n\n{comments}")

    def request_review(self, change_id, author) -> None:
        marker = render_marker("rereview", worker=author)
        self._pr_comment(change_id, f"{marker}\nFollow-up commits pushed by `{author}`; please re-review.")
        self.update_change_labels(change_id, add=[LABEL_REVIEW])

    def merge_change(self, change_id) -> MergeOutcome:
        change = self.get_change(change_id)
        if change.state == ChangeState.MERGED:
            return MergeOutcome.ALREADY_MERGED
        if change.state == ChangeState.CLOSED:
            return MergeOutcome.NOT_MERGEABLE
        try:
            self._gh(["pr", "merge", str(change_id), "--squash", "--delete-branch"])
        except TransientStoreError as e:
            message = str(e).lower()
            if "already merged" in message:
                return MergeOutcome.ALREADY_MERGED
            if any(hint in message for hint in _UNMERGEABLE_HINTS):
                logger.info(f"[GITHUB] PR #{change_id} not mergeable: {e}")
                return MergeOutcome.NOT_MERGEABLE
            raise
        return MergeOutcome.OK

    def close_change(self, change_id, comment=None) -> None:
        args = ["pr", "close", str(change_id)]
        if comment:
            args += ["--comment", comment]
        try:
            self._gh(args)
        except _GhNotFound:
            raise ChangeNotFound(change_id) from None
