"""
Worker capability: the part of a worker that writes, reviews and tests code.

The protocol only sees the Capability interface. CommandCapability is the
real one: it renders a prompt, runs the stage command from agents.yaml in the
worker's checkout, and turns the output into protocol types. Git work around
the agent (branching, committing, pushing) is done here so agents never
touch history.
"""

import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from clawstown.agents.agents_config import AgentsConfig, get_stage_command
from clawstown.git import (
    commit_all,
    get_commit_sha,
    has_uncommitted_changes,
    merge_base_branch,
    prepare_branch,
    push_branch,
    run_git,
)
from clawstown.git.runner import NETWORK_TIMEOUT
from clawstown.lib.errors import CapabilityError, WorkerStuck
from clawstown.lib.markers import strip_markers
from clawstown.lib.prompts import build_section, render_prompt
from clawstown.lib.types import (
    Change,
    ImplementResult,
    PlannedItem,
    Review,
    ReviewDecision,
    ValidationResult,
    Verdict,
    WorkItem,
)
from clawstown.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)

STUCK_MARKER = "CLAWSTOWN-STUCK:"
MAX_DIFF_CHARS = 60_000
MAX_DETAILS_CHARS = 8000


class Capability(ABC):
    """What a worker can do once it holds an item."""

    @abstractmethod
    def decompose(self, goals: str) -> list[PlannedItem]:
        """Split the goal document into work items."""

    @abstractmethod
    def find_gaps(self, goals: str, open_titles: list[str], done_titles: list[str]) -> list[PlannedItem]:
        """Work the goals still need beyond the listed items."""

    @abstractmethod
    def implement(self, item: WorkItem, branch: str) -> ImplementResult:
        """Implement item on branch and push it. Raises WorkerStuck."""

    @abstractmethod
    def review(self, change: Change, item: WorkItem) -> ReviewDecision:
        """Judge change against item's acceptance criteria."""

    @abstractmethod
    def respond(self, change: Change, item: WorkItem, reviews: list[Review]) -> None:
        """Push follow-up commits addressing reviews. Raises WorkerStuck."""

    @abstractmethod
    def validate(self) -> ValidationResult:
        """Run validation against the integration branch."""


def extract_json(stdout: str):
    """Parse agent output into JSON.

    Handles the CLI wrapper ({"type": "result", "result": "..."}) and prose
    around a fenced code block.
    """
    text = stdout.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict) and isinstance(data.get("result"), str) and "type" in data:
        text = data["result"].strip()
        data = None
    if data is not None:
        return data

    if "```" in text:
        start = text.find("```json")
        if start == -1:
            start = text.find("```")
        newline = text.find("\n", start)
        if newline != -1:
            close = text.find("\n```", newline)
            if close != -1:
                text = text[newline + 1:close].strip()
    return json.loads(text)


def _stuck_reason(output: str) -> str | None:
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(STUCK_MARKER):
            return line[len(STUCK_MARKER):].strip() or "no reason given"
    return None


def _tail(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


class CommandCapability(Capability):
    """Capability backed by agent CLIs and git in a local checkout."""

    def __init__(self, workdir: Path, agents: AgentsConfig, base_branch: str = "main", remote: str = "origin"):
        self.workdir = Path(workdir)
        self.agents = agents
        self.base_branch = base_branch
        self.remote = remote

    # --- running stages ---

    def _run_stage(self, stage: str, prompt: str | None = None) -> subprocess.CompletedProcess:
        context = {"workdir": str(self.workdir)}
        if prompt is not None:
            context["prompt"] = prompt
        try:
            command = get_stage_command(self.agents, stage, context)
        except ValueError as e:
            raise CapabilityError(f"agents.yaml: {e}") from None
        timeout = self.agents.timeouts.get(stage, 1800)

        # Agent CLIs authenticate with their own credentials
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}

        logger.info(f"[AGENT] running {stage}: {command.cmd[0]}")
        try:
            return subprocess.run(
                command.cmd,
                cwd=str(self.workdir),
                input=command.get_stdin_input(prompt) if prompt is not None else None,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise CapabilityError(f"{stage} timed out after {timeout}s") from None
        except OSError as e:
            raise CapabilityError(f"{stage} could not start {command.cmd[0]}: {e}") from None

    def _run_json_stage(self, stage: str, prompt: str, schema_name: str):
        result = self._run_stage(stage, prompt)
        if result.returncode != 0:
            raise CapabilityError(f"{stage} exited {result.returncode}: {_tail(result.stderr, 500)}")
        try:
            data = extract_json(result.stdout)
        except json.JSONDecodeError as e:
            raise CapabilityError(f"{stage} returned invalid JSON: {e}") from None
        try:
            validate(data, schema_name)
        except ValidationError as e:
            raise CapabilityError(f"{stage} output rejected: {e}") from None
        return data

    def _git_or_fail(self, result, action: str) -> None:
        if not result.success:
            raise CapabilityError(f"git {action} failed: {result.stderr.strip()}")

    # --- planning ---

    @staticmethod
    def _planned(data) -> list[PlannedItem]:
        return [
            PlannedItem(title=entry["title"], criteria=list(entry["criteria"]), context=entry.get("context", ""))
            for entry in data["items"]
        ]

    def decompose(self, goals: str) -> list[PlannedItem]:
        prompt = render_prompt("decompose", goals=goals)
        return self._planned(self._run_json_stage("decompose", prompt, "plan"))

    def find_gaps(self, goals, open_titles, done_titles) -> list[PlannedItem]:
        prompt = render_prompt(
            "find_gaps",
            goals=goals,
            open_section=build_section("\n".join(f"- {t}" for t in open_titles), "## Open items"),
            done_section=build_section("\n".join(f"- {t}" for t in done_titles), "## Finished items"),
        )
        return self._planned(self._run_json_stage("find_gaps", prompt, "plan"))

    # --- code ---

    def _commit_and_push(self, branch: str, message: str, base_sha: str | None) -> str:
        if has_uncommitted_changes(self.workdir):
            self._git_or_fail(commit_all(self.workdir, message), "commit")
        sha = get_commit_sha(self.workdir)
        if sha is None or sha == base_sha:
            raise WorkerStuck("agent finished without producing any changes")
        self._git_or_fail(push_branch(self.workdir, branch, self.remote), "push")
        return sha

    def implement(self, item: WorkItem, branch: str) -> ImplementResult:
        self._git_or_fail(prepare_branch(self.workdir, branch, self.base_branch, self.remote), "checkout")
        base_sha = get_commit_sha(self.workdir)

        prompt = render_prompt(
            "implement",
            branch=branch,
            title=item.title,
            body=strip_markers(item.body),
            stuck_marker=STUCK_MARKER,
        )
        result = self._run_stage("implement", prompt)
        reason = _stuck_reason(result.stdout)
        if reason:
            raise WorkerStuck(reason)
        if result.returncode != 0:
            raise CapabilityError(f"implement exited {result.returncode}: {_tail(result.stderr, 500)}")

        sha = self._commit_and_push(branch, f"{item.title} (#{item.id})", base_sha)
        summary = f"Implements #{item.id}: {item.title}\n\n{_tail(result.stdout.strip(), 2000)}"
        return ImplementResult(branch=branch, summary=summary, commit_sha=sha)

    def review(self, change: Change, item: WorkItem) -> ReviewDecision:
        fetch = run_git(["fetch", self.remote], self.workdir, timeout=NETWORK_TIMEOUT)
        self._git_or_fail(fetch, "fetch")
        diff = run_git(
            ["diff", f"{self.remote}/{self.base_branch}...{self.remote}/{change.branch}"],
            self.workdir,
        )
        self._git_or_fail(diff, "diff")

        prompt = render_prompt(
            "review",
            item_title=item.title,
            item_body=strip_markers(item.body),
            change_title=change.title,
            change_body=strip_markers(change.body),
            diff=diff.stdout[:MAX_DIFF_CHARS],
        )
        data = self._run_json_stage("review", prompt, "review")
        return ReviewDecision(
            verdict=Verdict(data["verdict"]),
            comments=data["comments"],
            redundant=data.get("redundant", False),
        )

    def respond(self, change: Change, item: WorkItem, reviews: list[Review]) -> None:
        self._git_or_fail(prepare_branch(self.workdir, change.branch, self.base_branch, self.remote), "checkout")
        base_sha = get_commit_sha(self.workdir)
        merged = merge_base_branch(self.workdir, self.base_branch, self.remote)
        if not merged.success:
            run_git(["merge", "--abort"], self.workdir)
            logger.warning(f"[AGENT] base branch does not merge into {change.branch}; leaving to the agent")

        prompt = render_prompt(
            "respond",
            branch=change.branch,
            title=item.title,
            body=strip_markers(item.body),
            reviews="\n\n".join(f"### {r.reviewer}\n\n{r.comments}" for r in reviews),
            stuck_marker=STUCK_MARKER,
        )
        result = self._run_stage("respond", prompt)
        reason = _stuck_reason(result.stdout)
        if reason:
            raise WorkerStuck(reason)
        if result.returncode != 0:
            raise CapabilityError(f"respond exited {result.returncode}: {_tail(result.stderr, 500)}")

        self._commit_and_push(change.branch, f"Address review on #{change.id}", base_sha)

    # --- validation ---

    def validate(self) -> ValidationResult:
        fetch = run_git(["fetch", self.remote, self.base_branch], self.workdir, timeout=NETWORK_TIMEOUT)
        self._git_or_fail(fetch, "fetch")
        self._git_or_fail(
            run_git(["checkout", "--force", "--detach", f"{self.remote}/{self.base_branch}"], self.workdir),
            "checkout",
        )
        # Leftovers from a stuck implement run must not leak into the test run
        self._git_or_fail(run_git(["clean", "-fd"], self.workdir), "clean")
        try:
            result = self._run_stage("validate")
        except CapabilityError as e:
            return ValidationResult(passed=False, details=str(e))
        if result.returncode == 0:
            return ValidationResult(passed=True)
        details = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        return ValidationResult(passed=False, details=_tail(details, MAX_DETAILS_CHARS))
