"""Tests for clawstown.agents.capability module."""

import json
import subprocess
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from clawstown.agents.agents_config import AgentsConfig
from clawstown.agents.capability import STUCK_MARKER, CommandCapability, extract_json
from clawstown.git.runner import GitResult
from clawstown.lib.errors import CapabilityError, WorkerStuck
from clawstown.lib.types import Change, Review, Verdict, WorkItem

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def completed(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


def ok(stdout=""):
    return GitResult(returncode=0, stdout=stdout, stderr="")


@pytest.fixture
def cap(tmp_path):
    return CommandCapability(tmp_path, AgentsConfig())


@pytest.fixture
def item():
    return WorkItem(id="3", title="Add login", body="## Acceptance criteria\n\n- [ ] login works\n")


@pytest.fixture
def change():
    return Change(
        id="9",
        branch="clawstown/3-add-login",
        title="Add login",
        body="Implements #3",
        author="agent-2",
        closes_item="3",
    )


class TestExtractJson:
    def test_plain_json(self):
        assert extract_json('{"items": []}') == {"items": []}

    def test_cli_wrapper(self):
        wrapped = json.dumps({"type": "result", "result": '{"verdict": "approve", "comments": "ok"}'})
        assert extract_json(wrapped) == {"verdict": "approve", "comments": "ok"}

    def test_fenced_block_in_prose(self):
        text = 'Here is the plan:\n```json\n{"items": [{"title": "A", "criteria": ["a"]}]}\n```\nDone.'
        assert extract_json(text)["items"][0]["title"] == "A"

    def test_fenced_block_inside_wrapper(self):
        inner = 'Sure.\n```\n{"verdict": "approve", "comments": "fine"}\n```'
        wrapped = json.dumps({"type": "result", "result": inner})
        assert extract_json(wrapped)["verdict"] == "approve"

    def test_garbage_raises(self):
        with pytest.raises(json.JSONDecodeError):
            extract_json("I could not do that.")


class TestRunStage:
    @patch("clawstown.agents.capability.subprocess.run")
    def test_prompt_via_stdin_and_clean_env(self, mock_run, cap, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        mock_run.return_value = completed('{"items": []}')
        cap.decompose("Build a login service.")
        kwargs = mock_run.call_args[1]
        assert "Build a login service." in kwargs["input"]
        assert "ANTHROPIC_API_KEY" not in kwargs["env"]
        assert kwargs["cwd"] == str(cap.workdir)
        assert kwargs["timeout"] == 600

    @patch("clawstown.agents.capability.subprocess.run")
    def test_timeout_becomes_capability_error(self, mock_run, cap):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="claude", timeout=600)
        with pytest.raises(CapabilityError, match="timed out"):
            cap.decompose("goals")

    @patch("clawstown.agents.capability.subprocess.run")
    def test_missing_binary_becomes_capability_error(self, mock_run, cap):
        mock_run.side_effect = FileNotFoundError("claude")
        with pytest.raises(CapabilityError, match="could not start"):
            cap.decompose("goals")


    def test_bad_template_becomes_capability_error(self, tmp_path):
        agents = AgentsConfig(stages={"decompose": "agent --model {model}"})
        with pytest.raises(CapabilityError, match="agents.yaml"):
            CommandCapability(tmp_path, agents).decompose("goals")


class TestPlanning:
    @patch("clawstown.agents.capability.subprocess.run")
    def test_decompose(self, mock_run, cap):
        plan = {"items": [
            {"title": "Add login", "criteria": ["login works"], "context": "Use sessions."},
            {"title": "Add logout", "criteria": ["logout works"]},
        ]}
        mock_run.return_value = completed(json.dumps(plan))
        items = cap.decompose("goals")
        assert [i.title for i in items] == ["Add login", "Add logout"]
        assert items[0].context == "Use sessions."
        assert items[1].criteria == ["logout works"]

    @patch("clawstown.agents.capability.subprocess.run")
    def test_schema_violation_rejected(self, mock_run, cap):
        mock_run.return_value = completed(json.dumps({"items": [{"title": "No criteria", "criteria": []}]}))
        with pytest.raises(CapabilityError, match="rejected"):
            cap.decompose("goals")

    @patch("clawstown.agents.capability.subprocess.run")
    def test_invalid_json(self, mock_run, cap):
        mock_run.return_value = completed("sorry")
        with pytest.raises(CapabilityError, match="invalid JSON"):
            cap.decompose("goals")

    @patch("clawstown.agents.capability.subprocess.run")
    def test_nonzero_exit(self, mock_run, cap):
        mock_run.return_value = completed(returncode=2, stderr="rate limited")
        with pytest.raises(CapabilityError, match="rate limited"):
            cap.find_gaps("goals", [], [])

    @patch("clawstown.agents.capability.subprocess.run")
    def test_find_gaps_lists_existing_titles(self, mock_run, cap):
        mock_run.return_value = completed('{"items": []}')
        assert cap.find_gaps("goals", ["Add login"], ["Add logout"]) == []
        prompt = mock_run.call_args[1]["input"]
        assert "- Add login" in prompt
        assert "- Add logout" in prompt


@patch("clawstown.agents.capability.push_branch")
@patch("clawstown.agents.capability.commit_all")
@patch("clawstown.agents.capability.has_uncommitted_changes")
@patch("clawstown.agents.capability.get_commit_sha")
@patch("clawstown.agents.capability.prepare_branch")
@patch("clawstown.agents.capability.subprocess.run")
class TestImplement:
    def test_commits_and_pushes(self, mock_run, mock_prepare, mock_sha, mock_dirty, mock_commit, mock_push, cap, item):
        mock_prepare.return_value = ok()
        mock_sha.side_effect = ["base", "head"]
        mock_dirty.return_value = True
        mock_commit.return_value = ok()
        mock_push.return_value = ok()
        mock_run.return_value = completed("Implemented login.")

        result = cap.implement(item, "clawstown/3-add-login")

        assert result.branch == "clawstown/3-add-login"
        assert result.commit_sha == "head"
        assert result.summary.startswith("Implements #3: Add login")
        mock_commit.assert_called_once_with(cap.workdir, "Add login (#3)")
        mock_push.assert_called_once_with(cap.workdir, "clawstown/3-add-login", "origin")
        prompt = mock_run.call_args[0][0][-1]
        assert "clawstown/3-add-login" in prompt
        assert STUCK_MARKER in prompt

    def test_stuck_marker_raises(self, mock_run, mock_prepare, mock_sha, mock_dirty, mock_commit, mock_push, cap, item):
        mock_prepare.return_value = ok()
        mock_sha.return_value = "base"
        mock_run.return_value = completed(f"Looked around.\n{STUCK_MARKER} criteria contradict each other\n")

        with pytest.raises(WorkerStuck, match="contradict"):
            cap.implement(item, "clawstown/3-add-login")
        mock_push.assert_not_called()

    def test_no_changes_is_stuck(self, mock_run, mock_prepare, mock_sha, mock_dirty, mock_commit, mock_push, cap, item):
        mock_prepare.return_value = ok()
        mock_sha.return_value = "base"
        mock_dirty.return_value = False
        mock_run.return_value = completed("Nothing to do.")

        with pytest.raises(WorkerStuck, match="without producing"):
            cap.implement(item, "clawstown/3-add-login")
        mock_push.assert_not_called()

    def test_checkout_failure(self, mock_run, mock_prepare, mock_sha, mock_dirty, mock_commit, mock_push, cap, item):
        mock_prepare.return_value = GitResult(returncode=128, stdout="", stderr="fatal: bad ref")
        with pytest.raises(CapabilityError, match="checkout"):
            cap.implement(item, "clawstown/3-add-login")
        mock_run.assert_not_called()

    def test_push_failure(self, mock_run, mock_prepare, mock_sha, mock_dirty, mock_commit, mock_push, cap, item):
        mock_prepare.return_value = ok()
        mock_sha.side_effect = ["base", "head"]
        mock_dirty.return_value = True
        mock_commit.return_value = ok()
        mock_push.return_value = GitResult(returncode=1, stdout="", stderr="rejected: non-fast-forward")
        mock_run.return_value = completed("done")
        with pytest.raises(CapabilityError, match="push"):
            cap.implement(item, "clawstown/3-add-login")


class TestReview:
    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_review_decision(self, mock_run, mock_git, cap, change, item):
        mock_git.side_effect = [ok(), ok("+def login(): ...\n")]
        mock_run.return_value = completed(json.dumps({
            "type": "result",
            "result": json.dumps({"verdict": "request-changes", "comments": "Add tests."}),
        }))

        decision = cap.review(change, item)

        assert decision.verdict == Verdict.REQUEST_CHANGES
        assert decision.comments == "Add tests."
        assert decision.redundant is False
        diff_args = mock_git.call_args_list[1][0][0]
        assert diff_args == ["diff", "origin/main...origin/clawstown/3-add-login"]
        assert "+def login()" in mock_run.call_args[0][0][-1]

    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_unknown_verdict_rejected(self, mock_run, mock_git, cap, change, item):
        mock_git.side_effect = [ok(), ok("diff")]
        mock_run.return_value = completed(json.dumps({"verdict": "lgtm", "comments": ""}))
        with pytest.raises(CapabilityError):
            cap.review(change, item)


class TestRespond:
    @patch("clawstown.agents.capability.push_branch")
    @patch("clawstown.agents.capability.commit_all")
    @patch("clawstown.agents.capability.has_uncommitted_changes", return_value=True)
    @patch("clawstown.agents.capability.get_commit_sha")
    @patch("clawstown.agents.capability.merge_base_branch")
    @patch("clawstown.agents.capability.prepare_branch")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_pushes_follow_up(
        self, mock_run, mock_prepare, mock_merge, mock_sha, mock_dirty, mock_commit, mock_push, cap, change, item,
    ):
        mock_prepare.return_value = ok()
        mock_merge.return_value = ok()
        mock_sha.side_effect = ["before", "after"]
        mock_commit.return_value = ok()
        mock_push.return_value = ok()
        mock_run.return_value = completed("Added tests.")
        review = Review(reviewer="agent-1", verdict=Verdict.REQUEST_CHANGES, comments="Add tests.", submitted_at=NOW)

        cap.respond(change, item, [review])

        mock_commit.assert_called_once_with(cap.workdir, "Address review on #9")
        mock_push.assert_called_once_with(cap.workdir, "clawstown/3-add-login", "origin")
        assert "### agent-1\n\nAdd tests." in mock_run.call_args[0][0][-1]


class TestValidate:
    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_passes(self, mock_run, mock_git, cap):
        mock_git.return_value = ok()
        mock_run.return_value = completed("5 passed")
        assert cap.validate().passed
        assert mock_run.call_args[0][0] == ["make", "test"]
        checkout = mock_git.call_args_list[1][0][0]
        assert checkout == ["checkout", "--force", "--detach", "origin/main"]

    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_untracked_leftovers_removed_before_run(self, mock_run, mock_git, cap):
        mock_git.return_value = ok()
        mock_run.return_value = completed("5 passed")
        cap.validate()
        assert [c[0][0] for c in mock_git.call_args_list][-1] == ["clean", "-fd"]

    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_clean_failure_raises(self, mock_run, mock_git, cap):
        mock_git.side_effect = [ok(), ok(), GitResult(returncode=1, stdout="", stderr="permission denied")]
        with pytest.raises(CapabilityError, match="clean"):
            cap.validate()
        mock_run.assert_not_called()

    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_failure_details(self, mock_run, mock_git, cap):
        mock_git.return_value = ok()
        mock_run.return_value = completed("FAILED test_login", returncode=1, stderr="1 failed")
        result = cap.validate()
        assert not result.passed
        assert result.details == "FAILED test_login\n1 failed"

    @patch("clawstown.agents.capability.run_git")
    @patch("clawstown.agents.capability.subprocess.run")
    def test_timeout_is_a_failure(self, mock_run, mock_git, cap):
        mock_git.return_value = ok()
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="make", timeout=1800)
        result = cap.validate()
        assert not result.passed
        assert "timed out" in result.details

    @patch("clawstown.agents.capability.run_git")
    def test_fetch_failure_raises(self, mock_git, cap):
        mock_git.return_value = GitResult(returncode=1, stdout="", stderr="Could not resolve host")
        with pytest.raises(CapabilityError, match="fetch"):
            cap.validate()
