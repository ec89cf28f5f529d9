"""Tests for the clawstown command line."""

import argparse
import os
from unittest.mock import patch

import pytest

from clawstown import cli
from clawstown.lib.types import Verdict
from clawstown.store import MemoryStore, RetryingStore

from conftest import make_config


@pytest.fixture
def shared(store):
    """Route every command to one in-memory store."""
    with patch("clawstown.cli.get_config", return_value=make_config("agent-1")), \
            patch("clawstown.cli.build_store", return_value=store):
        yield store


class TestGetConfig:
    def test_env_file(self, tmp_path, monkeypatch):
        for key in list(os.environ):
            if key.startswith("CLAWSTOWN_"):
                monkeypatch.delenv(key)
        env_file = tmp_path / "swarm.env"
        env_file.write_text("CLAWSTOWN_AGENT_ID=4\nCLAWSTOWN_REPO=octo/project\n")
        config = cli.get_config(argparse.Namespace(env_file=str(env_file)))
        assert config.agent_id == "agent-4"
        assert config.repo == "octo/project"

    def test_invalid_settings_exit_2(self, monkeypatch, capsys):
        monkeypatch.setenv("CLAWSTOWN_QUORUM", "0")
        assert cli.main(["status"]) == 2
        assert "QUORUM" in capsys.readouterr().out


class TestBuildStore:
    def test_memory_store_is_retried(self):
        store = cli.build_store(make_config(), "memory")
        assert isinstance(store, RetryingStore)
        assert isinstance(store.inner, MemoryStore)
        assert store.attempts == 3

    @patch("clawstown.cli.check_gh_available", return_value=(False, "GitHub CLI (gh) not found"))
    def test_github_requires_gh(self, mock_check):
        with pytest.raises(cli.ConfigError, match="not found"):
            cli.build_store(make_config(), "github")

    @patch("clawstown.cli.check_gh_available", return_value=(True, ""))
    def test_github_requires_repo(self, mock_check):
        with pytest.raises(cli.ConfigError, match="REPO"):
            cli.build_store(make_config(repo=""), "github")


class TestCommands:
    def test_status(self, shared, capsys):
        shared.create_item("Add login", "", ["task"])
        blocked = shared.create_item("Add cache", "", ["task", "blocked"])
        shared.assign_item(blocked, "agent-2")
        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "Open task items: 2" in out
        assert "claimable    1" in out
        assert "#2 Add cache [blocked, agent-2]" in out

    def test_status_shows_change_state(self, shared, capsys):
        item_id = shared.create_item("Add login", "", ["task"])
        approved = shared.create_change("a", "Add login", "", item_id, "agent-2")
        shared.add_review(approved, "agent-3", Verdict.APPROVE, "ok")
        other = shared.create_item("Add logout", "", ["task"])
        pending = shared.create_change("b", "Add logout", "", other, "agent-2")
        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert f"#{approved} Add login [agent-2, approved]" in out
        assert f"#{pending} Add logout [agent-2, open]" in out

    def test_claim(self, shared, capsys):
        item_id = shared.create_item("Add login", "", ["task"])
        assert cli.main(["claim", item_id]) == 0
        assert "agent-1: claimed" in capsys.readouterr().out
        assert shared.get_item(item_id).assignees == ("agent-1",)

    def test_claim_taken(self, shared):
        item_id = shared.create_item("Add login", "", ["task"])
        shared.assign_item(item_id, "agent-0")
        assert cli.main(["claim", item_id]) == 1

    def test_merge(self, shared, capsys):
        item_id = shared.create_item("Add login", "", ["task"])
        change_id = shared.create_change("b", "Add login", "", item_id, "agent-2")
        assert cli.main(["merge", change_id]) == 1
        shared.add_review(change_id, "agent-3", Verdict.APPROVE, "ok")
        assert cli.main(["merge", change_id]) == 0
        assert shared.merged == [change_id]
        assert f"Change #{change_id}: merged" in capsys.readouterr().out

    def test_unblock(self, shared):
        item_id = shared.create_item("Add login", "", ["task", "in-progress", "blocked"])
        shared.assign_item(item_id, "agent-2")
        assert cli.main(["unblock", item_id, "--reason", "Dependency landed."]) == 0
        item = shared.get_item(item_id)
        assert item.is_free
        assert not item.has("blocked")
        assert item.comments[-1].body.endswith("Dependency landed.")

    def test_unknown_item_exits_1(self, shared, capsys):
        assert cli.main(["unblock", "404"]) == 1
        assert "ERROR" in capsys.readouterr().out

    @patch("clawstown.cli.check_gh_available", return_value=(False, "GitHub CLI not authenticated"))
    def test_labels_without_gh(self, mock_check, shared, capsys):
        assert cli.main(["labels"]) == 1
        assert "not authenticated" in capsys.readouterr().out


@patch("clawstown.cli.signal.signal")
@patch("clawstown.cli.missing_binaries", return_value={})
@patch("clawstown.cli.Worker")
class TestRun:
    def test_once(self, mock_worker, mock_missing, mock_signal, shared):
        assert cli.main(["run", "--once"]) == 0
        mock_worker.return_value.run_cycle.assert_called_once()
        mock_worker.return_value.run.assert_not_called()

    def test_max_steps(self, mock_worker, mock_missing, mock_signal, shared):
        assert cli.main(["run", "--max-steps", "5"]) == 0
        mock_worker.return_value.run.assert_called_once_with(max_steps=5)

    def test_signals_stop_worker(self, mock_worker, mock_missing, mock_signal, shared):
        cli.main(["run", "--once"])
        handler = mock_signal.call_args[0][1]
        handler(15, None)
        mock_worker.return_value.stop.assert_called_once()

    def test_memory_store_for_dry_runs(self, mock_worker, mock_missing, mock_signal, shared):
        with patch("clawstown.cli.build_store", return_value=shared) as mock_build:
            assert cli.main(["run", "--store", "memory", "--once"]) == 0
        assert mock_build.call_args[0][1] == "memory"

    @pytest.mark.parametrize("command", [["status"], ["claim", "1"], ["merge", "1"], ["unblock", "1"]])
    def test_memory_store_only_for_run(self, mock_worker, mock_missing, mock_signal, command):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--store", "memory", *command])
        assert exc.value.code == 2
        with pytest.raises(SystemExit):
            cli.main([*command, "--store", "memory"])

    def test_warns_about_missing_binaries(self, mock_worker, mock_missing, mock_signal, shared, capsys):
        mock_missing.return_value = {"claude": ["implement", "review"]}
        cli.main(["run", "--once"])
        assert "'claude' not found on PATH (needed by: implement, review)" in capsys.readouterr().out
