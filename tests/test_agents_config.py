"""Tests for agents_config module."""

from unittest.mock import patch

import pytest

from clawstown.agents.agents_config import (
    DEFAULT_STAGE_COMMANDS,
    DEFAULT_STAGE_TIMEOUTS,
    AgentsConfig,
    get_stage_binary,
    get_stage_command,
    load_agents_config,
    missing_binaries,
)


class TestLoadAgentsConfig:
    """Tests for load_agents_config()."""

    def test_returns_defaults_when_no_project_dir(self):
        config = load_agents_config(None)
        assert config.stages == DEFAULT_STAGE_COMMANDS
        assert config.timeouts == DEFAULT_STAGE_TIMEOUTS

    def test_returns_defaults_when_file_missing(self, tmp_path):
        config = load_agents_config(tmp_path)
        assert config.stages == DEFAULT_STAGE_COMMANDS

    def test_loads_custom_config(self, tmp_path):
        (tmp_path / "agents.yaml").write_text(
            "stages:\n"
            "  review: custom-agent --fast -p {prompt}\n"
            "timeouts:\n"
            "  validate: 120\n"
        )
        config = load_agents_config(tmp_path)
        assert config.stages["review"] == "custom-agent --fast -p {prompt}"
        # Other stages keep their defaults
        assert config.stages["implement"] == DEFAULT_STAGE_COMMANDS["implement"]
        assert config.timeouts["validate"] == 120
        assert config.timeouts["implement"] == DEFAULT_STAGE_TIMEOUTS["implement"]

    def test_handles_invalid_yaml(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("stages: [unclosed\n")
        config = load_agents_config(tmp_path)
        assert config.stages == DEFAULT_STAGE_COMMANDS

    def test_handles_wrong_shape(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("- just\n- a list\n")
        config = load_agents_config(tmp_path)
        assert config.stages == DEFAULT_STAGE_COMMANDS

    def test_empty_file(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("")
        assert load_agents_config(tmp_path).stages == DEFAULT_STAGE_COMMANDS


class TestGetStageCommand:
    """Tests for get_stage_command()."""

    def test_prompt_as_argument(self):
        result = get_stage_command(AgentsConfig(), "implement", {"prompt": "do stuff"})
        assert result.cmd == ["claude", "--dangerously-skip-permissions", "-p", "do stuff"]
        assert result.prompt_via_stdin is False
        assert result.get_stdin_input("do stuff") is None

    def test_prompt_via_stdin_when_not_in_template(self):
        result = get_stage_command(AgentsConfig(), "decompose", {"prompt": "goals"})
        assert result.prompt_via_stdin is True
        assert "goals" not in result.cmd
        assert result.get_stdin_input("goals") == "goals"

    def test_workdir_substitution(self):
        config = AgentsConfig(stages={"implement": "codex exec -C {workdir} {prompt}"})
        result = get_stage_command(config, "implement", {"workdir": "/srv/clone", "prompt": "go"})
        assert result.cmd == ["codex", "exec", "-C", "/srv/clone", "go"]

    def test_command_without_prompt(self):
        result = get_stage_command(AgentsConfig(), "validate", {"workdir": "/srv/clone"})
        assert result.cmd == ["make", "test"]

    def test_raises_on_unknown_stage(self):
        with pytest.raises(ValueError, match="Unknown stage"):
            get_stage_command(AgentsConfig(), "nonexistent", {})

    def test_missing_variable_raises(self):
        config = AgentsConfig(stages={"implement": "codex exec -C {workdir} {prompt}"})
        with pytest.raises(ValueError, match="workdir"):
            get_stage_command(config, "implement", {"prompt": "go"})

    def test_prompt_with_special_characters(self):
        prompt = 'fix the "quoted" string and \'this\' too'
        result = get_stage_command(AgentsConfig(), "implement", {"prompt": prompt})
        # Intact, not mangled by shlex
        assert prompt in result.cmd

    def test_prompt_with_newlines(self):
        prompt = "line one\nline two\nline three"
        result = get_stage_command(AgentsConfig(), "review", {"prompt": prompt})
        assert prompt in result.cmd


class TestGetStageBinary:
    """Tests for get_stage_binary()."""

    def test_default_binaries(self):
        config = AgentsConfig()
        assert get_stage_binary(config, "implement") == "claude"
        assert get_stage_binary(config, "validate") == "make"

    def test_raises_on_unknown_stage(self):
        with pytest.raises(ValueError, match="Unknown stage"):
            get_stage_binary(AgentsConfig(), "nonexistent")

    def test_custom_binary(self, tmp_path):
        (tmp_path / "agents.yaml").write_text("stages:\n  review: my-custom-agent --flag\n")
        config = load_agents_config(tmp_path)
        assert get_stage_binary(config, "review") == "my-custom-agent"


class TestMissingBinaries:
    @patch("clawstown.agents.agents_config.shutil.which")
    def test_groups_stages_by_binary(self, mock_which):
        mock_which.side_effect = lambda name: None if name == "claude" else f"/usr/bin/{name}"
        missing = missing_binaries(AgentsConfig())
        assert list(missing) == ["claude"]
        assert missing["claude"] == ["decompose", "find_gaps", "implement", "review", "respond"]

    @patch("clawstown.agents.agents_config.shutil.which", return_value="/usr/bin/x")
    def test_all_present(self, mock_which):
        assert missing_binaries(AgentsConfig()) == {}

    @patch("clawstown.agents.agents_config.shutil.which", return_value=None)
    def test_selected_stages(self, mock_which):
        assert missing_binaries(AgentsConfig(), ["validate", "unknown"]) == {"make": ["validate"]}
