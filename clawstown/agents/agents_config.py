"""
Agent command configuration.

Loads agents.yaml from the target repository to decide which CLI runs each
capability stage. Without a config file the defaults below are used.

STAGE COMMAND TEMPLATES
=======================

Each stage maps to a command template with {variable} substitution:

- {prompt}: the rendered prompt. If the template has no {prompt}, the prompt
  is passed via stdin instead (long prompts, odd characters).
- {workdir}: the local clone the worker operates on.

Example agents.yaml:

    stages:
      implement: codex exec --dangerously-bypass-approvals-and-sandbox -C {workdir} {prompt}
      validate: make check
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "agents.yaml"

# Ordered by workflow sequence.
DEFAULT_STAGE_COMMANDS = {
    "decompose": "claude -p --output-format json",
    # SWARM.md goals -> plan JSON

    "find_gaps": "claude -p --output-format json",
    # Goals + existing item titles -> plan JSON of missing work

    "implement": "claude --dangerously-skip-permissions -p {prompt}",
    # Writes code and tests in {workdir}; the worker commits and pushes

    "review": "claude --output-format json --dangerously-skip-permissions -p {prompt}",
    # Diff + acceptance criteria -> review JSON

    "respond": "claude --dangerously-skip-permissions -p {prompt}",
    # Addresses requested changes with follow-up edits

    "validate": "make test",
    # Test suite of the integration branch; exit status decides pass/fail
}

# Seconds before a stage command is abandoned
DEFAULT_STAGE_TIMEOUTS = {
    "decompose": 600,
    "find_gaps": 600,
    "implement": 3600,
    "review": 900,
    "respond": 3600,
    "validate": 1800,
}


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    stages: dict[str, str] = field(default_factory=lambda: DEFAULT_STAGE_COMMANDS.copy())
    timeouts: dict[str, int] = field(default_factory=lambda: DEFAULT_STAGE_TIMEOUTS.copy())


def load_agents_config(project_dir: Path | None) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If project_dir is None or the file doesn't exist, returns defaults.
    """
    if project_dir is None:
        return AgentsConfig()

    config_path = Path(project_dir) / CONFIG_FILENAME
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
        stages = DEFAULT_STAGE_COMMANDS.copy()
        timeouts = DEFAULT_STAGE_TIMEOUTS.copy()
        stages.update(data.get("stages") or {})
        for stage, seconds in (data.get("timeouts") or {}).items():
            timeouts[stage] = int(seconds)
        return AgentsConfig(stages=stages, timeouts=timeouts)
    except (yaml.YAMLError, AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()


@dataclass
class StageCommand:
    """Result of building a stage command."""
    cmd: list[str]
    prompt_via_stdin: bool

    def get_stdin_input(self, prompt: str) -> str | None:
        return prompt if self.prompt_via_stdin else None


def get_stage_command(
    config: AgentsConfig,
    stage: str,
    context: dict[str, str] | None = None,
) -> StageCommand:
    """Build the argv for a stage with variable substitution.

    Raises:
        ValueError: If stage is unknown or a template variable has no value.

    Example:
        >>> result = get_stage_command(AgentsConfig(), "implement", {"prompt": "do stuff"})
        >>> result.cmd
        ['claude', '--dangerously-skip-permissions', '-p', 'do stuff']
    """
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")

    cmd_template = config.stages[stage]
    prompt_via_stdin = "{prompt}" not in cmd_template

    # Keep the prompt out of shlex so its quotes survive
    prompt_value = None
    if context and "prompt" in context:
        prompt_value = context["prompt"]
        cmd_template = cmd_template.replace("{prompt}", "__PROMPT_PLACEHOLDER__")

    if context:
        for key, value in context.items():
            if key != "prompt":
                cmd_template = cmd_template.replace(f"{{{key}}}", str(value))

    remaining_vars = re.findall(r'\{(\w+)\}', cmd_template)
    if remaining_vars:
        raise ValueError(f"Stage '{stage}' is missing variables: {remaining_vars}")

    cmd = shlex.split(cmd_template)
    if prompt_value is not None:
        cmd = [prompt_value if arg == "__PROMPT_PLACEHOLDER__" else arg for arg in cmd]

    return StageCommand(cmd=cmd, prompt_via_stdin=prompt_via_stdin)


def get_stage_binary(config: AgentsConfig, stage: str) -> str:
    """First word of a stage command, for availability checks."""
    if stage not in config.stages:
        raise ValueError(f"Unknown stage: {stage}")
    parts = shlex.split(config.stages[stage])
    return parts[0] if parts else ""


def missing_binaries(config: AgentsConfig, stages: list[str] | None = None) -> dict[str, list[str]]:
    """Map of binary -> stages needing it, for binaries not on PATH."""
    missing: dict[str, list[str]] = {}
    for stage in stages or list(config.stages):
        if stage not in config.stages:
            continue
        binary = get_stage_binary(config, stage)
        if binary and shutil.which(binary) is None:
            missing.setdefault(binary, []).append(stage)
    return missing
