"""
Configuration loader for a swarm worker.

Settings come from an optional swarm.env file, overridden by CLAWSTOWN_*
environment variables (the deployment injects CLAWSTOWN_REPO,
CLAWSTOWN_AGENT_ID and CLAWSTOWN_AGENT_COUNT into every agent).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from clawstown.lib import envparse
from clawstown.lib.constants import (
    DEFAULT_GOALS_PATH,
    DEFAULT_LABEL_PREFIX,
    DEFAULT_NAMESPACE,
    WORKER_ID_PATTERN,
)
from clawstown.lib.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLAWSTOWN_"


@dataclass
class SwarmConfig:
    """Worker configuration."""
    repo: str                     # GitHub URL or owner/name
    agent_id: str                 # worker identity, e.g. "agent-0"
    agent_count: int
    namespace: str                # branch namespace
    label_prefix: str
    workdir: Path                 # local clone of the target repo
    goals_path: str               # relative to workdir
    base_branch: str
    quorum: int
    settle_delay: float           # seconds between claim write and verify
    poll_interval: float          # idle sleep between loop iterations
    store_retries: int
    retry_delay: float            # initial backoff, doubled per attempt
    stale_review_seconds: int

    @property
    def repo_slug(self) -> str:
        """owner/name form of the repository."""
        slug = self.repo
        for prefix in ("https://github.com/", "http://github.com/", "git@github.com:"):
            if slug.startswith(prefix):
                slug = slug[len(prefix):]
        if slug.endswith(".git"):
            slug = slug[:-4]
        return slug.rstrip("/")


def _worker_identity(raw: str) -> str:
    """Agent ids are injected as bare ordinals; identities read agent-<n>."""
    raw = raw.strip()
    if raw.isdigit():
        return f"agent-{raw}"
    return raw


def _as_int(settings: Mapping[str, str], key: str, default: int) -> int:
    raw = settings.get(key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{key} must be an integer, got '{raw}'") from None


def _as_float(settings: Mapping[str, str], key: str, default: float) -> float:
    raw = settings.get(key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{key} must be a number, got '{raw}'") from None


def load_swarm_config(
    env_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SwarmConfig:
    """Load swarm.env (if present) and apply CLAWSTOWN_* overrides.

    Raises:
        ConfigError: on invalid values
    """
    environ = os.environ if environ is None else environ

    settings: dict[str, str] = {}
    if env_file is not None:
        try:
            file_values = envparse.load_env(env_file, required=False)
        except ValueError as e:
            raise ConfigError(str(e)) from None
        for key, value in file_values.items():
            settings[key[len(ENV_PREFIX):] if key.startswith(ENV_PREFIX) else key] = value

    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            settings[key[len(ENV_PREFIX):]] = value

    agent_id = _worker_identity(settings.get("AGENT_ID", "0"))
    if not WORKER_ID_PATTERN.match(agent_id):
        raise ConfigError(f"Invalid agent id '{agent_id}'")

    agent_count = _as_int(settings, "AGENT_COUNT", 1)
    if agent_count < 1:
        raise ConfigError(f"{ENV_PREFIX}AGENT_COUNT must be a positive integer")

    quorum = _as_int(settings, "QUORUM", 1)
    if quorum < 1:
        raise ConfigError(f"{ENV_PREFIX}QUORUM must be at least 1")

    store_retries = _as_int(settings, "STORE_RETRIES", 3)
    if store_retries < 1:
        logger.warning(f"{ENV_PREFIX}STORE_RETRIES={store_retries} is too low, using 1")
        store_retries = 1

    if quorum >= agent_count and agent_count > 1:
        logger.warning(
            f"Quorum {quorum} needs {quorum} non-author approvals but only "
            f"{agent_count - 1} peer(s) can review; merges will stall"
        )

    return SwarmConfig(
        repo=settings.get("REPO", ""),
        agent_id=agent_id,
        agent_count=agent_count,
        namespace=settings.get("NAMESPACE", DEFAULT_NAMESPACE),
        label_prefix=settings.get("LABEL_PREFIX", DEFAULT_LABEL_PREFIX),
        workdir=Path(settings.get("WORKDIR", ".")),
        goals_path=settings.get("GOALS_PATH", DEFAULT_GOALS_PATH),
        base_branch=settings.get("BASE_BRANCH", "main"),
        quorum=quorum,
        settle_delay=_as_float(settings, "SETTLE_DELAY", 5.0),
        poll_interval=_as_float(settings, "POLL_INTERVAL", 30.0),
        store_retries=store_retries,
        retry_delay=_as_float(settings, "RETRY_DELAY", 2.0),
        stale_review_seconds=_as_int(settings, "STALE_REVIEW_SECONDS", 3600),
    )


def require_repo(config: SwarmConfig) -> str:
    """Return the repo slug or raise if unset."""
    if not config.repo:
        raise ConfigError(f"{ENV_PREFIX}REPO (or REPO in swarm.env) is required")
    return config.repo_slug
