"""Git subprocess wrapper for unattended workers."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
NETWORK_TIMEOUT = 120

# Workers have no terminal; a credential prompt would hang until timeout
_NONINTERACTIVE_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """Run `git -C cwd <args>`.

    Never raises: timeouts and a missing git binary come back as failed
    results, so callers only ever check .success.
    """
    cmd = ["git", "-C", str(cwd), *args]
    logger.debug(f"[GIT] {' '.join(args)}")
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_NONINTERACTIVE_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"[GIT] {args[0]} timed out after {timeout}s")
        return GitResult(returncode=-1, stdout="", stderr=f"git {args[0]} timed out after {timeout}s", timed_out=True)
    except OSError as e:
        return GitResult(returncode=127, stdout="", stderr=f"could not run git: {e}")
    return GitResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
