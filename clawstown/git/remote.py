"""Git remote operations. Pushes never force: branch history is append-only."""

from pathlib import Path

from clawstown.git.runner import NETWORK_TIMEOUT, GitResult, run_git


def push_branch(repo: Path, branch: str, remote: str = "origin") -> GitResult:
    """Push branch and set upstream."""
    return run_git(["push", "-u", remote, f"{branch}:{branch}"], repo, timeout=NETWORK_TIMEOUT)
