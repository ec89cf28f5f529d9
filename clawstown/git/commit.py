"""Git commit operations."""

from pathlib import Path

from clawstown.git.runner import GitResult, run_git


def has_uncommitted_changes(repo: Path) -> bool:
    result = run_git(["status", "--porcelain"], repo)
    return result.success and bool(result.stdout.strip())


def commit_all(repo: Path, message: str) -> GitResult:
    """Stage everything and commit."""
    staged = run_git(["add", "-A"], repo)
    if not staged.success:
        return staged
    return run_git(["commit", "-m", message], repo)
