"""Branch preparation for work items."""

from pathlib import Path

from clawstown.git.runner import NETWORK_TIMEOUT, GitResult, run_git


def get_commit_sha(repo: Path, ref: str = "HEAD") -> str | None:
    result = run_git(["rev-parse", ref], repo)
    if result.success:
        return result.stdout.strip()
    return None


def remote_branch_exists(repo: Path, branch: str, remote: str = "origin") -> bool:
    result = run_git(["ls-remote", "--exit-code", "--heads", remote, branch], repo, timeout=NETWORK_TIMEOUT)
    return result.success


def discard_local_changes(repo: Path) -> GitResult:
    """Drop uncommitted edits and untracked files left by an earlier run."""
    reset = run_git(["reset", "--hard"], repo)
    if not reset.success:
        return reset
    return run_git(["clean", "-fd"], repo)


def prepare_branch(repo: Path, branch: str, base_branch: str, remote: str = "origin") -> GitResult:
    """Check out branch for work.

    The checkout is wiped first so a previous item's abandoned edits never
    reach this branch. An existing remote branch is continued from its tip so
    follow-up commits stay append-only. Otherwise the branch starts from the
    remote base.
    """
    fetch = run_git(["fetch", remote], repo, timeout=NETWORK_TIMEOUT)
    if not fetch.success:
        return fetch
    clean = discard_local_changes(repo)
    if not clean.success:
        return clean
    if remote_branch_exists(repo, branch, remote):
        return run_git(["checkout", "-B", branch, f"{remote}/{branch}"], repo)
    return run_git(["checkout", "-B", branch, f"{remote}/{base_branch}"], repo)


def merge_base_branch(repo: Path, base_branch: str, remote: str = "origin") -> GitResult:
    """Merge the latest base into the current branch (no rebase, history is kept)."""
    fetch = run_git(["fetch", remote, base_branch], repo, timeout=NETWORK_TIMEOUT)
    if not fetch.success:
        return fetch
    return run_git(["merge", "--no-edit", f"{remote}/{base_branch}"], repo)
