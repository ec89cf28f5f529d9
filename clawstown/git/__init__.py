"""Git operations for swarm workers.

Functions returning GitResult leave it to the caller to check .success.
"""

from clawstown.git.branch import (
    discard_local_changes,
    get_commit_sha,
    merge_base_branch,
    prepare_branch,
    remote_branch_exists,
)
from clawstown.git.commit import commit_all, has_uncommitted_changes
from clawstown.git.remote import push_branch
from clawstown.git.runner import GitResult, run_git

__all__ = [
    "GitResult",
    "run_git",
    "discard_local_changes",
    "get_commit_sha",
    "merge_base_branch",
    "prepare_branch",
    "remote_branch_exists",
    "commit_all",
    "has_uncommitted_changes",
    "push_branch",
]
