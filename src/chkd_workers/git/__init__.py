"""Git CLI integration for worker workspaces and merges."""

from .repository import (
    BranchStats,
    ConflictInfo,
    DryRunResult,
    GitRepository,
    PROTECTED_BRANCHES,
    WorktreeInfo,
    parse_merge_tree_output,
    parse_worktree_list,
)
from .runner import (
    FakeGitRunner,
    GitCommandError,
    GitNotFoundError,
    GitResult,
    GitRunner,
    GitRunnerError,
    GitTimeoutError,
)
from .utils import sanitize_environment, slugify

__all__ = [
    "BranchStats",
    "ConflictInfo",
    "DryRunResult",
    "FakeGitRunner",
    "GitCommandError",
    "GitNotFoundError",
    "GitRepository",
    "GitResult",
    "GitRunner",
    "GitRunnerError",
    "GitTimeoutError",
    "PROTECTED_BRANCHES",
    "WorktreeInfo",
    "parse_merge_tree_output",
    "parse_worktree_list",
    "sanitize_environment",
    "slugify",
]
