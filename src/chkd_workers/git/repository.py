"""Repository-level git operations used by the coordinator."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .runner import GitCommandError, GitResult, GitRunner

logger = logging.getLogger(__name__)

_CONFLICT_REASON = re.compile(r"CONFLICT \(([^)]+)\)")
_SHORTSTAT_FILES = re.compile(r"(\d+) files? changed")
_SHORTSTAT_INSERTIONS = re.compile(r"(\d+) insertions?\(\+\)")
_SHORTSTAT_DELETIONS = re.compile(r"(\d+) deletions?\(-\)")

# Reasons reported by merge-ort, mapped onto the file-level conflict types callers route on.
CONFLICT_KINDS = {
    "contents": "content",
    "content": "content",
    "add/add": "add-add",
    "modify/delete": "delete-modify",
    "rename/delete": "rename-delete",
    "rename/rename": "rename-rename",
    "rename/add": "rename-add",
    "rename involved in collision": "rename-collision",
    "file/directory": "file-directory",
    "directory/file": "file-directory",
    "distinct types": "type-change",
    "distinct modes": "mode-change",
    "binary": "binary",
}

PROTECTED_BRANCHES = frozenset({"main", "master"})


@dataclass(slots=True)
class ConflictInfo:
    file: str
    conflict_type: str

    def to_dict(self) -> dict[str, str]:
        return {"file": self.file, "conflict_type": self.conflict_type}


@dataclass(slots=True)
class BranchStats:
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_changed": self.files_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "files": list(self.files),
        }


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch: str
    commit: str
    is_main: bool


@dataclass(slots=True)
class DryRunResult:
    """Outcome of an in-memory three-way merge; nothing on disk or in refs changes."""

    tree: str | None
    conflicts: list[ConflictInfo]

    @property
    def clean(self) -> bool:
        return not self.conflicts


def classify_conflict(kind: str, message: str) -> str | None:
    """Map a merge-tree informational message onto a conflict type.

    Returns ``None`` for purely informational entries such as ``Auto-merging``.
    """

    match = _CONFLICT_REASON.search(message) or _CONFLICT_REASON.search(kind)
    if match is None:
        return None
    reason = match.group(1).strip().lower()
    if reason in CONFLICT_KINDS:
        return CONFLICT_KINDS[reason]
    return re.sub(r"[^a-z0-9]+", "-", reason).strip("-") or "content"


def parse_merge_tree_output(output: str) -> DryRunResult:
    """Parse ``git merge-tree --write-tree -z --name-only`` output.

    Layout: ``<tree> NUL`` then one ``<path> NUL`` per conflicted file, an empty
    field, then repeated ``<count> NUL <path>... <type> NUL <message> NUL`` groups.
    """

    fields = output.split("\0")
    tree = fields[0].strip() or None
    index = 1
    files: list[str] = []
    while index < len(fields) and fields[index] != "":
        if fields[index] not in files:
            files.append(fields[index])
        index += 1
    index += 1

    kinds: dict[str, str] = {}
    while index < len(fields):
        count_raw = fields[index]
        if not count_raw.isdigit():
            break
        count = int(count_raw)
        paths = fields[index + 1 : index + 1 + count]
        kind = fields[index + 1 + count] if index + 1 + count < len(fields) else ""
        message = fields[index + 2 + count] if index + 2 + count < len(fields) else ""
        index += count + 3
        conflict_type = classify_conflict(kind, message)
        if conflict_type is None:
            continue
        for path in paths:
            kinds.setdefault(path, conflict_type)

    conflicts = [ConflictInfo(file=path, conflict_type=kinds.get(path, "content")) for path in files]
    return DryRunResult(tree=tree, conflicts=conflicts)


def parse_worktree_list(output: str, *, main_path: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""

    worktrees: list[WorktreeInfo] = []
    for entry in output.strip().split("\n\n"):
        path = commit = branch = ""
        for line in entry.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree ") :]
            elif line.startswith("HEAD "):
                commit = line[len("HEAD ") :]
            elif line.startswith("branch "):
                branch = line[len("branch ") :].removeprefix("refs/heads/")
            elif line == "detached":
                branch = "(detached)"
        if path:
            worktrees.append(
                WorktreeInfo(path=path, branch=branch, commit=commit, is_main=path == main_path)
            )
    return worktrees


class GitRepository:
    """Thin wrapper over the git operations the coordinator relies on.

    Read-only helpers never raise for "not found" answers; mutating helpers raise
    ``GitCommandError`` (or ``GitTimeoutError``) and leave recovery to the caller.
    """

    def __init__(self, path: Path, runner: GitRunner) -> None:
        self._path = Path(path)
        self._runner = runner

    @property
    def path(self) -> Path:
        return self._path

    @property
    def runner(self) -> GitRunner:
        return self._runner

    def _git(self, *args: str, cwd: Path | None = None, check: bool = True, timeout: float | None = None) -> GitResult:
        return self._runner.run(*args, cwd=cwd or self._path, check=check, timeout=timeout)

    # -- inspection -----------------------------------------------------------------

    def is_repository(self) -> bool:
        if not self._path.is_dir():
            return False
        return self._git("rev-parse", "--git-dir", check=False).ok

    def toplevel(self) -> Path:
        return Path(self._git("rev-parse", "--show-toplevel").stdout.strip())

    def current_branch(self, cwd: Path | None = None) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd).stdout.strip()

    def resolve_commit(self, ref: str = "HEAD", cwd: Path | None = None) -> str:
        return self._git("rev-parse", "--verify", f"{ref}^{{commit}}", cwd=cwd).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).ok

    def default_branch(self) -> str:
        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return self.current_branch()

    def user_name(self) -> str | None:
        result = self._git("config", "user.name", check=False)
        value = result.stdout.strip()
        return value or None

    def dirty_files(self, path: Path | None = None, *, include_untracked: bool = True) -> list[str]:
        args = ["status", "--porcelain"]
        if not include_untracked:
            args.append("--untracked-files=no")
        output = self._git(*args, cwd=path).stdout
        return [line[3:] for line in output.splitlines() if line.strip()]

    def has_uncommitted_changes(self, path: Path | None = None) -> bool:
        return bool(self.dirty_files(path))

    def unmerged_files(self, path: Path | None = None) -> list[str]:
        output = self._git("diff", "--name-only", "--diff-filter=U", cwd=path, check=False).stdout
        return [line for line in output.splitlines() if line]

    def has_staged_changes(self, path: Path | None = None) -> bool:
        return not self._git("diff", "--cached", "--quiet", cwd=path, check=False).ok

    def merge_in_progress(self, path: Path | None = None) -> bool:
        return self._git("rev-parse", "-q", "--verify", "MERGE_HEAD", cwd=path, check=False).ok

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self._git("merge-base", "--is-ancestor", ancestor, descendant, check=False).ok

    def diff_stats(self, target: str, branch: str) -> BranchStats:
        summary = self._git("diff", "--shortstat", f"{target}...{branch}").stdout
        names = self._git("diff", "--name-only", f"{target}...{branch}").stdout
        stats = BranchStats(files=[line for line in names.splitlines() if line])
        for pattern, attr in (
            (_SHORTSTAT_FILES, "files_changed"),
            (_SHORTSTAT_INSERTIONS, "insertions"),
            (_SHORTSTAT_DELETIONS, "deletions"),
        ):
            match = pattern.search(summary)
            if match:
                setattr(stats, attr, int(match.group(1)))
        return stats

    def list_worktrees(self) -> list[WorktreeInfo]:
        output = self._git("worktree", "list", "--porcelain").stdout
        return parse_worktree_list(output, main_path=str(self.toplevel()))

    # -- workspaces -----------------------------------------------------------------

    def add_worktree(self, path: Path, branch: str, start_point: str) -> None:
        self._git("worktree", "add", "-b", branch, str(path), start_point)

    def remove_worktree(self, path: Path) -> GitResult:
        return self._git("worktree", "remove", "--force", str(path), check=False)

    def prune_worktrees(self) -> None:
        result = self._git("worktree", "prune", check=False)
        if not result.ok:
            logger.warning("git worktree prune failed", extra={"stderr": result.stderr.strip()})

    def delete_branch(self, name: str) -> GitResult:
        return self._git("branch", "-D", name, check=False)

    # -- integration ----------------------------------------------------------------

    def dry_run_merge(self, target: str, branch: str, *, timeout: float | None = None) -> DryRunResult:
        """Compute the merge of ``branch`` into ``target`` without touching refs or checkouts."""

        result = self._git(
            "merge-tree",
            "--write-tree",
            "-z",
            "--name-only",
            target,
            branch,
            check=False,
            timeout=timeout,
        )
        if result.returncode not in (0, 1):
            raise GitCommandError(result)
        parsed = parse_merge_tree_output(result.stdout)
        if result.returncode == 1 and not parsed.conflicts:
            raise GitCommandError(result)
        return parsed

    def checkout(self, branch: str, *, timeout: float | None = None) -> None:
        self._git("checkout", branch, timeout=timeout)

    def merge(self, branch: str, message: str, *, timeout: float | None = None) -> None:
        self._git("merge", "--no-ff", "--no-edit", "-m", message, branch, timeout=timeout)

    def merge_squash(self, branch: str, *, timeout: float | None = None) -> None:
        self._git("merge", "--squash", branch, timeout=timeout)

    def merge_fast_forward(self, branch: str, *, timeout: float | None = None) -> None:
        self._git("merge", "--ff-only", branch, timeout=timeout)

    def commit(self, message: str, *, cwd: Path | None = None, timeout: float | None = None) -> None:
        self._git("commit", "--no-verify", "-m", message, cwd=cwd, timeout=timeout)

    def start_merge(self, branch: str, *, cwd: Path, timeout: float | None = None) -> GitResult:
        """Merge ``branch`` into the checkout at ``cwd`` and stop before committing.

        Exit code 1 with unmerged paths is a conflict, not a failure, so the
        result is returned unchecked.
        """

        return self._git("merge", "--no-ff", "--no-commit", branch, cwd=cwd, check=False, timeout=timeout)

    def take_side(self, side: str, path: str, *, cwd: Path) -> None:
        """Settle one unmerged path with the ``ours`` or ``theirs`` version.

        When the chosen side deleted the file the deletion is staged instead.
        """

        if side not in ("ours", "theirs"):
            raise ValueError(f"side must be 'ours' or 'theirs', not {side!r}")
        if self._git("checkout", f"--{side}", "--", path, cwd=cwd, check=False).ok:
            self._git("add", "--", path, cwd=cwd)
        else:
            self._git("rm", "-f", "--quiet", "--", path, cwd=cwd)

    def abort_merge(self, *, cwd: Path | None = None) -> None:
        self._git("merge", "--abort", cwd=cwd, check=False)

    def rebase(self, onto: str, *, cwd: Path, timeout: float | None = None) -> None:
        self._git("rebase", onto, cwd=cwd, timeout=timeout)

    def abort_rebase(self, *, cwd: Path) -> None:
        self._git("rebase", "--abort", cwd=cwd, check=False)

    def reset_to(self, commit: str) -> None:
        self.abort_merge()
        self._git("reset", "--hard", commit)


__all__ = [
    "BranchStats",
    "CONFLICT_KINDS",
    "ConflictInfo",
    "DryRunResult",
    "GitRepository",
    "PROTECTED_BRANCHES",
    "WorktreeInfo",
    "classify_conflict",
    "parse_merge_tree_output",
    "parse_worktree_list",
]
