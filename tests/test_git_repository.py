from __future__ import annotations

from pathlib import Path

import pytest

from chkd_workers.git import (
    ConflictInfo,
    GitCommandError,
    GitRepository,
    GitRunner,
    parse_merge_tree_output,
    parse_worktree_list,
)
from chkd_workers.git.repository import classify_conflict


def _merge_tree_output(tree: str, files: list[str], messages: list[tuple[list[str], str, str]]) -> str:
    fields = [tree, *files, ""]
    for paths, kind, message in messages:
        fields.extend([str(len(paths)), *paths, kind, message])
    return "\0".join(fields) + "\0"


def test_parse_merge_tree_output_clean() -> None:
    result = parse_merge_tree_output("4b825dc642cb6eb9a060e54bf8d69288fbee4904\0")

    assert result.clean
    assert result.tree == "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


def test_parse_merge_tree_output_skips_informational_messages() -> None:
    output = _merge_tree_output(
        "abc123",
        ["app.py"],
        [
            (["app.py"], "Auto-merging", "Auto-merging app.py\n"),
            (["app.py"], "CONFLICT (contents)", "CONFLICT (content): Merge conflict in app.py\n"),
        ],
    )

    result = parse_merge_tree_output(output)

    assert result.conflicts == [ConflictInfo(file="app.py", conflict_type="content")]


def test_parse_merge_tree_output_prefers_message_reason() -> None:
    output = _merge_tree_output(
        "abc123",
        ["new.txt", "gone.py"],
        [
            (["new.txt"], "CONFLICT (contents)", "CONFLICT (add/add): Merge conflict in new.txt\n"),
            (
                ["gone.py"],
                "CONFLICT (modify/delete)",
                "CONFLICT (modify/delete): gone.py deleted in main and modified in topic.\n",
            ),
        ],
    )

    result = parse_merge_tree_output(output)

    assert [conflict.to_dict() for conflict in result.conflicts] == [
        {"file": "new.txt", "conflict_type": "add-add"},
        {"file": "gone.py", "conflict_type": "delete-modify"},
    ]


def test_parse_merge_tree_output_defaults_to_content_without_messages() -> None:
    result = parse_merge_tree_output("abc123\0a.txt\0a.txt\0\0")

    assert result.conflicts == [ConflictInfo(file="a.txt", conflict_type="content")]


def test_classify_conflict_normalizes_unknown_reasons() -> None:
    assert classify_conflict("Auto-merging", "Auto-merging x") is None
    assert classify_conflict("CONFLICT (submodule lacks merge base)", "") == "submodule-lacks-merge-base"


def test_parse_worktree_list() -> None:
    output = (
        "worktree /repo\nHEAD aaa\nbranch refs/heads/main\n\n"
        "worktree /wt/one\nHEAD bbb\nbranch refs/heads/feature/me/one\n\n"
        "worktree /wt/two\nHEAD ccc\ndetached\n\n"
    )

    worktrees = parse_worktree_list(output, main_path="/repo")

    assert [(info.path, info.branch, info.is_main) for info in worktrees] == [
        ("/repo", "main", True),
        ("/wt/one", "feature/me/one", False),
        ("/wt/two", "(detached)", False),
    ]
    assert worktrees[1].commit == "bbb"


@pytest.fixture
def repository(git_repo: Path) -> GitRepository:
    return GitRepository(git_repo, GitRunner(timeout=30))


def test_repository_inspection(repository: GitRepository, git_repo: Path, tmp_path: Path) -> None:
    assert repository.is_repository()
    assert not GitRepository(tmp_path / "missing", repository.runner).is_repository()
    assert repository.current_branch() == "main"
    assert repository.default_branch() == "main"
    assert repository.branch_exists("main")
    assert not repository.branch_exists("nope")
    assert repository.user_name() == "Test User"
    assert len(repository.resolve_commit("main")) == 40


def test_dirty_files_respects_untracked_flag(repository: GitRepository, git_repo: Path) -> None:
    (git_repo / "notes.txt").write_text("scratch\n", encoding="utf-8")
    assert repository.dirty_files() == ["notes.txt"]
    assert repository.dirty_files(include_untracked=False) == []

    (git_repo / "README.md").write_text("# changed\n", encoding="utf-8")
    assert repository.dirty_files(include_untracked=False) == ["README.md"]
    assert repository.has_uncommitted_changes()


def test_dry_run_merge_clean_leaves_refs_alone(repository: GitRepository, git_repo: Path, git, commit) -> None:
    git(git_repo, "checkout", "-q", "-b", "topic")
    commit(git_repo, "feature.txt", "one\ntwo\n")
    git(git_repo, "checkout", "-q", "main")
    commit(git_repo, "other.txt", "main side\n")
    before = repository.resolve_commit("main")

    result = repository.dry_run_merge("main", "topic")

    assert result.clean
    assert result.tree
    assert repository.resolve_commit("main") == before
    assert not (git_repo / "feature.txt").exists()


def test_dry_run_merge_reports_content_conflict(repository: GitRepository, git_repo: Path, git, commit) -> None:
    git(git_repo, "checkout", "-q", "-b", "topic")
    commit(git_repo, "app.py", "def main():\n    return 2\n")
    git(git_repo, "checkout", "-q", "main")
    commit(git_repo, "app.py", "def main():\n    return 3\n")

    result = repository.dry_run_merge("main", "topic")

    assert result.conflicts == [ConflictInfo(file="app.py", conflict_type="content")]
    assert repository.dirty_files() == []


def test_dry_run_merge_reports_add_add_and_modify_delete(
    repository: GitRepository, git_repo: Path, git, commit
) -> None:
    git(git_repo, "checkout", "-q", "-b", "topic")
    commit(git_repo, "new.txt", "from topic\n")
    commit(git_repo, "app.py", "def main():\n    return 2\n")
    git(git_repo, "checkout", "-q", "main")
    commit(git_repo, "new.txt", "from main\n")
    git(git_repo, "rm", "-q", "app.py")
    git(git_repo, "commit", "-q", "-m", "Remove app")

    result = repository.dry_run_merge("main", "topic")

    kinds = {conflict.file: conflict.conflict_type for conflict in result.conflicts}
    assert kinds == {"new.txt": "add-add", "app.py": "delete-modify"}


def test_dry_run_merge_unknown_branch_raises(repository: GitRepository) -> None:
    with pytest.raises(GitCommandError):
        repository.dry_run_merge("main", "does-not-exist")


def test_diff_stats_counts_branch_side_only(repository: GitRepository, git_repo: Path, git, commit) -> None:
    git(git_repo, "checkout", "-q", "-b", "topic")
    commit(git_repo, "feature.txt", "one\ntwo\n")
    commit(git_repo, "README.md", "# renamed project\n")
    git(git_repo, "checkout", "-q", "main")
    commit(git_repo, "other.txt", "main side\n")

    stats = repository.diff_stats("main", "topic")

    assert stats.files_changed == 2
    assert stats.insertions == 3
    assert stats.deletions == 1
    assert sorted(stats.files) == ["README.md", "feature.txt"]


def test_worktree_lifecycle(repository: GitRepository, git_repo: Path, tmp_path: Path) -> None:
    workspace = tmp_path / "wt" / "one"

    repository.add_worktree(workspace, "feature/one", "main")

    listed = {info.path: info for info in repository.list_worktrees()}
    assert listed[str(workspace.resolve())].branch == "feature/one"
    assert listed[str(git_repo.resolve())].is_main
    assert repository.current_branch(cwd=workspace) == "feature/one"

    assert repository.remove_worktree(workspace).ok
    repository.prune_worktrees()
    assert not workspace.exists()
    assert repository.is_ancestor("feature/one", "main")
    assert repository.delete_branch("feature/one").ok
    assert not repository.branch_exists("feature/one")
