from __future__ import annotations

import itertools
import re
import shutil
import subprocess
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from chkd_workers.config import WorkerSettings
from chkd_workers.launchers import LauncherLoader
from chkd_workers.workers import WorkerCoordinator


def _git_version() -> tuple[int, int]:
    binary = shutil.which("git")
    if binary is None:
        return (0, 0)
    output = subprocess.run([binary, "--version"], capture_output=True, text=True).stdout
    match = re.search(r"(\d+)\.(\d+)", output)
    return (int(match.group(1)), int(match.group(2))) if match else (0, 0)


GIT_VERSION = _git_version()


def run_git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return completed.stdout.strip()


def commit_file(cwd: Path, relative: str, content: str, message: str | None = None) -> str:
    target = Path(cwd) / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    run_git(cwd, "add", relative)
    run_git(cwd, "commit", "-q", "-m", message or f"Update {relative}")
    return run_git(cwd, "rev-parse", "HEAD")


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.fromisoformat("2025-01-01T00:00:00+00:00")

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if GIT_VERSION < (2, 38):
        pytest.skip("git >= 2.38 is required for merge-tree --write-tree")
    repo = tmp_path / "project"
    repo.mkdir()
    run_git(repo, "init", "-q", "-b", "main")
    run_git(repo, "config", "user.name", "Test User")
    run_git(repo, "config", "user.email", "test@example.com")
    run_git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# project\n", encoding="utf-8")
    (repo / "app.py").write_text("def main():\n    return 1\n", encoding="utf-8")
    run_git(repo, "add", ".")
    run_git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


@pytest.fixture
def git():
    return run_git


@pytest.fixture
def commit():
    return commit_file


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path: Path, git_repo: Path):
    def factory(**overrides) -> WorkerSettings:
        values = {
            "CHKD_REPO_PATH": git_repo,
            "CHKD_WORKTREE_ROOT": tmp_path / "worktrees",
            "CHKD_USERNAME": "tester",
            "CHKD_LAUNCHER_PATHS": (),
            "CHKD_WORKSPACE_SEED_PATHS": ("CLAUDE.md",),
            "CHKD_MAX_WORKERS": 2,
            "CHROMA_PERSIST_PATH": tmp_path / "chroma",
        }
        values.update(overrides)
        return WorkerSettings(**values)

    return factory


@pytest.fixture
def make_coordinator(git_repo: Path, make_settings, clock: FakeClock):
    counter = itertools.count(1)

    def factory(*, runner=None, store=None, **overrides) -> WorkerCoordinator:
        return WorkerCoordinator(
            git_repo,
            settings=make_settings(**overrides),
            launchers=LauncherLoader(),
            runner=runner,
            store=store,
            clock=clock,
            suffix_factory=lambda: f"{next(counter):04x}",
        )

    return factory
