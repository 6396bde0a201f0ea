"""Blocking runner for the git CLI."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitCommandError(GitRunnerError):
    """Raised when a checked git command exits non-zero."""

    def __init__(self, result: GitResult) -> None:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"git {' '.join(result.args[1:])} failed: {detail}")
        self.result = result

    @property
    def stderr(self) -> str:
        return self.result.stderr


class GitTimeoutError(GitRunnerError):
    """Raised when a git command exceeds its time bound."""

    def __init__(self, args: tuple[str, ...], timeout: float) -> None:
        super().__init__(f"git {' '.join(args[1:])} timed out after {timeout:g}s")
        self.args_used = args
        self.timeout = timeout


class GitRunner:
    """Execute git commands with a bounded runtime."""

    def __init__(self, executable: Path | None = None, *, timeout: float | None = 60.0) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def timeout(self) -> float | None:
        return self._timeout

    def run(
        self,
        *args: str,
        cwd: Path,
        check: bool = True,
        timeout: float | None = None,
    ) -> GitResult:
        result = self._invoke(args, cwd=Path(cwd), timeout=timeout or self._timeout)
        if check and not result.ok:
            raise GitCommandError(result)
        return result

    def _invoke(self, args: tuple[str, ...], *, cwd: Path, timeout: float | None) -> GitResult:
        cmd = (str(self._executable_path), *args)
        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=sanitize_environment(),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitTimeoutError(cmd, timeout or 0.0) from exc
        return GitResult(
            args=cmd,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


class FakeGitRunner(GitRunner):
    """Test double that replays scripted git responses."""

    def __init__(self, responses: Iterable[GitResult | Exception] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._executable_path = Path("/usr/bin/git")
        self._timeout = 60.0

    def _invoke(self, args: tuple[str, ...], *, cwd: Path, timeout: float | None) -> GitResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        if self._responses:
            response = self._responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return GitResult(args=("git", *args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations
