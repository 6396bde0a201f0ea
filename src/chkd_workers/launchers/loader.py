"""Discovery of launcher definitions in YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import BUILTIN_LAUNCHERS, LauncherProfile


class LauncherLoadError(RuntimeError):
    """Raised when launcher files are invalid or a launcher id is unknown."""


def _launcher_files(directory: Path) -> Iterator[Path]:
    for pattern in ("*.yml", "*.yaml"):
        yield from sorted(directory.glob(pattern))


def _read_launcher(path: Path) -> LauncherProfile | None:
    """Parse one file; ``None`` for an empty document."""

    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise LauncherLoadError(f"Failed to parse YAML in {path}: {exc}") from exc
    if document is None:
        return None
    try:
        return LauncherProfile.model_validate(document)
    except ValidationError as exc:
        raise LauncherLoadError(f"Launcher validation error in {path}: {exc}") from exc


class LauncherLoader:
    """Resolve launcher ids against the built-ins and any configured directories.

    Directories that do not exist are ignored. A file defining an id that is
    already known replaces the earlier definition, so later directories win.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._directories = [Path(path) for path in search_paths or () if Path(path).exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._directories)

    def load_all(self) -> dict[str, LauncherProfile]:
        launchers = dict(BUILTIN_LAUNCHERS)
        problems: list[str] = []
        for directory in self._directories:
            for path in _launcher_files(directory):
                try:
                    launcher = _read_launcher(path)
                except LauncherLoadError as exc:
                    problems.append(str(exc))
                    continue
                if launcher is not None:
                    launchers[launcher.id] = launcher
        if problems:
            raise LauncherLoadError("; ".join(problems))
        return launchers

    def get(self, launcher_id: str) -> LauncherProfile:
        launchers = self.load_all()
        if launcher_id not in launchers:
            known = ", ".join(sorted(launchers))
            raise LauncherLoadError(f"Launcher '{launcher_id}' not found (known: {known})")
        return launchers[launcher_id]


__all__ = ["LauncherLoadError", "LauncherLoader"]
