"""Utility helpers for the git runner."""

from __future__ import annotations

import os
import re
from typing import Mapping

# Variables that would redirect git away from the repository passed as cwd.
_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_ALTERNATE_OBJECT_DIRECTORIES",
    "GIT_PREFIX",
}

_FIXED_VARS = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "LC_ALL": "C",
}

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for non-interactive git calls."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env.update(_FIXED_VARS)
    if additional:
        env.update(additional)
    return env


def slugify(text: str, *, max_length: int = 40) -> str:
    """Lowercase ``text`` and collapse anything outside ``[a-z0-9]`` into single dashes."""

    slug = _SLUG_PATTERN.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")
