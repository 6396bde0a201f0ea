"""Launcher profiles that turn a workspace into a start command."""

from .loader import LauncherLoadError, LauncherLoader
from .models import BUILTIN_LAUNCHERS, LauncherProfile

__all__ = ["BUILTIN_LAUNCHERS", "LauncherLoadError", "LauncherLoader", "LauncherProfile"]
