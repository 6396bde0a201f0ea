"""Storage abstractions for the worker coordinator."""

from .chroma import (
    HISTORY_EVENT,
    MERGE_ATTEMPT_EVENT,
    SNAPSHOT_EVENT,
    ChromaEvent,
    ChromaStore,
    ChromaUnavailableError,
    build_where,
)
from .models import HISTORY_OUTCOMES, HistoryRecord

__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "HISTORY_EVENT",
    "HISTORY_OUTCOMES",
    "HistoryRecord",
    "MERGE_ATTEMPT_EVENT",
    "SNAPSHOT_EVENT",
    "build_where",
]
