"""Append-only worker event log backed by ChromaDB.

Every registry mutation, merge attempt and finished task becomes one document
in a single collection. Workers are rebuilt on startup by replaying the most
recent ``worker_snapshot`` per worker id.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import HistoryRecord

SNAPSHOT_EVENT = "worker_snapshot"
HISTORY_EVENT = "worker_history"
MERGE_ATTEMPT_EVENT = "merge_attempt"

_SCALARS = (str, int, float, bool)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class EventCollection(Protocol):
    """The slice of a Chroma collection the event log writes to and reads from."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class EventClient(Protocol):
    def get_or_create_collection(self, name: str) -> EventCollection:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One document of the event log together with its metadata."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def body(self) -> Any:
        try:
            return json.loads(self.document)
        except json.JSONDecodeError:
            return self.document

    def matches(self, needle: str) -> bool:
        """Case-insensitive substring match over the document and metadata values."""

        needle = needle.lower()
        if needle in self.document.lower():
            return True
        return any(needle in str(value).lower() for value in self.metadata.values())


def build_where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    """Translate flat equality filters into a Chroma ``where`` clause.

    ``None`` values are dropped; several filters are combined with ``$and``
    because Chroma rejects multi-key ``where`` dictionaries.
    """

    clauses = [{key: value} for key, value in (filters or {}).items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be scalars.
    return {
        key: value if isinstance(value, _SCALARS) else json.dumps(value)
        for key, value in metadata.items()
        if value is not None
    }


def _parse_timestamp(raw: Any, fallback: Callable[[], datetime]) -> datetime:
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            pass
    return fallback()


class ChromaStore:
    """Persist and replay worker events through a ChromaDB collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "chkd_workers",
        client_factory: Callable[[], EventClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._open_persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handle: EventCollection | None = None
        self._sequences: Counter[str] = Counter()
        self._sequence_lock = threading.Lock()

    @property
    def collection_name(self) -> str:
        return self._collection_name

    def _open_persistent_client(self) -> EventClient:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError("chromadb package is not installed") from exc

        try:
            return chromadb.PersistentClient(path=str(self._path))
        except Exception as exc:  # chromadb raises several unrelated types on bad paths
            raise ChromaUnavailableError(f"Cannot open Chroma store at {self._path}: {exc}") from exc

    def _events(self) -> EventCollection:
        if self._handle is None:
            self._handle = self._client_factory().get_or_create_collection(self._collection_name)
        return self._handle

    def _next_sequence(self, stream_id: str) -> int:
        with self._sequence_lock:
            self._sequences[stream_id] += 1
            return self._sequences[stream_id]

    def _to_events(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        rows = zip(
            result.get("ids") or [],
            result.get("documents") or [],
            result.get("metadatas") or [],
        )
        events = []
        for event_id, document, metadata in rows:
            metadata = metadata or {}
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=_parse_timestamp(metadata.get("timestamp"), self._clock),
                )
            )
        # Oldest first; the per-stream sequence breaks ties within one clock tick.
        return sorted(events, key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._events()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        """Append one document to the log and return it as stored."""

        events = self._events()
        timestamp = self._clock()
        stored_metadata = {
            **_flatten_metadata(metadata or {}),
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": self._next_sequence(stream_id),
        }
        event = ChromaEvent(
            id=f"{stream_id}:{uuid.uuid4().hex}",
            stream_id=stream_id,
            event_type=event_type,
            document=body if isinstance(body, str) else json.dumps(body),
            metadata=stored_metadata,
            timestamp=timestamp,
        )
        events.add(documents=[event.document], metadatas=[stored_metadata], ids=[event.id])
        return event

    def fetch_stream_events(self, stream_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        result = self._events().get(where={"stream_id": stream_id}, limit=limit)
        return self._to_events(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Return matching events oldest first; ``limit`` keeps the newest ones."""

        events = self._to_events(self._events().get(where=build_where(filters)))
        if query:
            events = [event for event in events if event.matches(query)]
        return events[-limit:] if limit else events

    def record_worker_snapshot(self, worker: dict[str, Any], *, removed: bool = False) -> ChromaEvent:
        """Persist the full state of a worker after a mutation."""

        worker_id = worker["id"]
        return self.record_event(
            stream_id=f"worker::{worker_id}",
            event_type=SNAPSHOT_EVENT,
            body={**worker, "removed": removed},
            metadata={
                "worker_id": worker_id,
                "repo_path": worker.get("repo_path"),
                "task_id": worker.get("task_id"),
                "status": worker.get("status"),
                "removed": removed,
            },
        )

    def replay_workers(self, repo_path: str | None = None) -> list[dict[str, Any]]:
        """Reconstruct the latest snapshot of every worker that was not removed."""

        latest: dict[str, dict[str, Any]] = {}
        for event in self.search_events(filters={"event_type": SNAPSHOT_EVENT, "repo_path": repo_path}):
            snapshot = json.loads(event.document)
            if snapshot.get("id"):
                latest[snapshot["id"]] = snapshot

        restored = []
        for snapshot in latest.values():
            if snapshot.pop("removed", False):
                continue
            restored.append(snapshot)
        return restored

    def record_history(self, record: HistoryRecord) -> ChromaEvent:
        return self.record_event(
            stream_id=f"history::{record.repo_path}",
            event_type=HISTORY_EVENT,
            body=record.to_dict(),
            metadata={
                "worker_id": record.worker_id,
                "repo_path": record.repo_path,
                "task_id": record.task_id,
                "outcome": record.outcome,
            },
        )

    def list_history(
        self, repo_path: str | None = None, *, limit: int | None = None
    ) -> list[HistoryRecord]:
        """Return history entries, most recent first."""

        events = self.search_events(filters={"event_type": HISTORY_EVENT, "repo_path": repo_path})
        newest_first = [HistoryRecord.from_dict(json.loads(event.document)) for event in reversed(events)]
        return newest_first[:limit] if limit else newest_first

    def record_merge_attempt(self, attempt: dict[str, Any], *, repo_path: str) -> ChromaEvent:
        return self.record_event(
            stream_id=f"worker::{attempt['worker_id']}",
            event_type=MERGE_ATTEMPT_EVENT,
            body=attempt,
            metadata={
                "worker_id": attempt["worker_id"],
                "repo_path": repo_path,
                "outcome": attempt.get("outcome"),
                "strategy": attempt.get("strategy"),
                "conflict_count": len(attempt.get("conflicts") or []),
            },
        )


__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "HISTORY_EVENT",
    "MERGE_ATTEMPT_EVENT",
    "SNAPSHOT_EVENT",
    "build_where",
]
