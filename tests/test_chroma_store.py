from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from chkd_workers.storage import ChromaStore, ChromaUnavailableError, HistoryRecord, build_where


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []
        self.queries: list[dict[str, Any] | None] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        self.queries.append(where)
        clauses = (where or {}).get("$and", [where] if where else [])
        filtered = self.records
        for clause in clauses:
            for key, value in clause.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime.fromisoformat("2025-01-01T00:00:00+00:00")

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _store(tmp_path: Path, client: StubClient | None = None, clock=None) -> ChromaStore:
    client = client or StubClient()
    return ChromaStore(
        tmp_path,
        client_factory=lambda: client,
        clock=clock or (lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00")),
    )


def _snapshot(worker_id: str, status: str, repo_path: str = "/repo") -> dict[str, Any]:
    return {
        "id": worker_id,
        "repo_path": repo_path,
        "task_id": f"task-{worker_id}",
        "status": status,
        "branch_name": f"feature/tester/{worker_id}",
        "pending_merge": None,
    }


def test_build_where() -> None:
    assert build_where(None) is None
    assert build_where({"repo_path": None}) is None
    assert build_where({"event_type": "x"}) == {"event_type": "x"}
    assert build_where({"event_type": "x", "repo_path": "/repo", "worker_id": None}) == {
        "$and": [{"event_type": "x"}, {"repo_path": "/repo"}]
    }


def test_record_and_fetch_events(tmp_path: Path) -> None:
    store = _store(tmp_path)

    event = store.record_event(
        stream_id="worker::w1",
        event_type="note",
        body={"text": "hello"},
        metadata={"files": ["a.txt"], "skipped": None},
    )
    events = store.fetch_stream_events("worker::w1")

    assert [item.id for item in events] == [event.id]
    assert events[0].body() == {"text": "hello"}
    assert events[0].metadata["files"] == '["a.txt"]'
    assert "skipped" not in events[0].metadata
    assert events[0].metadata["sequence"] == 1


def test_replay_workers_returns_latest_snapshot_per_worker(tmp_path: Path) -> None:
    store = _store(tmp_path, clock=TickingClock())
    store.record_worker_snapshot(_snapshot("w1", "pending"))
    store.record_worker_snapshot(_snapshot("w1", "working"))
    store.record_worker_snapshot(_snapshot("w2", "pending"))
    store.record_worker_snapshot(_snapshot("w2", "stopped"), removed=True)
    store.record_worker_snapshot(_snapshot("w3", "working", repo_path="/other"))

    workers = store.replay_workers("/repo")

    assert [(worker["id"], worker["status"]) for worker in workers] == [("w1", "working")]
    assert "removed" not in workers[0]
    assert {worker["id"] for worker in store.replay_workers()} == {"w1", "w3"}


def test_history_round_trip_most_recent_first(tmp_path: Path) -> None:
    store = _store(tmp_path, clock=TickingClock())
    base = datetime.fromisoformat("2025-01-01T00:00:00+00:00")
    for index, outcome in enumerate(("merged", "aborted", "error")):
        store.record_history(
            HistoryRecord(
                worker_id=f"w{index}",
                repo_path="/repo",
                task_id=f"SD.{index}",
                task_title="Task",
                branch_name=f"feature/tester/w{index}",
                outcome=outcome,
                merge_conflicts=index,
                files_changed=2,
                insertions=10,
                deletions=1,
                started_at=base,
                completed_at=base + timedelta(minutes=index + 1),
                duration_ms=(index + 1) * 60_000,
            )
        )

    history = store.list_history("/repo")

    assert [record.outcome for record in history] == ["error", "aborted", "merged"]
    assert history[0].merge_conflicts == 2
    assert history[-1].started_at == base
    assert [record.worker_id for record in store.list_history("/repo", limit=1)] == ["w2"]
    assert store.list_history("/elsewhere") == []


def test_merge_attempts_are_searchable(tmp_path: Path) -> None:
    client = StubClient()
    store = _store(tmp_path, client=client)
    store.record_merge_attempt(
        {
            "worker_id": "w1",
            "outcome": "conflict",
            "strategy": "merge",
            "conflicts": [{"file": "app.py", "conflict_type": "content"}],
        },
        repo_path="/repo",
    )

    results = store.search_events(filters={"event_type": "merge_attempt", "repo_path": "/repo"})

    assert len(results) == 1
    assert results[0].metadata["conflict_count"] == 1
    assert results[0].stream_id == "worker::w1"
    assert store.search_events("app.py")[0].id == results[0].id
    assert store.search_events("nothing-matches") == []
    assert client.collections["chkd_workers"].queries[0] == {
        "$and": [{"event_type": "merge_attempt"}, {"repo_path": "/repo"}]
    }


def test_client_factory_errors_surface_as_unavailable(tmp_path: Path) -> None:
    def broken_factory():
        raise ChromaUnavailableError("no chroma here")

    store = ChromaStore(tmp_path, client_factory=broken_factory)

    with pytest.raises(ChromaUnavailableError):
        store.ping()
