from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from chkd_workers.errors import (
    CapacityExceededError,
    InvalidStateTransition,
    NotFoundError,
    TaskAlreadyAssignedError,
)
from chkd_workers.launchers import LauncherLoader
from chkd_workers.storage import ChromaStore
from chkd_workers.workers import WorkerCoordinator, WorkerService, WorkerStatus


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
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


def start_worker(coordinator: WorkerCoordinator, task_id: str, title: str = "Task") -> str:
    worker_id = coordinator.spawn_worker(task_id, title).worker_id
    coordinator.heartbeat(worker_id)
    return worker_id


def test_capacity_scenario(make_coordinator, tmp_path: Path) -> None:
    coordinator = make_coordinator(CHKD_MAX_WORKERS=2)

    first = coordinator.spawn_worker("SD.3", "Build the parser")
    second = coordinator.spawn_worker("SD.4", "Build the printer")
    with pytest.raises(CapacityExceededError) as excinfo:
        coordinator.spawn_worker("SD.5", "One too many")

    assert excinfo.value.to_dict()["max_workers"] == 2
    assert {worker.id for worker in coordinator.list_workers()} == {first.worker_id, second.worker_id}
    assert sorted(path.name for path in (tmp_path / "worktrees").iterdir()) == sorted(
        Path(result.workspace_path).name for result in (first, second)
    )
    assert not coordinator.context().can_spawn


def test_spawn_result_describes_workspace(make_coordinator) -> None:
    coordinator = make_coordinator()

    result = coordinator.spawn_worker("SD.3", "Build the parser")

    assert re.fullmatch(r"worker-tester-\d+-[0-9a-f]{4}", result.worker_id)
    assert result.branch_name.startswith("feature/tester/sd-3-build-the-parser-")
    assert result.start_command == f'cd "{result.workspace_path}" && claude'
    worker = coordinator.get_worker(result.worker_id)
    assert worker.status is WorkerStatus.PENDING
    assert worker.task_title == "Build the parser"
    assert worker.branch_name == result.branch_name


def test_spawn_rejects_duplicate_task_and_empty_id(make_coordinator) -> None:
    coordinator = make_coordinator(CHKD_MAX_WORKERS=3)
    first = coordinator.spawn_worker("SD.3", "Parser")

    with pytest.raises(TaskAlreadyAssignedError) as excinfo:
        coordinator.spawn_worker("SD.3", "Parser again")
    assert excinfo.value.worker_id == first.worker_id

    with pytest.raises(ValueError):
        coordinator.spawn_worker("  ", "Blank")
    assert len(coordinator.list_workers()) == 1


def test_failed_worker_holds_capacity_until_stopped(make_coordinator) -> None:
    coordinator = make_coordinator(CHKD_MAX_WORKERS=1)
    worker_id = start_worker(coordinator, "SD.1")

    failed = coordinator.fail_worker(worker_id, "tests never passed")
    assert failed.status is WorkerStatus.ERROR
    with pytest.raises(CapacityExceededError):
        coordinator.spawn_worker("SD.2", "Next")

    coordinator.stop_worker(worker_id)
    assert coordinator.spawn_worker("SD.2", "Next").task_id == "SD.2"
    assert [record.outcome for record in coordinator.history()] == ["error"]


def test_heartbeat_starts_worker_and_reports_progress(make_coordinator, clock) -> None:
    coordinator = make_coordinator()
    spawned = coordinator.spawn_worker("SD.1", "Task")
    clock.advance(5)

    reply = coordinator.heartbeat(spawned.worker_id, message="editing", progress=30)

    assert reply.status is WorkerStatus.WORKING
    assert not reply.should_pause and not reply.should_abort
    worker = coordinator.get_worker(spawned.worker_id)
    assert worker.progress == 30
    assert worker.message == "editing"
    assert worker.heartbeat_at == clock()


def test_pause_resume_round_trip(make_coordinator) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1", "Round trip")

    paused = coordinator.pause_worker(worker_id)
    assert paused.status is WorkerStatus.PAUSED
    assert coordinator.heartbeat(worker_id).should_pause

    resumed = coordinator.resume_worker(worker_id)
    assert resumed.status is WorkerStatus.WORKING
    assert resumed.task_id == "SD.1"
    assert resumed.task_title == "Round trip"
    assert not coordinator.heartbeat(worker_id).should_pause


def test_pause_and_resume_require_matching_status(make_coordinator) -> None:
    coordinator = make_coordinator()
    spawned = coordinator.spawn_worker("SD.1", "Task")

    with pytest.raises(InvalidStateTransition):
        coordinator.pause_worker(spawned.worker_id)
    with pytest.raises(InvalidStateTransition):
        coordinator.resume_worker(spawned.worker_id)


def test_abort_and_failure_reach_worker_on_heartbeat(make_coordinator) -> None:
    coordinator = make_coordinator()
    aborting = start_worker(coordinator, "SD.1")
    failing = start_worker(coordinator, "SD.2")

    coordinator.request_abort(aborting, "scope changed")
    coordinator.fail_worker(failing, "crashed")

    assert coordinator.heartbeat(aborting).should_abort
    assert coordinator.get_worker(aborting).message == "scope changed"
    assert coordinator.heartbeat(failing).should_abort
    with pytest.raises(InvalidStateTransition):
        coordinator.request_abort(failing)


def test_stop_requires_force_for_working_worker(make_coordinator) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1")
    workspace = Path(coordinator.get_worker(worker_id).workspace_path)

    with pytest.raises(InvalidStateTransition):
        coordinator.stop_worker(worker_id)
    assert workspace.exists()

    result = coordinator.stop_worker(worker_id, force=True)

    assert result.workspace_removed
    assert not workspace.exists()
    with pytest.raises(NotFoundError):
        coordinator.get_worker(worker_id)
    assert coordinator.history()[0].outcome == "aborted"


def test_stop_pending_worker_deletes_untouched_branch(make_coordinator) -> None:
    coordinator = make_coordinator()
    spawned = coordinator.spawn_worker("SD.1", "Task")

    result = coordinator.stop_worker(spawned.worker_id, delete_branch=True)

    assert result.workspace_removed
    assert result.branch_deleted
    assert not coordinator.repository.branch_exists(spawned.branch_name)


def test_stop_keeps_unmerged_branch_without_force(make_coordinator, commit) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1")
    worker = coordinator.get_worker(worker_id)
    commit(Path(worker.workspace_path), "feature.txt", "work\n")
    coordinator.pause_worker(worker_id)

    result = coordinator.stop_worker(worker_id, delete_branch=True)

    assert result.workspace_removed
    assert not result.branch_deleted
    assert "unmerged" in result.to_dict()["detail"]
    assert coordinator.repository.branch_exists(worker.branch_name)


def test_dead_workers_listed_and_recovered(make_coordinator, clock) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1")
    pending = coordinator.spawn_worker("SD.2", "Never started").worker_id

    clock.advance(121)
    report = coordinator.list_dead_workers()
    assert [entry["id"] for entry in report["dead_workers"]] == [worker_id]
    assert report["total_active"] == 2
    assert report["threshold_ms"] == 120_000

    coordinator.heartbeat(worker_id)
    assert coordinator.list_dead_workers()["dead_count"] == 0

    clock.advance(2)
    custom = coordinator.list_dead_workers(threshold_ms=1_000)
    assert [entry["id"] for entry in custom["dead_workers"]] == [worker_id]
    assert custom["threshold_ms"] == 1_000

    clock.advance(480)
    report = coordinator.list_dead_workers()
    assert [entry["id"] for entry in report["dead_workers"]] == [pending, worker_id]


def test_find_worker_by_workspace(make_coordinator, tmp_path: Path) -> None:
    coordinator = make_coordinator()
    spawned = coordinator.spawn_worker("SD.1", "Task")

    assert coordinator.find_worker(spawned.workspace_path).id == spawned.worker_id
    with pytest.raises(NotFoundError):
        coordinator.find_worker(tmp_path / "elsewhere")


def test_list_workspaces_marks_owners(make_coordinator, git_repo: Path, git, tmp_path: Path) -> None:
    coordinator = make_coordinator()
    spawned = coordinator.spawn_worker("SD.1", "Task")
    orphan = tmp_path / "orphan"
    git(git_repo, "worktree", "add", "-q", "-b", "stray", str(orphan), "main")

    entries = {entry["path"]: entry for entry in coordinator.list_workspaces()}

    assert entries[coordinator.repo_path]["is_main"]
    assert entries[spawned.workspace_path]["worker_id"] == spawned.worker_id
    assert entries[str(orphan.resolve())]["worker_id"] is None


def test_status_summary_counts_statuses(make_coordinator) -> None:
    coordinator = make_coordinator(CHKD_MAX_WORKERS=3)
    start_worker(coordinator, "SD.1")
    coordinator.spawn_worker("SD.2", "Pending")

    summary = coordinator.status_summary()

    assert summary["status_counts"] == {"working": 1, "pending": 1}
    assert summary["active_workers"] == 2
    assert summary["can_spawn"]
    assert summary["target_branch"] == "main"


def test_not_a_repository(make_settings, tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        WorkerCoordinator(tmp_path / "plain", settings=make_settings(), launchers=LauncherLoader())


def test_workers_restored_from_event_log(make_coordinator, tmp_path: Path, clock) -> None:
    client = StubClient()
    store = ChromaStore(tmp_path / "chroma", client_factory=lambda: client, clock=clock)
    coordinator = make_coordinator(store=store)
    kept = start_worker(coordinator, "SD.1", "Survives restart")
    stopped = coordinator.spawn_worker("SD.2", "Stopped").worker_id
    coordinator.stop_worker(stopped)

    restored = make_coordinator(store=store)

    assert [worker.id for worker in restored.list_workers()] == [kept]
    worker = restored.get_worker(kept)
    assert worker.status is WorkerStatus.WORKING
    assert worker.task_title == "Survives restart"
    assert [record.outcome for record in restored.history()] == ["aborted"]


def test_worker_service_caches_coordinators(make_settings, git_repo: Path) -> None:
    service = WorkerService(make_settings(), launchers=LauncherLoader())

    assert service.coordinator() is service.coordinator(str(git_repo))
    assert service.coordinators() == [service.coordinator()]

    bare = WorkerService(make_settings(CHKD_REPO_PATH=None), launchers=LauncherLoader())
    with pytest.raises(ValueError):
        bare.coordinator()


def test_worker_restored_mid_merge_can_be_stopped(make_coordinator, tmp_path: Path, clock) -> None:
    client = StubClient()
    store = ChromaStore(tmp_path / "chroma", client_factory=lambda: client, clock=clock)
    coordinator = make_coordinator(store=store)
    worker_id = start_worker(coordinator, "SD.1", "Interrupted merge")
    coordinator.registry.transition(worker_id, WorkerStatus.MERGING, operation="merge")

    restored = make_coordinator(store=store)

    worker = restored.get_worker(worker_id)
    assert worker.status is WorkerStatus.WORKING
    assert worker.message == "Merge interrupted by restart"
    result = restored.stop_worker(worker_id, force=True)
    assert result.workspace_removed
    assert not Path(worker.workspace_path).exists()
    assert [record.outcome for record in restored.history()] == ["aborted"]


def test_forced_stop_leaves_merging_only_when_no_merge_runs(make_coordinator) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1")
    coordinator.registry.transition(worker_id, WorkerStatus.MERGING, operation="merge")

    with pytest.raises(InvalidStateTransition):
        coordinator.stop_worker(worker_id)
    with coordinator.merger.lock:
        with pytest.raises(InvalidStateTransition):
            coordinator.stop_worker(worker_id, force=True)
    assert coordinator.get_worker(worker_id).status is WorkerStatus.MERGING

    result = coordinator.stop_worker(worker_id, force=True)

    assert result.workspace_removed
    with pytest.raises(NotFoundError):
        coordinator.get_worker(worker_id)


def test_zero_threshold_is_honoured(make_coordinator, clock) -> None:
    coordinator = make_coordinator()
    worker_id = start_worker(coordinator, "SD.1")
    pending = coordinator.spawn_worker("SD.2", "Never started").worker_id
    clock.advance(1)

    report = coordinator.list_dead_workers(threshold_ms=0)

    assert report["threshold_ms"] == 0
    assert [entry["id"] for entry in report["dead_workers"]] == [worker_id]
    assert pending not in [entry["id"] for entry in report["dead_workers"]]
    with pytest.raises(ValueError):
        coordinator.list_dead_workers(threshold_ms=-1)
