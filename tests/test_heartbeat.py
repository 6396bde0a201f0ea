from __future__ import annotations

from datetime import datetime, timedelta

from chkd_workers.workers import HeartbeatMonitor, Liveness, Worker, WorkerStatus

BASE = datetime.fromisoformat("2025-01-01T00:00:00+00:00")


def make_worker(worker_id: str = "w1", **fields) -> Worker:
    return Worker(
        id=worker_id,
        repo_path="/repo",
        task_id="SD.1",
        task_title="Task",
        branch_name=f"feature/tester/{worker_id}",
        workspace_path=f"/worktrees/{worker_id}",
        created_at=BASE,
        **fields,
    )


def monitor() -> HeartbeatMonitor:
    return HeartbeatMonitor(
        pending_timeout=timedelta(minutes=10),
        active_timeout=timedelta(minutes=2),
        clock=lambda: BASE,
    )


def test_pending_worker_measured_from_creation() -> None:
    worker = make_worker()

    assert monitor().classify(worker, BASE + timedelta(minutes=10)) is Liveness.ALIVE
    assert monitor().classify(worker, BASE + timedelta(minutes=10, milliseconds=1)) is Liveness.DEAD


def test_active_worker_threshold_is_strict() -> None:
    heartbeat = BASE + timedelta(minutes=5)
    worker = make_worker(status=WorkerStatus.WORKING, heartbeat_at=heartbeat)

    assert monitor().classify(worker, heartbeat + timedelta(minutes=2)) is Liveness.ALIVE
    assert monitor().classify(worker, heartbeat + timedelta(minutes=2, seconds=1)) is Liveness.DEAD


def test_paused_and_merging_workers_use_active_timeout() -> None:
    for status in (WorkerStatus.PAUSED, WorkerStatus.MERGING):
        worker = make_worker(status=status, heartbeat_at=BASE)
        assert monitor().classify(worker, BASE + timedelta(minutes=3)) is Liveness.DEAD


def test_worker_without_heartbeat_falls_back_to_started_at() -> None:
    worker = make_worker(status=WorkerStatus.WORKING, started_at=BASE + timedelta(minutes=9))

    assert monitor().silence(worker, BASE + timedelta(minutes=10)) == timedelta(minutes=1)


def test_terminal_workers_are_never_dead() -> None:
    for status in (WorkerStatus.MERGED, WorkerStatus.ERROR, WorkerStatus.STOPPED):
        worker = make_worker(status=status, heartbeat_at=BASE)
        assert monitor().classify(worker, BASE + timedelta(days=1)) is Liveness.ALIVE


def test_recovered_heartbeat_leaves_dead_list() -> None:
    worker = make_worker(status=WorkerStatus.WORKING, heartbeat_at=BASE)
    later = BASE + timedelta(minutes=3)

    assert [entry.worker.id for entry in monitor().list_dead([worker], now=later)] == ["w1"]

    worker.heartbeat_at = later - timedelta(seconds=5)
    assert monitor().list_dead([worker], now=later) == []


def test_list_dead_sorts_and_honours_threshold() -> None:
    quiet = make_worker("quiet", status=WorkerStatus.WORKING, heartbeat_at=BASE)
    quieter = make_worker(
        "quieter", status=WorkerStatus.WORKING, heartbeat_at=BASE - timedelta(minutes=1)
    )
    now = BASE + timedelta(seconds=45)

    assert monitor().list_dead([quiet, quieter], now=now) == []

    dead = monitor().list_dead([quiet, quieter], threshold=timedelta(seconds=30), now=now)
    assert [entry.worker.id for entry in dead] == ["quieter", "quiet"]
    assert dead[0].to_dict(now=now)["silent_for_ms"] == 105_000


def test_zero_threshold_overrides_active_timeout_only() -> None:
    working = make_worker("working", status=WorkerStatus.WORKING, heartbeat_at=BASE)
    pending = make_worker("pending")
    now = BASE + timedelta(milliseconds=1)

    dead = monitor().list_dead([working, pending], threshold=timedelta(0), now=now)

    assert [entry.worker.id for entry in dead] == ["working"]
