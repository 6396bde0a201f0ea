from __future__ import annotations

from datetime import datetime, timedelta

from chkd_workers.workers import (
    ControlSignalChannel,
    NextTask,
    TaskHandoffQueue,
    Worker,
    WorkerRegistry,
    WorkerStatus,
)

BASE = datetime.fromisoformat("2025-01-01T00:00:00+00:00")


def test_signals_are_level_triggered_until_withdrawn() -> None:
    now = {"value": BASE}
    channel = ControlSignalChannel(clock=lambda: now["value"])

    assert not channel.poll("w1").should_pause

    channel.request_pause("w1")
    now["value"] = BASE + timedelta(seconds=30)
    first = channel.poll("w1")
    second = channel.poll("w1")

    assert first.should_pause and second.should_pause
    assert not first.should_abort
    [signal] = channel.pending("w1")
    assert signal.requested_at == BASE
    assert signal.delivered_at == BASE + timedelta(seconds=30)

    channel.withdraw_pause("w1")
    assert not channel.poll("w1").should_pause


def test_repeated_requests_keep_first_request_time() -> None:
    now = {"value": BASE}
    channel = ControlSignalChannel(clock=lambda: now["value"])

    channel.request_abort("w1")
    now["value"] = BASE + timedelta(minutes=1)
    channel.request_abort("w1")

    [signal] = channel.pending("w1")
    assert signal.kind == "abort"
    assert signal.requested_at == BASE


def test_clear_drops_all_signals() -> None:
    channel = ControlSignalChannel(clock=lambda: BASE)
    channel.request_pause("w1")
    channel.request_abort("w1")
    channel.request_pause("w2")

    channel.clear("w1")

    assert channel.pending("w1") == []
    assert channel.poll("w2").should_pause


def test_handoff_queue_overwrites_and_consumes_once() -> None:
    registry = WorkerRegistry("/repo", clock=lambda: BASE)
    registry.register(
        Worker(
            id="w1",
            repo_path="/repo",
            task_id="SD.3",
            task_title="First",
            branch_name="feature/tester/sd-3",
            workspace_path="/worktrees/sd-3",
            created_at=BASE,
            status=WorkerStatus.WORKING,
        ),
        max_workers=1,
    )
    queue = TaskHandoffQueue(registry)

    queue.assign_next("w1", "SD.4", "Second")
    queue.assign_next("w1", "SD.5", "Third")

    assert queue.peek("w1") == NextTask(task_id="SD.5", task_title="Third")
    assert queue.consume("w1") == NextTask(task_id="SD.5", task_title="Third")
    assert queue.consume("w1") is None
    assert registry.get("w1").next_task is None
