"""Tool registration for the worker coordinator MCP server."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError

from ..config import WorkerSettings
from ..errors import WorkerCoordinationError
from ..git import GitRunnerError
from ..launchers import LauncherLoadError
from ..workers import WorkerService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    spawn_worker: Any
    list_workers: Any
    get_worker_status: Any
    find_worker: Any
    heartbeat: Any
    pause_worker: Any
    resume_worker: Any
    request_abort: Any
    assign_next_task: Any
    merge_worker: Any
    resolve_conflicts: Any
    worker_complete: Any
    approve_merge: Any
    preview_merge: Any
    fail_worker: Any
    stop_worker: Any
    list_dead_workers: Any
    worker_history: Any
    list_workspaces: Any
    list_launchers: Any


@contextmanager
def _domain_errors(context: Context | None, operation: str) -> Iterator[None]:
    """Surface coordinator failures as tool errors carrying the structured payload."""

    try:
        yield
    except WorkerCoordinationError as exc:
        _emit_log(
            context,
            "warning",
            f"{operation} failed",
            extra={"operation": operation, "error_code": exc.code, **exc.details},
        )
        raise ToolError(json.dumps(exc.to_dict())) from exc
    except (ValueError, LauncherLoadError) as exc:
        _emit_log(context, "warning", f"{operation} rejected", extra={"operation": operation})
        raise ToolError(json.dumps({"error": "invalid_argument", "message": str(exc)})) from exc
    except GitRunnerError as exc:
        _emit_log(
            context,
            "warning",
            f"{operation} hit a git failure",
            extra={"operation": operation, "git_error": type(exc).__name__},
        )
        raise ToolError(
            json.dumps({"error": "git_failed", "message": str(exc), "operation": operation})
        ) from exc


def register_tools(
    server: FastMCP,
    *,
    service: WorkerService,
    settings: WorkerSettings,
) -> ToolHandles:
    """Register the worker tools on the server."""

    def _spawn_worker(
        task_id: str,
        task_title: str,
        next_task_id: str | None = None,
        next_task_title: str | None = None,
        launcher: str | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Provision an isolated workspace for a task and register a pending worker."""

        with _domain_errors(context, "spawn_worker"):
            coordinator = service.coordinator(repo_path)
            result = coordinator.spawn_worker(
                task_id,
                task_title,
                next_task_id=next_task_id,
                next_task_title=next_task_title,
                launcher=launcher,
            )

        _emit_log(
            context,
            "info",
            "Spawned worker",
            extra={
                "worker_id": result.worker_id,
                "task_id": task_id,
                "branch": result.branch_name,
            },
        )
        return result.to_dict()

    def _list_workers(
        status: list[str] | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List workers for a repository with its capacity."""

        with _domain_errors(context, "list_workers"):
            coordinator = service.coordinator(repo_path)
            workers = coordinator.list_workers(status)
            capacity = coordinator.context()

        _emit_log(context, "debug", "Listing workers", extra={"count": len(workers)})
        return {
            "workers": [worker.to_dict() for worker in workers],
            "max_workers": capacity.max_workers,
            "active": capacity.active_workers,
            "can_spawn": capacity.can_spawn,
            "target_branch": capacity.target_branch,
        }

    def _get_worker_status(
        worker_id: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the full record of a single worker."""

        with _domain_errors(context, "get_worker_status"):
            worker = service.coordinator(repo_path).get_worker(worker_id)
        return worker.to_dict()

    def _find_worker(
        workspace_path: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Look up the worker that owns a workspace directory."""

        with _domain_errors(context, "find_worker"):
            worker = service.coordinator(repo_path).find_worker(workspace_path)
        return worker.to_dict()

    def _heartbeat(
        worker_id: str,
        message: str | None = None,
        progress: int | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report liveness; the reply carries pause/abort requests and the queued next task."""

        with _domain_errors(context, "heartbeat"):
            reply = service.coordinator(repo_path).heartbeat(
                worker_id, message=message, progress=progress
            )

        _emit_log(
            context,
            "debug",
            "Heartbeat received",
            extra={"worker_id": worker_id, "status": reply.status.value, "progress": progress},
        )
        return reply.to_dict()

    def _pause_worker(
        worker_id: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Ask a working worker to pause; it learns of it on its next heartbeat."""

        with _domain_errors(context, "pause_worker"):
            worker = service.coordinator(repo_path).pause_worker(worker_id)
        _emit_log(context, "info", "Paused worker", extra={"worker_id": worker_id})
        return worker.to_dict()

    def _resume_worker(
        worker_id: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Resume a paused worker."""

        with _domain_errors(context, "resume_worker"):
            worker = service.coordinator(repo_path).resume_worker(worker_id)
        _emit_log(context, "info", "Resumed worker", extra={"worker_id": worker_id})
        return worker.to_dict()

    def _request_abort(
        worker_id: str,
        reason: str | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Ask a worker to abandon its task at its next heartbeat."""

        with _domain_errors(context, "request_abort"):
            worker = service.coordinator(repo_path).request_abort(worker_id, reason)
        _emit_log(context, "info", "Abort requested", extra={"worker_id": worker_id})
        return worker.to_dict()

    def _assign_next_task(
        worker_id: str,
        task_id: str,
        task_title: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Queue the follow-up task handed to a worker when its merge lands."""

        with _domain_errors(context, "assign_next_task"):
            next_task = service.coordinator(repo_path).assign_next_task(
                worker_id, task_id, task_title
            )
        return {"worker_id": worker_id, "next_task": next_task.to_dict()}

    def _merge_worker(
        worker_id: str,
        auto_merge: bool = True,
        commit_message: str | None = None,
        strategy: str | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Dry-run then integrate a worker's branch; conflicts come back as data."""

        with _domain_errors(context, "merge_worker"):
            attempt = service.coordinator(repo_path).merge_worker(
                worker_id,
                auto_merge=auto_merge,
                commit_message=commit_message,
                strategy=strategy,
            )
        _emit_log(
            context,
            "info",
            "Merge attempt finished",
            extra={"worker_id": worker_id, "outcome": attempt.outcome.value},
        )
        return attempt.to_dict()

    def _resolve_conflicts(
        worker_id: str,
        resolution: str,
        files: list[str] | None = None,
        commit_message: str | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Settle a conflicted merge by taking one side, or abort it and pause the worker."""

        with _domain_errors(context, "resolve_conflicts"):
            result = service.coordinator(repo_path).resolve_conflicts(
                worker_id, resolution, files=files, commit_message=commit_message
            )
        _emit_log(
            context,
            "info",
            "Conflicts resolved" if not result.aborted else "Conflict resolution aborted",
            extra={
                "worker_id": worker_id,
                "resolution": result.resolution.value,
                "resolved_count": len(result.resolved_files),
            },
        )
        return result.to_dict()

    def _worker_complete(
        worker_id: str,
        summary: str | None = None,
        auto_merge: bool = True,
        commit_message: str | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Record a worker's final summary and run the merge path."""

        with _domain_errors(context, "worker_complete"):
            attempt = service.coordinator(repo_path).worker_complete(
                worker_id,
                summary=summary,
                auto_merge=auto_merge,
                commit_message=commit_message,
            )
        _emit_log(
            context,
            "info",
            "Worker completed",
            extra={"worker_id": worker_id, "outcome": attempt.outcome.value},
        )
        return attempt.to_dict()

    def _approve_merge(
        worker_id: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Carry out a clean merge that was held for approval."""

        with _domain_errors(context, "approve_merge"):
            attempt = service.coordinator(repo_path).approve_merge(worker_id)
        return attempt.to_dict()

    def _preview_merge(
        worker_id: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report whether a worker's branch would merge cleanly, changing nothing."""

        with _domain_errors(context, "preview_merge"):
            attempt = service.coordinator(repo_path).preview_merge(worker_id)
        return attempt.to_dict()

    def _fail_worker(
        worker_id: str,
        reason: str,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Mark a worker as failed with a reason."""

        with _domain_errors(context, "fail_worker"):
            worker = service.coordinator(repo_path).fail_worker(worker_id, reason)
        _emit_log(context, "warning", "Worker failed", extra={"worker_id": worker_id})
        return worker.to_dict()

    def _stop_worker(
        worker_id: str,
        force: bool = False,
        delete_branch: bool = False,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop a worker and remove its workspace, optionally deleting its branch."""

        with _domain_errors(context, "stop_worker"):
            result = service.coordinator(repo_path).stop_worker(
                worker_id, force=force, delete_branch=delete_branch
            )
        _emit_log(
            context,
            "info",
            "Stopped worker",
            extra={"worker_id": worker_id, "branch_deleted": result.branch_deleted},
        )
        return result.to_dict()

    def _list_dead_workers(
        threshold_ms: int | None = None,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List workers whose heartbeats have gone silent past the threshold."""

        with _domain_errors(context, "list_dead_workers"):
            report = service.coordinator(repo_path).list_dead_workers(threshold_ms)
        if report["dead_count"]:
            _emit_log(
                context,
                "warning",
                "Dead workers detected",
                extra={"dead_count": report["dead_count"]},
            )
        return report

    def _worker_history(
        limit: int = 50,
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the audit trail of finished workers, most recent first."""

        with _domain_errors(context, "worker_history"):
            records = service.coordinator(repo_path).history(limit=limit)
        return {"history": [record.to_dict() for record in records], "count": len(records)}

    def _list_workspaces(
        repo_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List git worktrees with the worker that owns each, if any."""

        with _domain_errors(context, "list_workspaces"):
            workspaces = service.coordinator(repo_path).list_workspaces()
        orphaned = [entry for entry in workspaces if not entry["is_main"] and not entry["worker_id"]]
        return {"workspaces": workspaces, "orphaned_count": len(orphaned)}

    def _list_launchers(context: Context | None = None) -> list[dict[str, Any]]:
        """List launcher profiles available to spawn_worker."""

        with _domain_errors(context, "list_launchers"):
            launchers = service.launchers.load_all()
        catalog = [
            {
                "id": launcher.id,
                "title": launcher.title,
                "command": launcher.command,
                "description": launcher.description,
                "default": launcher.id == settings.default_launcher,
            }
            for launcher in launchers.values()
        ]
        _emit_log(context, "debug", "Listing launchers", extra={"count": len(catalog)})
        return catalog

    tool_spawn = server.tool(
        name="spawn_worker",
        description=(
            "Create an isolated git worktree and branch for a task and register a pending "
            "worker. Optionally queue the next task. Returns the worker id, branch, "
            "workspace path and the command that starts the agent."
        ),
    )(_spawn_worker)
    tool_list = server.tool(
        name="list_workers",
        description="List workers for a repository with max_workers and whether another can spawn.",
    )(_list_workers)
    tool_status = server.tool(
        name="get_worker_status",
        description="Fetch the current record of a worker.",
    )(_get_worker_status)
    tool_find = server.tool(
        name="find_worker",
        description="Find the worker that owns a workspace path.",
    )(_find_worker)
    tool_heartbeat = server.tool(
        name="heartbeat",
        description=(
            "Send a liveness signal with optional message and progress. The reply says "
            "whether to pause or abort and includes the queued next task."
        ),
    )(_heartbeat)
    tool_pause = server.tool(
        name="pause_worker",
        description="Pause a working worker. Delivered on its next heartbeat.",
    )(_pause_worker)
    tool_resume = server.tool(
        name="resume_worker",
        description="Resume a paused worker.",
    )(_resume_worker)
    tool_abort = server.tool(
        name="request_abort",
        description="Ask a worker to abort. Delivered on its next heartbeat; nothing is killed.",
    )(_request_abort)
    tool_assign = server.tool(
        name="assign_next_task",
        description="Queue a single follow-up task for a worker, replacing any queued one.",
    )(_assign_next_task)
    tool_merge = server.tool(
        name="merge_worker",
        description=(
            "Dry-run the worker's branch against the target, then merge if clean. Returns "
            "outcome clean, conflict (with per-file conflict types), pending_approval or merged."
        ),
        annotations={"destructiveHint": True},
    )(_merge_worker)
    tool_resolve = server.tool(
        name="resolve_conflicts",
        description=(
            "Resolve a conflicted merge. resolution 'ours' keeps the worker's side, 'theirs' "
            "keeps the target branch's side, then the merge is retried; 'abort' cancels it "
            "and pauses the worker. files limits which conflicted paths are taken."
        ),
        annotations={"destructiveHint": True},
    )(_resolve_conflicts)
    tool_complete = server.tool(
        name="worker_complete",
        description="Signal that a worker finished its task; records the summary and merges.",
        annotations={"destructiveHint": True},
    )(_worker_complete)
    tool_approve = server.tool(
        name="approve_merge",
        description="Approve and perform a merge that is awaiting approval.",
        annotations={"destructiveHint": True},
    )(_approve_merge)
    tool_preview = server.tool(
        name="preview_merge",
        description="Check whether a worker's branch merges cleanly without changing anything.",
        annotations={"readOnlyHint": True},
    )(_preview_merge)
    tool_fail = server.tool(
        name="fail_worker",
        description="Mark a worker as failed with a reason and record it in history.",
    )(_fail_worker)
    tool_stop = server.tool(
        name="stop_worker",
        description=(
            "Stop a worker and remove its workspace. A working worker needs force=True. "
            "delete_branch removes the branch when it is merged or force is set."
        ),
        annotations={"destructiveHint": True},
    )(_stop_worker)
    tool_dead = server.tool(
        name="list_dead_workers",
        description="List workers whose heartbeat is older than the threshold (default active timeout).",
        annotations={"readOnlyHint": True},
    )(_list_dead_workers)
    tool_history = server.tool(
        name="worker_history",
        description="Audit trail of merged, aborted and failed workers.",
        annotations={"readOnlyHint": True},
    )(_worker_history)
    tool_workspaces = server.tool(
        name="list_workspaces",
        description="List git worktrees and the worker owning each, to spot orphaned workspaces.",
        annotations={"readOnlyHint": True},
    )(_list_workspaces)
    tool_launchers = server.tool(
        name="list_launchers",
        description="List launcher profiles that spawn_worker can use.",
        annotations={"readOnlyHint": True},
    )(_list_launchers)

    return ToolHandles(
        spawn_worker=tool_spawn,
        list_workers=tool_list,
        get_worker_status=tool_status,
        find_worker=tool_find,
        heartbeat=tool_heartbeat,
        pause_worker=tool_pause,
        resume_worker=tool_resume,
        request_abort=tool_abort,
        assign_next_task=tool_assign,
        merge_worker=tool_merge,
        resolve_conflicts=tool_resolve,
        worker_complete=tool_complete,
        approve_merge=tool_approve,
        preview_merge=tool_preview,
        fail_worker=tool_fail,
        stop_worker=tool_stop,
        list_dead_workers=tool_dead,
        worker_history=tool_history,
        list_workspaces=tool_workspaces,
        list_launchers=tool_launchers,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
