"""FastMCP server bootstrap for the worker coordinator."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import WorkerSettings, get_settings
from .errors import WorkerCoordinationError
from .git import GitRunnerError
from .launchers import LauncherLoadError, LauncherLoader
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools
from .workers import WorkerService


def configure_logging(level: str) -> None:
    """Configure root logging for the coordinator server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[WorkerSettings] = None,
    service: WorkerService | None = None,
    chroma_store: ChromaStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the worker tools and status resource."""

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": None,
        "error": None,
    }
    if service is not None:
        chroma_store = service.store
    elif chroma_store is None:
        try:
            chroma_store = ChromaStore(settings.chroma_persist_path)
            chroma_store.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            chroma_store = None
            log.warning("Chroma unavailable; running without persistence", extra={"error": str(exc)})
    if chroma_store is not None:
        chroma_metadata["available"] = True
        chroma_metadata["collection"] = chroma_store.collection_name

    launchers = service.launchers if service is not None else LauncherLoader(settings.launcher_paths)
    service = service or WorkerService(settings, launchers=launchers, store=chroma_store)

    restore: dict[str, Any] = {"repo_path": None, "workers": 0, "error": None}
    if settings.default_repo_path is not None:
        restore["repo_path"] = str(settings.default_repo_path)
        try:
            restore["workers"] = len(service.coordinator().list_workers())
        except (WorkerCoordinationError, GitRunnerError) as exc:
            restore["error"] = str(exc)
            log.warning(
                "Default repository unavailable",
                extra={"repo_path": restore["repo_path"], "error": str(exc)},
            )

    server = FastMCP(
        name="chkd workers",
        version=__version__,
        instructions=(
            "Coordinates parallel coding agents, each in its own git worktree and branch. "
            "Spawn workers per task, have them heartbeat, and merge their branches back "
            "through a dry run that reports conflicts per file."
        ),
    )

    handles = register_tools(server, service=service, settings=settings)

    def status_payload(context: Context | None = None) -> dict[str, Any]:
        try:
            launcher_ids = sorted(launchers.load_all())
            launcher_error: str | None = None
        except LauncherLoadError as exc:
            launcher_ids = []
            launcher_error = str(exc)

        repositories = []
        for coordinator in service.coordinators():
            try:
                repositories.append(coordinator.status_summary())
            except GitRunnerError as exc:
                repositories.append({"repo_path": coordinator.repo_path, "error": str(exc)})

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "settings": {
                "max_workers": settings.max_workers,
                "merge_strategy": settings.merge_strategy,
                "require_merge_approval": settings.require_merge_approval,
                "heartbeat_interval_seconds": settings.heartbeat_interval_seconds,
                "active_timeout_seconds": settings.active_timeout_seconds,
                "pending_timeout_seconds": settings.pending_timeout_seconds,
            },
            "launchers": {
                "count": len(launcher_ids),
                "ids": launcher_ids,
                "default": settings.default_launcher,
                "error": launcher_error,
            },
            "storage": {"chroma": chroma_metadata},
            "restore": restore,
            "repositories": repositories,
            "request_id": getattr(context, "request_id", None),
        }

    @server.resource(
        "resource://chkd/status",
        name="chkd_status",
        title="Worker Coordinator Status",
        description="Runtime status: capacity and worker counts per repository, persistence, launchers.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        return json.dumps(status_payload(context))

    setattr(server, "worker_service", service)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "launcher_loader", launchers)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_payload", status_payload)
    return server


def main() -> None:
    """Entry point for running the coordinator MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching worker coordinator MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
            "default_repo": str(settings.default_repo_path) if settings.default_repo_path else None,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
