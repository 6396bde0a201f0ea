"""Worker coordinator diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from collections import Counter

from chkd_workers.config import WorkerSettings
from chkd_workers.storage import MERGE_ATTEMPT_EVENT, ChromaStore, ChromaUnavailableError


def load_store(settings: WorkerSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def _repo_filter(args: argparse.Namespace, settings: WorkerSettings) -> str | None:
    repo = getattr(args, "repo", None) or settings.default_repo_path
    return str(repo) if repo else None


def cmd_workers(args: argparse.Namespace) -> None:
    settings = WorkerSettings()
    store = load_store(settings)
    try:
        workers = store.replay_workers(_repo_filter(args, settings))
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.status:
        workers = [worker for worker in workers if worker.get("status") == args.status]
    if args.json:
        print(json.dumps(workers, indent=2))
    else:
        for worker in workers:
            print(
                f"{worker['id']} [{worker.get('status')}] {worker.get('task_id')} "
                f"-> {worker.get('branch_name')} ({worker.get('progress', 0)}%)"
            )


def cmd_history(args: argparse.Namespace) -> None:
    settings = WorkerSettings()
    store = load_store(settings)
    try:
        records = store.list_history(_repo_filter(args, settings), limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([record.to_dict() for record in records], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = WorkerSettings()
    store = load_store(settings)
    repo = _repo_filter(args, settings)
    try:
        workers = store.replay_workers(repo)
        history = store.list_history(repo)
        attempts = store.search_events(filters={"event_type": MERGE_ATTEMPT_EVENT, "repo_path": repo})
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts = Counter(worker.get("status", "unknown") for worker in workers)
    outcome_counts = Counter(record.outcome for record in history)
    attempt_counts = Counter(
        event.metadata.get("outcome") or "unknown" for event in attempts
    )
    durations = [record.duration_ms for record in history if record.duration_ms is not None]

    metrics = {
        "workers_total": len(workers),
        "status_counts": dict(status_counts),
        "history_total": len(history),
        "outcome_counts": dict(outcome_counts),
        "merge_attempts": len(attempts),
        "merge_attempt_outcomes": dict(attempt_counts),
        "files_changed_total": sum(record.files_changed for record in history),
        "average_duration_ms": int(sum(durations) / len(durations)) if durations else None,
    }

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Worker coordinator diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_workers = sub.add_parser("workers", help="List workers replayed from the event log")
    p_workers.add_argument("--repo", help="Repository path (defaults to CHKD_REPO_PATH)")
    p_workers.add_argument("--status", help="Only show workers in this status")
    p_workers.add_argument("--json", action="store_true", help="Output JSON")
    p_workers.set_defaults(func=cmd_workers)

    p_history = sub.add_parser("history", help="List finished workers, most recent first")
    p_history.add_argument("--repo", help="Repository path (defaults to CHKD_REPO_PATH)")
    p_history.add_argument("--limit", type=int, default=20)
    p_history.set_defaults(func=cmd_history)

    p_metrics = sub.add_parser("metrics", help="Show worker, history and merge counts")
    p_metrics.add_argument("--repo", help="Repository path (defaults to CHKD_REPO_PATH)")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
