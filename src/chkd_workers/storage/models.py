"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

HISTORY_OUTCOMES = ("merged", "aborted", "error")


@dataclass(slots=True)
class HistoryRecord:
    """Audit entry written when a worker reaches a terminal outcome."""

    worker_id: str
    repo_path: str
    task_id: str
    task_title: str
    branch_name: str
    outcome: str
    merge_conflicts: int
    files_changed: int
    insertions: int
    deletions: int
    started_at: datetime | None
    completed_at: datetime
    duration_ms: int | None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat() if self.started_at else None
        payload["completed_at"] = self.completed_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "HistoryRecord":
        started_raw = payload.get("started_at")
        return cls(
            worker_id=payload["worker_id"],
            repo_path=payload.get("repo_path", ""),
            task_id=payload.get("task_id", ""),
            task_title=payload.get("task_title", ""),
            branch_name=payload.get("branch_name", ""),
            outcome=payload.get("outcome", "error"),
            merge_conflicts=int(payload.get("merge_conflicts") or 0),
            files_changed=int(payload.get("files_changed") or 0),
            insertions=int(payload.get("insertions") or 0),
            deletions=int(payload.get("deletions") or 0),
            started_at=datetime.fromisoformat(started_raw) if started_raw else None,
            completed_at=datetime.fromisoformat(payload["completed_at"]),
            duration_ms=payload.get("duration_ms"),
            message=payload.get("message"),
        )


__all__ = ["HISTORY_OUTCOMES", "HistoryRecord"]
