"""Worker lifecycle: provisioning, registry, liveness, merging and signals."""

from ..git import BranchStats, ConflictInfo
from .coordinator import WorkerCoordinator, WorkerService
from .heartbeat import DeadWorker, HeartbeatMonitor, Liveness
from .history import HistoryLog
from .merge import MergeCoordinator
from .models import (
    ConflictResolution,
    HeartbeatReply,
    MergeAttempt,
    MergeOutcome,
    MergeStrategy,
    NextTask,
    PendingMerge,
    RepositoryContext,
    ResolutionResult,
    SpawnResult,
    TeardownResult,
    Worker,
    WorkerStatus,
    WorkspaceHandle,
)
from .provisioner import WorkspaceProvisioner
from .registry import TRANSITIONS, WorkerRegistry
from .signals import ControlSignal, ControlSignalChannel, SignalState, TaskHandoffQueue

__all__ = [
    "BranchStats",
    "ConflictInfo",
    "ConflictResolution",
    "ControlSignal",
    "ControlSignalChannel",
    "DeadWorker",
    "HeartbeatMonitor",
    "HeartbeatReply",
    "HistoryLog",
    "Liveness",
    "MergeAttempt",
    "MergeCoordinator",
    "MergeOutcome",
    "MergeStrategy",
    "NextTask",
    "PendingMerge",
    "RepositoryContext",
    "ResolutionResult",
    "SpawnResult",
    "SignalState",
    "TRANSITIONS",
    "TaskHandoffQueue",
    "TeardownResult",
    "Worker",
    "WorkerCoordinator",
    "WorkerRegistry",
    "WorkerService",
    "WorkerStatus",
    "WorkspaceHandle",
    "WorkspaceProvisioner",
]
