"""Sync pipeline package."""

from salesync.tools.sync.factory import create_sync_orchestrator
from salesync.tools.sync.orchestrator import (
    SyncOrchestrator,
    SyncResult,
    TaskFailed,
    TaskOk,
    TaskOutcome,
)
from salesync.tools.sync.progress import (
    AggregatesProgress,
    CancelledProgress,
    CompleteProgress,
    DiscoveryProgress,
    ErrorProgress,
    KeySegment,
    PopulateProgress,
    ProgressCallback,
    SyncProgress,
)
from salesync.tools.sync.writer import RecordWriter, RecordWriterError

__all__ = [
    # Orchestrator
    "SyncOrchestrator",
    "SyncResult",
    "TaskOk",
    "TaskFailed",
    "TaskOutcome",
    "create_sync_orchestrator",
    # Progress events
    "SyncProgress",
    "ProgressCallback",
    "DiscoveryProgress",
    "PopulateProgress",
    "AggregatesProgress",
    "CompleteProgress",
    "ErrorProgress",
    "CancelledProgress",
    "KeySegment",
    # Writer
    "RecordWriter",
    "RecordWriterError",
]
