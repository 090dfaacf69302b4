"""Progress events emitted by the sync orchestrator.

`SyncProgress` is a closed union: each phase has its own frozen dataclass
carrying only that phase's counters.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True, slots=True)
class KeySegment:
    """Per-credential slice of pending work, for display only."""

    key_id: str
    key_name: str
    pending_tasks: int


@dataclass(frozen=True, slots=True)
class DiscoveryProgress:
    message: str
    current_key: int
    total_keys: int
    discovered_dates: int
    key_segments: tuple[KeySegment, ...] = ()
    phase: Literal["discovery"] = "discovery"


@dataclass(frozen=True, slots=True)
class PopulateProgress:
    message: str
    completed_tasks: int
    total_tasks: int
    records_fetched: int
    failed_tasks: int = 0
    current_date: str | None = None
    key_segments: tuple[KeySegment, ...] = ()
    phase: Literal["populate"] = "populate"


@dataclass(frozen=True, slots=True)
class AggregatesProgress:
    message: str
    percent: int
    records_fetched: int
    key_segments: tuple[KeySegment, ...] = ()
    phase: Literal["aggregates"] = "aggregates"


@dataclass(frozen=True, slots=True)
class CompleteProgress:
    message: str
    completed_tasks: int
    total_tasks: int
    records_fetched: int
    failed_tasks: int = 0
    key_segments: tuple[KeySegment, ...] = ()
    phase: Literal["complete"] = "complete"


@dataclass(frozen=True, slots=True)
class ErrorProgress:
    message: str
    error: str
    phase: Literal["error"] = "error"


@dataclass(frozen=True, slots=True)
class CancelledProgress:
    message: str
    completed_tasks: int
    total_tasks: int
    records_fetched: int
    phase: Literal["cancelled"] = "cancelled"


SyncProgress = (
    DiscoveryProgress
    | PopulateProgress
    | AggregatesProgress
    | CompleteProgress
    | ErrorProgress
    | CancelledProgress
)

ProgressCallback = Callable[[SyncProgress], None]


def ignore_progress(progress: SyncProgress) -> None:
    return None
