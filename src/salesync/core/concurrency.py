"""Concurrency primitives shared by the sync pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class SyncCancelledError(Exception):
    """Raised when the user cancels a sync in progress."""

    def __init__(self, message: str = "Sync cancelled by user") -> None:
        super().__init__(message)


class CancelToken:
    """Polled cancellation flag.

    Safe to set from a signal handler or another thread; workers only ever
    read it, so cancellation is always cooperative.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError()


class TaskCursor(Generic[T]):
    """Hands out items of a fixed sequence one at a time.

    The items are frozen into a tuple when the cursor is built; claiming only
    advances a lock-guarded index, nothing is ever removed.
    """

    def __init__(self, items: Sequence[T]) -> None:
        self._items: tuple[T, ...] = tuple(items)
        self._next_index = 0
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def claimed(self) -> int:
        return self._next_index

    async def claim(self) -> T | None:
        """Return the next unclaimed item, or None once exhausted."""
        async with self._lock:
            if self._next_index >= len(self._items):
                return None
            item = self._items[self._next_index]
            self._next_index += 1
            return item


def is_cancellation_error(err: BaseException) -> bool:
    """Check whether an exception represents a cancellation."""
    return isinstance(err, SyncCancelledError | asyncio.CancelledError)
