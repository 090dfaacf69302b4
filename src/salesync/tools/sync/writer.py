"""Backpressured persistence writer.

Fetch workers hand records to `RecordWriter.enqueue` and move on; a single
background flush drains the whole queue per batch and writes it through the
store callable. The queue is held at or under `high_water`: workers park in
`wait_for_space` before issuing their next request, and `enqueue` waits when
a batch would not fit.

Progress is reported on fetch, not on write: at any instant some fetched
records may still be in memory. `close` blocks until every queued record has
been written.

The store callable is awaited on the event loop. If it does its work
synchronously, no worker runs until the batch is written; the orchestrator
moves writes to an executor thread when the database allows it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import loguru
from loguru import logger

from salesync.models.sale import FetchedRecord

StoreRecords = Callable[[list[FetchedRecord]], Awaitable[object]]


class RecordWriterError(Exception):
    """Raised when the store callable failed; the writer accepts no more work."""


class RecordWriterLogger:
    """Handles all logging for RecordWriter."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_written(self, count: int, total: int) -> None:
        self._logger.bind(batch=count, written=total).debug(
            "Wrote batch of {} records ({} total)", count, total
        )

    def backpressure(self, pending: int, high_water: int) -> None:
        self._logger.bind(pending=pending, high_water=high_water).debug(
            "Write queue at {} records (ceiling {}), pausing fetches",
            pending,
            high_water,
        )

    def store_failed(self, count: int, error: BaseException) -> None:
        self._logger.bind(batch=count).error(
            "Failed to write batch of {} records: {}", count, error
        )


class RecordWriter:
    def __init__(
        self,
        store: StoreRecords,
        *,
        flush_threshold: int = 1000,
        high_water: int = 5000,
    ) -> None:
        if flush_threshold < 1:
            raise ValueError("flush_threshold must be >= 1")
        if high_water < flush_threshold:
            raise ValueError("high_water must be >= flush_threshold")

        self._store = store
        self._flush_threshold = flush_threshold
        self._high_water = high_water

        self._queue: list[FetchedRecord] = []
        self._queue_lock = asyncio.Lock()
        self._space_waiters: list[asyncio.Future[None]] = []
        self._waiters_lock = asyncio.Lock()

        self._flushing = False
        self._closing = False
        self._flush_task: asyncio.Task[None] | None = None
        self._error: BaseException | None = None

        self._written = 0
        self._peak_pending = 0
        self._logger = RecordWriterLogger()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def written(self) -> int:
        return self._written

    @property
    def peak_pending(self) -> int:
        return self._peak_pending

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise RecordWriterError(f"Record store failed: {self._error}") from (
                self._error
            )

    async def wait_for_space(self) -> None:
        """Block while the unwritten queue is above the high-water mark."""
        while True:
            self._raise_if_failed()
            async with self._waiters_lock:
                async with self._queue_lock:
                    pending = len(self._queue)
                    if pending > self._high_water and not self._flushing:
                        self._start_flush()
                if pending <= self._high_water:
                    return
                waiter = asyncio.get_running_loop().create_future()
                self._space_waiters.append(waiter)
            self._logger.backpressure(pending, self._high_water)
            await waiter

    async def enqueue(self, records: Sequence[FetchedRecord]) -> None:
        """Queue fetched records for writing and trigger a flush if due.

        Waits while adding the batch would push a non-empty queue past
        `high_water`, so the queue only exceeds the ceiling when a single
        batch is larger than the ceiling itself.
        """
        if not records:
            return
        while True:
            self._raise_if_failed()
            async with self._waiters_lock:
                async with self._queue_lock:
                    pending = len(self._queue)
                    if pending == 0 or pending + len(records) <= self._high_water:
                        self._queue.extend(records)
                        queued = len(self._queue)
                        self._peak_pending = max(self._peak_pending, queued)
                        if queued >= self._flush_threshold and not self._flushing:
                            self._start_flush()
                        return
                    if not self._flushing:
                        self._start_flush()
                waiter = asyncio.get_running_loop().create_future()
                self._space_waiters.append(waiter)
            self._logger.backpressure(pending, self._high_water)
            await waiter

    async def close(self) -> None:
        """Write everything still queued and wait for the flush to finish.

        Raises:
            RecordWriterError: If any batch failed to store
        """
        async with self._queue_lock:
            self._closing = True
            if self._queue and not self._flushing and self._error is None:
                self._start_flush()
        while self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        self._raise_if_failed()

    def _start_flush(self) -> None:
        # Caller holds the queue lock.
        self._flushing = True
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        batch: list[FetchedRecord] = []
        try:
            while True:
                async with self._queue_lock:
                    batch, self._queue = self._queue, []
                if batch:
                    await self._store(batch)
                    self._written += len(batch)
                    self._logger.batch_written(len(batch), self._written)
                    batch = []
                await self._release_waiters()

                async with self._queue_lock:
                    more_due = len(self._queue) >= self._flush_threshold
                    if not self._queue or not (more_due or self._closing):
                        self._flushing = False
                        break
            # Waiters parked after the last release re-check and restart a
            # flush themselves if they still need room.
            await self._release_waiters()
        except Exception as e:
            self._logger.store_failed(len(batch), e)
            self._error = e
            async with self._queue_lock:
                self._flushing = False
            await self._release_waiters()

    async def _release_waiters(self) -> None:
        async with self._waiters_lock:
            waiters, self._space_waiters = self._space_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
