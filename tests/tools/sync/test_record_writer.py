from __future__ import annotations

import asyncio

import pytest

from salesync.models.sale import FetchedRecord
from salesync.tools.sync.writer import RecordWriter, RecordWriterError


def create_records(count: int, *, prefix: str = "r") -> list[FetchedRecord]:
    """Records only need a distinct id for writer tests."""
    return [{"id": f"{prefix}-{i}"} for i in range(count)]  # type: ignore[typeddict-item]


class SlowStore:
    """Store callable that yields to the loop several times per batch."""

    def __init__(self, *, delay_ticks: int = 5, fail_on_batch: int | None = None):
        self.batches: list[list[FetchedRecord]] = []
        self._delay_ticks = delay_ticks
        self._fail_on_batch = fail_on_batch

    async def __call__(self, batch: list[FetchedRecord]) -> None:
        for _ in range(self._delay_ticks):
            await asyncio.sleep(0)
        if self._fail_on_batch is not None and len(self.batches) == self._fail_on_batch:
            raise RuntimeError("disk full")
        self.batches.append(list(batch))

    @property
    def stored_ids(self) -> list[str]:
        return [record["id"] for batch in self.batches for record in batch]


def test_writer_rejects_high_water_below_threshold() -> None:
    with pytest.raises(ValueError, match="high_water"):
        RecordWriter(SlowStore(), flush_threshold=10, high_water=5)


def test_small_batches_stay_queued_until_close() -> None:
    store = SlowStore()

    async def run() -> RecordWriter:
        writer = RecordWriter(store, flush_threshold=100, high_water=200)
        await writer.enqueue(create_records(10))
        await asyncio.sleep(0)
        assert writer.pending == 10
        assert store.batches == []
        await writer.close()
        return writer

    writer = asyncio.run(run())

    assert writer.pending == 0
    assert writer.written == 10
    assert len(store.batches) == 1


def test_flush_drains_whole_queue_once_threshold_reached() -> None:
    store = SlowStore(delay_ticks=0)

    async def run() -> None:
        writer = RecordWriter(store, flush_threshold=5, high_water=20)
        await writer.enqueue(create_records(3, prefix="a"))
        await writer.enqueue(create_records(3, prefix="b"))
        await writer.close()

    asyncio.run(run())

    assert [len(batch) for batch in store.batches] == [6]


def test_backpressure_keeps_queue_under_ceiling_with_slow_store() -> None:
    store = SlowStore(delay_ticks=20)
    high_water = 50
    page_size = 7

    async def producer(writer: RecordWriter, name: str) -> None:
        for page in range(10):
            await writer.wait_for_space()
            await asyncio.sleep(0)
            await writer.enqueue(create_records(page_size, prefix=f"{name}-{page}"))

    async def run() -> RecordWriter:
        writer = RecordWriter(store, flush_threshold=10, high_water=high_water)
        await asyncio.gather(*(producer(writer, f"w{i}") for i in range(8)))
        await writer.close()
        return writer

    writer = asyncio.run(run())

    assert writer.peak_pending <= high_water
    assert writer.written == 8 * 10 * page_size
    assert len(set(store.stored_ids)) == 8 * 10 * page_size


def test_oversized_batch_is_accepted_into_empty_queue() -> None:
    store = SlowStore()

    async def run() -> RecordWriter:
        writer = RecordWriter(store, flush_threshold=5, high_water=10)
        await writer.enqueue(create_records(25))
        await writer.enqueue(create_records(3, prefix="x"))
        await writer.close()
        return writer

    writer = asyncio.run(run())

    assert writer.written == 28
    assert writer.peak_pending == 25


def test_store_failure_is_raised_from_close_and_unblocks_waiters() -> None:
    store = SlowStore(fail_on_batch=0)

    async def run() -> None:
        writer = RecordWriter(store, flush_threshold=5, high_water=5)
        await writer.enqueue(create_records(5))
        with pytest.raises(RecordWriterError, match="disk full"):
            await writer.enqueue(create_records(5, prefix="b"))
        with pytest.raises(RecordWriterError):
            await writer.close()

    asyncio.run(run())
