"""Three-phase sync: discovery, populate, aggregates.

Discovery asks the partner API which dates changed for each key and queues a
task per (key, date). Populate fetches queued dates concurrently and hands
records to a backpressured writer. Aggregates rebuilds derived summaries.
Highwatermarks returned by discovery are held in memory and only committed
once the whole run has succeeded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

import loguru
from loguru import logger

from salesync.adapters.db.models import SyncTask
from salesync.adapters.db.task_queue import TaskQueueStore
from salesync.core.concurrency import (
    CancelToken,
    SyncCancelledError,
    TaskCursor,
    is_cancellation_error,
)
from salesync.models.sale import ApiKeyInfo, FetchedRecord
from salesync.tools.sync.progress import (
    AggregatesProgress,
    CancelledProgress,
    CompleteProgress,
    DiscoveryProgress,
    ErrorProgress,
    KeySegment,
    PopulateProgress,
    ProgressCallback,
    ignore_progress,
)
from salesync.tools.sync.services import (
    AggregateRecomputer,
    RecordStore,
    SalesFetcher,
    SyncServices,
)
from salesync.tools.sync.writer import RecordWriter


@dataclass(frozen=True, slots=True)
class TaskOk:
    task_id: str
    records: int


@dataclass(frozen=True, slots=True)
class TaskFailed:
    task_id: str
    reason: str


TaskOutcome = TaskOk | TaskFailed


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Final totals for one orchestrator run."""

    total_records: int
    total_tasks: int
    failed_tasks: int = 0
    failed_task_ids: tuple[str, ...] = ()


@dataclass
class _RunCounters:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    records_fetched: int = 0
    failed_task_ids: list[str] = field(default_factory=list)


class SyncOrchestratorLogger:
    """Handles all logging for SyncOrchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def recovered(self, count: int) -> None:
        if count:
            self._logger.bind(tasks=count).info(
                "Reset {} interrupted tasks back to todo", count
            )

    def missing_secret(self, api_key_id: str) -> None:
        self._logger.bind(api_key_id=api_key_id).warning(
            "No secret stored for API key {}, skipping", api_key_id
        )

    def dates_discovered(self, api_key_id: str, count: int, highwatermark: int) -> None:
        self._logger.bind(api_key_id=api_key_id, dates=count).info(
            "Discovered {} changed dates for {} (highwatermark {})",
            count,
            api_key_id,
            highwatermark,
        )

    def nothing_to_sync(self) -> None:
        self._logger.info("Already up to date, no tasks to process")

    def populate_start(self, total_tasks: int, workers: int) -> None:
        self._logger.bind(tasks=total_tasks, workers=workers).info(
            "Processing {} tasks with {} workers", total_tasks, workers
        )

    def task_failed(self, task_id: str, reason: str) -> None:
        self._logger.bind(task_id=task_id).warning(
            "Task {} failed, continuing with others: {}", task_id, reason
        )

    def highwatermark_committed(self, api_key_id: str, value: int) -> None:
        self._logger.bind(api_key_id=api_key_id, highwatermark=value).debug(
            "Committed highwatermark {} for {}", value, api_key_id
        )

    def requeued(self, count: int) -> None:
        if count:
            self._logger.bind(tasks=count).info(
                "Requeued {} failed tasks for the next sync", count
            )

    def complete(self, result: SyncResult) -> None:
        self._logger.bind(
            tasks=result.total_tasks,
            records=result.total_records,
            failed=result.failed_tasks,
        ).info(
            "Sync complete: {} tasks, {} records, {} failed",
            result.total_tasks,
            result.total_records,
            result.failed_tasks,
        )

    def cancelled(self, completed: int, total: int) -> None:
        self._logger.bind(completed=completed, total=total).info(
            "Sync cancelled after {}/{} tasks", completed, total
        )

    def failed(self, error: BaseException) -> None:
        self._logger.bind(error_type=type(error).__name__).error(
            "Sync failed: {}", error
        )


class SyncOrchestrator:
    """Drives discovery, populate and aggregate phases for a set of API keys."""

    def __init__(
        self,
        services: SyncServices,
        task_queue: TaskQueueStore,
        aggregates: AggregateRecomputer,
        records: RecordStore,
        fetcher: SalesFetcher,
        *,
        worker_count: int = 10,
        http_concurrency: int = 8,
        flush_threshold: int = 1000,
        high_water: int = 5000,
        retry_failed_tasks: bool = True,
        store_in_executor: bool = False,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            services: Credential store and discovery collaborator
            task_queue: Persistent task queue
            aggregates: Aggregate recomputation collaborator
            records: Persistence target for fetched records
            fetcher: Fetches all sales pages for one date
            worker_count: Maximum number of tasks in flight at once
            http_concurrency: Maximum number of concurrent date fetches
            flush_threshold: Queued record count that triggers a write
            high_water: Queued record count above which workers pause
            retry_failed_tasks: Requeue failed tasks at the end of a run so
                the next run retries them
            store_in_executor: Write batches from the default executor so
                workers keep fetching during a write. Only for databases
                that accept connections from other threads
        """
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if http_concurrency < 1:
            raise ValueError("http_concurrency must be >= 1")

        self._services = services
        self._task_queue = task_queue
        self._aggregates = aggregates
        self._records = records
        self._fetcher = fetcher
        self._worker_count = worker_count
        self._http_concurrency = http_concurrency
        self._flush_threshold = flush_threshold
        self._high_water = high_water
        self._retry_failed_tasks = retry_failed_tasks
        self._store_in_executor = store_in_executor
        self._logger = SyncOrchestratorLogger()

        # Writer used by the most recent populate phase.
        self.last_writer: RecordWriter | None = None

    def recover(self) -> int:
        """Revert tasks left in_progress by a crashed run back to todo."""
        count = self._task_queue.reset_in_progress_tasks()
        self._logger.recovered(count)
        return count

    def has_pending_tasks(self) -> bool:
        return self._task_queue.count_all_pending_tasks() > 0

    def pending_task_count(self) -> int:
        return self._task_queue.count_all_pending_tasks()

    async def run_sync(
        self,
        api_keys: Sequence[ApiKeyInfo],
        on_progress: ProgressCallback = ignore_progress,
        cancel_token: CancelToken | None = None,
    ) -> SyncResult:
        """
        Run a full sync: discovery, populate, aggregates.

        Tasks left pending by an earlier interrupted run are folded into the
        populate phase. Highwatermarks are committed only if every phase
        succeeds.

        Args:
            api_keys: Keys to discover changes for
            on_progress: Receives a progress event at each step
            cancel_token: Polled before each key, task claim and page fetch

        Returns:
            SyncResult with final totals

        Raises:
            SyncCancelledError: If the token was set; pending tasks remain
                queued for resume_sync
        """
        token = cancel_token or CancelToken()
        counters = _RunCounters()
        pending_highwatermarks: dict[str, int] = {}

        try:
            self.recover()
            await self._discover(api_keys, on_progress, token, pending_highwatermarks)

            if self._task_queue.count_all_pending_tasks() == 0:
                self._logger.nothing_to_sync()
                self._commit_highwatermarks(pending_highwatermarks)
                result = SyncResult(total_records=0, total_tasks=0)
                on_progress(
                    CompleteProgress(
                        message="Already up to date",
                        completed_tasks=0,
                        total_tasks=0,
                        records_fetched=0,
                    )
                )
                self._logger.complete(result)
                return result

            return await self._populate_and_finish(
                api_keys, on_progress, token, counters, pending_highwatermarks
            )
        except BaseException as e:
            self._report_failure(e, on_progress, counters)
            raise

    async def resume_sync(
        self,
        api_keys: Sequence[ApiKeyInfo],
        on_progress: ProgressCallback = ignore_progress,
        cancel_token: CancelToken | None = None,
    ) -> SyncResult:
        """Continue an interrupted sync from the queued tasks.

        Discovery is skipped and no highwatermark is read or written.
        """
        token = cancel_token or CancelToken()
        counters = _RunCounters()
        try:
            self.recover()
            return await self._populate_and_finish(
                api_keys, on_progress, token, counters, None
            )
        except BaseException as e:
            self._report_failure(e, on_progress, counters)
            raise

    # Phases --------------------------------------------------------------

    async def _discover(
        self,
        api_keys: Sequence[ApiKeyInfo],
        on_progress: ProgressCallback,
        token: CancelToken,
        pending_highwatermarks: dict[str, int],
    ) -> None:
        total_keys = len(api_keys)
        discovered = 0

        for index, api_key in enumerate(api_keys):
            token.raise_if_cancelled()
            on_progress(
                DiscoveryProgress(
                    message=f"Checking {api_key.label} for changes...",
                    current_key=index,
                    total_keys=total_keys,
                    discovered_dates=discovered,
                )
            )

            secret = self._services.get_secret(api_key.id)
            if not secret:
                self._logger.missing_secret(api_key.id)
                continue

            changed = await self._services.get_changed_dates(secret, api_key.id)
            if changed.dates:
                discovered += self._task_queue.create_tasks(api_key.id, changed.dates)
            # Recorded even when unchanged; committed only after a successful run.
            pending_highwatermarks[api_key.id] = changed.new_highwatermark
            self._logger.dates_discovered(
                api_key.id, len(changed.dates), changed.new_highwatermark
            )

            on_progress(
                DiscoveryProgress(
                    message=(
                        f"Found {len(changed.dates)} changed dates for {api_key.label}"
                    ),
                    current_key=index + 1,
                    total_keys=total_keys,
                    discovered_dates=discovered,
                    key_segments=self._key_segments(api_keys),
                )
            )

    async def _populate_and_finish(
        self,
        api_keys: Sequence[ApiKeyInfo],
        on_progress: ProgressCallback,
        token: CancelToken,
        counters: _RunCounters,
        pending_highwatermarks: dict[str, int] | None,
    ) -> SyncResult:
        segments = self._key_segments(api_keys)
        await self._populate(on_progress, token, counters, segments)

        written = self.last_writer.written if self.last_writer is not None else 0
        if written > 0:
            self._recompute_aggregates(on_progress, counters, segments)

        if self._retry_failed_tasks:
            self._logger.requeued(self._task_queue.requeue_failed_tasks())
        self._task_queue.clear_completed_tasks()
        if pending_highwatermarks is not None:
            self._commit_highwatermarks(pending_highwatermarks)

        result = SyncResult(
            total_records=counters.records_fetched,
            total_tasks=counters.total_tasks,
            failed_tasks=counters.failed_tasks,
            failed_task_ids=tuple(counters.failed_task_ids),
        )
        on_progress(
            CompleteProgress(
                message="Sync complete",
                completed_tasks=counters.completed_tasks,
                total_tasks=counters.total_tasks,
                records_fetched=counters.records_fetched,
                failed_tasks=counters.failed_tasks,
                key_segments=segments,
            )
        )
        self._logger.complete(result)
        return result

    async def _populate(
        self,
        on_progress: ProgressCallback,
        token: CancelToken,
        counters: _RunCounters,
        segments: tuple[KeySegment, ...],
    ) -> None:
        """Fetch every pending task, writing records through a RecordWriter.

        The writer is always closed before this returns or raises, so every
        fetched record is stored even when the phase is cancelled.
        """
        tasks = sorted(
            self._task_queue.get_pending_tasks(),
            key=lambda t: (t.api_key_id, t.date),
        )
        counters.total_tasks = len(tasks)
        self.last_writer = None
        if not tasks:
            return

        cursor: TaskCursor[SyncTask] = TaskCursor(tasks)
        http_slots = asyncio.Semaphore(self._http_concurrency)
        writer = RecordWriter(
            self._store_batch,
            flush_threshold=self._flush_threshold,
            high_water=self._high_water,
        )
        self.last_writer = writer
        secrets: dict[str, str | None] = {}
        stop = asyncio.Event()

        worker_count = min(self._worker_count, len(tasks))
        self._logger.populate_start(len(tasks), worker_count)
        on_progress(
            PopulateProgress(
                message=f"Fetching {len(tasks)} dates...",
                completed_tasks=0,
                total_tasks=len(tasks),
                records_fetched=0,
                key_segments=segments,
            )
        )

        async def worker() -> None:
            while True:
                token.raise_if_cancelled()
                if stop.is_set():
                    return
                task = await cursor.claim()
                if task is None:
                    return
                try:
                    await writer.wait_for_space()
                    outcome = await self._run_task(
                        task, token, http_slots, writer, secrets
                    )
                except BaseException:
                    stop.set()
                    raise
                self._record_outcome(task, outcome, counters)
                on_progress(
                    PopulateProgress(
                        message=f"Fetched {task.date}",
                        completed_tasks=counters.completed_tasks,
                        total_tasks=counters.total_tasks,
                        records_fetched=counters.records_fetched,
                        failed_tasks=counters.failed_tasks,
                        current_date=task.date,
                        key_segments=segments,
                    )
                )

        outcomes = await asyncio.gather(
            *(worker() for _ in range(worker_count)), return_exceptions=True
        )
        await writer.close()

        errors = [o for o in outcomes if isinstance(o, BaseException)]
        for error in errors:
            if not is_cancellation_error(error):
                raise error
        if errors:
            raise SyncCancelledError()

    async def _run_task(
        self,
        task: SyncTask,
        token: CancelToken,
        http_slots: asyncio.Semaphore,
        writer: RecordWriter,
        secrets: dict[str, str | None],
    ) -> TaskOutcome:
        self._task_queue.mark_in_progress(task.id)

        if task.api_key_id not in secrets:
            secrets[task.api_key_id] = self._services.get_secret(task.api_key_id)
        secret = secrets[task.api_key_id]
        if not secret:
            reason = f"No secret stored for API key {task.api_key_id}"
            self._task_queue.mark_done(task.id, error=reason)
            return TaskFailed(task.id, reason)

        try:
            async with http_slots:
                records = await self._fetcher.fetch_date(
                    secret, task.api_key_id, task.date, token
                )
        except SyncCancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._task_queue.mark_done(task.id, error=reason)
            return TaskFailed(task.id, reason)

        await writer.enqueue(records)
        self._task_queue.mark_done(task.id)
        return TaskOk(task.id, len(records))

    def _record_outcome(
        self, task: SyncTask, outcome: TaskOutcome, counters: _RunCounters
    ) -> None:
        counters.completed_tasks += 1
        match outcome:
            case TaskOk(records=count):
                counters.records_fetched += count
            case TaskFailed(reason=reason):
                counters.failed_tasks += 1
                counters.failed_task_ids.append(task.id)
                self._logger.task_failed(task.id, reason)

    def _recompute_aggregates(
        self,
        on_progress: ProgressCallback,
        counters: _RunCounters,
        segments: tuple[KeySegment, ...],
    ) -> None:
        last_percent = 0

        def forward(message: str, percent: int) -> None:
            nonlocal last_percent
            last_percent = max(last_percent, min(100, percent))
            on_progress(
                AggregatesProgress(
                    message=message,
                    percent=last_percent,
                    records_fetched=counters.records_fetched,
                    key_segments=segments,
                )
            )

        forward("Computing aggregates...", 0)
        self._aggregates.recompute_all(forward)

    # Helpers -------------------------------------------------------------

    async def _store_batch(self, batch: list[FetchedRecord]) -> int:
        if self._store_in_executor:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._records.store_records, batch)
        return self._records.store_records(batch)

    def _commit_highwatermarks(self, pending: dict[str, int]) -> None:
        for api_key_id, value in pending.items():
            self._services.set_highwatermark(api_key_id, value)
            self._logger.highwatermark_committed(api_key_id, value)
        pending.clear()

    def _key_segments(
        self, api_keys: Sequence[ApiKeyInfo]
    ) -> tuple[KeySegment, ...]:
        counts = self._task_queue.count_pending_tasks()
        return tuple(
            KeySegment(
                key_id=api_key.id,
                key_name=api_key.label,
                pending_tasks=counts.get(api_key.id, 0),
            )
            for api_key in api_keys
        )

    def _report_failure(
        self,
        error: BaseException,
        on_progress: ProgressCallback,
        counters: _RunCounters,
    ) -> None:
        if is_cancellation_error(error):
            self._logger.cancelled(counters.completed_tasks, counters.total_tasks)
            on_progress(
                CancelledProgress(
                    message="Sync cancelled",
                    completed_tasks=counters.completed_tasks,
                    total_tasks=counters.total_tasks,
                    records_fetched=counters.records_fetched,
                )
            )
            return
        self._logger.failed(error)
        on_progress(ErrorProgress(message="Sync failed", error=str(error)))
