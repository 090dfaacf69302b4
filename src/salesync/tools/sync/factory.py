from __future__ import annotations

from salesync.adapters.db.facade import DB
from salesync.adapters.db.task_queue import TaskQueueStore
from salesync.aggregates.recompute import AggregateService
from salesync.core.config import SyncConfig
from salesync.infra.clients.partner import PartnerApiClient
from salesync.tools.sync.orchestrator import SyncOrchestrator
from salesync.tools.sync.services import PartnerSyncServices


def create_sync_orchestrator(
    *,
    config: SyncConfig,
    db: DB,
    client: PartnerApiClient | None = None,
) -> SyncOrchestrator:
    """Wire a SyncOrchestrator against the database and partner API."""
    client = client or PartnerApiClient(
        base_url=config.api_base, max_retries=config.max_retries
    )
    return SyncOrchestrator(
        services=PartnerSyncServices(db, client),
        task_queue=TaskQueueStore(db),
        aggregates=AggregateService(db),
        records=db,
        fetcher=client,
        worker_count=config.worker_count,
        http_concurrency=config.http_concurrency,
        flush_threshold=config.flush_threshold,
        high_water=config.high_water,
        retry_failed_tasks=config.retry_failed_tasks,
        store_in_executor=db.supports_threaded_writes,
    )
