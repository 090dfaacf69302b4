"""Collaborators the sync orchestrator depends on, and their default wiring."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol

from salesync.adapters.db.facade import DB
from salesync.core.concurrency import CancelToken
from salesync.infra.clients.partner import ChangedDates, PartnerApiClient
from salesync.models.sale import FetchedRecord


class SyncServices(Protocol):
    """Credential store and discovery collaborator used by the orchestrator."""

    def get_secret(self, api_key_id: str) -> str | None: ...

    async def get_changed_dates(self, secret: str, api_key_id: str) -> ChangedDates: ...

    def get_highwatermark(self, api_key_id: str) -> int: ...

    def set_highwatermark(self, api_key_id: str, value: int) -> None: ...


class RecordStore(Protocol):
    def store_records(self, records: Sequence[FetchedRecord]) -> int: ...

    def delete_records_for(self, api_key_id: str, date: str) -> int: ...


class SalesFetcher(Protocol):
    async def fetch_date(
        self,
        secret: str,
        api_key_id: str,
        date: str,
        cancel_token: CancelToken,
    ) -> list[FetchedRecord]: ...


class AggregateRecomputer(Protocol):
    def recompute_all(
        self, on_progress: Callable[[str, int], None] | None = None
    ) -> None: ...


class PartnerSyncServices:
    """`SyncServices` backed by the local database and the partner API."""

    def __init__(self, db: DB, client: PartnerApiClient) -> None:
        self._db = db
        self._client = client

    def get_secret(self, api_key_id: str) -> str | None:
        return self._db.get_api_key_secret(api_key_id)

    async def get_changed_dates(self, secret: str, api_key_id: str) -> ChangedDates:
        """Ask the partner API which dates changed since the stored cursor."""
        highwatermark = self._db.get_highwatermark(api_key_id)
        changed = await self._client.discover_changed_dates(secret, highwatermark)
        if changed.dates:
            self._db.log_changed_dates_query(
                api_key_id=api_key_id,
                highwatermark_in=highwatermark,
                highwatermark_out=changed.new_highwatermark,
                dates_found=len(changed.dates),
            )
        return changed

    def get_highwatermark(self, api_key_id: str) -> int:
        return self._db.get_highwatermark(api_key_id)

    def set_highwatermark(self, api_key_id: str, value: int) -> None:
        self._db.set_highwatermark(api_key_id, value)
