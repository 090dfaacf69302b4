from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from salesync.adapters.db.models import (
    HIGHWATERMARK_KEY_PREFIX,
    ApiKey,
    AppAggregate,
    Base,
    ChangedDatesQuery,
    CountryAggregate,
    DailyAggregate,
    DisplayCache,
    SalesRecord,
    SyncMeta,
    SyncTask,
    highwatermark_key,
)
from salesync.models.sale import ApiKeyInfo, FetchedRecord

_SALES_COLUMNS = tuple(column.name for column in SalesRecord.__table__.columns)


class DB:
    """Database service layer for sales, credentials and sync metadata."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///salesync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @property
    def supports_threaded_writes(self) -> bool:
        """Whether writes may run on a thread other than the caller's.

        An in-memory SQLite database lives on a single connection per thread,
        so a write from a worker thread would land in a different database.
        """
        if self.dialect != "sqlite":
            return True
        return self._engine.url.database not in (None, "", ":memory:")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._engine)

    # Sales records -------------------------------------------------------

    def _upsert_sales_statement(self) -> Any:
        table = SalesRecord.__table__
        if self.dialect == "postgresql":
            stmt = postgresql.insert(table)
        elif self.dialect == "sqlite":
            stmt = sqlite.insert(table)
        else:
            raise NotImplementedError(
                f"Upsert is not supported for dialect {self.dialect!r}"
            )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={name: stmt.excluded[name] for name in _SALES_COLUMNS if name != "id"},
        )

    def store_records(self, records: Sequence[FetchedRecord]) -> int:
        """Upsert sales records keyed by their unique key.

        Args:
            records: Fetched records, each carrying a deterministic `id`

        Returns:
            Number of records written
        """
        if not records:
            return 0

        rows = [{name: record[name] for name in _SALES_COLUMNS} for record in records]
        with self.session() as session:  # type: Session
            session.execute(self._upsert_sales_statement(), rows)
        return len(rows)

    def delete_records_for(self, api_key_id: str, date: str) -> int:
        """Delete all stored sales for a (credential, date) pair."""
        with self.session() as session:  # type: Session
            return delete_sales_for(session, api_key_id, date)

    def count_records(self, api_key_id: str | None = None) -> int:
        with self.session() as session:  # type: Session
            query = select(func.count()).select_from(SalesRecord)
            if api_key_id is not None:
                query = query.where(SalesRecord.api_key_id == api_key_id)
            return int(session.execute(query).scalar_one())

    def fetch_records(
        self,
        *,
        api_key_id: str | None = None,
        date: str | None = None,
    ) -> list[SalesRecord]:
        """Fetch stored sales ordered by date then id."""
        with self.session() as session:  # type: Session
            query = select(SalesRecord)
            if api_key_id is not None:
                query = query.where(SalesRecord.api_key_id == api_key_id)
            if date is not None:
                query = query.where(SalesRecord.date == date)
            records = list(
                session.scalars(query.order_by(SalesRecord.date, SalesRecord.id))
            )
            for record in records:
                session.expunge(record)
            return records

    def existing_dates(self, api_key_id: str) -> set[str]:
        with self.session() as session:  # type: Session
            query = (
                select(SalesRecord.date)
                .where(SalesRecord.api_key_id == api_key_id)
                .distinct()
            )
            return set(session.scalars(query))

    # Highwatermarks ------------------------------------------------------

    def get_highwatermark(self, api_key_id: str) -> int:
        """Return the committed highwatermark for a credential (0 if unset)."""
        with self.session() as session:  # type: Session
            meta = session.get(SyncMeta, highwatermark_key(api_key_id))
            if meta is None:
                return 0
            try:
                return int(meta.value)
            except ValueError:
                return 0

    def set_highwatermark(self, api_key_id: str, value: int) -> int:
        """Commit a highwatermark, never moving it backwards.

        Returns:
            The highwatermark stored after the call
        """
        with self.session() as session:  # type: Session
            key = highwatermark_key(api_key_id)
            meta = session.get(SyncMeta, key)
            if meta is None:
                session.add(SyncMeta(key=key, value=str(value)))
                return value

            try:
                current = int(meta.value)
            except ValueError:
                current = 0
            if value > current:
                meta.value = str(value)
                return value
            return current

    def log_changed_dates_query(
        self,
        *,
        api_key_id: str,
        highwatermark_in: int,
        highwatermark_out: int,
        dates_found: int,
    ) -> None:
        with self.session() as session:  # type: Session
            session.add(
                ChangedDatesQuery(
                    api_key_id=api_key_id,
                    highwatermark_in=highwatermark_in,
                    highwatermark_out=highwatermark_out,
                    dates_found=dates_found,
                )
            )

    # API keys ------------------------------------------------------------

    def add_api_key(
        self,
        *,
        key_id: str,
        secret: str,
        display_name: str | None = None,
    ) -> ApiKeyInfo:
        """Store a partner API key, replacing any key with the same id."""
        with self.session() as session:  # type: Session
            api_key = session.get(ApiKey, key_id)
            if api_key is None:
                api_key = ApiKey(id=key_id, secret=secret, key_hash=secret[-4:])
                session.add(api_key)
            else:
                api_key.secret = secret
                api_key.key_hash = secret[-4:]
            api_key.display_name = display_name
            session.flush()
            session.refresh(api_key)
            return _to_info(api_key)

    def get_api_key_secret(self, key_id: str) -> str | None:
        with self.session() as session:  # type: Session
            api_key = session.get(ApiKey, key_id)
            return api_key.secret if api_key else None

    def list_api_keys(self) -> list[ApiKeyInfo]:
        with self.session() as session:  # type: Session
            keys = session.scalars(
                select(ApiKey).order_by(ApiKey.created_at, ApiKey.id)
            )
            return [_to_info(api_key) for api_key in keys]

    def rename_api_key(
        self, key_id: str, display_name: str | None
    ) -> ApiKeyInfo | None:
        """Change a key's display name; None falls back to the hash label.

        Returns:
            The updated key, or None if no key has this id
        """
        with self.session() as session:  # type: Session
            api_key = session.get(ApiKey, key_id)
            if api_key is None:
                return None
            api_key.display_name = display_name
            session.flush()
            session.refresh(api_key)
            return _to_info(api_key)

    def remove_api_key(self, key_id: str) -> bool:
        """Delete a key together with its tasks, sales and highwatermark.

        Aggregates are left as they are; recompute them afterwards.

        Returns:
            True if the key existed
        """
        with self.session() as session:  # type: Session
            _delete_key_data(session, key_id)
            result = session.execute(delete(ApiKey).where(ApiKey.id == key_id))
            return bool(result.rowcount)

    # Data management -----------------------------------------------------

    def clear_data_for_key(self, key_id: str) -> int:
        """Forget everything synced for one key so the next sync refetches it.

        Deletes the key's sales and tasks and resets its highwatermark. The
        key itself is kept. Aggregates are left as they are; recompute them
        afterwards.

        Returns:
            Number of sales records deleted
        """
        with self.session() as session:  # type: Session
            return _delete_key_data(session, key_id)

    def clear_all_data(self) -> int:
        """Delete all synced data, keeping the configured API keys.

        Clears sales, tasks, aggregates and the display cache, and resets
        every highwatermark.

        Returns:
            Number of sales records deleted
        """
        with self.session() as session:  # type: Session
            result = session.execute(delete(SalesRecord))
            session.execute(delete(SyncTask))
            session.execute(delete(DailyAggregate))
            session.execute(delete(AppAggregate))
            session.execute(delete(CountryAggregate))
            session.execute(delete(DisplayCache))
            session.execute(
                delete(SyncMeta).where(
                    SyncMeta.key.startswith(HIGHWATERMARK_KEY_PREFIX)
                )
            )
            return int(result.rowcount or 0)


def _delete_key_data(session: Session, key_id: str) -> int:
    session.execute(delete(SyncTask).where(SyncTask.api_key_id == key_id))
    session.execute(delete(SyncMeta).where(SyncMeta.key == highwatermark_key(key_id)))
    result = session.execute(
        delete(SalesRecord).where(SalesRecord.api_key_id == key_id)
    )
    return int(result.rowcount or 0)


def delete_sales_for(session: Session, api_key_id: str, date: str) -> int:
    """Delete sales for (credential, date) inside an existing session."""
    result = session.execute(
        delete(SalesRecord).where(
            SalesRecord.api_key_id == api_key_id, SalesRecord.date == date
        )
    )
    return int(result.rowcount or 0)


def _to_info(api_key: ApiKey) -> ApiKeyInfo:
    return ApiKeyInfo(
        id=api_key.id,
        display_name=api_key.display_name,
        key_hash=api_key.key_hash,
        created_at=api_key.created_at,
    )
