"""Precomputed daily, app and country summaries over stored sales."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
import time
from typing import TypeVar

import loguru
from loguru import logger
from sqlalchemy import Select, String, cast, delete, func, insert, literal, select
from sqlalchemy.orm import Session

from salesync.adapters.db.facade import DB
from salesync.adapters.db.models import (
    AppAggregate,
    CountryAggregate,
    DailyAggregate,
    DisplayCache,
    SalesRecord,
)

GLOBAL_METRICS_CACHE_KEY = "global_unit_metrics"

AggregateProgressCallback = Callable[[str, int], None]

_Row = TypeVar("_Row")


@dataclass(frozen=True, slots=True)
class GlobalUnitMetrics:
    gross_sold: int
    gross_returned: int
    gross_activated: int
    grand_total: int
    total_records: int
    computed_at: float


class AggregateLogger:
    """Handles all logging for AggregateService."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def recompute_complete(self, total_records: int, elapsed_ms: int) -> None:
        self._logger.bind(records=total_records, elapsed_ms=elapsed_ms).info(
            "Recomputed aggregates for {} records in {}ms",
            total_records,
            elapsed_ms,
        )


class AggregateService:
    """Recomputes and serves derived summaries."""

    def __init__(self, db: DB) -> None:
        self._db = db
        self._logger = AggregateLogger()

    def recompute_all(
        self, on_progress: AggregateProgressCallback | None = None
    ) -> None:
        """Clear and rebuild every aggregate from stored sales.

        Safe to call with no records: aggregates are cleared and empty global
        metrics are stored. Progress is reported as increasing percentages
        ending at 100.
        """
        report = on_progress or (lambda message, percent: None)
        start = time.monotonic()
        report("Computing aggregates...", 10)

        with self._db.session() as session:  # type: Session
            total_records = int(
                session.execute(
                    select(func.count()).select_from(SalesRecord)
                ).scalar_one()
            )

            session.execute(delete(DailyAggregate))
            session.execute(delete(AppAggregate))
            session.execute(delete(CountryAggregate))

            if total_records == 0:
                self._store_global_metrics(
                    session,
                    GlobalUnitMetrics(
                        gross_sold=0,
                        gross_returned=0,
                        gross_activated=0,
                        grand_total=0,
                        total_records=0,
                        computed_at=time.time(),
                    ),
                )
                report("Complete!", 100)
                return

            report("Computing all aggregates...", 30)
            self._insert_daily(session)
            self._insert_apps(session)
            self._insert_countries(session)

            report("Computing global metrics...", 90)
            self._store_global_metrics(session, self._compute_global(session))

        self._logger.recompute_complete(
            total_records, int((time.monotonic() - start) * 1000)
        )
        report("Complete!", 100)

    def _insert_daily(self, session: Session) -> None:
        query = select(
            SalesRecord.date,
            func.coalesce(func.sum(SalesRecord.gross_sales_usd), 0.0),
            func.coalesce(func.sum(SalesRecord.units_sold), 0),
            func.count(),
        ).group_by(SalesRecord.date)
        session.execute(
            insert(DailyAggregate).from_select(
                ["date", "total_revenue", "total_units", "record_count"], query
            )
        )

    def _insert_apps(self, session: Session) -> None:
        fallback_name = literal("App ") + cast(SalesRecord.app_id, String)
        query = select(
            SalesRecord.app_id,
            func.coalesce(func.max(SalesRecord.app_name), func.max(fallback_name)),
            func.coalesce(func.sum(SalesRecord.gross_sales_usd), 0.0),
            func.coalesce(func.sum(SalesRecord.units_sold), 0),
            func.count(),
            func.min(SalesRecord.date),
            func.max(SalesRecord.date),
        ).group_by(SalesRecord.app_id)
        session.execute(
            insert(AppAggregate).from_select(
                [
                    "app_id",
                    "app_name",
                    "total_revenue",
                    "total_units",
                    "record_count",
                    "first_sale_date",
                    "last_sale_date",
                ],
                query,
            )
        )

    def _insert_countries(self, session: Session) -> None:
        query = select(
            SalesRecord.country_code,
            func.coalesce(func.sum(SalesRecord.gross_sales_usd), 0.0),
            func.coalesce(func.sum(SalesRecord.units_sold), 0),
            func.count(),
        ).group_by(SalesRecord.country_code)
        session.execute(
            insert(CountryAggregate).from_select(
                ["country_code", "total_revenue", "total_units", "record_count"],
                query,
            )
        )

    def _compute_global(self, session: Session) -> GlobalUnitMetrics:
        row = session.execute(
            select(
                func.coalesce(func.sum(func.abs(SalesRecord.gross_units_sold)), 0),
                func.coalesce(func.sum(func.abs(SalesRecord.gross_units_returned)), 0),
                func.coalesce(
                    func.sum(func.abs(SalesRecord.gross_units_activated)), 0
                ),
                func.count(),
            )
        ).one()
        gross_sold, gross_returned, gross_activated, total = (int(v) for v in row)
        return GlobalUnitMetrics(
            gross_sold=gross_sold,
            gross_returned=gross_returned,
            gross_activated=gross_activated,
            grand_total=gross_sold + gross_activated - gross_returned,
            total_records=total,
            computed_at=time.time(),
        )

    def _store_global_metrics(
        self, session: Session, metrics: GlobalUnitMetrics
    ) -> None:
        cached = session.get(DisplayCache, GLOBAL_METRICS_CACHE_KEY)
        now = datetime.now(UTC)
        if cached is None:
            session.add(
                DisplayCache(
                    key=GLOBAL_METRICS_CACHE_KEY,
                    value=asdict(metrics),
                    computed_at=now,
                )
            )
        else:
            cached.value = asdict(metrics)
            cached.computed_at = now

    # Readers -------------------------------------------------------------

    def daily(self) -> list[DailyAggregate]:
        return self._select(select(DailyAggregate).order_by(DailyAggregate.date))

    def apps(self) -> list[AppAggregate]:
        return self._select(
            select(AppAggregate).order_by(AppAggregate.total_revenue.desc())
        )

    def countries(self) -> list[CountryAggregate]:
        return self._select(
            select(CountryAggregate).order_by(CountryAggregate.total_revenue.desc())
        )

    def global_metrics(self) -> GlobalUnitMetrics | None:
        with self._db.session() as session:  # type: Session
            cached = session.get(DisplayCache, GLOBAL_METRICS_CACHE_KEY)
            if cached is None:
                return None
            return GlobalUnitMetrics(**cached.value)

    def _select(self, query: Select[tuple[_Row]]) -> list[_Row]:
        with self._db.session() as session:  # type: Session
            rows = list(session.scalars(query))
            for row in rows:
                session.expunge(row)
            return rows
