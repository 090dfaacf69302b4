from __future__ import annotations

import pytest

from salesync.adapters.db.facade import DB
from salesync.aggregates.recompute import AggregateService


def test_recompute_with_no_records_clears_and_stores_empty_metrics(
    db: DB, make_record
) -> None:
    service = AggregateService(db)
    db.store_records([make_record()])
    service.recompute_all()
    db.delete_records_for("K1", "2024-01-01")
    steps: list[int] = []

    service.recompute_all(lambda message, percent: steps.append(percent))

    assert service.daily() == []
    assert service.apps() == []
    assert service.countries() == []
    metrics = service.global_metrics()
    assert metrics is not None
    assert metrics.total_records == 0
    assert metrics.grand_total == 0
    assert steps[-1] == 100
    assert steps == sorted(steps)


def test_recompute_groups_by_date_app_and_country(db: DB, make_record) -> None:
    db.store_records(
        [
            make_record(
                date="2024-01-01",
                packageid=1,
                app_name="Alpha",
                gross_sales_usd="10.00",
                units=1,
            ),
            make_record(
                date="2024-01-01",
                packageid=2,
                appid=200,
                country_code="DE",
                gross_sales_usd="5.00",
                units=2,
            ),
            make_record(
                date="2024-01-02",
                packageid=1,
                app_name="Alpha",
                gross_sales_usd="20.00",
                units=3,
            ),
        ]
    )
    service = AggregateService(db)
    steps: list[int] = []

    service.recompute_all(lambda message, percent: steps.append(percent))

    assert steps == [10, 30, 90, 100]

    daily = {row.date: (row.total_revenue, row.total_units) for row in service.daily()}
    assert daily == {"2024-01-01": (15.0, 3), "2024-01-02": (20.0, 3)}

    apps = service.apps()
    assert [(a.app_id, a.app_name) for a in apps] == [(100, "Alpha"), (200, "App 200")]
    assert apps[0].total_revenue == pytest.approx(30.0)
    assert apps[0].record_count == 2
    assert (apps[0].first_sale_date, apps[0].last_sale_date) == (
        "2024-01-01",
        "2024-01-02",
    )

    countries = service.countries()
    assert [c.country_code for c in countries] == ["US", "DE"]
    assert countries[0].total_units == 4


def test_global_metrics_sum_absolute_units(db: DB, make_record) -> None:
    db.store_records(
        [
            make_record(packageid=1, units=5, gross_units_returned=-2),
            make_record(packageid=2, units=1, gross_units_activated=4),
        ]
    )
    service = AggregateService(db)

    service.recompute_all()

    metrics = service.global_metrics()
    assert metrics is not None
    assert metrics.gross_sold == 6
    assert metrics.gross_returned == 2
    assert metrics.gross_activated == 4
    assert metrics.grand_total == 8
    assert metrics.total_records == 2


def test_global_metrics_missing_before_first_recompute(db: DB) -> None:
    assert AggregateService(db).global_metrics() is None
