"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from loguru import logger
import pytest

from salesync.adapters.db.facade import DB
from salesync.infra.clients.partner import SaleItem
from salesync.infra.clients.transform import LookupMaps, transform_sale_item
from salesync.models.sale import FetchedRecord


@pytest.fixture
def db() -> DB:
    """In-memory database with the full schema."""
    database = DB("sqlite://")
    database.create_schema()
    return database


@pytest.fixture(autouse=True)
def _clear_salesync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env or shell settings out of config tests."""
    for name in (
        "SALESYNC_DATABASE_URL",
        "SALESYNC_API_BASE",
        "SALESYNC_WORKERS",
        "SALESYNC_HTTP_CONCURRENCY",
        "SALESYNC_FLUSH_THRESHOLD",
        "SALESYNC_HIGH_WATER",
        "SALESYNC_MAX_RETRIES",
        "SALESYNC_RETRY_FAILED",
        "SALESYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(
        lambda m: messages.append(m.record["message"]), level="DEBUG"
    )
    yield messages
    logger.remove(handler_id)


RecordFactory = Callable[..., FetchedRecord]


@pytest.fixture
def make_record() -> RecordFactory:
    """Build a realistic record by running a sale item through the transform."""

    def _make(
        *,
        api_key_id: str = "K1",
        date: str = "2024-01-01",
        packageid: int = 1,
        appid: int = 100,
        country_code: str = "US",
        gross_sales_usd: str = "10.00",
        units: int = 1,
        app_name: str | None = None,
        **fields: Any,
    ) -> FetchedRecord:
        item = SaleItem(
            date=date,
            line_item_type="Package",
            partnerid=1,
            primary_appid=appid,
            packageid=packageid,
            appid=appid,
            country_code=country_code,
            platform="windows",
            currency="USD",
            gross_units_sold=units,
            net_units_sold=units,
            gross_sales_usd=gross_sales_usd,
            net_sales_usd=gross_sales_usd,
            **fields,
        )
        maps = LookupMaps()
        if app_name is not None:
            maps.app_names[appid] = app_name
        return transform_sale_item(item, api_key_id, maps)

    return _make
