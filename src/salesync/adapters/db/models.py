from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import enum

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Float,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class TaskStatus(str, enum.Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


PENDING_STATUSES = (TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value)


class ApiKey(Base):
    """Partner API key (credential) model."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    key_hash: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class SyncTask(Base):
    """One unit of sync work: a (credential, date) pair."""

    __tablename__ = "sync_tasks"
    __table_args__ = (
        Index("idx_sync_tasks_status", "status"),
        Index("idx_sync_tasks_api_key", "api_key_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    api_key_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TaskStatus.TODO.value
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)


class SyncMeta(Base):
    """Key/value sync metadata (highwatermarks)."""

    __tablename__ = "sync_meta"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String, nullable=False)


class ChangedDatesQuery(Base):
    """Audit log of discovery calls that surfaced changed dates."""

    __tablename__ = "changed_dates_queries"

    query_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_key_id: Mapped[str] = mapped_column(String, nullable=False)
    highwatermark_in: Mapped[int] = mapped_column(Integer, nullable=False)
    highwatermark_out: Mapped[int] = mapped_column(Integer, nullable=False)
    dates_found: Mapped[int] = mapped_column(Integer, nullable=False)
    queried_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class SalesRecord(Base):
    """Partner sales line item, keyed by its deterministic unique key."""

    __tablename__ = "sales"
    __table_args__ = (
        Index("idx_sales_api_key_date", "api_key_id", "date"),
        Index("idx_sales_app_id", "app_id"),
        Index("idx_sales_country", "country_code"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    api_key_id: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[str] = mapped_column(String, nullable=False)
    line_item_type: Mapped[str] = mapped_column(String, nullable=False)
    partnerid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    primary_appid: Mapped[int] = mapped_column(Integer, nullable=False)
    packageid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bundleid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    appid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    game_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    country_code: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    base_price: Mapped[str | None] = mapped_column(String, nullable=True)
    sale_price: Mapped[str | None] = mapped_column(String, nullable=True)
    avg_sale_price_usd: Mapped[str | None] = mapped_column(String, nullable=True)
    package_sale_type: Mapped[str | None] = mapped_column(String, nullable=True)
    gross_units_sold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_units_returned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_units_activated: Mapped[int | None] = mapped_column(Integer, nullable=True)
    net_units_sold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gross_sales_usd: Mapped[float] = mapped_column(Float, nullable=False)
    gross_returns_usd: Mapped[float] = mapped_column(Float, nullable=False)
    net_sales_usd: Mapped[float] = mapped_column(Float, nullable=False)
    net_tax_usd: Mapped[float] = mapped_column(Float, nullable=False)
    combined_discount_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_discount_percentage: Mapped[float | None] = mapped_column(
        Float, nullable=True
    )
    additional_revenue_share_tier: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    key_request_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    viw_grant_partnerid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    app_name: Mapped[str | None] = mapped_column(String, nullable=True)
    package_name: Mapped[str | None] = mapped_column(String, nullable=True)
    bundle_name: Mapped[str | None] = mapped_column(String, nullable=True)
    partner_name: Mapped[str | None] = mapped_column(String, nullable=True)
    country_name: Mapped[str | None] = mapped_column(String, nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    game_item_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    game_item_category: Mapped[str | None] = mapped_column(String, nullable=True)
    key_request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    game_code_description: Mapped[str | None] = mapped_column(String, nullable=True)
    combined_discount_name: Mapped[str | None] = mapped_column(String, nullable=True)
    app_id: Mapped[int] = mapped_column(Integer, nullable=False)
    units_sold: Mapped[int] = mapped_column(Integer, nullable=False)


class DailyAggregate(Base):
    __tablename__ = "daily_aggregates"

    date: Mapped[str] = mapped_column(String, primary_key=True)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)


class AppAggregate(Base):
    __tablename__ = "app_aggregates"

    app_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    app_name: Mapped[str] = mapped_column(String, nullable=False)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    first_sale_date: Mapped[str] = mapped_column(String, nullable=False)
    last_sale_date: Mapped[str] = mapped_column(String, nullable=False)


class CountryAggregate(Base):
    __tablename__ = "country_aggregates"

    country_code: Mapped[str] = mapped_column(String, primary_key=True)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False)
    total_units: Mapped[int] = mapped_column(Integer, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)


class DisplayCache(Base):
    """Precomputed display values stored as JSON."""

    __tablename__ = "display_cache"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[dict[str, float | int]] = mapped_column(JSON, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)


@dataclass
class TaskStatusCounts:
    pending: int
    completed: int
    failed: int


def create_task_id(api_key_id: str, date: str) -> str:
    """Build the task id for a (credential, date) pair."""
    return f"{api_key_id}|{date}"


HIGHWATERMARK_KEY_PREFIX = "highwatermark:"


def highwatermark_key(api_key_id: str) -> str:
    return f"{HIGHWATERMARK_KEY_PREFIX}{api_key_id}"
