from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TypedDict


@dataclass(frozen=True, slots=True)
class ApiKeyInfo:
    """Credential metadata as seen by the sync engine.

    The secret itself stays in the credential store; the orchestrator asks for
    it by id when it needs it.
    """

    id: str
    display_name: str | None
    key_hash: str
    created_at: datetime | None = None

    @property
    def label(self) -> str:
        return self.display_name or f"Key ...{self.key_hash}"


class FetchedRecord(TypedDict):
    """
    One partner sales line item, enriched with lookup names.

    `id` is the deterministic unique key built from the record's identifying
    fields; storing the same logical record twice upserts it.
    """
    id: str
    api_key_id: str
    date: str
    line_item_type: str
    partnerid: int | None
    primary_appid: int
    packageid: int | None
    bundleid: int | None
    appid: int | None
    game_item_id: int | None
    country_code: str
    platform: str | None
    currency: str | None
    base_price: str | None
    sale_price: str | None
    avg_sale_price_usd: str | None
    package_sale_type: str | None
    gross_units_sold: int | None
    gross_units_returned: int | None
    gross_units_activated: int | None
    net_units_sold: int | None
    gross_sales_usd: float
    gross_returns_usd: float
    net_sales_usd: float
    net_tax_usd: float
    combined_discount_id: int | None
    total_discount_percentage: float | None
    additional_revenue_share_tier: int | None
    key_request_id: int | None
    viw_grant_partnerid: int | None
    # Lookup names resolved from the same response page
    app_name: str | None
    package_name: str | None
    bundle_name: str | None
    partner_name: str | None
    country_name: str | None
    region: str | None
    game_item_description: str | None
    game_item_category: str | None
    key_request_notes: str | None
    game_code_description: str | None
    combined_discount_name: str | None
    # Flattened fields used by the aggregates
    app_id: int
    units_sold: int
