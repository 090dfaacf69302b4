"""Transform partner sales pages into enriched `FetchedRecord`s."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from salesync.models.sale import FetchedRecord

if TYPE_CHECKING:
    from salesync.infra.clients.partner import DetailedSalesPage, SaleItem


@dataclass
class LookupMaps:
    """Name lookups built from the info arrays of one response page."""

    app_names: dict[int, str] = field(default_factory=dict)
    package_names: dict[int, str] = field(default_factory=dict)
    bundle_names: dict[int, str] = field(default_factory=dict)
    partner_names: dict[int, str] = field(default_factory=dict)
    countries: dict[str, tuple[str, str | None]] = field(default_factory=dict)
    game_items: dict[tuple[int, int], tuple[str | None, str | None]] = field(
        default_factory=dict
    )
    key_requests: dict[int, tuple[str | None, str | None]] = field(
        default_factory=dict
    )
    discount_names: dict[int, str] = field(default_factory=dict)


def build_lookup_maps(page: DetailedSalesPage) -> LookupMaps:
    maps = LookupMaps()
    for app in page.app_info:
        maps.app_names[app.appid] = app.app_name
    for pkg in page.package_info:
        maps.package_names[pkg.packageid] = pkg.package_name
    for bundle in page.bundle_info:
        maps.bundle_names[bundle.bundleid] = bundle.bundle_name
    for partner in page.partner_info:
        maps.partner_names[partner.partnerid] = partner.partner_name
    for country in page.country_info:
        maps.countries[country.country_code] = (country.country_name, country.region)
    for item in page.game_item_info:
        maps.game_items[(item.appid, item.game_item_id)] = (
            item.game_item_description,
            item.game_item_category,
        )
    for request in page.key_request_info:
        maps.key_requests[request.key_request_id] = (
            request.key_request_notes,
            request.game_code_description,
        )
    for discount in page.combined_discount_info:
        maps.discount_names[discount.combined_discount_id] = (
            discount.combined_discount_name
        )
    return maps


def parse_usd(value: str | None) -> float:
    """Parse a USD amount string, treating missing or garbage as 0."""
    if not value:
        return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def transform_sale_item(
    item: SaleItem, api_key_id: str, maps: LookupMaps
) -> FetchedRecord:
    primary_appid = item.primary_appid or item.appid or 0
    units_sold = item.net_units_sold
    if units_sold is None:
        units_sold = item.gross_units_sold
    if units_sold is None:
        units_sold = item.gross_units_activated or 0

    country_name, region = maps.countries.get(item.country_code, (None, None))
    game_item_description, game_item_category = (None, None)
    if item.appid and item.game_item_id:
        game_item_description, game_item_category = maps.game_items.get(
            (item.appid, item.game_item_id), (None, None)
        )
    key_request_notes, game_code_description = (None, None)
    if item.key_request_id:
        key_request_notes, game_code_description = maps.key_requests.get(
            item.key_request_id, (None, None)
        )

    record: FetchedRecord = {
        "id": "",
        "api_key_id": api_key_id,
        "date": item.date,
        "line_item_type": item.line_item_type,
        "partnerid": item.partnerid,
        "primary_appid": primary_appid,
        "packageid": item.packageid,
        "bundleid": item.bundleid,
        "appid": item.appid,
        "game_item_id": item.game_item_id,
        "country_code": item.country_code,
        "platform": item.platform,
        "currency": item.currency,
        "base_price": item.base_price,
        "sale_price": item.sale_price,
        "avg_sale_price_usd": item.avg_sale_price_usd,
        "package_sale_type": item.package_sale_type,
        "gross_units_sold": item.gross_units_sold,
        "gross_units_returned": item.gross_units_returned,
        "gross_units_activated": item.gross_units_activated,
        "net_units_sold": item.net_units_sold,
        "gross_sales_usd": parse_usd(item.gross_sales_usd),
        "gross_returns_usd": parse_usd(item.gross_returns_usd),
        "net_sales_usd": parse_usd(item.net_sales_usd),
        "net_tax_usd": parse_usd(item.net_tax_usd),
        "combined_discount_id": item.combined_discount_id,
        "total_discount_percentage": item.total_discount_percentage,
        "additional_revenue_share_tier": item.additional_revenue_share_tier,
        "key_request_id": item.key_request_id,
        "viw_grant_partnerid": item.viw_grant_partnerid,
        "app_name": maps.app_names.get(primary_appid),
        "package_name": maps.package_names.get(item.packageid)
        if item.packageid
        else None,
        "bundle_name": maps.bundle_names.get(item.bundleid) if item.bundleid else None,
        "partner_name": maps.partner_names.get(item.partnerid)
        if item.partnerid
        else None,
        "country_name": country_name,
        "region": region,
        "game_item_description": game_item_description,
        "game_item_category": game_item_category,
        "key_request_notes": key_request_notes,
        "game_code_description": game_code_description,
        "combined_discount_name": maps.discount_names.get(item.combined_discount_id)
        if item.combined_discount_id
        else None,
        "app_id": primary_appid,
        "units_sold": units_sold,
    }
    record["id"] = generate_unique_key(record)
    return record


def transform_page(page: DetailedSalesPage, api_key_id: str) -> list[FetchedRecord]:
    """Transform every result of a page, joining names from the same page."""
    if not page.results:
        return []
    maps = build_lookup_maps(page)
    return [transform_sale_item(item, api_key_id, maps) for item in page.results]


def generate_unique_key(record: FetchedRecord) -> str:
    """Build the deterministic key that identifies a logical sales record.

    key_request_id, base/sale price and combined_discount_id are left out:
    they vary between responses for what reports treat as one record.
    """
    parts: Iterable[object | None] = (
        record["partnerid"],
        record["date"],
        record["line_item_type"],
        record["platform"],
        record["country_code"],
        record["currency"],
        record["api_key_id"],
        record["packageid"],
        record["bundleid"],
        record["package_sale_type"],
        record["appid"],
        record["game_item_id"],
    )
    return "|".join("" if part is None else str(part) for part in parts)
