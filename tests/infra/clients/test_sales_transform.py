from __future__ import annotations

from salesync.infra.clients.partner import DetailedSalesPage, SaleItem
from salesync.infra.clients.transform import (
    LookupMaps,
    generate_unique_key,
    parse_usd,
    transform_page,
    transform_sale_item,
)


def create_sale_item(**overrides: object) -> SaleItem:
    data: dict[str, object] = {
        "date": "2024-01-01",
        "line_item_type": "Package",
        "partnerid": 7,
        "packageid": 55,
        "appid": 100,
        "country_code": "DE",
        "platform": "windows",
        "currency": "EUR",
        "gross_units_sold": 3,
        "gross_sales_usd": "29.97",
    }
    data.update(overrides)
    return SaleItem.parse(data)


def test_transform_page_joins_lookup_names_from_same_page() -> None:
    page = DetailedSalesPage.parse(
        {
            "results": [
                create_sale_item(game_item_id=9, key_request_id=4).model_dump()
            ],
            "app_info": [{"appid": 100, "app_name": "Test Game"}],
            "package_info": [{"packageid": 55, "package_name": "Deluxe"}],
            "partner_info": [{"partnerid": 7, "partner_name": "Studio"}],
            "country_info": [
                {"country_code": "DE", "country_name": "Germany", "region": "Europe"}
            ],
            "game_item_info": [
                {
                    "appid": 100,
                    "game_item_id": 9,
                    "game_item_description": "Hat",
                    "game_item_category": "Cosmetic",
                }
            ],
            "key_request_info": [
                {"key_request_id": 4, "key_request_notes": "Press keys"}
            ],
            "unexpected_field": "ignored",
        }
    )

    [record] = transform_page(page, "K1")

    assert record["app_name"] == "Test Game"
    assert record["package_name"] == "Deluxe"
    assert record["partner_name"] == "Studio"
    assert record["country_name"] == "Germany"
    assert record["region"] == "Europe"
    assert record["game_item_description"] == "Hat"
    assert record["game_item_category"] == "Cosmetic"
    assert record["key_request_notes"] == "Press keys"
    assert record["bundle_name"] is None
    assert record["gross_sales_usd"] == 29.97


def test_transform_page_with_no_results_is_empty() -> None:
    assert transform_page(DetailedSalesPage(), "K1") == []


def test_units_sold_prefers_net_then_gross_sold_then_activated() -> None:
    maps = LookupMaps()

    net = transform_sale_item(
        create_sale_item(net_units_sold=2, gross_units_sold=5), "K1", maps
    )
    gross = transform_sale_item(create_sale_item(gross_units_sold=5), "K1", maps)
    activated = transform_sale_item(
        create_sale_item(gross_units_sold=None, gross_units_activated=4), "K1", maps
    )
    nothing = transform_sale_item(create_sale_item(gross_units_sold=None), "K1", maps)

    assert [net["units_sold"], gross["units_sold"], activated["units_sold"]] == [
        2,
        5,
        4,
    ]
    assert nothing["units_sold"] == 0


def test_primary_appid_falls_back_to_appid() -> None:
    record = transform_sale_item(create_sale_item(), "K1", LookupMaps())
    explicit = transform_sale_item(
        create_sale_item(primary_appid=200), "K1", LookupMaps()
    )

    assert record["primary_appid"] == record["app_id"] == 100
    assert explicit["app_id"] == 200


def test_unique_key_ignores_volatile_fields() -> None:
    base = transform_sale_item(create_sale_item(), "K1", LookupMaps())
    repriced = transform_sale_item(
        create_sale_item(base_price="9.99", key_request_id=12, gross_sales_usd="1"),
        "K1",
        LookupMaps(),
    )
    other_country = transform_sale_item(
        create_sale_item(country_code="FR"), "K1", LookupMaps()
    )
    other_key = transform_sale_item(create_sale_item(), "K2", LookupMaps())

    assert base["id"] == repriced["id"]
    assert base["id"] != other_country["id"]
    assert base["id"] != other_key["id"]
    assert generate_unique_key(base) == base["id"]
    assert base["id"] == "7|2024-01-01|Package|windows|DE|EUR|K1|55|||100|"


def test_parse_usd_tolerates_missing_and_garbage() -> None:
    assert parse_usd(None) == 0.0
    assert parse_usd("") == 0.0
    assert parse_usd("n/a") == 0.0
    assert parse_usd("-4.50") == -4.5
