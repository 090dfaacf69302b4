from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import json
import time
from typing import Any, Self, cast
import urllib.error
import urllib.parse
import urllib.request

import loguru
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from salesync.core.concurrency import CancelToken, SyncCancelledError
from salesync.core.config import DEFAULT_API_BASE
from salesync.infra.clients.transform import transform_page
from salesync.models.sale import FetchedRecord

CHANGED_DATES_PATH = "/IPartnerFinancialsService/GetChangedDatesForPartner/v1"
DETAILED_SALES_PATH = "/IPartnerFinancialsService/GetDetailedSales/v1"
USER_AGENT = "salesync/1.0"


class PartnerApiError(Exception):
    """Error raised for partner API failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PartnerBaseModel(BaseModel):
    """Shared base for partner response models with a short parse alias."""

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class SaleItem(PartnerBaseModel):
    id: int | None = None
    date: str
    line_item_type: str
    partnerid: int | None = None
    primary_appid: int | None = None
    packageid: int | None = None
    bundleid: int | None = None
    appid: int | None = None
    game_item_id: int | None = None
    country_code: str
    platform: str | None = None
    currency: str | None = None
    base_price: str | None = None
    sale_price: str | None = None
    avg_sale_price_usd: str | None = None
    package_sale_type: str | None = None
    gross_units_sold: int | None = None
    gross_units_returned: int | None = None
    gross_units_activated: int | None = None
    net_units_sold: int | None = None
    gross_sales_usd: str | None = None
    gross_returns_usd: str | None = None
    net_sales_usd: str | None = None
    net_tax_usd: str | None = None
    combined_discount_id: int | None = None
    total_discount_percentage: float | None = None
    additional_revenue_share_tier: int | None = None
    key_request_id: int | None = None
    viw_grant_partnerid: int | None = None


class AppInfo(PartnerBaseModel):
    appid: int
    app_name: str


class PackageInfo(PartnerBaseModel):
    packageid: int
    package_name: str


class BundleInfo(PartnerBaseModel):
    bundleid: int
    bundle_name: str


class PartnerInfo(PartnerBaseModel):
    partnerid: int
    partner_name: str


class CountryInfo(PartnerBaseModel):
    country_code: str
    country_name: str
    region: str | None = None


class GameItemInfo(PartnerBaseModel):
    appid: int
    game_item_id: int
    game_item_description: str | None = None
    game_item_category: str | None = None


class KeyRequestInfo(PartnerBaseModel):
    key_request_id: int
    key_request_notes: str | None = None
    game_code_description: str | None = None


class CombinedDiscountInfo(PartnerBaseModel):
    combined_discount_id: int
    combined_discount_name: str
    total_discount_percentage: float | None = None


class DetailedSalesPage(PartnerBaseModel):
    results: list[SaleItem] = Field(default_factory=list)
    max_id: str | int | None = None
    app_info: list[AppInfo] = Field(default_factory=list)
    package_info: list[PackageInfo] = Field(default_factory=list)
    bundle_info: list[BundleInfo] = Field(default_factory=list)
    partner_info: list[PartnerInfo] = Field(default_factory=list)
    country_info: list[CountryInfo] = Field(default_factory=list)
    game_item_info: list[GameItemInfo] = Field(default_factory=list)
    key_request_info: list[KeyRequestInfo] = Field(default_factory=list)
    combined_discount_info: list[CombinedDiscountInfo] = Field(default_factory=list)

    @property
    def next_cursor(self) -> int:
        try:
            return int(self.max_id or 0)
        except (TypeError, ValueError):
            return 0


class DetailedSalesResponse(PartnerBaseModel):
    response: DetailedSalesPage = Field(default_factory=DetailedSalesPage)


class ChangedDatesBody(PartnerBaseModel):
    dates: list[str] = Field(default_factory=list)
    result_highwatermark: int | str | None = None


class ChangedDatesResponse(PartnerBaseModel):
    response: ChangedDatesBody = Field(default_factory=ChangedDatesBody)


@dataclass(frozen=True, slots=True)
class ChangedDates:
    dates: list[str]
    new_highwatermark: int


class PartnerClientLogger:
    """Handles all logging for PartnerApiClient."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def request_retry(
        self, path: str, attempt: int, max_retries: int, delay: float, reason: str
    ) -> None:
        self._logger.bind(path=path, attempt=attempt, delay=delay).warning(
            "Partner API request failed ({}), retrying in {:.1f}s (attempt {}/{})",
            reason,
            delay,
            attempt,
            max_retries,
        )

    def discovery_complete(self, dates_found: int, hw_in: int, hw_out: int) -> None:
        self._logger.bind(dates=dates_found, hw_in=hw_in, hw_out=hw_out).info(
            "Found {} changed dates (highwatermark {} -> {})",
            dates_found,
            hw_in,
            hw_out,
        )

    def page_fetched(self, date: str, page_num: int, count: int, cursor: int) -> None:
        self._logger.bind(date=date, page=page_num, results=count, cursor=cursor).debug(
            "Fetched page {} for {}: {} results (max_id {})",
            page_num,
            date,
            count,
            cursor,
        )

    def date_complete(self, date: str, pages: int, records: int) -> None:
        self._logger.bind(date=date, pages=pages, records=records).debug(
            "Fetched {} records for {} across {} pages", records, date, pages
        )


class PartnerApiClient:
    """Client for the partner financials endpoints.

    Requests are blocking (`urllib`); the async entry points run them in the
    default executor so many dates can be in flight at once.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_API_BASE,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base
        self._timeout = timeout
        self._sleep = sleep
        self._logger = PartnerClientLogger()

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PartnerApiError(
                f"Failed to parse partner response as JSON: {e}"
            ) from e

    def _get_once(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}{path}?{urllib.parse.urlencode(params)}"
        req = urllib.request.Request(  # noqa: S310
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            method="GET",
        )

        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:  # noqa: S310
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            retryable = e.code >= 500 or e.code == 429
            raise PartnerApiError(
                f"Partner API error: {e.code} {e.reason}",
                status_code=e.code,
                retryable=retryable,
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise PartnerApiError(
                f"Network error calling partner API: {e}", retryable=True
            ) from e

        return self._parse_json_response(body)

    def _get(
        self,
        path: str,
        params: dict[str, str],
        *,
        cancel_token: CancelToken | None = None,
    ) -> dict[str, Any]:
        """GET with exponential backoff on 5xx, 429 and network errors."""
        attempt = 0
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            attempt += 1
            try:
                return self._get_once(path, params)
            except PartnerApiError as e:
                if not e.retryable or attempt >= self._max_retries:
                    raise
                delay = self._backoff_base * (2 ** (attempt - 1))
                self._logger.request_retry(
                    path, attempt, self._max_retries, delay, str(e)
                )
                self._sleep(delay)

    # Blocking API --------------------------------------------------------

    def get_changed_dates(self, secret: str, highwatermark: int) -> ChangedDates:
        """Call GetChangedDatesForPartner and normalize the cursor."""
        params = {"key": secret, "highwatermark": str(highwatermark)}
        body = ChangedDatesResponse.parse(self._get(CHANGED_DATES_PATH, params))

        raw = body.response.result_highwatermark
        if raw is None or raw == "":
            new_highwatermark = highwatermark
        else:
            try:
                new_highwatermark = int(raw)
            except ValueError as e:
                raise PartnerApiError(
                    f"Invalid result_highwatermark in response: {raw!r}"
                ) from e

        self._logger.discovery_complete(
            len(body.response.dates), highwatermark, new_highwatermark
        )
        return ChangedDates(
            dates=list(body.response.dates), new_highwatermark=new_highwatermark
        )

    def get_detailed_sales_page(
        self,
        secret: str,
        date: str,
        *,
        highwatermark_id: int = 0,
        cancel_token: CancelToken | None = None,
    ) -> DetailedSalesPage:
        params = {
            "key": secret,
            "date": date,
            "highwatermark_id": str(highwatermark_id),
        }
        body = DetailedSalesResponse.parse(
            self._get(DETAILED_SALES_PATH, params, cancel_token=cancel_token)
        )
        return body.response

    # Async API -----------------------------------------------------------

    async def discover_changed_dates(
        self, secret: str, highwatermark: int
    ) -> ChangedDates:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self.get_changed_dates, secret, highwatermark
        )

    async def fetch_date(
        self,
        secret: str,
        api_key_id: str,
        date: str,
        cancel_token: CancelToken,
    ) -> list[FetchedRecord]:
        """Fetch every page of sales for one date.

        Pages are requested with an increasing `highwatermark_id` until the
        returned `max_id` stops advancing or a page comes back empty.

        Raises:
            SyncCancelledError: If the token is set before a page request
            PartnerApiError: If a request fails after retries
        """
        loop = asyncio.get_running_loop()
        records: list[FetchedRecord] = []
        cursor = 0
        pages = 0

        while True:
            if cancel_token.cancelled:
                raise SyncCancelledError()

            page = await loop.run_in_executor(
                None,
                lambda c=cursor: self.get_detailed_sales_page(
                    secret, date, highwatermark_id=c, cancel_token=cancel_token
                ),
            )
            pages += 1
            records.extend(transform_page(page, api_key_id))

            next_cursor = page.next_cursor
            self._logger.page_fetched(date, pages, len(page.results), next_cursor)
            if not page.results or next_cursor <= cursor:
                break
            cursor = next_cursor

        self._logger.date_complete(date, pages, len(records))
        return records
