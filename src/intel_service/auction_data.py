from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx

from auction_intel.data_models import HistoricalSaleRecord, LotRecord, Site

logger = logging.getLogger(__name__)


class AuctionDataClient:
    """Async client for the auction-data provider.

    Endpoints (relative to ``base_url``):
      GET /cars/{lot_id}?site=   live lot by id
      GET /cars?...              active inventory search
      GET /history-cars?vin=     completed sales for a VIN, paginated
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.apicar.store/api",
        *,
        timeout: float = 8.0,
        history_page_size: int = 50,
        history_max_pages: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.history_page_size = history_page_size
        self.history_max_pages = history_max_pages
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            headers={"api-key": self.api_key, "accept": "application/json"},
            transport=self._transport,
        )

    async def get_lot(self, lot_id: int, site: Site) -> LotRecord | None:
        async with self._client() as client:
            resp = await client.get(f"/cars/{lot_id}", params={"site": int(site)})
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
        payload = _json(resp)
        if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
            payload = payload["data"]
        if isinstance(payload, list):
            payload = next((r for r in payload if isinstance(r, dict) and _int(r.get("lot_id")) == lot_id), None)
        if not isinstance(payload, dict) or not payload:
            return None
        lot = parse_lot(payload, default_site=site)
        if lot.lot_id != lot_id:
            logger.warning("Lot lookup for %s returned lot %s", lot_id, lot.lot_id)
            return None
        return lot

    async def search_active_lots(
        self,
        *,
        make: str | None = None,
        model: str | None = None,
        site: Site | None = None,
        year_from: int | None = None,
        year_to: int | None = None,
        mileage_min: int | None = None,
        mileage_max: int | None = None,
        vin: str | None = None,
        size: int = 50,
    ) -> list[LotRecord]:
        params: dict[str, Any] = {"size": size}
        optional = {
            "make": make,
            "model": model,
            "site": int(site) if site is not None else None,
            "year_from": year_from,
            "year_to": year_to,
            "odometer_from": mileage_min,
            "odometer_to": mileage_max,
            "vin": vin,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        async with self._client() as client:
            resp = await client.get("/cars", params=params)
            resp.raise_for_status()
        rows = _rows(_json(resp))
        return [parse_lot(row, default_site=site) for row in rows if row.get("lot_id") is not None]

    async def iter_history(self, vin: str, *, timeout: float | None = None) -> AsyncIterator[HistoricalSaleRecord]:
        """Yield completed sales for ``vin`` one page at a time."""
        async with self._client(timeout) as client:
            for page in range(1, self.history_max_pages + 1):
                resp = await client.get(
                    "/history-cars",
                    params={"vin": vin, "page": page, "size": self.history_page_size},
                )
                resp.raise_for_status()
                rows = _rows(_json(resp))
                for row in rows:
                    if str(row.get("vin", "")).upper() != vin or row.get("lot_id") is None:
                        continue
                    yield parse_history(row)
                if len(rows) < self.history_page_size:
                    return


def _json(resp: httpx.Response) -> Any:
    """Decode a provider body, reporting non-JSON bodies as an httpx error."""
    try:
        return resp.json()
    except ValueError as exc:
        raise httpx.DecodingError(f"Non-JSON body from {resp.request.url}", request=resp.request) from exc


def _rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)]
    if isinstance(payload, dict):
        data = payload.get("data") or payload.get("results") or []
        return [r for r in data if isinstance(r, dict)]
    return []


def parse_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> float | None:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _site(value: Any, default: Site | None) -> Site | None:
    if isinstance(value, str) and value.lower() in ("copart", "iaai"):
        return Site.COPART if value.lower() == "copart" else Site.IAAI
    try:
        return Site(int(value))
    except (TypeError, ValueError):
        return default


def parse_lot(row: dict[str, Any], default_site: Site | None = None) -> LotRecord:
    images = row.get("link_img_hd") or row.get("link_img_small") or []
    if isinstance(images, str):
        images = [images]
    vin = _text(row.get("vin"))
    return LotRecord(
        lot_id=_int(row.get("lot_id")),
        site=_site(row.get("site") or row.get("base_site"), default_site),
        vin=vin.upper() if vin else None,
        year=_int(row.get("year")),
        make=_text(row.get("make")) or "",
        model=_text(row.get("model")) or "",
        series=_text(row.get("series")),
        mileage=_int(row.get("odometer") or row.get("vehicle_mileage")),
        current_bid=_float(row.get("current_bid")),
        damage_primary=_text(row.get("damage_pr") or row.get("vehicle_damage")),
        damage_secondary=_text(row.get("damage_sec")),
        location=_text(row.get("location") or row.get("auction_location")),
        title_status=_text(row.get("document") or row.get("title") or row.get("vehicle_title")),
        image_urls=tuple(str(u) for u in images if u),
        auction_date=parse_datetime(row.get("auction_date")),
        source="live",
    )


def parse_history(row: dict[str, Any]) -> HistoricalSaleRecord:
    site = _site(row.get("site") or row.get("base_site"), None)
    return HistoricalSaleRecord(
        platform=site.platform if site is not None else str(row.get("base_site") or "unknown").lower(),
        lot_id=int(row["lot_id"]),
        sale_date=parse_datetime(row.get("sale_date")),
        price=_float(row.get("purchase_price") or row.get("price")),
        damage=_text(row.get("damage_pr") or row.get("vehicle_damage")),
        status=_text(row.get("sale_status") or row.get("status")),
        location=_text(row.get("location") or row.get("auction_location")),
        mileage=_int(row.get("odometer") or row.get("vehicle_mileage")),
        year=_int(row.get("year")),
        make=_text(row.get("make")),
        model=_text(row.get("model")),
    )
