from __future__ import annotations

import asyncio
import logging
from typing import Any

from auction_intel.data_models import HistoricalSaleRecord
from auction_intel.errors import SourceDegraded
from auction_intel.history_stats import merge_records
from intel_service.auction_data import AuctionDataClient, parse_datetime
from intel_service.storage import PostgresStore, RedisCache

logger = logging.getLogger(__name__)


def _encode(record: HistoricalSaleRecord) -> dict[str, Any]:
    return {
        "platform": record.platform,
        "lot_id": record.lot_id,
        "sale_date": record.sale_date.isoformat() if record.sale_date else None,
        "price": record.price,
        "damage": record.damage,
        "status": record.status,
        "location": record.location,
        "mileage": record.mileage,
        "year": record.year,
        "make": record.make,
        "model": record.model,
    }


def _decode(payload: dict[str, Any]) -> HistoricalSaleRecord:
    return HistoricalSaleRecord(**{**payload, "sale_date": parse_datetime(payload.get("sale_date"))})


class HistoryStoreClient:
    """Cross-platform sale history for a VIN.

    Merges the internal sales_history table with the provider's history
    endpoint. An empty result is a valid answer; only the failure of both
    backends degrades the source.
    """

    def __init__(
        self,
        *,
        store: PostgresStore,
        auction: AuctionDataClient,
        cache: RedisCache | None = None,
        cache_ttl_seconds: int = 3_600,
        timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.auction = auction
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout

    async def _external(self, vin: str) -> list[HistoricalSaleRecord]:
        async def collect() -> list[HistoricalSaleRecord]:
            return [record async for record in self.auction.iter_history(vin, timeout=self.timeout)]

        return await asyncio.wait_for(collect(), timeout=self.timeout)

    async def fetch(self, vin: str) -> tuple[HistoricalSaleRecord, ...]:
        cache_key = f"history:{vin}"
        if self.cache is not None:
            cached = await self.cache.get_json(cache_key)
            if cached is not None:
                return tuple(_decode(p) for p in cached)

        internal, external = await asyncio.gather(
            self.store.fetch_sales_by_vin(vin),
            self._external(vin),
            return_exceptions=True,
        )
        if isinstance(internal, BaseException) and isinstance(external, BaseException):
            logger.warning("History unavailable for %s: internal=%r external=%r", vin, internal, external)
            raise SourceDegraded("history", "unavailable")
        partial = False
        if isinstance(internal, BaseException):
            logger.warning("Internal sales history failed for %s: %r", vin, internal)
            internal, partial = [], True
        if isinstance(external, BaseException):
            logger.warning("External sales history failed for %s: %r", vin, external)
            external, partial = [], True

        records = merge_records(internal, external)
        # Partial answers are served but not cached.
        if self.cache is not None and not partial:
            await self.cache.set_json(cache_key, [_encode(r) for r in records], ttl_seconds=self.cache_ttl_seconds)
        return records
