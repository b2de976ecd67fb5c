from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from auction_intel.data_models import HistoricalSaleRecord, LotRecord, Site, VehicleIdentifier
from auction_intel.errors import NotFound, SourceDegraded
from auction_intel.identifiers import model_year_from_vin
from intel_service.auction_data import AuctionDataClient
from intel_service.history import HistoryStoreClient

logger = logging.getLogger(__name__)

_SITE_BY_PLATFORM = {"copart": Site.COPART, "iaai": Site.IAAI}


@dataclass(frozen=True)
class Resolution:
    lot: LotRecord
    # Set when resolution already had to read the history store.
    history: Optional[tuple[HistoricalSaleRecord, ...]] = None


def synthesize_lot(vin: str, records: tuple[HistoricalSaleRecord, ...]) -> LotRecord:
    """Minimal lot from the most recent sale; records are oldest first."""
    latest = records[-1]
    make = next((r.make for r in reversed(records) if r.make), "")
    model = next((r.model for r in reversed(records) if r.model), "")
    year = next((r.year for r in reversed(records) if r.year), None) or model_year_from_vin(vin)
    return LotRecord(
        lot_id=latest.lot_id,
        site=_SITE_BY_PLATFORM.get(latest.platform),
        vin=vin,
        year=year,
        make=make,
        model=model,
        mileage=latest.mileage,
        damage_primary=latest.damage,
        location=latest.location,
        source="history",
    )


class LotResolver:
    """Stateless resolution of a vehicle identifier to a LotRecord."""

    def __init__(self, auction: AuctionDataClient, history: HistoryStoreClient) -> None:
        self.auction = auction
        self.history = history

    async def get_live_lot(self, lot_id: int, site: Site) -> LotRecord:
        site_name = "Copart" if site is Site.COPART else "IAAI"
        try:
            lot = await self.auction.get_lot(lot_id, site)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Live lot lookup failed for %s on %s: %s", lot_id, site_name, exc)
            raise NotFound(f"Lot {lot_id} lookup failed on {site_name}") from exc
        if lot is None:
            raise NotFound(f"Lot {lot_id} not found on {site_name}")
        return lot

    async def _live_lot_for_vin(self, vin: str) -> LotRecord | None:
        try:
            lots = await self.auction.search_active_lots(vin=vin, size=10)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Active lot search by VIN failed for %s, falling back to history: %s", vin, exc)
            return None
        matches = [lot for lot in lots if lot.vin == vin]
        if not matches:
            return None
        # Prefer the lot with the latest auction date.
        matches.sort(key=lambda lot: (lot.auction_date is not None, lot.auction_date or 0, lot.lot_id or 0))
        return matches[-1]

    async def resolve(self, identifier: VehicleIdentifier) -> Resolution:
        if identifier.vin is None:
            return Resolution(lot=await self.get_live_lot(identifier.lot_id, identifier.site))

        vin = identifier.vin
        live = await self._live_lot_for_vin(vin)
        if live is not None:
            return Resolution(lot=live)

        try:
            records = await self.history.fetch(vin)
        except SourceDegraded as exc:
            raise NotFound(f"No live lot for VIN {vin} and history is unavailable") from exc
        if not records:
            raise NotFound(f"No live lot or auction history found for VIN {vin}")
        return Resolution(lot=synthesize_lot(vin, records), history=records)
