from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
import numpy as np

from auction_intel.data_models import HistoricalSaleRecord, LotRecord, RankedLot, Site
from auction_intel.errors import InvalidInput
from auction_intel.similarity import SearchWindow, SimilarLotFinder, VehicleProfile
from intel_service.auction_data import AuctionDataClient
from intel_service.storage import PostgresStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComparableQuery:
    make: str
    model: str
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    mileage_min: Optional[int] = None
    mileage_max: Optional[int] = None
    damage_type: Optional[str] = None
    site: Optional[Site] = None
    limit: Optional[int] = None

    def validate(self) -> None:
        if not self.make.strip() or not self.model.strip():
            raise InvalidInput("make and model are required")
        if self.year_from is not None and self.year_to is not None and self.year_from > self.year_to:
            raise InvalidInput("yearFrom must not exceed yearTo")
        if self.mileage_min is not None and self.mileage_max is not None and self.mileage_min > self.mileage_max:
            raise InvalidInput("mileageMin must not exceed mileageMax")
        if self.limit is not None and self.limit <= 0:
            raise InvalidInput("limit must be positive")

    @property
    def window(self) -> SearchWindow:
        return SearchWindow(self.year_from, self.year_to, self.mileage_min, self.mileage_max)

    def profile(self) -> VehicleProfile:
        """Reference vehicle at the centre of the requested window."""
        year = _midpoint(self.year_from, self.year_to)
        mileage = _midpoint(self.mileage_min, self.mileage_max)
        return VehicleProfile(make=self.make, model=self.model, year=year, mileage=mileage)


def _midpoint(low: Optional[int], high: Optional[int]) -> Optional[int]:
    if low is None and high is None:
        return None
    if low is None:
        return high
    if high is None:
        return low
    return (low + high) // 2


@dataclass(frozen=True)
class PlatformStats:
    platform: str
    count: int
    average: Optional[float]
    minimum: Optional[float]
    maximum: Optional[float]


@dataclass(frozen=True)
class ComparableSearchResult:
    lots: tuple[RankedLot, ...]
    sites_queried: tuple[Site, ...]
    sites_failed: tuple[Site, ...]
    platform_stats: tuple[PlatformStats, ...]
    price_difference: Optional[float]


def platform_statistics(records: Sequence[HistoricalSaleRecord]) -> tuple[PlatformStats, ...]:
    """Per-platform sale statistics.

    Unpriced sales count but do not move the averages. A platform without
    priced sales reports no average, minimum or maximum.
    """
    out = []
    for site in Site:
        rows = [r for r in records if r.platform == site.platform]
        prices = np.array([r.price for r in rows if r.price is not None and r.price > 0], dtype=float)
        if prices.size == 0:
            out.append(PlatformStats(site.platform, len(rows), None, None, None))
            continue
        out.append(PlatformStats(
            platform=site.platform,
            count=len(rows),
            average=round(float(prices.mean()), 2),
            minimum=float(prices.min()),
            maximum=float(prices.max()),
        ))
    return tuple(out)


def _price_difference(stats: Sequence[PlatformStats]) -> Optional[float]:
    averages = [s.average for s in stats if s.average is not None]
    if len(averages) < 2:
        return None
    return round(abs(averages[0] - averages[1]), 2)


class ComparableSearch:
    """Ad-hoc comparable lookup, independent of the cached analysis pipeline."""

    def __init__(
        self,
        auction: AuctionDataClient,
        finder: SimilarLotFinder,
        store: PostgresStore | None = None,
    ) -> None:
        self.auction = auction
        self.finder = finder
        self.store = store

    async def _active(self, query: ComparableQuery, site: Site) -> list[LotRecord]:
        lots = await self.auction.search_active_lots(
            make=query.make,
            model=query.model,
            site=site,
            year_from=query.year_from,
            year_to=query.year_to,
            mileage_min=query.mileage_min,
            mileage_max=query.mileage_max,
            size=max(50, (query.limit or self.finder.config.limit) * 3),
        )
        if query.damage_type:
            needle = query.damage_type.casefold()
            lots = [lot for lot in lots if needle in (lot.damage_primary or "").casefold()]
        return lots

    async def _historical(self, query: ComparableQuery) -> list[HistoricalSaleRecord]:
        if self.store is None:
            return []
        try:
            return await self.store.fetch_comparable_sales(
                make=query.make,
                model=query.model,
                year_from=query.year_from,
                year_to=query.year_to,
                mileage_min=query.mileage_min,
                mileage_max=query.mileage_max,
                damage_type=query.damage_type,
            )
        except Exception as exc:
            logger.warning("Historical comparable query failed: %s", exc)
            return []

    async def search(self, query: ComparableQuery) -> ComparableSearchResult:
        query.validate()
        sites = (query.site,) if query.site is not None else tuple(Site)
        active, historical = await asyncio.gather(
            asyncio.gather(*(self._active(query, site) for site in sites), return_exceptions=True),
            self._historical(query),
        )

        candidates: list[LotRecord] = []
        failed: list[Site] = []
        for site, outcome in zip(sites, active):
            if isinstance(outcome, httpx.HTTPError):
                logger.warning("Active inventory query failed on %s: %s", site.platform, outcome)
                failed.append(site)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            candidates.extend(outcome)

        ranked = self.finder.rank(query.profile(), candidates, window=query.window, limit=query.limit)
        stats = platform_statistics(historical)
        return ComparableSearchResult(
            lots=ranked,
            sites_queried=sites,
            sites_failed=tuple(failed),
            platform_stats=stats,
            price_difference=_price_difference(stats),
        )
