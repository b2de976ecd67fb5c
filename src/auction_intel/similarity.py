from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from auction_intel.config import SimilarityConfig
from auction_intel.data_models import LotRecord, RankedLot, Site


@dataclass(frozen=True)
class VehicleProfile:
    make: str
    model: str
    year: Optional[int]
    mileage: Optional[int]
    lot_id: Optional[int] = None
    site: Optional[Site] = None

    @classmethod
    def from_lot(cls, lot: LotRecord) -> VehicleProfile:
        return cls(
            make=lot.make,
            model=lot.model,
            year=lot.year,
            mileage=lot.mileage,
            lot_id=lot.lot_id,
            site=lot.site,
        )


@dataclass(frozen=True)
class SearchWindow:
    year_from: Optional[int]
    year_to: Optional[int]
    mileage_min: Optional[int]
    mileage_max: Optional[int]


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").split()).casefold()


def search_window(profile: VehicleProfile, config: SimilarityConfig | None = None) -> SearchWindow:
    cfg = config or SimilarityConfig()
    year_from = year_to = None
    if profile.year:
        year_from, year_to = profile.year - cfg.year_window, profile.year + cfg.year_window
    mileage_min = mileage_max = None
    if profile.mileage is not None:
        mileage_min = max(0, profile.mileage - cfg.mileage_window)
        mileage_max = profile.mileage + cfg.mileage_window
    return SearchWindow(year_from, year_to, mileage_min, mileage_max)


class SimilarLotFinder:
    """Ranks active lots by year and mileage distance from a profile."""

    def __init__(self, config: SimilarityConfig | None = None) -> None:
        self.config = config or SimilarityConfig()

    def _is_self(self, profile: VehicleProfile, lot: LotRecord) -> bool:
        return (
            profile.lot_id is not None
            and lot.lot_id == profile.lot_id
            and (profile.site is None or lot.site == profile.site)
        )

    def _in_window(self, lot: LotRecord, window: SearchWindow) -> bool:
        if window.year_from is not None or window.year_to is not None:
            if lot.year is None:
                return False
            if window.year_from is not None and lot.year < window.year_from:
                return False
            if window.year_to is not None and lot.year > window.year_to:
                return False
        # Unknown mileage stays in; the ranking charges it the full window.
        if lot.mileage is not None:
            if window.mileage_min is not None and lot.mileage < window.mileage_min:
                return False
            if window.mileage_max is not None and lot.mileage > window.mileage_max:
                return False
        return True

    def rank(
        self,
        profile: VehicleProfile,
        candidates: Iterable[LotRecord],
        *,
        window: SearchWindow | None = None,
        limit: int | None = None,
    ) -> tuple[RankedLot, ...]:
        window = window or search_window(profile, self.config)
        limit = self.config.limit if limit is None else limit
        make, model = _norm(profile.make), _norm(profile.model)
        if not make or not model or limit <= 0:
            return ()

        seen: set[tuple[Optional[int], Optional[Site]]] = set()
        ranked: list[RankedLot] = []
        for lot in candidates:
            if lot.lot_id is None or self._is_self(profile, lot):
                continue
            if _norm(lot.make) != make or _norm(lot.model) != model:
                continue
            if not self._in_window(lot, window):
                continue
            identity = (lot.lot_id, lot.site)
            if identity in seen:
                continue
            seen.add(identity)

            year_gap = abs(lot.year - profile.year) if lot.year and profile.year else self.config.year_window
            if lot.mileage is not None and profile.mileage is not None:
                mileage_gap = abs(lot.mileage - profile.mileage)
            else:
                mileage_gap = self.config.mileage_window
            distance = round(year_gap + mileage_gap / self.config.miles_per_year_equivalent, 4)
            ranked.append(RankedLot(lot=lot, year_gap=year_gap, mileage_gap=mileage_gap, distance=distance))

        ranked.sort(key=lambda r: (r.distance, r.lot.lot_id, int(r.lot.site or 0)))
        return tuple(ranked[:limit])
