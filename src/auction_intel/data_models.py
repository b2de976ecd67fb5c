from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Literal, Optional, Union


class Site(IntEnum):
    COPART = 1
    IAAI = 2

    @property
    def platform(self) -> str:
        return "copart" if self is Site.COPART else "iaai"


class Recommendation(str, Enum):
    BUY = "BUY"
    CAUTION = "CAUTION"


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class DamageArea(str, Enum):
    FRONT = "front"
    REAR = "rear"
    SIDE = "side"
    ROOF = "roof"
    UNDERCARRIAGE = "undercarriage"
    INTERIOR = "interior"
    GLASS = "glass"
    MECHANICAL = "mechanical"
    STRUCTURAL = "structural"
    FRAME = "frame"
    FLOOD = "flood"
    FIRE = "fire"
    OTHER = "other"


SourceName = Literal["vision", "history", "research"]


@dataclass(frozen=True)
class VehicleIdentifier:
    vin: Optional[str] = None
    lot_id: Optional[int] = None
    site: Optional[Site] = None

    @property
    def key(self) -> str:
        if self.vin:
            return self.vin
        return f"{self.lot_id}:{int(self.site)}"


@dataclass(frozen=True)
class LotRecord:
    lot_id: Optional[int]
    site: Optional[Site]
    vin: Optional[str]
    year: Optional[int]
    make: str
    model: str
    series: Optional[str] = None
    mileage: Optional[int] = None
    current_bid: Optional[float] = None
    damage_primary: Optional[str] = None
    damage_secondary: Optional[str] = None
    location: Optional[str] = None
    title_status: Optional[str] = None
    image_urls: tuple[str, ...] = ()
    auction_date: Optional[datetime] = None
    source: Literal["live", "history"] = "live"

    @property
    def description(self) -> str:
        parts = [str(self.year) if self.year else "", self.make, self.model, self.series or ""]
        return " ".join(p for p in parts if p).strip()


@dataclass(frozen=True)
class HistoricalSaleRecord:
    platform: str
    lot_id: int
    sale_date: Optional[datetime]
    price: Optional[float]
    damage: Optional[str]
    status: Optional[str]
    location: Optional[str] = None
    mileage: Optional[int] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class PriceStats:
    count: int
    average: float
    minimum: float
    maximum: float
    most_recent: float
    stdev: float


# ── Tagged variants for provider signals ────────────────────────────

@dataclass(frozen=True)
class VisionAvailable:
    image_count: int
    summary: str
    damage_areas: tuple[DamageArea, ...]
    confidence: int
    repair_cost_low: Optional[float] = None
    repair_cost_high: Optional[float] = None
    has_images: bool = True
    status: Literal["available"] = field(default="available", init=False)


@dataclass(frozen=True)
class VisionUnavailable:
    reason: str
    has_images: bool
    image_count: int = 0
    status: Literal["unavailable"] = field(default="unavailable", init=False)


VisionAssessment = Union[VisionAvailable, VisionUnavailable]


@dataclass(frozen=True)
class MarketAvailable:
    narrative: str
    trend: Optional[Trend] = None
    sources: tuple[str, ...] = ()
    status: Literal["available"] = field(default="available", init=False)


@dataclass(frozen=True)
class MarketUnavailable:
    reason: str
    status: Literal["unavailable"] = field(default="unavailable", init=False)


MarketInsight = Union[MarketAvailable, MarketUnavailable]


@dataclass(frozen=True)
class DegradedSource:
    source: SourceName
    reason: str


@dataclass(frozen=True)
class ConsensusResult:
    recommendation: Recommendation
    confidence: int
    reasoning: str
    contributing: tuple[SourceName, ...]
    degraded: tuple[DegradedSource, ...]


@dataclass(frozen=True)
class RankedLot:
    lot: LotRecord
    year_gap: int
    mileage_gap: int
    distance: float


@dataclass(frozen=True)
class PricingSummary:
    estimated_value: Optional[float]
    current_bid: Optional[float]
    bid_to_value_ratio: Optional[float]


@dataclass(frozen=True)
class AnalysisResult:
    key: str
    lot: LotRecord
    history: tuple[HistoricalSaleRecord, ...]
    history_stats: Optional[PriceStats]
    vision: VisionAssessment
    market: MarketInsight
    consensus: ConsensusResult
    similar_lots: tuple[RankedLot, ...]
    pricing: PricingSummary
    analyzed_at: datetime
    timed_out: bool = False
    cached: bool = False

    def as_cached(self) -> AnalysisResult:
        return replace(self, cached=True)
