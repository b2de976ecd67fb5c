from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from auction_intel.data_models import DamageArea

BUY_CONFIDENCE_THRESHOLD = 60

EXCLUDED_DAMAGE_AREAS: frozenset[DamageArea] = frozenset(
    {DamageArea.STRUCTURAL, DamageArea.FRAME, DamageArea.FLOOD, DamageArea.FIRE}
)

# Ceiling applied to the weighted score by number of contributing sources.
BASE_CONFIDENCE_BY_SOURCES: Dict[int, int] = {0: 0, 1: 50, 2: 80, 3: 100}


@dataclass(frozen=True)
class ConsensusConfig:
    buy_threshold: int = BUY_CONFIDENCE_THRESHOLD
    vision_weight: float = 0.50
    history_weight: float = 0.30
    research_weight: float = 0.20
    coherent_insight_min_words: int = 12
    coherent_insight_score: float = 100.0
    weak_insight_score: float = 50.0
    excluded_damage_areas: frozenset[DamageArea] = EXCLUDED_DAMAGE_AREAS
    base_confidence_by_sources: Dict[int, int] = field(
        default_factory=lambda: dict(BASE_CONFIDENCE_BY_SOURCES)
    )


@dataclass(frozen=True)
class SimilarityConfig:
    year_window: int = 2
    mileage_window: int = 30_000
    limit: int = 20
    miles_per_year_equivalent: float = 12_000.0
