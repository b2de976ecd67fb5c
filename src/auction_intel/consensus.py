from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from auction_intel.config import ConsensusConfig
from auction_intel.data_models import (
    ConsensusResult,
    DegradedSource,
    MarketAvailable,
    MarketInsight,
    MarketUnavailable,
    PriceStats,
    Recommendation,
    SourceName,
    VisionAssessment,
    VisionAvailable,
    VisionUnavailable,
)
from auction_intel.history_stats import price_consistency

INSUFFICIENT_DATA = "insufficient data"


@dataclass(frozen=True)
class _Signal:
    source: SourceName
    score: float
    weight: float
    note: str


class ConsensusEngine:
    """
    Deterministic merge of the three signal sources into one recommendation.

    Each contributing source yields a score in [0, 100]. Scores are averaged
    with the configured weights renormalized over the sources that responded,
    then capped by a ceiling that grows with the number of contributing
    sources. BUY additionally requires that vision reported none of the
    excluded damage areas.
    """

    def __init__(self, config: ConsensusConfig | None = None) -> None:
        self.config = config or ConsensusConfig()

    def _vision_signal(self, vision: VisionAssessment) -> _Signal | DegradedSource:
        if isinstance(vision, VisionUnavailable):
            return DegradedSource(source="vision", reason=vision.reason)
        areas = ", ".join(a.value for a in vision.damage_areas) or "none reported"
        note = f"vision confidence {vision.confidence} across {vision.image_count} images (damage: {areas})"
        return _Signal("vision", float(vision.confidence), self.config.vision_weight, note)

    def _history_signal(self, stats: Optional[PriceStats], history_reason: Optional[str]) -> _Signal | DegradedSource:
        if stats is None:
            return DegradedSource(source="history", reason=history_reason or "no_priced_records")
        score = price_consistency(stats)
        note = (
            f"{stats.count} historical sales averaging ${stats.average:,.0f} "
            f"(range ${stats.minimum:,.0f}-${stats.maximum:,.0f}, consistency {score:.0f})"
        )
        return _Signal("history", score, self.config.history_weight, note)

    def _research_signal(self, market: MarketInsight) -> _Signal | DegradedSource:
        if isinstance(market, MarketUnavailable):
            return DegradedSource(source="research", reason=market.reason)
        words = len(market.narrative.split())
        coherent = words >= self.config.coherent_insight_min_words
        score = self.config.coherent_insight_score if coherent else self.config.weak_insight_score
        trend = market.trend.value if market.trend is not None else "unspecified"
        note = f"market research {'coherent' if coherent else 'thin'} (trend {trend})"
        return _Signal("research", score, self.config.research_weight, note)

    def evaluate(
        self,
        stats: Optional[PriceStats],
        vision: VisionAssessment,
        market: MarketInsight,
        *,
        history_reason: Optional[str] = None,
    ) -> ConsensusResult:
        """``history_reason`` explains absent ``stats`` (failure vs. empty history)."""
        outcomes = (
            self._vision_signal(vision),
            self._history_signal(stats, history_reason),
            self._research_signal(market),
        )
        signals = [o for o in outcomes if isinstance(o, _Signal)]
        degraded = tuple(o for o in outcomes if isinstance(o, DegradedSource))
        contributing = tuple(s.source for s in signals)

        if not signals:
            return ConsensusResult(
                recommendation=Recommendation.CAUTION,
                confidence=0,
                reasoning=self._reasoning([], degraded, 0, Recommendation.CAUTION, excluded=()),
                contributing=(),
                degraded=degraded,
            )

        total_weight = sum(s.weight for s in signals)
        weighted = sum(s.score * s.weight for s in signals) / total_weight if total_weight > 0 else 0.0
        ceiling = self.config.base_confidence_by_sources.get(len(signals), 100)
        confidence = int(round(weighted * ceiling / 100.0))
        confidence = max(1, min(100, confidence))

        excluded = self._excluded_areas(vision)
        if confidence >= self.config.buy_threshold and not excluded:
            recommendation = Recommendation.BUY
        else:
            recommendation = Recommendation.CAUTION

        return ConsensusResult(
            recommendation=recommendation,
            confidence=confidence,
            reasoning=self._reasoning(signals, degraded, confidence, recommendation, excluded=excluded),
            contributing=contributing,
            degraded=degraded,
        )

    def _excluded_areas(self, vision: VisionAssessment) -> tuple[str, ...]:
        if not isinstance(vision, VisionAvailable):
            return ()
        return tuple(a.value for a in vision.damage_areas if a in self.config.excluded_damage_areas)

    def _reasoning(
        self,
        signals: list[_Signal],
        degraded: tuple[DegradedSource, ...],
        confidence: int,
        recommendation: Recommendation,
        *,
        excluded: tuple[str, ...],
    ) -> str:
        if not signals:
            missing = "; ".join(f"{d.source}: {d.reason}" for d in degraded)
            return f"{INSUFFICIENT_DATA}: no source contributed ({missing}). Recommendation CAUTION."

        lines = [f"Sources contributing: {', '.join(s.source for s in signals)}."]
        lines.extend(f"- {s.note}." for s in signals)
        if degraded:
            lines.append("Degraded: " + "; ".join(f"{d.source} ({d.reason})" for d in degraded) + ".")
        lines.append(f"Combined confidence {confidence} (BUY threshold {self.config.buy_threshold}).")
        if excluded:
            lines.append(f"Excluded damage reported: {', '.join(excluded)}.")
        lines.append(f"Recommendation {recommendation.value}.")
        return "\n".join(lines)
