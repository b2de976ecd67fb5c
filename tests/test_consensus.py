import pytest

from auction_intel.config import ConsensusConfig
from auction_intel.consensus import INSUFFICIENT_DATA, ConsensusEngine
from auction_intel.data_models import (
    DamageArea,
    MarketAvailable,
    MarketUnavailable,
    PriceStats,
    Recommendation,
    VisionAvailable,
    VisionUnavailable,
)

from fakes import COHERENT_NARRATIVE


def _stats(average=8200.0, stdev=160.0, count=3):
    return PriceStats(count=count, average=average, minimum=average - 200, maximum=average + 200,
                      most_recent=average, stdev=stdev)


def _vision(confidence=80, areas=(DamageArea.FRONT,)):
    return VisionAvailable(image_count=4, summary="front damage", damage_areas=tuple(areas), confidence=confidence)


NO_VISION = VisionUnavailable(reason="no_images", has_images=False)
NO_MARKET = MarketUnavailable(reason="not_configured")


def test_all_sources_degraded_is_caution_zero():
    result = ConsensusEngine().evaluate(None, NO_VISION, NO_MARKET, history_reason="no_records")
    assert result.recommendation is Recommendation.CAUTION
    assert result.confidence == 0
    assert result.contributing == ()
    assert {d.source for d in result.degraded} == {"vision", "history", "research"}
    assert result.reasoning.startswith(INSUFFICIENT_DATA)


def test_vision_and_consistent_history_recommend_buy():
    result = ConsensusEngine().evaluate(_stats(), _vision(80), NO_MARKET)
    assert result.recommendation is Recommendation.BUY
    assert result.confidence >= 60
    assert result.contributing == ("vision", "history")
    assert [d.source for d in result.degraded] == ["research"]


@pytest.mark.parametrize("area", [DamageArea.STRUCTURAL, DamageArea.FRAME, DamageArea.FLOOD, DamageArea.FIRE])
def test_excluded_damage_area_blocks_buy(area):
    market = MarketAvailable(narrative=COHERENT_NARRATIVE)
    result = ConsensusEngine().evaluate(_stats(), _vision(95, (DamageArea.FRONT, area)), market)
    assert result.confidence >= 60
    assert result.recommendation is Recommendation.CAUTION
    assert area.value in result.reasoning


def test_single_source_is_capped():
    market = MarketAvailable(narrative=COHERENT_NARRATIVE)
    result = ConsensusEngine().evaluate(None, NO_VISION, market, history_reason="no_records")
    assert result.contributing == ("research",)
    assert result.confidence == 50
    assert result.recommendation is Recommendation.CAUTION


def test_contributing_source_never_yields_zero():
    thin = MarketAvailable(narrative="prices unclear")
    result = ConsensusEngine().evaluate(None, _vision(0), thin, history_reason="no_records")
    assert result.contributing == ("vision", "research")
    assert 1 <= result.confidence <= 100


def test_volatile_history_lowers_confidence():
    engine = ConsensusEngine()
    steady = engine.evaluate(_stats(stdev=100.0), _vision(70), NO_MARKET)
    volatile = engine.evaluate(_stats(stdev=6000.0), _vision(70), NO_MARKET)
    assert volatile.confidence < steady.confidence


def test_buy_threshold_is_configurable():
    strict = ConsensusEngine(ConsensusConfig(buy_threshold=95))
    result = strict.evaluate(_stats(), _vision(80), NO_MARKET)
    assert result.recommendation is Recommendation.CAUTION


def test_reasoning_is_deterministic():
    engine = ConsensusEngine()
    market = MarketAvailable(narrative=COHERENT_NARRATIVE)
    first = engine.evaluate(_stats(), _vision(), market)
    second = engine.evaluate(_stats(), _vision(), market)
    assert first == second


def test_history_reason_is_reported():
    result = ConsensusEngine().evaluate(None, _vision(), NO_MARKET, history_reason="unavailable")
    reasons = {d.source: d.reason for d in result.degraded}
    assert reasons["history"] == "unavailable"
    assert reasons["research"] == "not_configured"
