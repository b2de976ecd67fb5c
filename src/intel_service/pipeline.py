from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from auction_intel.consensus import ConsensusEngine
from auction_intel.data_models import (
    AnalysisResult,
    HistoricalSaleRecord,
    LotRecord,
    MarketInsight,
    MarketUnavailable,
    RankedLot,
    Site,
    VehicleIdentifier,
    VisionAssessment,
    VisionUnavailable,
)
from auction_intel.errors import InvalidInput, NotFound, SourceDegraded
from auction_intel.history_stats import compute_price_stats, summarize_pricing
from auction_intel.identifiers import lot_identifier, normalize_vin, vin_identifier
from auction_intel.similarity import SimilarLotFinder, VehicleProfile, search_window
from intel_service.auction_data import AuctionDataClient
from intel_service.coordinator import AnalysisCoordinator
from intel_service.history import HistoryStoreClient
from intel_service.lots import LotResolver, Resolution
from intel_service.metrics import Metrics
from intel_service.research import MarketResearchClient
from intel_service.storage import PostgresStore
from intel_service.vision import VisionAssessorClient

logger = logging.getLogger(__name__)

PIPELINE_TIMEOUT = "pipeline_timeout"


class AnalysisPipeline:
    """Resolve, fan out to the signal sources, merge, rank comparables.

    Each execution runs under one outer budget. Sources still pending when
    it lapses are cancelled and recorded as degraded; the partial result is
    returned with ``timed_out`` set.
    """

    def __init__(
        self,
        *,
        resolver: LotResolver,
        history: HistoryStoreClient,
        vision: VisionAssessorClient,
        research: MarketResearchClient,
        auction: AuctionDataClient,
        coordinator: AnalysisCoordinator,
        store: PostgresStore | None = None,
        consensus: ConsensusEngine | None = None,
        finder: SimilarLotFinder | None = None,
        timeout_seconds: float = 30.0,
        metrics: Metrics | None = None,
    ) -> None:
        self.resolver = resolver
        self.history = history
        self.vision = vision
        self.research = research
        self.auction = auction
        self.coordinator = coordinator
        self.store = store
        self.consensus = consensus or ConsensusEngine()
        self.finder = finder or SimilarLotFinder()
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics or Metrics()

    # ── Entry points ────────────────────────────────────────────────

    async def analyze_vin(self, raw_vin: Any) -> AnalysisResult:
        identifier = vin_identifier(raw_vin)
        return await self._coordinated(identifier.key, identifier=identifier)

    async def analyze_lot(self, lot_id: Any, site: Any) -> AnalysisResult:
        identifier = lot_identifier(lot_id, site)
        lot = await self.resolver.get_live_lot(identifier.lot_id, identifier.site)
        key = identifier.key
        if lot.vin:
            try:
                key = normalize_vin(lot.vin)
            except InvalidInput:
                logger.info("Lot %s carries malformed VIN %r, keying by lot", key, lot.vin)
        return await self._coordinated(key, resolution=Resolution(lot=lot))

    async def live_lot(self, lot_id: Any, site: Any) -> LotRecord:
        identifier = lot_identifier(lot_id, site)
        return await self.resolver.get_live_lot(identifier.lot_id, identifier.site)

    async def _coordinated(
        self,
        key: str,
        *,
        identifier: VehicleIdentifier | None = None,
        resolution: Resolution | None = None,
    ) -> AnalysisResult:
        t0 = time.monotonic()
        result = await self.coordinator.run(key, lambda: self._execute(key, identifier, resolution))
        self.metrics.incr("analysis_cache_hit" if result.cached else "analysis_served")
        self.metrics.record_latency("analyze", time.monotonic() - t0)
        return result

    # ── Execution ───────────────────────────────────────────────────

    async def _execute(
        self,
        key: str,
        identifier: VehicleIdentifier | None,
        resolution: Resolution | None,
    ) -> AnalysisResult:
        self.metrics.incr("pipeline_executions")
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.timeout_seconds

        if resolution is None:
            try:
                resolution = await asyncio.wait_for(self.resolver.resolve(identifier), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise NotFound(f"Lookup for {key} timed out") from None
        lot = resolution.lot

        tasks: dict[str, asyncio.Task] = {
            "vision": asyncio.create_task(self.vision.assess(lot)),
            "research": asyncio.create_task(self.research.research(lot)),
            "inventory": asyncio.create_task(self._candidates(lot)),
        }
        if resolution.history is None and lot.vin:
            tasks["history"] = asyncio.create_task(self.history.fetch(lot.vin))

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=max(0.0, deadline - loop.time()))
        finally:
            stragglers = [t for t in tasks.values() if not t.done()]
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        timed_out = bool(pending)
        if timed_out:
            names = sorted(name for name, task in tasks.items() if task in pending)
            logger.warning("Pipeline budget exceeded for %s, pending: %s", key, ", ".join(names),
                           extra={"analysis_key": key})

        vision = self._vision_outcome(lot, tasks["vision"], pending)
        market = self._market_outcome(tasks["research"], pending)
        history, history_reason = self._history_outcome(resolution, tasks.get("history"), pending)
        similar = self._similar_outcome(lot, tasks["inventory"], pending)

        stats = compute_price_stats(history)
        if stats is None and history_reason is None:
            history_reason = "no_priced_records"
        consensus = self.consensus.evaluate(stats, vision, market, history_reason=history_reason)
        for degraded in consensus.degraded:
            self.metrics.incr(f"source_degraded_{degraded.source}")

        result = AnalysisResult(
            key=key,
            lot=lot,
            history=history,
            history_stats=stats,
            vision=vision,
            market=market,
            consensus=consensus,
            similar_lots=similar,
            pricing=summarize_pricing(stats, lot.current_bid),
            analyzed_at=datetime.now(timezone.utc),
            timed_out=timed_out,
        )
        await self._log_result(result)
        logger.info(
            "Analysis for %s: %s at %d in %.2fs (contributing: %s)",
            key, consensus.recommendation.value, consensus.confidence, loop.time() - started,
            ", ".join(consensus.contributing) or "none",
            extra={"analysis_key": key},
        )
        return result

    async def _candidates(self, lot: LotRecord) -> list[LotRecord]:
        profile = VehicleProfile.from_lot(lot)
        if not profile.make or not profile.model:
            return []
        window = search_window(profile, self.finder.config)
        sites = [lot.site] if lot.site is not None else list(Site)
        batches = await asyncio.gather(*(
            self.auction.search_active_lots(
                make=profile.make,
                model=profile.model,
                site=site,
                year_from=window.year_from,
                year_to=window.year_to,
                mileage_min=window.mileage_min,
                mileage_max=window.mileage_max,
                size=max(50, self.finder.config.limit * 3),
            )
            for site in sites
        ))
        return [candidate for batch in batches for candidate in batch]

    # ── Fan-in helpers ──────────────────────────────────────────────

    def _vision_outcome(self, lot: LotRecord, task: asyncio.Task, pending: set) -> VisionAssessment:
        if task in pending:
            count = min(len(lot.image_urls), self.vision.max_images)
            return VisionUnavailable(reason=PIPELINE_TIMEOUT, has_images=bool(lot.image_urls), image_count=count)
        if task.exception() is not None:
            logger.warning("Vision task failed: %r", task.exception(), extra={"source": "vision"})
            return VisionUnavailable(reason="provider_error", has_images=bool(lot.image_urls))
        return task.result()

    def _market_outcome(self, task: asyncio.Task, pending: set) -> MarketInsight:
        if task in pending:
            return MarketUnavailable(reason=PIPELINE_TIMEOUT)
        if task.exception() is not None:
            logger.warning("Research task failed: %r", task.exception(), extra={"source": "research"})
            return MarketUnavailable(reason="provider_error")
        return task.result()

    def _history_outcome(
        self,
        resolution: Resolution,
        task: Optional[asyncio.Task],
        pending: set,
    ) -> tuple[tuple[HistoricalSaleRecord, ...], Optional[str]]:
        if resolution.history is not None:
            records = resolution.history
        elif task is None:
            return (), "no_vin"
        elif task in pending:
            return (), PIPELINE_TIMEOUT
        elif task.exception() is not None:
            exc = task.exception()
            if not isinstance(exc, SourceDegraded):
                logger.warning("History task failed: %r", exc, extra={"source": "history"})
            return (), "unavailable"
        else:
            records = task.result()
        return records, (None if records else "no_records")

    def _similar_outcome(self, lot: LotRecord, task: asyncio.Task, pending: set) -> tuple[RankedLot, ...]:
        if task in pending:
            return ()
        if task.exception() is not None:
            logger.warning("Active inventory query failed: %r", task.exception())
            return ()
        return self.finder.rank(VehicleProfile.from_lot(lot), task.result())

    async def _log_result(self, result: AnalysisResult) -> None:
        if self.store is None:
            return
        try:
            await self.store.insert_analysis(result)
        except Exception as exc:
            logger.warning("Failed to record analysis %s: %s", result.key, exc)


