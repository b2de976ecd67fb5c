from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auction_intel.config import ConsensusConfig, SimilarityConfig
from auction_intel.consensus import ConsensusEngine
from auction_intel.errors import AnalysisError, InvalidInput, NotFound, SourceDegraded
from auction_intel.history_stats import build_history_report
from auction_intel.identifiers import normalize_vin, parse_site
from auction_intel.similarity import SimilarLotFinder
from intel_service.auction_data import AuctionDataClient
from intel_service.auth import APIKeyAuth, RateLimiter
from intel_service.comparables import ComparableQuery, ComparableSearch
from intel_service.coordinator import AnalysisCoordinator
from intel_service.history import HistoryStoreClient
from intel_service.logging_config import configure_logging, correlation_id, new_correlation_id
from intel_service.lots import LotResolver
from intel_service.metrics import Metrics
from intel_service.pipeline import AnalysisPipeline
from intel_service.research import MarketResearchClient
from intel_service.settings import ServiceSettings
from intel_service.storage import PostgresStore, RedisCache
from intel_service.vision import VisionAssessorClient

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    SourceDegraded: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ── Request / Response Models ───────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VinRequest(_CamelModel):
    vin: str


class LotRequest(_CamelModel):
    lot_id: Union[int, str]
    site: Union[int, str] = 1


class ComparableSalesRequest(_CamelModel):
    make: str
    model: str
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    mileage_min: Optional[int] = Field(default=None, ge=0)
    mileage_max: Optional[int] = Field(default=None, ge=0)
    damage_type: Optional[str] = None
    site: Optional[Union[int, str]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": jsonable_encoder(data)}


def _status_for(exc: AnalysisError) -> int:
    for cls, code in _ERROR_STATUS.items():
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    settings: ServiceSettings | None = None,
    *,
    auction: AuctionDataClient | None = None,
    vision: VisionAssessorClient | None = None,
    research: MarketResearchClient | None = None,
    cache: RedisCache | None = None,
    store: PostgresStore | None = None,
    coordinator: AnalysisCoordinator | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = cache or RedisCache(redis_url=settings.redis_url)
    store = store or PostgresStore(dsn=settings.postgres_dsn)
    auction = auction or AuctionDataClient(
        api_key=settings.auction_api_key,
        base_url=settings.auction_api_base_url,
        timeout=settings.lot_timeout_seconds,
        history_page_size=settings.history_page_size,
        history_max_pages=settings.history_max_pages,
    )
    vision = vision or VisionAssessorClient(
        settings.openai_api_key,
        model=settings.vision_model,
        base_url=settings.openai_base_url,
        timeout=settings.vision_timeout_seconds,
        max_images=settings.vision_max_images,
    )
    research = research or MarketResearchClient(
        settings.research_api_key,
        settings.research_base_url,
        model=settings.research_model,
        timeout=settings.research_timeout_seconds,
    )
    history = HistoryStoreClient(
        store=store,
        auction=auction,
        cache=cache,
        cache_ttl_seconds=settings.history_cache_ttl_seconds,
        timeout=settings.history_timeout_seconds,
    )
    coordinator = coordinator or AnalysisCoordinator(ttl_seconds=settings.analysis_cache_ttl_seconds)
    finder = SimilarLotFinder(SimilarityConfig(
        year_window=settings.similar_year_window,
        mileage_window=settings.similar_mileage_window,
        limit=settings.similar_limit,
    ))
    metrics = Metrics()
    pipeline = AnalysisPipeline(
        resolver=LotResolver(auction, history),
        history=history,
        vision=vision,
        research=research,
        auction=auction,
        coordinator=coordinator,
        store=store,
        consensus=ConsensusEngine(ConsensusConfig(buy_threshold=settings.buy_confidence_threshold)),
        finder=finder,
        timeout_seconds=settings.pipeline_timeout_seconds,
        metrics=metrics,
    )
    comparables = ComparableSearch(auction, finder, store)

    auth = APIKeyAuth.from_csv(settings.api_keys)
    limiter = RateLimiter(requests_per_minute=settings.rate_limit_rpm)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        try:
            yield
        finally:
            await cache.close()
            await store.close()

    app = FastAPI(title="Vehicle Intelligence Analysis API", version="1.0.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.metrics = metrics

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or new_correlation_id()
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    @app.exception_handler(AnalysisError)
    async def analysis_error_handler(_: Request, exc: AnalysisError) -> JSONResponse:
        code = _status_for(exc)
        metrics.incr(f"errors_{exc.code.lower()}")
        logger.info("Request failed with %s: %s", exc.code, exc.message)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request body"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=InvalidInput(message).to_dict(),
        )

    # ── Analysis ────────────────────────────────────────────────────

    @app.post("/analyze-by-vin")
    async def analyze_by_vin(payload: VinRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        return _ok(await pipeline.analyze_vin(payload.vin))

    @app.post("/analyze-by-lot")
    async def analyze_by_lot(payload: LotRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        return _ok(await pipeline.analyze_lot(payload.lot_id, payload.site))

    @app.get("/live-lot/{lot_id}")
    async def live_lot(lot_id: str, site: str = "1", _: str | None = Depends(auth)) -> dict[str, Any]:
        return _ok(await pipeline.live_lot(lot_id, site))

    @app.post("/comparable-sales")
    async def comparable_sales(payload: ComparableSalesRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        t0 = time.monotonic()
        query = ComparableQuery(
            make=payload.make,
            model=payload.model,
            year_from=payload.year_from,
            year_to=payload.year_to,
            mileage_min=payload.mileage_min,
            mileage_max=payload.mileage_max,
            damage_type=payload.damage_type,
            site=parse_site(payload.site) if payload.site is not None else None,
            limit=payload.limit,
        )
        result = await comparables.search(query)
        metrics.record_latency("comparable_sales", time.monotonic() - t0)
        return _ok(result)

    @app.post("/vin-history")
    async def vin_history(payload: VinRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        vin = normalize_vin(payload.vin)
        records = await history.fetch(vin)
        if not records:
            raise NotFound(f"No auction history found for VIN {vin}")
        return _ok(build_history_report(vin, records))

    @app.get("/analyses/recent")
    async def recent_analyses(limit: int = 20, _: str | None = Depends(auth)) -> dict[str, Any]:
        rows = await store.get_recent_analyses(limit=max(1, min(limit, 100)))
        return _ok({"count": len(rows), "analyses": rows})

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> Any:
        checks = {"redis": await cache.ping(), "postgres": await store.ping()}
        if not all(checks.values()):
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Operational ─────────────────────────────────────────────────

    def _sync_coordinator_counters() -> None:
        stats = coordinator.stats()
        metrics.set("coordinator_executions", stats.executions)
        metrics.set("coordinator_cache_hits", stats.cache_hits)
        metrics.set("coordinator_coalesced", stats.coalesced)
        metrics.set("coordinator_failures", stats.failures)
        metrics.set("coordinator_in_flight", stats.in_flight)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        _sync_coordinator_counters()
        return metrics.snapshot()

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        _sync_coordinator_counters()
        return Response(content=metrics.prometheus_text(), media_type="text/plain; charset=utf-8")

    @app.get("/coordinator/stats")
    async def coordinator_stats() -> dict[str, Any]:
        coordinator.purge_expired()
        return jsonable_encoder(coordinator.stats())

    return app


app = create_app()
