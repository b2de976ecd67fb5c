from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from auction_intel.data_models import AnalysisResult, HistoricalSaleRecord

logger = logging.getLogger(__name__)

metadata = MetaData()

sales_history_table = Table(
    "sales_history",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("lot_id", Integer, nullable=False),
    Column("site", Integer, nullable=False),
    Column("base_site", String(16), nullable=False),
    Column("vin", String(17), nullable=False, index=True),
    Column("sale_status", String(64), nullable=True),
    Column("sale_date", DateTime(timezone=True), nullable=True),
    Column("purchase_price", Float, nullable=True),
    Column("auction_location", String(128), nullable=True),
    Column("vehicle_mileage", Integer, nullable=True),
    Column("vehicle_damage", String(128), nullable=True),
    Column("vehicle_title", String(128), nullable=True),
    Column("year", Integer, nullable=True),
    Column("make", String(64), nullable=True, index=True),
    Column("model", String(64), nullable=True, index=True),
    Column("series", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

analysis_log_table = Table(
    "analysis_log",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("analysis_key", String(64), nullable=False, index=True),
    Column("vin", String(17), nullable=True, index=True),
    Column("recommendation", String(16), nullable=False),
    Column("confidence", Integer, nullable=False),
    Column("degraded_json", JSON, nullable=False, default=list),
    Column("timed_out", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_SITE_BY_PLATFORM = {"copart": 1, "iaai": 2}


def _sale_row(vin: str, record: HistoricalSaleRecord) -> dict[str, Any]:
    platform = record.platform.lower()
    return {
        "id": f"{record.lot_id}-{platform}",
        "lot_id": record.lot_id,
        "site": _SITE_BY_PLATFORM.get(platform, 0),
        "base_site": platform,
        "vin": vin,
        "sale_status": record.status,
        "sale_date": record.sale_date,
        "purchase_price": record.price,
        "auction_location": record.location,
        "vehicle_mileage": record.mileage,
        "vehicle_damage": record.damage,
        "vehicle_title": None,
        "year": record.year,
        "make": record.make,
        "model": record.model,
        "series": None,
        "created_at": datetime.now(timezone.utc),
    }


def _record_from_row(row: dict[str, Any]) -> HistoricalSaleRecord:
    price = row.get("purchase_price")
    return HistoricalSaleRecord(
        platform=str(row["base_site"]).lower(),
        lot_id=int(row["lot_id"]),
        sale_date=row.get("sale_date"),
        price=float(price) if price is not None else None,
        damage=row.get("vehicle_damage"),
        status=row.get("sale_status"),
        location=row.get("auction_location"),
        mileage=row.get("vehicle_mileage"),
        year=row.get("year"),
        make=row.get("make"),
        model=row.get("model"),
    )


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "auction_intel") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception as exc:
            logger.warning("Redis unreachable at %s, using in-memory cache: %s", self.redis_url, exc)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> Any | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception as exc:
                logger.warning("Redis get failed for %s: %s", full_key, exc)
                return None
        if full_key in self._expiry and time.monotonic() > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception as exc:
                logger.warning("Redis set failed for %s, keeping value in memory: %s", full_key, exc)
        self._mem[full_key] = payload
        self._expiry[full_key] = time.monotonic() + ttl_seconds


class PostgresStore:
    """Internal sales-history store plus the analysis log.

    Falls back to in-memory lists with the same API when the database is
    unreachable at startup.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_sales: dict[str, dict[str, Any]] = {}
        self._mem_analyses: list[dict[str, Any]] = []

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception as exc:
            logger.warning("Postgres unreachable, using in-memory store: %s", exc)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    # ── Sales history ───────────────────────────────────────────────

    async def insert_sales(self, vin: str, records: Iterable[HistoricalSaleRecord]) -> int:
        rows = [_sale_row(vin, r) for r in records]
        if not rows:
            return 0
        if self.engine is None:
            for row in rows:
                self._mem_sales.setdefault(row["id"], row)
            return len(rows)
        async with self.engine.begin() as conn:
            await conn.execute(insert(sales_history_table), rows)
        return len(rows)

    async def fetch_sales_by_vin(self, vin: str) -> list[HistoricalSaleRecord]:
        if self.engine is None:
            return [_record_from_row(r) for r in self._mem_sales.values() if r["vin"] == vin]
        stmt = select(sales_history_table).where(sales_history_table.c.vin == vin)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_record_from_row(dict(r._mapping)) for r in rows]

    async def fetch_comparable_sales(
        self,
        *,
        make: str,
        model: str,
        year_from: int | None = None,
        year_to: int | None = None,
        mileage_min: int | None = None,
        mileage_max: int | None = None,
        damage_type: str | None = None,
        limit: int = 500,
    ) -> list[HistoricalSaleRecord]:
        if self.engine is None:
            out = []
            for row in self._mem_sales.values():
                if (row.get("make") or "").lower() != make.lower() or (row.get("model") or "").lower() != model.lower():
                    continue
                year, miles = row.get("year"), row.get("vehicle_mileage")
                if year_from is not None and (year is None or year < year_from):
                    continue
                if year_to is not None and (year is None or year > year_to):
                    continue
                if mileage_min is not None and (miles is None or miles < mileage_min):
                    continue
                if mileage_max is not None and (miles is None or miles > mileage_max):
                    continue
                if damage_type and damage_type.lower() not in (row.get("vehicle_damage") or "").lower():
                    continue
                out.append(_record_from_row(row))
            return out[:limit]

        t = sales_history_table
        stmt = select(t).where(func.lower(t.c.make) == make.lower()).where(func.lower(t.c.model) == model.lower())
        if year_from is not None:
            stmt = stmt.where(t.c.year >= year_from)
        if year_to is not None:
            stmt = stmt.where(t.c.year <= year_to)
        if mileage_min is not None:
            stmt = stmt.where(t.c.vehicle_mileage >= mileage_min)
        if mileage_max is not None:
            stmt = stmt.where(t.c.vehicle_mileage <= mileage_max)
        if damage_type:
            stmt = stmt.where(t.c.vehicle_damage.ilike(f"%{damage_type}%"))
        stmt = stmt.order_by(t.c.sale_date.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_record_from_row(dict(r._mapping)) for r in rows]

    # ── Analysis log ────────────────────────────────────────────────

    async def insert_analysis(self, result: AnalysisResult) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "analysis_key": result.key,
            "vin": result.lot.vin,
            "recommendation": result.consensus.recommendation.value,
            "confidence": result.consensus.confidence,
            "degraded_json": [{"source": d.source, "reason": d.reason} for d in result.consensus.degraded],
            "timed_out": result.timed_out,
            "created_at": datetime.now(timezone.utc),
        }
        if self.engine is None:
            self._mem_analyses.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(analysis_log_table).values(**row))
        return row_id

    async def get_recent_analyses(self, limit: int = 50) -> list[dict[str, Any]]:
        if self.engine is None:
            return list(reversed(self._mem_analyses[-limit:]))
        stmt = (
            select(analysis_log_table)
            .order_by(analysis_log_table.c.created_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]
