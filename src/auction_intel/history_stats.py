from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

import numpy as np

from auction_intel.data_models import HistoricalSaleRecord, PriceStats, PricingSummary

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _sort_key(record: HistoricalSaleRecord) -> tuple[datetime, str, int]:
    sale_date = record.sale_date or _EPOCH
    if sale_date.tzinfo is None:
        sale_date = sale_date.replace(tzinfo=timezone.utc)
    return sale_date, record.platform, record.lot_id


def order_by_date(records: Iterable[HistoricalSaleRecord]) -> tuple[HistoricalSaleRecord, ...]:
    """Oldest first; undated records sort to the front."""
    return tuple(sorted(records, key=_sort_key))


def merge_records(
    primary: Iterable[HistoricalSaleRecord],
    secondary: Iterable[HistoricalSaleRecord],
) -> tuple[HistoricalSaleRecord, ...]:
    """Union by (platform, lot_id); records from ``primary`` win."""
    merged: dict[tuple[str, int], HistoricalSaleRecord] = {}
    for record in primary:
        merged.setdefault((record.platform, record.lot_id), record)
    for record in secondary:
        merged.setdefault((record.platform, record.lot_id), record)
    return order_by_date(merged.values())


def compute_price_stats(records: Sequence[HistoricalSaleRecord]) -> Optional[PriceStats]:
    priced = [r for r in order_by_date(records) if r.price is not None and r.price > 0]
    if not priced:
        return None
    prices = np.array([float(r.price) for r in priced], dtype=float)
    return PriceStats(
        count=len(priced),
        average=round(float(np.mean(prices)), 2),
        minimum=float(np.min(prices)),
        maximum=float(np.max(prices)),
        most_recent=float(prices[-1]),
        stdev=round(float(np.std(prices)), 2),
    )


def price_consistency(stats: PriceStats) -> float:
    """100 for identical prices, falling with the coefficient of variation."""
    if stats.average <= 0:
        return 0.0
    score = 100.0 * (1.0 - stats.stdev / stats.average)
    return max(0.0, min(100.0, score))


def summarize_pricing(stats: Optional[PriceStats], current_bid: Optional[float]) -> PricingSummary:
    estimated = stats.average if stats is not None else None
    ratio = None
    if estimated and current_bid:
        ratio = round(current_bid / estimated, 3)
    return PricingSummary(estimated_value=estimated, current_bid=current_bid, bid_to_value_ratio=ratio)


@dataclass(frozen=True)
class HistoryReport:
    vin: str
    records: tuple[HistoricalSaleRecord, ...]
    stats: Optional[PriceStats]
    platforms: tuple[str, ...]
    first_sale: Optional[datetime]
    last_sale: Optional[datetime]


def build_history_report(vin: str, records: Sequence[HistoricalSaleRecord]) -> HistoryReport:
    ordered = order_by_date(records)
    dates = [r.sale_date for r in ordered if r.sale_date is not None]
    return HistoryReport(
        vin=vin,
        records=ordered,
        stats=compute_price_stats(ordered),
        platforms=tuple(sorted({r.platform for r in ordered})),
        first_sale=dates[0] if dates else None,
        last_sale=dates[-1] if dates else None,
    )
