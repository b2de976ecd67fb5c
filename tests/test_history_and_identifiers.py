from datetime import datetime, timezone

import pytest

from auction_intel.data_models import HistoricalSaleRecord, Site
from auction_intel.errors import InvalidInput
from auction_intel.history_stats import (
    build_history_report,
    compute_price_stats,
    merge_records,
    price_consistency,
    summarize_pricing,
)
from auction_intel.identifiers import (
    lot_identifier,
    model_year_from_vin,
    normalize_vin,
    parse_lot_id,
    parse_site,
    vin_identifier,
)

from fakes import make_sales


# ── Identifiers ─────────────────────────────────────────────────────


def test_normalize_vin_uppercases_and_strips():
    assert normalize_vin("  1hgbh41jxmn109186 ") == "1HGBH41JXMN109186"


@pytest.mark.parametrize("raw", ["", "1HGBH41JXMN10918", "1HGBH41JXMN1091867", "1HGBH41JXMN10918!", None, 12345])
def test_normalize_vin_rejects_malformed(raw):
    with pytest.raises(InvalidInput):
        normalize_vin(raw)


def test_parse_site():
    assert parse_site(1) is Site.COPART
    assert parse_site("2") is Site.IAAI
    with pytest.raises(InvalidInput):
        parse_site(3)
    with pytest.raises(InvalidInput):
        parse_site("copart")


@pytest.mark.parametrize("raw", [0, -5, "abc", True, None, "12.5"])
def test_parse_lot_id_rejects(raw):
    with pytest.raises(InvalidInput):
        parse_lot_id(raw)


def test_identifier_keys():
    assert vin_identifier("1hgbh41jxmn109186").key == "1HGBH41JXMN109186"
    assert lot_identifier("57442255", 1).key == "57442255:1"


def test_model_year_from_vin():
    assert model_year_from_vin("1HGBH41JXMN109186") == 2021
    assert model_year_from_vin("1HGCM82633A123456") == 2003
    assert model_year_from_vin("short") is None


# ── Price statistics ────────────────────────────────────────────────


def test_price_stats_over_priced_records():
    records = make_sales([8000.0, None, 8400.0, 8200.0])
    stats = compute_price_stats(records)
    assert stats.count == 3
    assert stats.average == 8200.0
    assert (stats.minimum, stats.maximum) == (8000.0, 8400.0)
    assert stats.most_recent == 8200.0


def test_price_stats_none_without_prices():
    assert compute_price_stats([]) is None
    assert compute_price_stats(make_sales([None, None])) is None


def test_price_consistency_bounds():
    steady = compute_price_stats(make_sales([8200.0, 8200.0]))
    assert price_consistency(steady) == 100.0
    wild = compute_price_stats(make_sales([100.0, 20000.0]))
    assert 0.0 <= price_consistency(wild) < 5.0


def test_merge_prefers_primary_and_orders_by_date():
    internal = make_sales([8000.0, 8100.0])
    external = (
        HistoricalSaleRecord(platform="copart", lot_id=1000, sale_date=None, price=1.0, damage=None, status=None),
        HistoricalSaleRecord(
            platform="iaai", lot_id=77, sale_date=datetime(2022, 6, 1, tzinfo=timezone.utc),
            price=7900.0, damage=None, status="Sold",
        ),
    )
    merged = merge_records(internal, external)
    assert [(r.platform, r.lot_id) for r in merged] == [("iaai", 77), ("copart", 1000), ("copart", 1001)]
    assert merged[1].price == 8000.0


def test_summarize_pricing():
    stats = compute_price_stats(make_sales([8000.0, 8400.0]))
    summary = summarize_pricing(stats, 6300.0)
    assert summary.estimated_value == 8200.0
    assert summary.bid_to_value_ratio == pytest.approx(0.768)
    assert summarize_pricing(None, 6300.0).bid_to_value_ratio is None


def test_history_report():
    records = make_sales([9000.0]) + make_sales([8800.0], platform="iaai")
    report = build_history_report("1HGCM82633A123456", records)
    assert report.platforms == ("copart", "iaai")
    assert report.first_sale == report.records[0].sale_date
    assert report.last_sale == report.records[-1].sale_date
    assert report.stats.count == 2
