import json
import logging

import pytest

from intel_service.auth import APIKeyAuth, RateLimiter
from intel_service.logging_config import JSONFormatter, configure_logging, correlation_id, get_correlation_id
from intel_service.metrics import Metrics
from intel_service.settings import ServiceSettings


# ── Auth Tests ──────────────────────────────────────────────────────


def test_auth_disabled():
    auth = APIKeyAuth(allowed_keys=None)
    assert auth.validate(None) is True
    assert auth.validate("anything") is True


def test_auth_enabled_valid_and_invalid():
    auth = APIKeyAuth(allowed_keys=["my-secret-key"])
    assert auth.validate("my-secret-key") is True
    assert auth.validate("wrong-key") is False
    assert auth.validate(None) is False
    assert auth.validate("") is False


def test_auth_from_csv():
    auth = APIKeyAuth.from_csv("key1, key2 ,,key3")
    assert auth.validate("key2") is True
    assert auth.validate("key4") is False
    assert APIKeyAuth.from_csv("").validate(None) is True


# ── Rate Limiter Tests ──────────────────────────────────────────────


def test_rate_limiter_blocks_over_limit_per_ip():
    limiter = RateLimiter(requests_per_minute=2)
    assert limiter.check("10.0.0.1") is True
    assert limiter.check("10.0.0.1") is True
    assert limiter.check("10.0.0.1") is False
    assert limiter.check("10.0.0.2") is True


def test_rate_limiter_disabled():
    limiter = RateLimiter(requests_per_minute=0)
    assert all(limiter.check("any") for _ in range(100))


# ── Logging Tests ───────────────────────────────────────────────────


def test_json_formatter_includes_context():
    formatter = JSONFormatter()
    correlation_id.set("cid-42")
    record = logging.LogRecord("pipeline", logging.WARNING, "", 0, "vision degraded", (), None)
    record.analysis_key = "1HGCM82633A123456"
    record.source = "vision"
    parsed = json.loads(formatter.format(record))
    correlation_id.set("")
    assert parsed["message"] == "vision degraded"
    assert parsed["level"] == "WARNING"
    assert parsed["correlation_id"] == "cid-42"
    assert parsed["analysis_key"] == "1HGCM82633A123456"
    assert parsed["source"] == "vision"


def test_configure_logging_quiets_http_clients():
    configure_logging(level="DEBUG", fmt="text")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_get_correlation_id_generates_once():
    correlation_id.set("")
    first = get_correlation_id()
    assert first
    assert get_correlation_id() == first
    correlation_id.set("")


# ── Settings and Metrics ────────────────────────────────────────────


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("PIPELINE_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("SIMILAR_LIMIT", "5")
    monkeypatch.setenv("BUY_CONFIDENCE_THRESHOLD", "70")
    settings = ServiceSettings()
    assert settings.pipeline_timeout_seconds == 12.5
    assert settings.similar_limit == 5
    assert settings.buy_confidence_threshold == 70
    assert settings.vision_model == "gpt-4o"


def test_settings_reject_out_of_range_threshold(monkeypatch):
    monkeypatch.setenv("BUY_CONFIDENCE_THRESHOLD", "150")
    with pytest.raises(ValueError):
        ServiceSettings()


def test_metrics_render():
    metrics = Metrics()
    metrics.incr("pipeline_executions")
    metrics.record_latency("analyze", 0.25)
    snapshot = metrics.snapshot()
    assert snapshot["counters"]["pipeline_executions"] == 1
    assert snapshot["latency"]["analyze"]["p50_ms"] == 250.0
    text = metrics.prometheus_text()
    assert "# TYPE auction_intel_pipeline_executions counter" in text
    assert 'auction_intel_analyze_seconds{quantile="0.5"} 0.250000' in text
