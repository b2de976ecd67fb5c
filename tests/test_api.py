from fastapi.testclient import TestClient

from intel_service.api import create_app

from fakes import BAD_DSN, FakeAuction, FakeResearch, FakeVision, make_lot, make_sales

EXAMPLE_VIN = "1HGBH41JXMN109186"


def _make_app(monkeypatch, api_keys: str = "", rpm: int = 0, auction=None, vision=None, research=None):
    monkeypatch.setenv("POSTGRES_DSN", BAD_DSN)
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setenv("API_KEYS", api_keys)
    monkeypatch.setenv("RATE_LIMIT_RPM", str(rpm))
    monkeypatch.setenv("LOG_FORMAT", "text")
    auction = auction or FakeAuction(
        lots=[make_lot(), make_lot(lot_id=111, vin=EXAMPLE_VIN, image_urls=())],
        inventory=[make_lot(lot_id=2, mileage=45000)],
    )
    return create_app(
        auction=auction,
        vision=vision or FakeVision(),
        research=research or FakeResearch(),
    )


def test_health_and_readiness(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/healthz").status_code == 200
        resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["checks"] == {"redis": False, "postgres": False}


def test_analyze_by_vin_all_degraded(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.post("/analyze-by-vin", json={"vin": EXAMPLE_VIN})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        data = body["data"]
        assert data["consensus"]["recommendation"] == "CAUTION"
        assert data["consensus"]["confidence"] == 0
        assert data["history"] == []
        assert data["vision"] == {"reason": "no_images", "has_images": False, "image_count": 0,
                                  "status": "unavailable"}
        assert data["cached"] is False

        again = client.post("/analyze-by-vin", json={"vin": EXAMPLE_VIN.lower()}).json()["data"]
        assert again["cached"] is True
        assert again["consensus"] == data["consensus"]


def test_analyze_by_lot_accepts_camel_and_snake_case(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.post("/analyze-by-lot", json={"lotId": 57442255, "site": 1})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["key"] == "1HGCM82633A123456"
        assert data["lot"]["site"] == 1
        assert data["vision"]["status"] == "available"
        assert [s["lot"]["lot_id"] for s in data["similar_lots"]] == [2]

        snake = client.post("/analyze-by-lot", json={"lot_id": "57442255", "site": "1"})
        assert snake.status_code == 200
        assert snake.json()["data"]["cached"] is True


def test_invalid_input_envelope(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.post("/analyze-by-vin", json={"vin": "SHORT"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert resp.json()["error"] == "INVALID_INPUT"

        assert client.post("/analyze-by-lot", json={"lotId": 57442255, "site": 7}).status_code == 400
        assert client.post("/analyze-by-lot", json={"lotId": -4}).status_code == 400

        missing = client.post("/analyze-by-vin", json={})
        assert missing.status_code == 400
        assert missing.json()["error"] == "INVALID_INPUT"


def test_not_found_envelope(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.post("/analyze-by-lot", json={"lotId": 999, "site": 2})
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "message": "Lot 999 not found on IAAI", "error": "NOT_FOUND"}

        unknown = client.post("/analyze-by-vin", json={"vin": "2T1BURHE0JC000001"})
        assert unknown.status_code == 404


def test_live_lot(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.get("/live-lot/57442255")
        assert resp.status_code == 200
        assert resp.json()["data"]["make"] == "Honda"
        assert client.get("/live-lot/57442255?site=2").status_code == 404
        assert client.get("/live-lot/abc?site=1").status_code == 400


def test_comparable_sales(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.post("/comparable-sales", json={
            "make": "Honda", "model": "Accord", "yearFrom": 2017, "yearTo": 2021,
            "mileageMin": 20000, "mileageMax": 60000, "site": 1,
        })
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [r["lot"]["lot_id"] for r in data["lots"]] == [2]
        assert [s["platform"] for s in data["platform_stats"]] == ["copart", "iaai"]

        bad = client.post("/comparable-sales", json={"make": "Honda", "model": "Accord", "yearFrom": 2022,
                                                      "yearTo": 2018})
        assert bad.status_code == 400


def test_vin_history(monkeypatch):
    auction = FakeAuction(history=make_sales([8000.0, 8200.0]))
    with TestClient(_make_app(monkeypatch, auction=auction)) as client:
        resp = client.post("/vin-history", json={"vin": "1HGCM82633A123456"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["platforms"] == ["copart"]
        assert data["stats"]["average"] == 8100.0
        assert data["first_sale"].startswith("2023-01-10")

    with TestClient(_make_app(monkeypatch)) as client:
        assert client.post("/vin-history", json={"vin": EXAMPLE_VIN}).status_code == 404


def test_recent_analyses_and_metrics(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        client.post("/analyze-by-vin", json={"vin": EXAMPLE_VIN})
        client.post("/analyze-by-vin", json={"vin": EXAMPLE_VIN})

        recent = client.get("/analyses/recent").json()["data"]
        assert recent["count"] == 1
        assert recent["analyses"][0]["analysis_key"] == EXAMPLE_VIN

        stats = client.get("/coordinator/stats").json()
        assert stats["executions"] == 1
        assert stats["cache_hits"] == 1
        assert stats["by_key"] == {EXAMPLE_VIN: "READY"}

        metrics = client.get("/metrics").json()
        assert metrics["counters"]["pipeline_executions"] == 1
        assert metrics["latency"]["analyze"]["count"] == 2

        prom = client.get("/metrics/prometheus").text
        assert "auction_intel_pipeline_executions 1" in prom
        assert "auction_intel_coordinator_cache_hits 1" in prom


def test_api_key_required_when_configured(monkeypatch):
    with TestClient(_make_app(monkeypatch, api_keys="secret-1,secret-2")) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/live-lot/57442255").status_code == 401
        ok = client.get("/live-lot/57442255", headers={"X-API-Key": "secret-2"})
        assert ok.status_code == 200


def test_rate_limit_envelope(monkeypatch):
    with TestClient(_make_app(monkeypatch, rpm=2)) as client:
        for _ in range(2):
            assert client.get("/live-lot/57442255").status_code == 200
        limited = client.get("/live-lot/57442255")
        assert limited.status_code == 429
        assert limited.json()["error"] == "RATE_LIMITED"
        assert client.get("/health").status_code == 200


def test_correlation_id_echoed(monkeypatch):
    with TestClient(_make_app(monkeypatch)) as client:
        resp = client.get("/health", headers={"X-Correlation-ID": "abc123"})
        assert resp.headers["X-Correlation-ID"] == "abc123"
        assert client.get("/health").headers["X-Correlation-ID"]
