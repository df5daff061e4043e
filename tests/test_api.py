"""Tests for the FastAPI routes, with HubSpot replaced by a canned fake."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

import dashboard.api.main as api_main
import dashboard.api.routers.pricing as pricing_router
import scripts.pricing.action_plan as action_plan
from dashboard.api.main import app
from scripts.lib.ai_provider import AIResponse
from scripts.lib.errors import APIError, ConfigError
from scripts.lib.supabase_client import reset_client
from tests.factories import FakeHubSpot, box_item, hubspot_line_item, raw_deal

client = TestClient(app)


@pytest.fixture(autouse=True)
def no_supabase(monkeypatch):
    for var in ("SUPABASE_URL", "SUPABASE_KEY", "SUPABASE_SERVICE_ROLE_KEY"):
        monkeypatch.delenv(var, raising=False)
    reset_client()
    yield
    reset_client()


@pytest.fixture
def hubspot():
    fake = FakeHubSpot(
        deals=[
            raw_deal("1", stage="s1", amount=6480, created="2024-03-15T13:00:00Z",
                     mp_cliente_empresa="Envases CABA"),
            raw_deal("2", stage="s2", amount=1000, created="2024-02-01T12:00:00Z",
                     items=[box_item(quantity=5)]),
            raw_deal("3", stage="won", amount=3000, created="2024-03-01T12:00:00Z",
                     closed="2024-03-15T20:00:00Z"),
        ],
        line_items={"1": [hubspot_line_item("11", "1")]},
    )
    app.state.hubspot = fake
    yield fake
    del app.state.hubspot


class TestSystem:
    def test_health(self, hubspot):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["integrations"] == {"supabase": False, "hubspot": True}

    def test_latest_metrics_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(api_main, "PROCESSED_DIR", tmp_path)
        assert client.get("/api/metrics/latest").status_code == 404

    def test_latest_metrics_from_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(api_main, "PROCESSED_DIR", tmp_path)
        (tmp_path / "hubspot_price_metrics.json").write_text(
            json.dumps({"pipeline_id": "default"}), encoding="utf-8")
        response = client.get("/api/metrics/latest")
        assert response.status_code == 200
        assert response.json() == {"pipeline_id": "default"}


class TestPricingCalculators:
    def test_market_bands(self):
        bands = client.get("/api/pricing/market-bands").json()["bands"]
        assert bands["amba"]["min"] == 550
        assert bands["amba"]["max"] == 750

    def test_classify_in_range(self):
        body = client.get("/api/pricing/classify", params={"price": 600, "zone": "amba"}).json()
        assert body["zone"] == "amba"
        assert body["classification"]["status"] == "in_range"
        assert body["classification"]["percent_diff"] == -8

    def test_classify_detects_zone(self):
        body = client.get("/api/pricing/classify",
                          params={"price": 900, "client_company": "Cartones Rosario"}).json()
        assert body["zone"] == "interior"
        assert body["classification"]["status"] == "above_market"

    def test_classify_without_price(self):
        body = client.get("/api/pricing/classify").json()
        assert body == {"zone": "default", "classification": None}

    @pytest.mark.parametrize("price", ["nan", "inf"])
    def test_classify_non_finite_price(self, price):
        response = client.get("/api/pricing/classify", params={"price": price, "zone": "amba"})
        assert response.status_code == 200
        assert response.json()["classification"] is None

    def test_area(self):
        response = client.get("/api/pricing/area", params={
            "style": "Dos Planchas", "length_mm": 500, "width_mm": 300,
            "height_mm": 200, "quantity": 10,
        })
        body = response.json()
        assert body["box_style"] == "two_sheets"
        assert body["unit_area"] == pytest.approx(0.84)
        assert body["total_area"] == pytest.approx(8.4)

    def test_area_requires_dimensions(self):
        assert client.get("/api/pricing/area", params={"style": "bandeja"}).status_code == 422


class TestPipelineRoutes:
    def test_stages_in_crm_order(self, hubspot):
        body = client.get("/api/pricing/default/stages").json()
        assert [m["stage_id"] for m in body["by_stage"]] == ["s1", "s2", "s3", "won", "lost"]
        assert body["totals"]["deal_count"] == 3
        assert body["totals"]["total_amount"] == 10480

    def test_stage_filter_is_forwarded(self, hubspot):
        client.get("/api/pricing/default/stages", params=[("stage", "s1"), ("stage", "s2")])
        assert hubspot.deal_calls == [("default", ["s1", "s2"], None)]

    def test_analysis(self, hubspot):
        body = client.get("/api/pricing/default/analysis").json()
        assert {a["deal_id"] for a in body["analyses"]} == {"1", "2"}

    def test_daily_report(self, hubspot):
        body = client.get("/api/reports/default/daily", params={"date": "2024-03-15"}).json()
        assert body["report_date"] == "2024-03-15"
        assert [d["id"] for d in body["new_leads"]] == ["1"]
        assert [d["id"] for d in body["closed_won"]] == ["3"]

    def test_daily_report_html(self, hubspot):
        response = client.get("/api/reports/default/daily.html", params={"date": "2024-03-15"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "Deal 1" in response.text

    def test_items_csv(self, hubspot):
        response = client.get("/api/reports/default/items.csv")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "items_default.csv" in response.headers["content-disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")
        assert "TOTALES" in response.content.decode("utf-8")

    def test_deals_csv(self, hubspot):
        response = client.get("/api/reports/default/deals.csv", params={"tz": "UTC"})
        lines = response.content.decode("utf-8").strip().splitlines()
        assert len(lines) == 4

    def test_follow_up(self, hubspot):
        body = client.get("/api/reports/default/follow-up").json()
        # all open deals are weeks old relative to the wall clock
        assert {d["id"] for d in body["urgent"]} == {"1", "2"}
        assert body["total_deals"] == 2

    def test_orders(self, hubspot):
        body = client.get("/api/reports/default/orders").json()
        assert [d["id"] for d in body["closed_won"]] == ["3"]
        assert body["total_amount"] == 3000

    def test_summary(self, hubspot):
        body = client.get("/api/reports/default/summary", params={"tz": "UTC"}).json()
        assert body["pipeline_id"] == "default"
        assert body["timezone"] == "UTC"
        assert body["record_counts"]["deals"] == 3
        assert "monthly" in body and "report_data" in body


class TestActionPlanRoute:
    def _answer(self):
        return AIResponse(
            content=json.dumps({"summary": "Llamar hoy", "urgency": "urgent",
                                "next_steps": [{"action": "Llamar", "channel": "phone"}]}),
            provider="groq", model="llama-3.3-70b-versatile",
            input_tokens=1, output_tokens=1, latency_ms=1,
        )

    def test_generated_for_live_deal(self, hubspot):
        with patch.object(action_plan, "ai_complete", new=AsyncMock(return_value=self._answer())):
            response = client.get("/api/pricing/default/deals/1/action-plan")
        assert response.status_code == 200
        body = response.json()
        assert body["deal_id"] == "1"
        assert body["source"] == "ai"
        assert body["next_steps"][0]["channel"] == "phone"

    def test_unknown_deal(self, hubspot):
        response = client.get("/api/pricing/default/deals/999/action-plan")
        assert response.status_code == 404

    def test_stored_plan_is_reused(self, hubspot, monkeypatch, now):
        stored = action_plan.parse_action_plan(self._answer().content, "1", now=now, ttl_hours=24)
        monkeypatch.setattr(pricing_router, "supabase_available", lambda: True)
        monkeypatch.setattr(pricing_router, "load_action_plan", lambda deal_id: stored)
        body = client.get("/api/pricing/default/deals/1/action-plan").json()
        assert body["summary"] == "Llamar hoy"
        assert hubspot.deal_calls == []

    def test_refresh_regenerates_and_stores(self, hubspot, monkeypatch):
        saved = []
        monkeypatch.setattr(pricing_router, "supabase_available", lambda: True)
        monkeypatch.setattr(pricing_router, "save_action_plan", saved.append)
        with patch.object(action_plan, "ai_complete", new=AsyncMock(return_value=self._answer())):
            body = client.get("/api/pricing/default/deals/1/action-plan", params={"refresh": True}).json()
        assert body["source"] == "ai"
        assert [p.deal_id for p in saved] == ["1"]


class TestErrorMapping:
    def test_crm_failure_is_bad_gateway(self, hubspot):
        hubspot.fail_with = APIError("HubSpot API error: 500", status_code=500)
        assert client.get("/api/pricing/default/stages").status_code == 502

    def test_config_error_is_unavailable(self, hubspot):
        hubspot.fail_with = ConfigError("HubSpot API key not configured")
        assert client.get("/api/reports/default/orders").status_code == 503

    def test_unconfigured_client(self, hubspot):
        hubspot.is_configured = False
        assert client.get("/api/reports/default/items").status_code == 503

    def test_no_client(self):
        assert client.get("/api/reports/default/items").status_code == 503

    def test_unknown_timezone(self, hubspot):
        response = client.get("/api/reports/default/daily", params={"tz": "Mars/Olympus"})
        assert response.status_code == 400
