"""Tests for market price classification against zone bands."""

import pytest

from models.pricing_models import EnrichedDeal
from scripts.pricing.market_classifier import (
    DEFAULT_ZONE,
    MARKET_BANDS,
    analyze_deal_price,
    analyze_deals,
    build_bands,
    calculate_price_stats,
    classify_price,
    detect_zone,
    get_band,
    get_market_bands,
)


def _deal(deal_id, avg_price, area=100.0, company=""):
    return EnrichedDeal(
        id=deal_id, name=f"Deal {deal_id}", stage_id="s1", stage_label="Contacto inicial",
        amount=(avg_price or 0) * area, total_area=area, avg_price_per_area=avg_price,
        client_company=company,
    )


class TestClassifyPrice:
    def test_in_range(self):
        result = classify_price("amba", 600)
        assert result.status == "in_range"
        assert result.percent_diff == -8
        assert (result.band.min, result.band.max, result.band.avg) == (550, 750, 650)

    def test_below_market(self):
        result = classify_price("amba", 500)
        assert result.status == "below_market"
        assert result.percent_diff == -23
        assert result.label == "Por debajo"

    def test_above_market(self):
        result = classify_price("amba", 800)
        assert result.status == "above_market"
        assert result.percent_diff == 23

    def test_band_bounds_are_inclusive(self):
        assert classify_price("amba", 550).status == "in_range"
        assert classify_price("amba", 750).status == "in_range"

    def test_zone_is_case_insensitive(self):
        assert classify_price("AMBA", 600).band.zone_id == "amba"

    def test_unknown_zone_uses_default_band(self):
        result = classify_price("marte", 675)
        assert result.band.zone_id == DEFAULT_ZONE
        assert result.percent_diff == 0

    @pytest.mark.parametrize("quoted", [None, 0, -10, float("nan"), float("inf"), float("-inf")])
    def test_no_quote_is_no_data(self, quoted):
        assert classify_price("amba", quoted) is None

    def test_percent_diff_rounds_half_up(self):
        bands = build_bands({"x": {"min": 100, "max": 300, "avg": 200}})
        # +12.5% and -12.5%
        assert classify_price("x", 225, bands).percent_diff == 13
        assert classify_price("x", 175, bands).percent_diff == -12

    def test_deterministic(self):
        assert classify_price("interior", 640) == classify_price("interior", 640)


class TestBands:
    def test_configured_bands(self):
        bands = get_market_bands()
        assert set(bands) >= {"amba", "interior", "exportacion", DEFAULT_ZONE}

    def test_default_band_always_present(self):
        bands = build_bands({"amba": {"min": 1, "max": 2, "avg": 1.5}})
        assert DEFAULT_ZONE in bands
        assert bands[DEFAULT_ZONE] == MARKET_BANDS[DEFAULT_ZONE]

    def test_builtin_bands(self):
        amba = MARKET_BANDS["amba"]
        assert (amba.min, amba.max, amba.avg) == (550, 750, 650)
        assert MARKET_BANDS["exportacion"].avg == 600

    def test_get_band_none_zone(self):
        assert get_band(None).zone_id == DEFAULT_ZONE


class TestDetectZone:
    @pytest.mark.parametrize("name,company,zone", [
        ("Juan", "Envases Buenos Aires SA", "amba"),
        ("Planta Córdoba", "", "interior"),
        ("", "Export Chile Ltda", "exportacion"),
        ("Pedro", "ACME", DEFAULT_ZONE),
        (None, None, DEFAULT_ZONE),
    ])
    def test_detect(self, name, company, zone):
        assert detect_zone(name, company) == zone


class TestAnalyzeDeals:
    def test_deal_without_price_is_skipped(self):
        assert analyze_deal_price(_deal("1", None, area=0.0)) is None

    def test_analysis_fields(self):
        analysis = analyze_deal_price(_deal("1", 600.0, company="Cartón CABA"))
        assert analysis.zone == "amba"
        assert analysis.quoted_price_per_area == 600.0
        assert analysis.classification.status == "in_range"

    def test_stats(self):
        deals = [
            _deal("1", 600.0, area=10, company="caba"),   # in range, -8
            _deal("2", 500.0, area=20, company="caba"),   # below, -23
            _deal("3", 800.0, area=30, company="caba"),   # above, +23
            _deal("4", None, area=0),
        ]
        stats = calculate_price_stats(analyze_deals(deals))
        assert stats.total == 3
        assert (stats.in_range, stats.below_market, stats.above_market) == (1, 1, 1)
        assert stats.avg_diff_percent == pytest.approx(-2.7)
        assert stats.potential_revenue == 650 * 60

    def test_stats_empty(self):
        stats = calculate_price_stats([])
        assert stats.total == 0
        assert stats.potential_revenue == 0
