"""Tests for the report assemblers."""

from datetime import date

import pytest

from models.pricing_models import EnrichedDeal
from scripts.pricing.deal_enrichment import build_stage_index, enrich_deals
from scripts.pricing.report_builder import (
    DEFAULT_STAGE_COLOR,
    build_daily_report,
    build_follow_up,
    build_items_report,
    build_orders,
    build_price_analysis,
    build_report_data,
    get_stage_color,
)
from tests.factories import box_item, raw_deal

TZ = "America/Argentina/Buenos_Aires"


@pytest.fixture
def deals(pipeline, now):
    raws = [
        # created today 10:00 local
        raw_deal("new", stage="s1", amount=6480, created="2024-03-15T13:00:00Z",
                 items=[box_item(quantity=10)], mp_cliente_empresa="Envases CABA"),
        # 23:00 local on the 14th: not today
        raw_deal("late", stage="s1", amount=100, created="2024-03-15T02:00:00Z"),
        raw_deal("old", stage="s2", amount=2000, created="2024-02-01T12:00:00Z",
                 items=[box_item(quantity=20)]),
        raw_deal("recent", stage="s2", amount=50, created="2024-03-10T12:00:00Z"),
        raw_deal("conf", stage="s3", amount=5000, created="2024-03-05T12:00:00Z"),
        raw_deal("won", stage="won", amount=3000, created="2024-03-01T12:00:00Z",
                 closed="2024-03-15T20:00:00Z", items=[box_item(quantity=30)]),
        raw_deal("won_old", stage="won", amount=1000, created="2024-01-01T12:00:00Z",
                 closed="2024-02-01T12:00:00Z"),
        # no close date: reported on its creation day
        raw_deal("lost", stage="lost", amount=900, created="2024-03-15T18:00:00Z"),
    ]
    return enrich_deals(raws, build_stage_index(pipeline), now=now)


class TestDailyReport:
    def test_day_window_in_report_timezone(self, deals, now):
        report = build_daily_report(deals, date(2024, 3, 15), tz=TZ, now=now)
        assert [d.id for d in report.new_leads] == ["new", "lost"]
        assert [d.id for d in report.closed_won] == ["won"]
        assert [d.id for d in report.closed_lost] == ["lost"]
        assert report.closed_won_amount == 3000
        assert report.timezone == TZ

    def test_defaults_to_today_in_timezone(self, deals, now):
        report = build_daily_report(deals, tz=TZ, now=now)
        assert report.report_date == date(2024, 3, 15)

    def test_accepts_iso_string(self, deals, now):
        report = build_daily_report(deals, "2024-03-14", tz=TZ, now=now)
        assert [d.id for d in report.new_leads] == ["late"]

    def test_day_window_on_dst_change(self, pipeline, now):
        # 00:30 EDT on Mar 11; Mar 10 in New York is only 23 hours long
        deals = enrich_deals([raw_deal("dst", stage="s1", created="2024-03-11T04:30:00Z")],
                             build_stage_index(pipeline), now=now)
        spring = build_daily_report(deals, date(2024, 3, 10), tz="America/New_York", now=now)
        after = build_daily_report(deals, date(2024, 3, 11), tz="America/New_York", now=now)
        assert spring.new_leads == []
        assert [d.id for d in after.new_leads] == ["dst"]

    def test_follow_up_and_pipeline_cover_open_deals(self, deals, now):
        report = build_daily_report(deals, date(2024, 3, 15), tz=TZ, now=now)
        follow_ids = {d.id for d in report.follow_up_needed}
        # older than 14 days and still open
        assert follow_ids == {"old"}
        assert report.total_pipeline_amount == 6480 + 100 + 2000 + 50 + 5000

    def test_price_stats_included(self, deals, now):
        report = build_daily_report(deals, date(2024, 3, 15), tz=TZ, now=now)
        assert report.price_stats.total == 3


class TestFollowUp:
    def test_threshold(self, deals):
        data = build_follow_up(deals, threshold_days=5)
        assert [d.id for d in data.urgent] == ["old", "conf"]
        assert {d.id for d in data.normal} == {"new", "late", "recent"}
        assert data.total_deals == 5

    def test_plus14_stage_is_urgent(self):
        deal = EnrichedDeal(id="x", stage_id="s", stage_label="Seguimiento/Negociación +14",
                            days_since_creation=1)
        assert [d.id for d in build_follow_up([deal], threshold_days=14).urgent] == ["x"]


class TestOtherReports:
    def test_items_report(self, deals):
        report = build_items_report(deals)
        assert report.total_deals == 3
        assert len(report.line_items) == 3
        assert report.total_area == pytest.approx(0.648 * 60)
        assert report.total_subtotal == pytest.approx(500 * 60)
        first = report.line_items[0]
        assert first.client_name == "Envases CABA"
        assert first.unit_area == pytest.approx(0.648)

    def test_orders(self, deals):
        orders = build_orders(deals)
        assert [d.id for d in orders.confirmed] == ["conf"]
        assert {d.id for d in orders.closed_won} == {"won", "won_old"}
        assert orders.total_orders == 3
        assert orders.total_amount == 9000

    def test_price_analysis(self, deals):
        report = build_price_analysis(deals)
        assert {a.deal_id for a in report.analyses} == {"new", "old", "won"}
        new = next(a for a in report.analyses if a.deal_id == "new")
        assert new.zone == "amba"
        assert new.quoted_price_per_area == pytest.approx(1000)
        assert new.classification.status == "above_market"

    def test_report_data(self, deals):
        data = build_report_data(deals, tz=TZ, top_n=2)
        assert data.deal_count == len(deals)
        assert [c.name for c in data.top_clients] == ["Sin cliente", "Envases CABA"]
        assert data.top_clients[1].value == 6480
        assert sum(s.value for s in data.stage_distribution) == len(deals)
        assert [b.key for b in data.monthly_data] == ["2024-01", "2024-02", "2024-03"]

    def test_stage_colors(self):
        assert get_stage_color("Cierre ganado") == "#10b981"
        assert get_stage_color("  CIERRE PERDIDO ") == "#ef4444"
        assert get_stage_color("whatever") == DEFAULT_STAGE_COLOR


def test_days_since_creation_uses_reference_time(deals):
    old = next(d for d in deals if d.id == "old")
    # 2024-02-01 12:00 UTC to 2024-03-15 15:00 UTC
    assert old.days_since_creation == 43
