"""Tests for turning raw HubSpot deals into EnrichedDeal views."""

import logging
from datetime import timedelta

import pytest

from models.pricing_models import Stage
from scripts.pricing.deal_enrichment import (
    UNMAPPED_DISPLAY_ORDER,
    UNMAPPED_STAGE_ID,
    UNMAPPED_STAGE_LABEL,
    build_stage_index,
    days_since,
    enrich_deal,
    enrich_deals,
    line_items_from_deal,
    parse_line_item,
    parse_line_items,
    stage_outcome,
)
from tests.factories import box_item, raw_deal


class TestStageIndex:
    def test_hubspot_shape(self, pipeline):
        index = build_stage_index(pipeline)
        assert set(index) == {"s1", "s2", "s3", "won", "lost"}
        assert index["s2"].label == "Envío de presupuesto"
        assert index["s2"].display_order == 1
        assert index["won"].is_closed is True
        assert index["won"].probability == 1.0
        assert index["s1"].pipeline_id == "default"

    def test_flat_list(self):
        index = build_stage_index([{"id": "a", "label": "A"}, {"id": "b", "label": "B"}])
        assert [index["a"].display_order, index["b"].display_order] == [0, 1]

    def test_outcomes(self, pipeline):
        index = build_stage_index(pipeline)
        assert stage_outcome(index["s1"]) == "open"
        assert stage_outcome(index["won"]) == "won"
        assert stage_outcome(index["lost"]) == "lost"
        assert stage_outcome(None) == "open"

    def test_closed_stage_without_keywords_uses_probability(self):
        assert stage_outcome(Stage(id="x", label="Done", is_closed=True, probability=1.0)) == "won"
        assert stage_outcome(Stage(id="y", label="Gone", is_closed=True, probability=0.0)) == "lost"


class TestLineItems:
    def test_parse_hubspot_line_item(self):
        item = parse_line_item({
            "id": "li1",
            "properties": {
                "name": "Caja", "quantity": "10", "price": "250.5",
                "mp_largo_mm": "400", "mp_ancho_mm": "300", "mp_alto_mm": "150",
                "mp_tipo_caja": "Aleta simple", "mp_calidad": "C-15",
            },
        }, deal_id="d1")
        assert item.deal_id == "d1"
        assert item.quantity == 10
        assert item.amount == pytest.approx(2505.0)
        assert item.unit_area == pytest.approx(0.648)
        assert item.total_area == pytest.approx(6.48)

    def test_missing_dimensions_degrade_to_zero(self):
        item = parse_line_item({"properties": {"quantity": "5", "mp_largo_mm": "abc"}})
        assert item.unit_area == 0
        assert item.total_area == 0

    def test_items_from_json_property(self):
        deal = raw_deal("1", items=[box_item(), box_item(quantity=50)])
        items = line_items_from_deal(deal)
        assert len(items) == 2
        assert all(li.deal_id == "1" for li in items)

    def test_parse_batch_skips_non_objects(self):
        items = parse_line_items([box_item(), "junk", None, box_item(quantity=2)], "9")
        assert [li.quantity for li in items] == [100, 2]
        assert {li.deal_id for li in items} == {"9"}

    def test_unreadable_json_is_empty(self):
        deal = raw_deal("1", mp_items_json="{not json")
        assert line_items_from_deal(deal) == []


class TestEnrichDeal:
    def test_area_and_average_price(self, pipeline, now):
        deal = enrich_deal(
            raw_deal("1", amount=64800, items=[box_item(quantity=100)]),
            stage_index=build_stage_index(pipeline), now=now,
        )
        assert deal.total_area == pytest.approx(64.8)
        assert deal.avg_price_per_area == pytest.approx(1000.0)
        assert deal.stage_label == "Contacto inicial"
        assert deal.stage_outcome == "open"

    def test_zero_area_means_no_average(self, pipeline, now):
        deal = enrich_deal(raw_deal("1", amount=10000), stage_index=build_stage_index(pipeline), now=now)
        assert deal.total_area == 0
        assert deal.avg_price_per_area is None

    def test_stored_area_used_when_items_have_none(self, pipeline, now):
        deal = enrich_deal(
            raw_deal("1", amount=5000, mp_metros_cuadrados_totales="10"),
            stage_index=build_stage_index(pipeline), now=now,
        )
        assert deal.total_area == 10
        assert deal.avg_price_per_area == 500

    def test_explicit_line_items_override_json(self, pipeline, now):
        fetched = [{"id": "li9", "properties": {
            "quantity": "1", "price": "100", "mp_largo_mm": "500",
            "mp_ancho_mm": "300", "mp_alto_mm": "200", "mp_tipo_caja": "Dos Planchas",
        }}]
        deal = enrich_deal(
            raw_deal("1", amount=84, items=[box_item()]),
            line_items=fetched, stage_index=build_stage_index(pipeline), now=now,
        )
        assert len(deal.line_items) == 1
        assert deal.total_area == pytest.approx(0.84)

    def test_items_of_other_deals_ignored(self, pipeline, now):
        foreign = {"deal_id": "other", "properties": {"quantity": "1", "mp_largo_mm": "400", "mp_ancho_mm": "300"}}
        deal = enrich_deal(raw_deal("1"), line_items=[foreign], stage_index=build_stage_index(pipeline), now=now)
        assert deal.line_items == ()

    def test_subtotal_and_tax(self, pipeline, now):
        deal = enrich_deal(
            raw_deal("1", amount=1000, items=[box_item(quantity=2, price=500)]),
            stage_index=build_stage_index(pipeline), now=now,
        )
        assert deal.subtotal == 1000
        assert deal.tax_total == pytest.approx(210)

    def test_stored_tax_wins(self, pipeline, now):
        deal = enrich_deal(
            raw_deal("1", mp_total_subtotal="1000", mp_total_iva="105"),
            stage_index=build_stage_index(pipeline), now=now,
        )
        assert deal.subtotal == 1000
        assert deal.tax_total == 105

    def test_days_since_creation(self, pipeline, now):
        created = (now - timedelta(days=20, hours=23)).isoformat()
        deal = enrich_deal(raw_deal("1", created=created), stage_index=build_stage_index(pipeline), now=now)
        assert deal.days_since_creation == 20

    def test_future_created_date_clamps_to_zero(self, now):
        assert days_since(now + timedelta(days=3), now) == 0
        assert days_since(None, now) == 0

    def test_naive_now_is_utc(self, pipeline, now):
        naive = now.replace(tzinfo=None)
        assert days_since(now - timedelta(days=4), naive) == 4
        deal = enrich_deal(raw_deal("1", created="2024-03-01T12:00:00Z"),
                           stage_index=build_stage_index(pipeline), now=naive)
        assert deal.days_since_creation == 14

    def test_epoch_millis_created_date(self, pipeline, now):
        millis = str(int((now - timedelta(days=2)).timestamp() * 1000))
        deal = enrich_deal(raw_deal("1", created=millis), stage_index=build_stage_index(pipeline), now=now)
        assert deal.days_since_creation == 2

    def test_unknown_stage_is_unmapped_and_logged(self, pipeline, now, caplog):
        with caplog.at_level(logging.WARNING, logger="deal_enrichment"):
            deal = enrich_deal(raw_deal("1", stage="ghost"), stage_index=build_stage_index(pipeline), now=now)
        assert deal.stage_id == UNMAPPED_STAGE_ID
        assert deal.stage_label == UNMAPPED_STAGE_LABEL
        assert deal.stage_display_order == UNMAPPED_DISPLAY_ORDER
        assert deal.raw_stage_id == "ghost"
        assert "ghost" in caplog.text

    def test_malformed_amount_is_zero(self, pipeline, now):
        deal = enrich_deal(raw_deal("1", amount="n/a"), stage_index=build_stage_index(pipeline), now=now)
        assert deal.amount == 0

    def test_client_fields(self, pipeline, now):
        deal = enrich_deal(
            raw_deal("1", mp_cliente_nombre="Ana", mp_cliente_empresa="Envases SA",
                     mp_condiciones_pago="30 días"),
            stage_index=build_stage_index(pipeline), company_name="Envases S.A.", now=now,
        )
        assert deal.client_name == "Ana"
        assert deal.display_client == "Envases SA"
        assert deal.company_name == "Envases S.A."
        assert deal.payment_terms == "30 días"

    def test_associations(self, pipeline, now):
        raw = raw_deal("1")
        raw["associations"] = {"contacts": {"results": [{"id": "c1"}, {"id": "c2"}]}}
        deal = enrich_deal(raw, stage_index=build_stage_index(pipeline), now=now)
        assert deal.contact_ids == ("c1", "c2")
        assert deal.company_ids == ()

    def test_flat_association_lists(self, pipeline, now):
        raw = raw_deal("1")
        raw["contact_ids"] = ["c1"]
        raw["company_ids"] = ["co1", 42]
        deal = enrich_deal(raw, stage_index=build_stage_index(pipeline), now=now)
        assert deal.contact_ids == ("c1",)
        assert deal.company_ids == ("co1", "42")

    def test_fetched_associations_are_merged(self, pipeline, now):
        raw = raw_deal("1")
        raw["associations"] = {"companies": {"results": [{"id": "co1"}]}}
        deal = enrich_deal(raw, stage_index=build_stage_index(pipeline), now=now,
                           associations={"contacts": ["c9"], "companies": ["co1", "co2"]})
        assert deal.contact_ids == ("c9",)
        assert deal.company_ids == ("co1", "co2")


class TestEnrichDeals:
    def test_order_kept_and_line_items_by_deal(self, pipeline, now):
        raws = [raw_deal("2"), raw_deal("1")]
        items = {"1": [{"properties": {"quantity": "1", "mp_largo_mm": "400",
                                       "mp_ancho_mm": "300", "mp_alto_mm": "150"}}]}
        deals = enrich_deals(raws, build_stage_index(pipeline), line_items_by_deal=items, now=now)
        assert [d.id for d in deals] == ["2", "1"]
        assert deals[1].total_area == pytest.approx(0.648)

    def test_associations_by_deal(self, pipeline, now):
        deals = enrich_deals([raw_deal("1"), raw_deal("2")], build_stage_index(pipeline), now=now,
                             associations_by_deal={"2": {"companies": ["co2"]}})
        assert deals[0].company_ids == ()
        assert deals[1].company_ids == ("co2",)

    def test_idempotent(self, pipeline, now):
        raws = [raw_deal(str(i), amount=1000 * i, items=[box_item(quantity=i)]) for i in range(1, 5)]
        index = build_stage_index(pipeline)
        first = enrich_deals(raws, index, now=now)
        second = enrich_deals(raws, index, now=now)
        assert first == second
