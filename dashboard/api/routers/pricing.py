"""
Deal Price Analytics — Pricing Router
=======================================
Area calculator, market price classification and live per-stage metrics.

Endpoints:
  GET /api/pricing/market-bands              - Configured price bands by zone
  GET /api/pricing/classify                  - Classify a quoted price per m2
  GET /api/pricing/area                      - Board area for a box
  GET /api/pricing/{pipeline_id}/stages      - Per-stage aggregate + totals
  GET /api/pricing/{pipeline_id}/analysis    - Per-deal price classification
  GET /api/pricing/{pipeline_id}/deals/{deal_id}/action-plan - AI follow-up plan
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from dashboard.api.dependencies import load_deals, supabase_available
from models.pricing_models import dump
from scripts.lib.logger import setup_logger
from scripts.pricing.action_plan import generate_action_plan, load_action_plan, save_action_plan
from scripts.pricing.box_geometry import compute_total_area, compute_unit_area, parse_box_style
from scripts.pricing.market_classifier import classify_price, detect_zone, get_band, get_market_bands
from scripts.pricing.report_builder import build_price_analysis
from scripts.pricing.stage_aggregator import aggregate

logger = setup_logger("pricing_router")

router = APIRouter(prefix="/api/pricing", tags=["pricing"])


@router.get("/market-bands")
async def market_bands():
    """Reference price per m2 by zone."""
    bands = get_market_bands()
    return {"bands": {zone: dump(band) for zone, band in bands.items()}}


@router.get("/classify")
async def classify(
    price: Optional[float] = Query(None, description="Quoted price per m2"),
    zone: Optional[str] = Query(None, description="Zone id; detected from client fields when absent"),
    client_name: Optional[str] = Query(None),
    client_company: Optional[str] = Query(None),
):
    """Classify a quoted price per m2 against the zone's market band."""
    zone = zone or detect_zone(client_name, client_company)
    result = classify_price(zone, price)
    return {
        "zone": get_band(zone).zone_id,
        "classification": dump(result) if result is not None else None,
    }


@router.get("/area")
async def area(
    style: Optional[str] = Query(None, description="Box style tag, e.g. 'Aleta simple'"),
    length_mm: float = Query(..., description="Length in mm"),
    width_mm: float = Query(..., description="Width in mm"),
    height_mm: float = Query(0, description="Height in mm"),
    quantity: float = Query(1, description="Units"),
):
    """Board area per unit and for the whole quantity, in m2."""
    unit_area = compute_unit_area(style, length_mm, width_mm, height_mm)
    return {
        "box_style": parse_box_style(style).value,
        "unit_area": unit_area,
        "total_area": compute_total_area(unit_area, quantity),
    }


@router.get("/{pipeline_id}/stages")
async def stage_metrics(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None, description="Restrict to stage ids"),
    created_after: Optional[str] = Query(None, description="ISO date"),
    include_empty: bool = Query(True, description="Emit stages with no deals"),
):
    """Deal count, amount, area and price per m2 by stage, in CRM order."""
    deals, stages = await load_deals(request, pipeline_id, stage, created_after)
    return dump(aggregate(deals, stages, include_empty=include_empty))


@router.get("/{pipeline_id}/analysis")
async def price_analysis(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
):
    """Market classification for every deal with a price per m2."""
    deals, _ = await load_deals(request, pipeline_id, stage, created_after)
    return dump(build_price_analysis(deals))


@router.get("/{pipeline_id}/deals/{deal_id}/action-plan")
async def deal_action_plan(
    request: Request,
    pipeline_id: str,
    deal_id: str,
    refresh: bool = Query(False, description="Ignore a stored plan and generate a new one"),
):
    """
    Follow-up plan for one deal.

    A stored, unexpired plan is returned as is. Otherwise a new plan is
    generated from the live deal and stored when Supabase is configured.
    """
    store = supabase_available()
    if store and not refresh:
        saved = load_action_plan(deal_id)
        if saved is not None:
            return dump(saved)

    deals, _ = await load_deals(request, pipeline_id)
    deal = next((d for d in deals if d.id == deal_id), None)
    if deal is None:
        raise HTTPException(status_code=404, detail=f"Deal {deal_id} not found in pipeline {pipeline_id}")

    plan = await generate_action_plan(deal)
    if store:
        save_action_plan(plan)
    return dump(plan)
