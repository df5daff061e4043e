"""
Deal Price Analytics — Reports Router
=======================================
Report tabs over live pipeline data, plus CSV / printable HTML exports.

Endpoints:
  GET /api/reports/{pipeline_id}/daily        - Daily report (JSON)
  GET /api/reports/{pipeline_id}/daily.html   - Printable daily report
  GET /api/reports/{pipeline_id}/items        - Line item report (JSON)
  GET /api/reports/{pipeline_id}/items.csv    - Line item report (CSV)
  GET /api/reports/{pipeline_id}/deals.csv    - Deal list (CSV)
  GET /api/reports/{pipeline_id}/follow-up    - Urgent / normal follow-ups
  GET /api/reports/{pipeline_id}/orders       - Confirmed orders and won deals
  GET /api/reports/{pipeline_id}/summary      - Full metrics document
"""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, Response

from dashboard.api.dependencies import load_deals, resolve_timezone
from models.pricing_models import dump
from scripts.hubspot_price_analyzer import run_price_analysis
from scripts.lib.logger import setup_logger
from scripts.pricing.exports import daily_report_to_html, deals_to_csv, items_report_to_csv
from scripts.pricing.report_builder import (
    build_daily_report,
    build_follow_up,
    build_items_report,
    build_orders,
)

logger = setup_logger("reports_router")

router = APIRouter(prefix="/api/reports", tags=["reports"])

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


def _csv_response(text: str, filename: str) -> Response:
    return Response(
        content=text.encode("utf-8"),
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{pipeline_id}/daily")
async def daily_report(
    request: Request,
    pipeline_id: str,
    report_date: Optional[date] = Query(None, alias="date", description="YYYY-MM-DD, default today"),
    tz: Optional[str] = Query(None, description="IANA timezone"),
    stage: Optional[List[str]] = Query(None),
):
    """New leads, closes, follow-ups and price stats for one day."""
    tz = resolve_timezone(tz)
    deals, _ = await load_deals(request, pipeline_id, stage, include_companies=True)
    return dump(build_daily_report(deals, report_date, tz=tz))


@router.get("/{pipeline_id}/daily.html", response_class=HTMLResponse)
async def daily_report_html(
    request: Request,
    pipeline_id: str,
    report_date: Optional[date] = Query(None, alias="date"),
    tz: Optional[str] = Query(None),
    stage: Optional[List[str]] = Query(None),
):
    """Same report as /daily, rendered for printing."""
    tz = resolve_timezone(tz)
    deals, _ = await load_deals(request, pipeline_id, stage, include_companies=True)
    return HTMLResponse(daily_report_to_html(build_daily_report(deals, report_date, tz=tz)))


@router.get("/{pipeline_id}/items")
async def items_report(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
):
    deals, _ = await load_deals(request, pipeline_id, stage, created_after)
    return dump(build_items_report(deals))


@router.get("/{pipeline_id}/items.csv")
async def items_report_csv(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
    tz: Optional[str] = Query(None),
):
    tz = resolve_timezone(tz)
    deals, _ = await load_deals(request, pipeline_id, stage, created_after)
    report = build_items_report(deals)
    logger.info("Items CSV for pipeline %s: %d rows", pipeline_id, len(report.line_items))
    return _csv_response(items_report_to_csv(report, tz), f"items_{pipeline_id}.csv")


@router.get("/{pipeline_id}/deals.csv")
async def deals_csv(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
    tz: Optional[str] = Query(None),
):
    tz = resolve_timezone(tz)
    deals, _ = await load_deals(request, pipeline_id, stage, created_after)
    return _csv_response(deals_to_csv(deals, tz), f"deals_{pipeline_id}.csv")


@router.get("/{pipeline_id}/follow-up")
async def follow_up(
    request: Request,
    pipeline_id: str,
    threshold_days: Optional[int] = Query(None, ge=0, description="Default from config (14)"),
    stage: Optional[List[str]] = Query(None),
):
    """Open deals split into urgent and normal follow-ups."""
    deals, _ = await load_deals(request, pipeline_id, stage)
    return dump(build_follow_up(deals, threshold_days))


@router.get("/{pipeline_id}/orders")
async def orders(
    request: Request,
    pipeline_id: str,
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
):
    deals, _ = await load_deals(request, pipeline_id, stage, created_after)
    return dump(build_orders(deals))


@router.get("/{pipeline_id}/summary")
async def summary(
    request: Request,
    pipeline_id: str,
    report_date: Optional[date] = Query(None, alias="date"),
    tz: Optional[str] = Query(None),
    stage: Optional[List[str]] = Query(None),
    created_after: Optional[str] = Query(None),
):
    """Everything the analyzer script writes, computed live."""
    tz = resolve_timezone(tz)
    deals, stages = await load_deals(request, pipeline_id, stage, created_after)
    return run_price_analysis(deals, stages, pipeline_id=pipeline_id, report_date=report_date, tz=tz)
