"""
HubSpot Price Analyzer
=======================
Fetches a deal pipeline from HubSpot (or reads a raw JSON export from
data/raw/), enriches every deal with area and price per m2, and writes the
pricing metrics to data/processed/hubspot_price_metrics.json.

Exports:
    fetch_raw_pipeline, fetch_enriched_deals, enrich_raw_pipeline,
    run_price_analysis

Usage:
    python scripts/hubspot_price_analyzer.py --pipeline-id default
    python scripts/hubspot_price_analyzer.py --pipeline-id default --offline --csv --html
"""

from __future__ import annotations

import argparse
import asyncio
import glob
import json
import os
import re
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))
RAW_DIR = BASE_DIR / "data" / "raw"
PROCESSED_DIR = BASE_DIR / "data" / "processed"
EXPORTS_DIR = BASE_DIR / "data" / "exports"

load_dotenv(BASE_DIR / ".env")

from integrations.hubspot import HubSpotIntegration
from models.pricing_models import EnrichedDeal, MarketBand, Stage, dump
from scripts.lib.config import get_config
from scripts.lib.errors import DataFetchError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import atomic_write_json, atomic_write_text, now_utc
from scripts.pricing.deal_enrichment import build_stage_index, enrich_deals
from scripts.pricing.exports import daily_report_to_html, deals_to_csv, items_report_to_csv
from scripts.pricing.market_classifier import get_market_bands
from scripts.pricing.report_builder import (
    build_daily_report,
    build_follow_up,
    build_items_report,
    build_orders,
    build_price_analysis,
    build_report_data,
)
from scripts.pricing.stage_aggregator import aggregate, bucket_by_period, full_pipeline_metrics

logger = setup_logger("hubspot_price_analyzer")

SNAPSHOT_SOURCE = "hubspot_pricing"
OUTPUT_FILE = "hubspot_price_metrics.json"
# Concurrent per-deal association lookups
FETCH_CONCURRENCY = 5


# ============================================================================
# Fetching
# ============================================================================

async def fetch_raw_pipeline(
    client: HubSpotIntegration,
    pipeline_id: str,
    stage_ids: Optional[Sequence[str]] = None,
    created_after: Optional[str] = None,
    include_line_items: bool = True,
    include_companies: bool = False,
    include_associations: bool = True,
    concurrency: int = FETCH_CONCURRENCY,
) -> Dict[str, Any]:
    """
    Pull everything needed to enrich a pipeline's deals.

    Returns a JSON-ready dict: pipeline, deals, and by deal id line_items,
    associations (contact and company ids) and companies (name of the first
    associated company). CRM errors propagate.
    """
    pipeline = await client.get_pipeline(pipeline_id)
    deals = await client.get_all_deals(pipeline_id, stage_ids=stage_ids, created_after=created_after)

    semaphore = asyncio.Semaphore(concurrency)

    async def _items(deal_id: str) -> Tuple[str, List[Dict]]:
        async with semaphore:
            return deal_id, await client.get_line_items(deal_id)

    async def _associations(deal_id: str) -> Tuple[str, Dict[str, List[str]]]:
        async with semaphore:
            return deal_id, await client.get_deal_associations(deal_id)

    async def _company(deal_id: str) -> Tuple[str, Optional[str]]:
        known = associations.get(deal_id, {}).get("companies", []) if include_associations else None
        async with semaphore:
            return deal_id, await client.get_deal_company_name(deal_id, company_ids=known)

    deal_ids = [str(d.get("id")) for d in deals if d.get("id")]
    line_items: Dict[str, List[Dict]] = {}
    associations: Dict[str, Dict[str, List[str]]] = {}
    companies: Dict[str, str] = {}

    if include_line_items and deal_ids:
        for deal_id, items in await asyncio.gather(*(_items(i) for i in deal_ids)):
            if items:
                line_items[deal_id] = items
    if include_associations and deal_ids:
        for deal_id, ids in await asyncio.gather(*(_associations(i) for i in deal_ids)):
            if any(ids.values()):
                associations[deal_id] = ids
    if include_companies and deal_ids:
        for deal_id, name in await asyncio.gather(*(_company(i) for i in deal_ids)):
            if name:
                companies[deal_id] = name

    logger.info(
        "Fetched pipeline %s: %d deals, %d with line items, %d with associations, %d with company",
        pipeline_id, len(deals), len(line_items), len(associations), len(companies),
    )
    return {
        "source": "hubspot",
        "fetched_at": now_utc().isoformat(),
        "pipeline": pipeline,
        "deals": deals,
        "line_items": line_items,
        "associations": associations,
        "companies": companies,
    }


def enrich_raw_pipeline(
    raw: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Tuple[List[EnrichedDeal], Dict[str, Stage]]:
    """Pure step: raw pipeline export -> (enriched deals, stage index)."""
    stage_index = build_stage_index(raw.get("pipeline") or {})
    deals = enrich_deals(
        raw.get("deals", []),
        stage_index,
        # deals without associated line items fall back to mp_items_json
        line_items_by_deal=raw.get("line_items") or {},
        company_names=raw.get("companies") or {},
        now=now,
        associations_by_deal=raw.get("associations") or {},
    )
    return deals, stage_index


async def fetch_enriched_deals(
    client: HubSpotIntegration,
    pipeline_id: str,
    stage_ids: Optional[Sequence[str]] = None,
    created_after: Optional[str] = None,
    include_line_items: bool = True,
    include_companies: bool = False,
    include_associations: bool = True,
    now: Optional[datetime] = None,
) -> Tuple[List[EnrichedDeal], Dict[str, Stage]]:
    """Awaited CRM I/O followed by pure enrichment."""
    raw = await fetch_raw_pipeline(
        client, pipeline_id,
        stage_ids=stage_ids,
        created_after=created_after,
        include_line_items=include_line_items,
        include_companies=include_companies,
        include_associations=include_associations,
    )
    return enrich_raw_pipeline(raw, now=now)


# ============================================================================
# Raw export files
# ============================================================================

def _raw_path(pipeline_id: str, day: Optional[date] = None) -> Path:
    day = day or now_utc().date()
    return RAW_DIR / f"hubspot_pricing_{pipeline_id}_{day.isoformat()}.json"


def _find_latest_raw(pipeline_id: str) -> Optional[Path]:
    """Most recent hubspot_pricing_{pipeline_id}_YYYY-MM-DD.json in data/raw/."""
    pattern = str(RAW_DIR / f"hubspot_pricing_{pipeline_id}_*.json")
    date_re = re.compile(r"_(\d{4}-\d{2}-\d{2})\.json$")
    dated = []
    for fp in glob.glob(pattern):
        m = date_re.search(os.path.basename(fp))
        if m:
            dated.append((m.group(1), Path(fp)))
    if not dated:
        return None
    dated.sort(key=lambda x: x[0], reverse=True)
    return dated[0][1]


def load_raw_pipeline(pipeline_id: str, path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or _find_latest_raw(pipeline_id)
    if path is None or not path.exists():
        raise DataFetchError(f"No raw export found for pipeline {pipeline_id} in {RAW_DIR}", source="raw")
    logger.info("Loading raw pipeline export from %s", path)
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


# ============================================================================
# Analysis
# ============================================================================

def run_price_analysis(
    deals: Sequence[EnrichedDeal],
    stages: Optional[Mapping[str, Stage]] = None,
    pipeline_id: str = "",
    report_date: Optional[date] = None,
    tz: Optional[str] = None,
    bands: Optional[Mapping[str, MarketBand]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the full pricing metrics document (JSON-ready)."""
    config = get_config()
    tz = tz or config["report_timezone"]
    bands = bands if bands is not None else get_market_bands(config)
    now = now or now_utc()

    logger.info("Running price analysis over %d deals", len(deals))

    pipeline = aggregate(deals, stages, include_empty=stages is not None)
    price_analysis = build_price_analysis(deals, bands)
    items = build_items_report(deals)

    return {
        "generated_at": now.isoformat(),
        "data_source": "hubspot",
        "pipeline_id": pipeline_id,
        "timezone": tz,
        "record_counts": {
            "deals": len(deals),
            "line_items": len(items.line_items),
            "priced_deals": price_analysis.stats.total,
        },
        "pipeline": dump(pipeline),
        "pipeline_metrics": dump(full_pipeline_metrics(deals, stages)),
        "monthly": [dump(b) for b in bucket_by_period(deals, "month", "close", tz=tz, fill_empty=True)],
        "price_analysis": dump(price_analysis),
        "daily_report": dump(build_daily_report(deals, report_date, tz=tz, now=now, bands=bands)),
        "follow_up": dump(build_follow_up(deals)),
        "orders": dump(build_orders(deals)),
        "items_summary": {
            "total_area": items.total_area,
            "total_subtotal": items.total_subtotal,
            "total_deals": items.total_deals,
        },
        "report_data": dump(build_report_data(deals, tz=tz)),
        "market_bands": {zone: dump(band) for zone, band in bands.items()},
    }


def _push_to_supabase(metrics: Dict[str, Any], deals: Sequence[EnrichedDeal]) -> bool:
    """Store the snapshot and per-deal rows; False if either write failed."""
    from scripts.lib.supabase_client import upsert_deal_rows, upsert_snapshot

    snapshot_ok = upsert_snapshot(SNAPSHOT_SOURCE, metrics)
    rows_ok = upsert_deal_rows([
        {
            "deal_id": d.id,
            "pipeline_id": d.pipeline_id,
            "deal_name": d.name,
            "stage_id": d.stage_id,
            "stage_label": d.stage_label,
            "amount": d.amount,
            "total_area": d.total_area,
            "avg_price_per_area": d.avg_price_per_area,
            "create_date": d.create_date.isoformat() if d.create_date else None,
            "close_date": d.close_date.isoformat() if d.close_date else None,
        }
        for d in deals
    ])
    if not (snapshot_ok and rows_ok):
        logger.warning(
            "Supabase push incomplete (snapshot=%s, deal rows=%s)", snapshot_ok, rows_ok,
        )
        return False
    return True


# ============================================================================
# CLI
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="HubSpot deal price analytics")
    parser.add_argument("--pipeline-id", default=os.getenv("HUBSPOT_PIPELINE_ID", "default"))
    parser.add_argument("--stage", action="append", dest="stage_ids", help="Restrict to a stage id (repeatable)")
    parser.add_argument("--created-after", help="Only deals created on/after this ISO date")
    parser.add_argument("--offline", action="store_true", help="Read the latest raw export instead of calling HubSpot")
    parser.add_argument("--raw-file", type=Path, help="Explicit raw export to read (implies --offline)")
    parser.add_argument("--date", type=date.fromisoformat, help="Daily report date (YYYY-MM-DD)")
    parser.add_argument("--companies", action="store_true", help="Also look up associated company names")
    parser.add_argument("--csv", action="store_true", help="Write items and deals CSV exports")
    parser.add_argument("--html", action="store_true", help="Write the printable daily report")
    parser.add_argument("--push-supabase", action="store_true", help="Store a snapshot in Supabase")
    args = parser.parse_args(argv)

    if args.offline or args.raw_file:
        raw = load_raw_pipeline(args.pipeline_id, args.raw_file)
    else:
        raw = asyncio.run(fetch_raw_pipeline(
            HubSpotIntegration(),
            args.pipeline_id,
            stage_ids=args.stage_ids,
            created_after=args.created_after,
            include_companies=args.companies,
        ))
        atomic_write_json(raw, _raw_path(args.pipeline_id))

    now = now_utc()
    deals, stages = enrich_raw_pipeline(raw, now=now)
    metrics = run_price_analysis(deals, stages, pipeline_id=args.pipeline_id, report_date=args.date, now=now)

    output_path = PROCESSED_DIR / OUTPUT_FILE
    if not atomic_write_json(metrics, output_path):
        return 1
    logger.info("Analysis complete. Output saved to %s", output_path)

    tz = metrics["timezone"]
    if args.csv:
        atomic_write_text(items_report_to_csv(build_items_report(deals), tz), EXPORTS_DIR / "items_report.csv")
        atomic_write_text(deals_to_csv(deals, tz), EXPORTS_DIR / "deals.csv")
    if args.html:
        report = build_daily_report(deals, args.date, tz=tz, now=now)
        atomic_write_text(daily_report_to_html(report, now), EXPORTS_DIR / f"daily_report_{report.report_date}.html")
    if args.push_supabase and not _push_to_supabase(metrics, deals):
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
