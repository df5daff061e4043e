"""
Deal Price Analytics — API Server
===================================

Live API over the HubSpot deal pipeline: area per quote, price per m2
against market bands, stage rollups and printable reports.

Route groups:
  /api/health              - Health check
  /api/pricing/*           - Area calculator, classification, stage metrics
  /api/reports/*           - Daily / items / follow-up / orders reports + exports
  /api/metrics/latest      - Last processed metrics (Supabase, then JSON file)
"""

import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scripts.lib.logger import setup_logger

load_dotenv()

logger = setup_logger("api")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
PROCESSED_DIR = BASE_DIR / "data" / "processed"
VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Deal Price Analytics...")

    from integrations.hubspot import HubSpotIntegration
    app.state.hubspot = HubSpotIntegration()
    status = "configured" if app.state.hubspot.is_configured else "not configured"
    logger.info("HubSpot live integration: %s", status)

    logger.info("Deal Price Analytics ready")
    yield
    logger.info("Shutting down Deal Price Analytics...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Deal Price Analytics",
    version=VERSION,
    description="Corrugated box quotes: area, price per m2 and pipeline reports",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.dependencies import supabase_available
from dashboard.api.routers.pricing import router as pricing_router
from dashboard.api.routers.reports import router as reports_router

app.include_router(pricing_router)
app.include_router(reports_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    hubspot = getattr(app.state, "hubspot", None)
    return {
        "status": "healthy",
        "service": "Deal Price Analytics",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            "supabase": supabase_available(),
            "hubspot": bool(hubspot is not None and hubspot.is_configured),
        },
    }


# ─── Processed Metrics ────────────────────────────────────────

@app.get("/api/metrics/latest", tags=["metrics"])
async def latest_metrics():
    """
    Last metrics written by scripts/hubspot_price_analyzer.py.
    Tries the Supabase snapshot first, falls back to the JSON file.
    """
    if supabase_available():
        from scripts.hubspot_price_analyzer import SNAPSHOT_SOURCE
        from scripts.lib.supabase_client import get_latest_snapshot
        data = get_latest_snapshot(SNAPSHOT_SOURCE)
        if data:
            return JSONResponse(content=data)

    metrics_path = PROCESSED_DIR / "hubspot_price_metrics.json"
    if not metrics_path.exists():
        raise HTTPException(
            status_code=404,
            detail="No metrics data. Run: python scripts/hubspot_price_analyzer.py",
        )
    try:
        with open(metrics_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return JSONResponse(content=data)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to load metrics: %s", e)
        raise HTTPException(status_code=500, detail="Failed to load metrics data")
