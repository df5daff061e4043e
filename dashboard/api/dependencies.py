"""
Deal Price Analytics — API dependencies
=========================================
Shared helpers for routers that need live HubSpot data.

CRM failures become HTTP 502; a missing or unconfigured client is 503.
Supabase is optional: supabase_available() tells routes whether to use it.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import pytz
from fastapi import HTTPException, Request

from models.pricing_models import EnrichedDeal, Stage
from scripts.hubspot_price_analyzer import fetch_enriched_deals
from scripts.lib.config import get_config
from scripts.lib.errors import APIError, ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("api_dependencies")


def get_hubspot(request: Request):
    hubspot = getattr(request.app.state, "hubspot", None)
    if hubspot is None or not hubspot.is_configured:
        raise HTTPException(status_code=503, detail="HubSpot not configured")
    return hubspot


def supabase_available() -> bool:
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        return True
    except ConfigError:
        return False


def resolve_timezone(tz: Optional[str]) -> str:
    """Validated IANA name; falls back to the configured report timezone."""
    name = tz or get_config()["report_timezone"]
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {name}")
    return name


async def load_deals(
    request: Request,
    pipeline_id: str,
    stage_ids: Optional[Sequence[str]] = None,
    created_after: Optional[str] = None,
    include_companies: bool = False,
) -> Tuple[List[EnrichedDeal], Dict[str, Stage]]:
    """Fetch and enrich a pipeline's deals for one request."""
    hubspot = get_hubspot(request)
    try:
        return await fetch_enriched_deals(
            hubspot,
            pipeline_id,
            stage_ids=stage_ids,
            created_after=created_after,
            include_companies=include_companies,
        )
    except APIError as e:
        logger.error("HubSpot fetch failed for pipeline %s: %s", pipeline_id, e)
        raise HTTPException(status_code=502, detail=str(e))
    except ConfigError as e:
        logger.error("HubSpot not usable: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
