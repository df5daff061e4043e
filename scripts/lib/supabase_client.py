"""
Supabase Client Helper for Deal Price Analytics.
Stores processed pricing snapshots, per-deal rows and deal action plans.

Usage:
    from scripts.lib.supabase_client import upsert_snapshot, get_latest_snapshot

    upsert_snapshot("hubspot_pricing", metrics)
    latest = get_latest_snapshot("hubspot_pricing")
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import now_utc, parse_ts

logger = setup_logger(__name__)

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

SNAPSHOT_TABLE = "dashboard_snapshots"
DEALS_TABLE = "pricing_deals"
ACTION_PLANS_TABLE = "pricing_action_plans"

_client = None


def get_client():
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    url = os.environ.get("SUPABASE_URL", "")
    key = (
        os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
        or os.environ.get("SUPABASE_KEY", "")
    )
    if not url or not key:
        raise ConfigError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env")

    from supabase import create_client
    _client = create_client(url, key)
    logger.info("Supabase client connected to %s", url)
    return _client


def reset_client() -> None:
    global _client
    _client = None


def upsert_snapshot(source: str, data: Dict) -> bool:
    """
    Insert a new dashboard snapshot for a given source.

    Args:
        source: Source identifier (e.g. "hubspot_pricing").
        data: Full processed metrics dict (JSON-ready).

    Returns:
        True on success, False on failure.
    """
    try:
        client = get_client()
        row = {
            "source": source,
            "data": data,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        client.table(SNAPSHOT_TABLE).insert(row).execute()
        logger.info("Snapshot inserted for source: %s", source)
        return True
    except Exception as e:
        logger.error("Supabase snapshot insert failed for %s: %s", source, e)
        return False


def get_latest_snapshot(source: str) -> Optional[Dict]:
    """
    Fetch the latest snapshot for a source.

    Returns:
        The data dict from the latest snapshot, or None.
    """
    try:
        client = get_client()
        result = (
            client.table(SNAPSHOT_TABLE)
            .select("data, generated_at")
            .eq("source", source)
            .order("generated_at", desc=True)
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0].get("data")
        return None
    except Exception as e:
        logger.error("Supabase fetch failed for %s: %s", source, e)
        return None


def upsert_deal_rows(rows: List[Dict]) -> bool:
    """Upsert per-deal pricing rows keyed on deal_id."""
    if not rows:
        return True

    try:
        client = get_client()
        client.table(DEALS_TABLE).upsert(rows, on_conflict="deal_id").execute()
        logger.info("Upserted %d rows into %s", len(rows), DEALS_TABLE)
        return True
    except Exception as e:
        logger.error("Supabase bulk upsert failed on %s: %s", DEALS_TABLE, e)
        return False


def save_action_plan(row: Dict) -> bool:
    """Upsert a deal's action plan row (one per deal_id)."""
    try:
        client = get_client()
        client.table(ACTION_PLANS_TABLE).upsert(row, on_conflict="deal_id").execute()
        logger.info("Action plan saved for deal %s", row.get("deal_id"))
        return True
    except Exception as e:
        logger.error("Supabase action plan upsert failed for %s: %s", row.get("deal_id"), e)
        return False


def get_saved_action_plan(deal_id: str, now: Optional[datetime] = None) -> Optional[Dict]:
    """
    Stored action plan row for a deal.

    Returns:
        The row while it is unexpired, otherwise None (read failures included).
    """
    try:
        client = get_client()
        result = (
            client.table(ACTION_PLANS_TABLE)
            .select("*")
            .eq("deal_id", deal_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.error("Supabase action plan fetch failed for %s: %s", deal_id, e)
        return None

    if not result.data:
        return None
    row = result.data[0]
    expires_at = parse_ts(row.get("expires_at"))
    if expires_at is None or expires_at <= (now or now_utc()):
        logger.info("Saved action plan for deal %s has expired", deal_id)
        return None
    return row
