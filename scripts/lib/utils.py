"""
Utility functions for Deal Price Analytics.
Lenient value parsing for CRM records and atomic file writes.

Usage:
    from scripts.lib.utils import safe_float, parse_ts, atomic_write_json
"""
import json
import math
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


def safe_float(val: Any, default: float = 0.0) -> float:
    """Convert a CRM value to float; None, junk and non-finite values give *default*."""
    if val is None or isinstance(val, bool):
        return default
    try:
        result = float(val)
    except (ValueError, TypeError):
        return default
    if not math.isfinite(result):
        return default
    return result


def safe_int(val: Any, default: int = 0) -> int:
    """Convert a CRM value to int (truncating floats)."""
    result = safe_float(val, default=None)
    if result is None:
        return default
    return int(result)


def safe_div(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Zero-safe division."""
    if denominator == 0:
        return default
    return numerator / denominator


def parse_ts(value: Any) -> Optional[datetime]:
    """
    Parse a HubSpot timestamp to a timezone-aware datetime.

    Accepts ISO-8601 strings (with or without trailing Z / offset), epoch
    milliseconds (int or digit string) and datetimes. Naive values are UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_ts(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_utc() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Target file path.
        indent: JSON indentation level.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink(missing_ok=True)
        return False


def atomic_write_text(text: str, file_path: str | Path, encoding: str = "utf-8") -> bool:
    """Write a text export (CSV/HTML) atomically."""
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        # newline="" keeps CSV line endings exactly as generated
        with open(temp_path, "w", encoding=encoding, newline="") as f:
            f.write(text)
        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote %s", file_path)
        return True
    except OSError as e:
        logger.error("Failed to write %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink(missing_ok=True)
        return False
