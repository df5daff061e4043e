"""
Configuration for Deal Price Analytics.

Defaults live in DEFAULT_CONFIG. An optional YAML file (configs/pricing.yaml,
or PRICING_CONFIG_PATH) is deep-merged on top, then env vars win:

    REPORT_TIMEZONE   - IANA timezone used for day/month buckets
    FOLLOW_UP_DAYS    - age in days after which an open deal needs follow-up
    VAT_RATE          - tax rate applied when a deal carries no tax total

Usage:
    from scripts.lib.config import get_config
    config = get_config()
    bands = config["market_bands"]
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("config")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "configs" / "pricing.yaml"

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: Dict[str, Any] = {
    # Reference price per m2 by zone (corrugated board, ARS)
    "market_bands": {
        "amba": {"name": "AMBA (Buenos Aires)", "min": 550, "max": 750, "avg": 650},
        "interior": {"name": "Interior del País", "min": 600, "max": 850, "avg": 725},
        "exportacion": {"name": "Exportación", "min": 500, "max": 700, "avg": 600},
        "default": {"name": "General", "min": 550, "max": 800, "avg": 675},
    },
    "report_timezone": "America/Argentina/Buenos_Aires",
    "follow_up_threshold_days": 14,
    "vat_rate": 0.21,
    "top_clients_limit": 10,
    # How long a generated deal action plan stays valid
    "action_plan_ttl_hours": 24,
}

_config: Optional[Dict[str, Any]] = None


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge *override* into a copy of *base*."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping; a missing file is an empty mapping."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read pricing config: {e}", config_path=str(path))
    if not isinstance(data, dict):
        raise ConfigError("Pricing config must be a mapping", config_path=str(path))
    logger.info("Loaded pricing config from %s", path)
    return data


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Args:
        path: YAML file to merge over the defaults. Defaults to
            PRICING_CONFIG_PATH or configs/pricing.yaml.

    Returns:
        A fresh config dict (callers may mutate it).
    """
    if path is None:
        path = os.getenv("PRICING_CONFIG_PATH") or DEFAULT_CONFIG_PATH
    config = _deep_merge(DEFAULT_CONFIG, _load_yaml(Path(path)))

    tz = os.getenv("REPORT_TIMEZONE")
    if tz:
        config["report_timezone"] = tz

    follow_up = os.getenv("FOLLOW_UP_DAYS")
    if follow_up:
        try:
            config["follow_up_threshold_days"] = int(follow_up)
        except ValueError:
            raise ConfigError(f"FOLLOW_UP_DAYS must be an integer, got {follow_up!r}")

    vat = os.getenv("VAT_RATE")
    if vat:
        try:
            config["vat_rate"] = float(vat)
        except ValueError:
            raise ConfigError(f"VAT_RATE must be a number, got {vat!r}")

    return config


def get_config() -> Dict[str, Any]:
    """Return the process-wide configuration (loaded once)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None
