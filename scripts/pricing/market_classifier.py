"""
Deal Price Analytics — Market Price Classifier
================================================

Compares a quoted price per m2 against the configured market band for a
zone. Bands are static configuration, never live data, so the same quote
always classifies the same way.

Constants:
  MARKET_BANDS              - built-in bands by zone

Functions:
  get_market_bands()        - configured bands as MarketBand models
  get_band()                - band for a zone (unknown zones -> default)
  classify_price()          - quote -> PriceClassification (None = no data)
  detect_zone()             - guess a zone from client name / company
  analyze_deal_price()      - EnrichedDeal -> DealPriceAnalysis
  calculate_price_stats()   - rollup over many analyses
"""
from __future__ import annotations

import math
import re
from typing import Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

from models.pricing_models import (
    DealPriceAnalysis,
    EnrichedDeal,
    MarketBand,
    PriceAnalysisStats,
    PriceClassification,
)
from scripts.lib.config import DEFAULT_CONFIG, get_config
from scripts.lib.logger import setup_logger

logger = setup_logger("market_classifier")

DEFAULT_ZONE = "default"

ZONE_PATTERNS: Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...] = (
    ("amba", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"buenos\s*aires", r"capital", r"caba", r"gba",
        r"zona\s*norte", r"zona\s*sur", r"zona\s*oeste",
    ))),
    ("interior", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"c[oó]rdoba", r"rosario", r"mendoza", r"tucum[aá]n",
        r"interior", r"santa\s*fe", r"salta", r"neuqu[eé]n",
    ))),
    ("exportacion", tuple(re.compile(p, re.IGNORECASE) for p in (
        r"export", r"chile", r"uruguay", r"paraguay",
        r"brasil", r"bolivia", r"internacional",
    ))),
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _fmt_price(value: float) -> str:
    """ARS without decimals, dot thousands separator: $ 1.234"""
    return "$ " + f"{value:,.0f}".replace(",", ".")


def build_bands(raw_bands: Mapping[str, Mapping]) -> Dict[str, MarketBand]:
    """Turn a {zone: {name, min, max, avg}} mapping into MarketBand models."""
    bands: Dict[str, MarketBand] = {}
    for zone_id, raw in raw_bands.items():
        zone = str(zone_id).lower()
        bands[zone] = MarketBand(
            zone_id=zone,
            zone_name=raw.get("name", zone),
            min=float(raw["min"]),
            max=float(raw["max"]),
            avg=float(raw["avg"]),
        )
    if DEFAULT_ZONE not in bands:
        bands[DEFAULT_ZONE] = MARKET_BANDS[DEFAULT_ZONE]
    return bands


# Built-in bands; configs/pricing.yaml and env overrides take precedence
MARKET_BANDS: Dict[str, MarketBand] = build_bands(DEFAULT_CONFIG["market_bands"])


def get_market_bands(config: Optional[Mapping] = None) -> Dict[str, MarketBand]:
    config = config or get_config()
    return build_bands(config.get("market_bands", DEFAULT_CONFIG["market_bands"]))


def get_band(zone: Optional[str], bands: Optional[Mapping[str, MarketBand]] = None) -> MarketBand:
    """Band for *zone*, matched case-insensitively; unknown zones get the default band."""
    bands = bands if bands is not None else get_market_bands()
    key = (zone or "").strip().lower()
    return bands.get(key) or bands[DEFAULT_ZONE]


def classify_price(
    zone: Optional[str],
    quoted_price_per_area: Optional[float],
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> Optional[PriceClassification]:
    """
    Classify a quoted price per m2 against the zone's market band.

    below_market if quoted < band.min, above_market if quoted > band.max,
    otherwise in_range (both bounds inclusive). percent_diff is the
    difference from the band average, rounded half up to a whole percent.

    Returns None when there is no quote (None, non-finite or <= 0).
    """
    if quoted_price_per_area is None:
        return None
    quoted = float(quoted_price_per_area)
    if not math.isfinite(quoted) or quoted <= 0:
        return None

    band = get_band(zone, bands)
    percent_diff = _round_half_up((quoted - band.avg) / band.avg * 100)

    if quoted < band.min:
        status, label = "below_market", "Por debajo"
        description = f"Precio {abs(percent_diff)}% por debajo del promedio de mercado"
    elif quoted > band.max:
        status, label = "above_market", "Por encima"
        description = f"Precio {percent_diff}% por encima del promedio de mercado"
    else:
        status, label = "in_range", "En precio"
        description = (
            f"Precio dentro del rango de mercado "
            f"({_fmt_price(band.min)} - {_fmt_price(band.max)}/m²)"
        )

    return PriceClassification(
        status=status,
        percent_diff=percent_diff,
        band=band,
        quoted_price=quoted,
        label=label,
        description=description,
    )


def detect_zone(client_name: Optional[str], client_company: Optional[str]) -> str:
    """Guess the market zone from free-text client fields; default when nothing matches."""
    text = f"{client_name or ''} {client_company or ''}"
    for zone, patterns in ZONE_PATTERNS:
        if any(p.search(text) for p in patterns):
            return zone
    return DEFAULT_ZONE


def analyze_deal_price(
    deal: EnrichedDeal,
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> Optional[DealPriceAnalysis]:
    """Price analysis for one deal; None when the deal has no price per m2."""
    bands = bands if bands is not None else get_market_bands()
    zone = detect_zone(deal.client_name, deal.client_company)
    classification = classify_price(zone, deal.avg_price_per_area, bands)
    if classification is None:
        return None

    return DealPriceAnalysis(
        deal_id=deal.id,
        deal_name=deal.name,
        client_name=deal.client_company or deal.client_name,
        zone=classification.band.zone_id,
        zone_name=classification.band.zone_name,
        quoted_price_per_area=classification.quoted_price,
        total_area=deal.total_area,
        classification=classification,
        created_at=deal.create_date,
    )


def analyze_deals(
    deals: Iterable[EnrichedDeal],
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> List[DealPriceAnalysis]:
    """Analyses for every deal that has a price per m2, input order kept."""
    bands = bands if bands is not None else get_market_bands()
    analyses = []
    for deal in deals:
        analysis = analyze_deal_price(deal, bands)
        if analysis is not None:
            analyses.append(analysis)
    return analyses


def calculate_price_stats(analyses: Sequence[DealPriceAnalysis]) -> PriceAnalysisStats:
    """
    Rollup of classifications.

    potential_revenue is what the analysed m2 would bill at each zone's
    market average.
    """
    if not analyses:
        return PriceAnalysisStats()

    counts = {"in_range": 0, "below_market": 0, "above_market": 0}
    total_diff = 0.0
    potential_revenue = 0.0
    for analysis in analyses:
        classification = analysis.classification
        counts[classification.status] += 1
        total_diff += classification.percent_diff
        potential_revenue += classification.band.avg * analysis.total_area

    return PriceAnalysisStats(
        total=len(analyses),
        in_range=counts["in_range"],
        below_market=counts["below_market"],
        above_market=counts["above_market"],
        avg_diff_percent=round(total_diff / len(analyses), 1),
        potential_revenue=_round_half_up(potential_revenue),
    )
