"""
Deal Price Analytics — Report Assemblers
==========================================

Thin views over enriched deals for the dashboard tabs and exports.
Each builder takes already-enriched deals and returns a frozen model.

Functions:
  build_daily_report()     - one calendar day: new leads, closes, follow-ups
  build_price_analysis()   - per-deal price classification + stats
  build_items_report()     - one row per quoted line item
  build_follow_up()        - open deals split into urgent / normal
  build_orders()           - confirmed orders and closed-won deals
  build_report_data()      - monthly series, top clients, stage distribution
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pytz

from models.pricing_models import (
    ClientRanking,
    DailyReport,
    EnrichedDeal,
    FollowUpData,
    ItemsReport,
    MarketBand,
    OrdersData,
    PriceAnalysisReport,
    ReportData,
    ReportLineItem,
    StageSlice,
)
from scripts.lib.config import get_config
from scripts.lib.logger import setup_logger
from scripts.lib.utils import now_utc
from scripts.pricing.market_classifier import analyze_deals, calculate_price_stats
from scripts.pricing.stage_aggregator import bucket_by_period, deal_date

logger = setup_logger("report_builder")

CONFIRMED_KEYWORDS = ("confirmado", "orden recibida", "confirmed")
URGENT_STAGE_MARKERS = ("+14", "+ 14")

STAGE_COLORS: Dict[str, str] = {
    "contacto inicial": "#3b82f6",
    "envío de presupuesto": "#06b6d4",
    "envio de presupuesto": "#06b6d4",
    "seguimiento/negociación - 14": "#f59e0b",
    "seguimiento/negociacion - 14": "#f59e0b",
    "seguimiento/negociación -14": "#f59e0b",
    "seguimiento/negociacion -14": "#f59e0b",
    "seguimiento/negociación +14": "#f97316",
    "seguimiento/negociacion +14": "#f97316",
    "seguimiento/negociación + 14": "#f97316",
    "seguimiento/negociacion + 14": "#f97316",
    "confirmado/orden recibida": "#22c55e",
    "cierre ganado": "#10b981",
    "cierre perdido": "#ef4444",
}
DEFAULT_STAGE_COLOR = "#64748b"


def get_stage_color(stage_label: str) -> str:
    return STAGE_COLORS.get((stage_label or "").strip().lower(), DEFAULT_STAGE_COLOR)


def _day_window(day: date, tzinfo) -> tuple:
    """[start, end) of a local calendar day as aware datetimes."""
    start = tzinfo.localize(datetime.combine(day, time.min))
    # next local midnight, not start + 24h: DST days are 23 or 25 hours long
    end = tzinfo.localize(datetime.combine(day + timedelta(days=1), time.min))
    return start, end


def _in_window(dt: Optional[datetime], start: datetime, end: datetime) -> bool:
    return dt is not None and start <= dt < end


def _needs_follow_up(deal: EnrichedDeal, threshold_days: int) -> bool:
    if any(marker in deal.stage_label for marker in URGENT_STAGE_MARKERS):
        return True
    return deal.days_since_creation > threshold_days


def build_daily_report(
    deals: Sequence[EnrichedDeal],
    report_date: Union[date, str, None] = None,
    tz: Optional[str] = None,
    follow_up_days: Optional[int] = None,
    now: Optional[datetime] = None,
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> DailyReport:
    """
    Daily report for one calendar day in the report timezone.

    Closed won/lost deals count on their close date (creation date when the
    CRM has none). Follow-ups and pipeline totals cover open deals only.
    """
    config = get_config()
    tz_name = tz or config["report_timezone"]
    tzinfo = pytz.timezone(tz_name)
    threshold = follow_up_days if follow_up_days is not None else config["follow_up_threshold_days"]

    if isinstance(report_date, str):
        report_date = date.fromisoformat(report_date)
    if report_date is None:
        report_date = (now or now_utc()).astimezone(tzinfo).date()

    start, end = _day_window(report_date, tzinfo)

    new_leads = [d for d in deals if _in_window(d.create_date, start, end)]
    closed_won = [
        d for d in deals
        if d.stage_outcome == "won" and _in_window(deal_date(d, "close"), start, end)
    ]
    closed_lost = [
        d for d in deals
        if d.stage_outcome == "lost" and _in_window(deal_date(d, "close"), start, end)
    ]
    open_deals = [d for d in deals if d.stage_outcome == "open"]
    follow_up = [d for d in open_deals if _needs_follow_up(d, threshold)]

    report = DailyReport(
        report_date=report_date,
        timezone=tz_name,
        new_leads=new_leads,
        closed_won=closed_won,
        closed_lost=closed_lost,
        follow_up_needed=follow_up,
        total_pipeline_amount=sum(d.amount for d in open_deals),
        total_pipeline_area=sum(d.total_area for d in open_deals),
        closed_won_amount=sum(d.amount for d in closed_won),
        price_stats=calculate_price_stats(analyze_deals(deals, bands)),
    )
    logger.info(
        "Daily report %s: %d new, %d won, %d lost, %d follow-up",
        report_date, len(new_leads), len(closed_won), len(closed_lost), len(follow_up),
    )
    return report


def build_price_analysis(
    deals: Sequence[EnrichedDeal],
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> PriceAnalysisReport:
    """Classify every deal that has a price per m2."""
    analyses = analyze_deals(deals, bands)
    return PriceAnalysisReport(analyses=analyses, stats=calculate_price_stats(analyses))


def build_items_report(deals: Sequence[EnrichedDeal]) -> ItemsReport:
    rows: List[ReportLineItem] = []
    deals_with_items = 0
    for deal in deals:
        if not deal.line_items:
            continue
        deals_with_items += 1
        for li in deal.line_items:
            rows.append(ReportLineItem(
                deal_id=deal.id,
                deal_name=deal.name,
                create_date=deal.create_date,
                client_name=deal.display_client,
                payment_terms=deal.payment_terms,
                stage_label=deal.stage_label,
                quantity=li.quantity,
                length_mm=li.length_mm,
                width_mm=li.width_mm,
                height_mm=li.height_mm,
                unit_area=li.unit_area,
                total_area=li.total_area,
                quality=li.quality,
                unit_price=li.unit_price,
                subtotal=li.amount,
            ))

    return ItemsReport(
        line_items=rows,
        total_area=sum(r.total_area for r in rows),
        total_subtotal=sum(r.subtotal for r in rows),
        total_deals=deals_with_items,
    )


def build_follow_up(
    deals: Sequence[EnrichedDeal],
    threshold_days: Optional[int] = None,
) -> FollowUpData:
    """Open deals; urgent ones are older than the threshold or sit in a "+14" stage."""
    if threshold_days is None:
        threshold_days = get_config()["follow_up_threshold_days"]

    open_deals = [d for d in deals if d.stage_outcome == "open"]
    urgent = [d for d in open_deals if _needs_follow_up(d, threshold_days)]
    urgent_ids = {d.id for d in urgent}
    normal = [d for d in open_deals if d.id not in urgent_ids]

    return FollowUpData(
        urgent=sorted(urgent, key=lambda d: d.days_since_creation, reverse=True),
        normal=sorted(normal, key=lambda d: d.days_since_creation),
        total_deals=len(open_deals),
        total_area=sum(d.total_area for d in open_deals),
        total_amount=sum(d.amount for d in open_deals),
    )


def build_orders(deals: Sequence[EnrichedDeal]) -> OrdersData:
    confirmed = [
        d for d in deals
        if d.stage_outcome == "open"
        and any(k in d.stage_label.lower() for k in CONFIRMED_KEYWORDS)
    ]
    won = [d for d in deals if d.stage_outcome == "won"]
    orders = confirmed + won
    return OrdersData(
        confirmed=confirmed,
        closed_won=won,
        total_orders=len(orders),
        total_amount=sum(d.amount for d in orders),
        total_area=sum(d.total_area for d in orders),
    )


def build_report_data(
    deals: Sequence[EnrichedDeal],
    tz: Optional[str] = None,
    top_n: Optional[int] = None,
) -> ReportData:
    """Monthly series by creation date, top clients by amount and stage distribution."""
    top_n = top_n if top_n is not None else get_config().get("top_clients_limit", 10)

    clients: Dict[str, Dict] = defaultdict(lambda: {"value": 0.0, "area": 0.0, "deals": 0})
    for deal in deals:
        entry = clients[deal.display_client]
        entry["value"] += deal.amount
        entry["area"] += deal.total_area
        entry["deals"] += 1

    ranked = sorted(clients.items(), key=lambda kv: (-kv[1]["value"], kv[0]))[:top_n]
    top_clients = [
        ClientRanking(name=name, value=e["value"], area=e["area"], deals=e["deals"])
        for name, e in ranked
    ]

    # Counter keeps first-seen order for equal counts
    stage_counts: Counter = Counter(d.stage_label for d in deals)
    stage_distribution = [
        StageSlice(name=label, value=count, fill=get_stage_color(label))
        for label, count in stage_counts.most_common()
    ]

    return ReportData(
        monthly_data=bucket_by_period(deals, period="month", date_field="create", tz=tz),
        top_clients=top_clients,
        stage_distribution=stage_distribution,
        deal_count=len(deals),
    )
