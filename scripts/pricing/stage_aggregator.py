"""
Deal Price Analytics — Pipeline / Stage Aggregator
====================================================

Rolls enriched deals up by pipeline stage and by calendar period.

Average price per m2 for any group is the group's total amount over the
group's total area, not the mean of per-deal averages, and is None when
the group has no area.

Functions:
  aggregate()              - per-stage metrics + independent global totals
  bucket_by_period()       - day / month series in the report timezone
  full_pipeline_metrics()  - open / won / lost KPIs with stage breakdown
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pytz

from models.pricing_models import (
    EnrichedDeal,
    FullPipelineMetrics,
    PipelineAggregate,
    PipelineTotals,
    Stage,
    StageMetric,
    TimeBucket,
)
from scripts.lib.config import get_config
from scripts.lib.logger import setup_logger
from scripts.lib.utils import safe_div

logger = setup_logger("stage_aggregator")

PERIODS = ("day", "month")
DATE_FIELDS = ("close", "create")

StagesArg = Optional[Union[Mapping[str, Stage], Iterable[Stage]]]


def avg_price_per_area(total_amount: float, total_area: float) -> Optional[float]:
    """Amount per m2, or None when there is no area to divide by."""
    if total_area > 0:
        return total_amount / total_area
    return None


def _stage_list(stages: StagesArg) -> List[Stage]:
    if stages is None:
        return []
    if isinstance(stages, Mapping):
        return list(stages.values())
    return list(stages)


def compute_totals(deals: Sequence[EnrichedDeal]) -> PipelineTotals:
    """Totals over the whole deal set."""
    total_amount = sum(d.amount for d in deals)
    total_area = sum(d.total_area for d in deals)
    return PipelineTotals(
        deal_count=len(deals),
        total_amount=total_amount,
        total_area=total_area,
        avg_price_per_area=avg_price_per_area(total_amount, total_area),
    )


def _group_by_stage(deals: Iterable[EnrichedDeal]) -> "OrderedDict[str, Dict]":
    groups: "OrderedDict[str, Dict]" = OrderedDict()
    for deal in deals:
        group = groups.get(deal.stage_id)
        if group is None:
            group = {
                "stage_label": deal.stage_label,
                "display_order": deal.stage_display_order,
                "deal_count": 0,
                "total_amount": 0.0,
                "total_area": 0.0,
            }
            groups[deal.stage_id] = group
        group["deal_count"] += 1
        group["total_amount"] += deal.amount
        group["total_area"] += deal.total_area
    return groups


def _stage_metrics(groups: Mapping[str, Dict]) -> List[StageMetric]:
    metrics = [
        StageMetric(
            stage_id=stage_id,
            stage_label=g["stage_label"],
            display_order=g["display_order"],
            deal_count=g["deal_count"],
            total_amount=g["total_amount"],
            total_area=g["total_area"],
            avg_price_per_area=avg_price_per_area(g["total_amount"], g["total_area"]),
        )
        for stage_id, g in groups.items()
    ]
    # sorted() is stable: ties keep first-seen order
    return sorted(metrics, key=lambda m: m.display_order)


def aggregate(
    deals: Sequence[EnrichedDeal],
    stages: StagesArg = None,
    include_empty: bool = False,
) -> PipelineAggregate:
    """
    Group deals by resolved stage.

    Args:
        deals: Enriched deals; each belongs to exactly one stage (unknown
            stages were already mapped to the synthetic unmapped stage).
        stages: Configured stages. Only used with include_empty.
        include_empty: Emit zero rows for configured stages without deals
            (funnel views).

    Returns:
        PipelineAggregate with by_stage in CRM display order (unmapped last)
        and totals computed over the full set.
    """
    groups = _group_by_stage(deals)

    if include_empty:
        for stage in _stage_list(stages):
            if stage.id not in groups:
                groups[stage.id] = {
                    "stage_label": stage.label,
                    "display_order": stage.display_order,
                    "deal_count": 0,
                    "total_amount": 0.0,
                    "total_area": 0.0,
                }

    return PipelineAggregate(by_stage=_stage_metrics(groups), totals=compute_totals(deals))


# ---------------------------------------------------------------------------
# Time buckets
# ---------------------------------------------------------------------------

def deal_date(deal: EnrichedDeal, date_field: str = "close") -> Optional[datetime]:
    """Date a deal is reported on. Deals without a close date fall back to creation."""
    if date_field == "create":
        return deal.create_date
    return deal.close_date or deal.create_date


def _bucket_start(local_dt: datetime, period: str) -> date:
    if period == "day":
        return local_dt.date()
    return date(local_dt.year, local_dt.month, 1)


def _bucket_key(start: date, period: str) -> str:
    return start.strftime("%Y-%m-%d") if period == "day" else start.strftime("%Y-%m")


def _next_start(start: date, period: str) -> date:
    if period == "day":
        return start + timedelta(days=1)
    if start.month == 12:
        return date(start.year + 1, 1, 1)
    return date(start.year, start.month + 1, 1)


def bucket_by_period(
    deals: Iterable[EnrichedDeal],
    period: str = "month",
    date_field: str = "close",
    tz: Optional[str] = None,
    fill_empty: bool = False,
) -> List[TimeBucket]:
    """
    Calendar rollup of deals.

    Args:
        deals: Enriched deals.
        period: "day" or "month".
        date_field: "close" (falls back to create) or "create".
        tz: IANA timezone for calendar boundaries (default: report_timezone).
        fill_empty: Include zero buckets between the first and last bucket,
            for KPI summaries. Chart series leave it off.

    Returns:
        Buckets sorted chronologically. Deals with no usable date are skipped.
    """
    if period not in PERIODS:
        raise ValueError(f"period must be one of {PERIODS}, got {period!r}")
    if date_field not in DATE_FIELDS:
        raise ValueError(f"date_field must be one of {DATE_FIELDS}, got {date_field!r}")

    tzinfo = pytz.timezone(tz or get_config()["report_timezone"])
    groups: Dict[date, Dict] = {}
    skipped = 0
    for deal in deals:
        dt = deal_date(deal, date_field)
        if dt is None:
            skipped += 1
            continue
        start = _bucket_start(dt.astimezone(tzinfo), period)
        group = groups.setdefault(start, {"deal_count": 0, "total_amount": 0.0, "total_area": 0.0})
        group["deal_count"] += 1
        group["total_amount"] += deal.amount
        group["total_area"] += deal.total_area

    if skipped:
        logger.debug("Skipped %d deals without a %s date", skipped, date_field)

    if fill_empty and groups:
        cursor, last = min(groups), max(groups)
        while cursor <= last:
            groups.setdefault(cursor, {"deal_count": 0, "total_amount": 0.0, "total_area": 0.0})
            cursor = _next_start(cursor, period)

    return [
        TimeBucket(
            key=_bucket_key(start, period),
            start=start,
            deal_count=g["deal_count"],
            total_amount=g["total_amount"],
            total_area=g["total_area"],
            avg_price_per_area=avg_price_per_area(g["total_amount"], g["total_area"]),
        )
        for start, g in sorted(groups.items())
    ]


# ---------------------------------------------------------------------------
# Pipeline KPIs
# ---------------------------------------------------------------------------

def full_pipeline_metrics(
    deals: Sequence[EnrichedDeal],
    stages: StagesArg = None,
) -> FullPipelineMetrics:
    """Open / won / lost split with amounts, areas, tickets and rates."""
    by_outcome: Dict[str, List[EnrichedDeal]] = {"open": [], "won": [], "lost": []}
    for deal in deals:
        by_outcome[deal.stage_outcome].append(deal)

    open_deals, won, lost = by_outcome["open"], by_outcome["won"], by_outcome["lost"]
    open_amount = sum(d.amount for d in open_deals)
    won_amount = sum(d.amount for d in won)
    lost_amount = sum(d.amount for d in lost)
    open_area = sum(d.total_area for d in open_deals)
    won_area = sum(d.total_area for d in won)
    lost_area = sum(d.total_area for d in lost)
    closed = len(won) + len(lost)

    return FullPipelineMetrics(
        total_deals=len(deals),
        open_deals=len(open_deals),
        won_deals=len(won),
        lost_deals=len(lost),
        total_pipeline_amount=open_amount,
        won_amount=won_amount,
        lost_amount=lost_amount,
        avg_ticket_won=won_amount / len(won) if won else None,
        avg_ticket_open=open_amount / len(open_deals) if open_deals else None,
        total_area_pipeline=open_area,
        total_area_won=won_area,
        total_area_lost=lost_area,
        avg_price_per_area_won=avg_price_per_area(won_amount, won_area),
        avg_price_per_area_open=avg_price_per_area(open_amount, open_area),
        win_rate=safe_div(len(won), closed),
        loss_rate=safe_div(len(lost), closed),
        stage_breakdown=aggregate(deals, stages, include_empty=stages is not None).by_stage,
    )
