"""
Deal Price Analytics — Pydantic Models
========================================

Read-only projections of CRM records and the derived values the pricing
pipeline produces. All models are frozen: nothing here is written back to
the CRM.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field

from scripts.pricing.box_geometry import (
    BoxStyle,
    compute_total_area,
    compute_unit_area,
    parse_box_style,
)

PriceStatus = Literal["below_market", "in_range", "above_market"]
StageOutcome = Literal["open", "won", "lost"]
Urgency = Literal["urgent", "normal", "low"]
ActionChannel = Literal["email", "phone", "whatsapp", "meeting", "internal"]
ActionPriority = Literal["high", "medium", "low"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─── CRM projections ───────────────────────────────────────

class Stage(_Frozen):
    """A pipeline phase as configured in the CRM."""
    id: str
    label: str
    display_order: int = 0
    probability: Optional[float] = None
    is_closed: bool = False
    pipeline_id: str = ""


class LineItem(_Frozen):
    """One quoted box line. Areas are derived from the dimensions on read."""
    id: str = ""
    deal_id: str = ""
    name: str = ""
    quantity: float = 0.0
    length_mm: float = 0.0
    width_mm: float = 0.0
    height_mm: float = 0.0
    style_tag: Optional[str] = None
    quality: str = ""
    unit_price: float = 0.0
    amount: float = 0.0

    @computed_field
    @property
    def box_style(self) -> BoxStyle:
        return parse_box_style(self.style_tag)

    @computed_field
    @property
    def unit_area(self) -> float:
        return compute_unit_area(self.box_style, self.length_mm, self.width_mm, self.height_mm)

    @computed_field
    @property
    def total_area(self) -> float:
        return compute_total_area(self.unit_area, self.quantity)


class EnrichedDeal(_Frozen):
    """A CRM deal merged with its line items, client data and computed metrics."""
    id: str
    name: str = ""
    amount: float = 0.0
    pipeline_id: str = ""

    # Stage as referenced by the deal (raw) and as resolved for reporting
    raw_stage_id: str = ""
    stage_id: str
    stage_label: str
    stage_display_order: int = 0
    stage_outcome: StageOutcome = "open"

    create_date: Optional[datetime] = None
    close_date: Optional[datetime] = None
    contact_ids: Tuple[str, ...] = ()
    company_ids: Tuple[str, ...] = ()
    line_items: Tuple[LineItem, ...] = ()

    total_area: float = 0.0
    avg_price_per_area: Optional[float] = None
    subtotal: float = 0.0
    tax_total: float = 0.0
    days_since_creation: int = 0

    client_name: str = ""
    client_company: str = ""
    client_email: str = ""
    client_phone: str = ""
    company_name: Optional[str] = None
    payment_terms: Optional[str] = None
    delivery_terms: Optional[str] = None
    validity_terms: Optional[str] = None
    quick_notes: Optional[str] = None
    lost_reason: Optional[str] = None
    quote_pdf_url: Optional[str] = None

    @property
    def display_client(self) -> str:
        """Best available client label for tables and rankings."""
        return self.client_company or self.company_name or self.client_name or "Sin cliente"


# ─── Market pricing ────────────────────────────────────────

class MarketBand(_Frozen):
    """Reference price range per m2 for a zone."""
    zone_id: str
    zone_name: str
    min: float
    max: float
    avg: float


class PriceClassification(_Frozen):
    status: PriceStatus
    percent_diff: int
    band: MarketBand
    quoted_price: float
    label: str
    description: str


class DealPriceAnalysis(_Frozen):
    deal_id: str
    deal_name: str
    client_name: str
    zone: str
    zone_name: str
    quoted_price_per_area: float
    total_area: float
    classification: PriceClassification
    created_at: Optional[datetime] = None


class PriceAnalysisStats(_Frozen):
    total: int = 0
    in_range: int = 0
    below_market: int = 0
    above_market: int = 0
    avg_diff_percent: float = 0.0
    potential_revenue: int = 0


# ─── Aggregates ────────────────────────────────────────────

class StageMetric(_Frozen):
    stage_id: str
    stage_label: str
    display_order: int
    deal_count: int = 0
    total_amount: float = 0.0
    total_area: float = 0.0
    avg_price_per_area: Optional[float] = None


class PipelineTotals(_Frozen):
    deal_count: int = 0
    total_amount: float = 0.0
    total_area: float = 0.0
    avg_price_per_area: Optional[float] = None


class PipelineAggregate(_Frozen):
    by_stage: List[StageMetric] = Field(default_factory=list)
    totals: PipelineTotals = Field(default_factory=PipelineTotals)


class TimeBucket(_Frozen):
    key: str                       # "YYYY-MM-DD" or "YYYY-MM"
    start: date
    deal_count: int = 0
    total_amount: float = 0.0
    total_area: float = 0.0
    avg_price_per_area: Optional[float] = None


class FullPipelineMetrics(_Frozen):
    total_deals: int = 0
    open_deals: int = 0
    won_deals: int = 0
    lost_deals: int = 0
    total_pipeline_amount: float = 0.0
    won_amount: float = 0.0
    lost_amount: float = 0.0
    avg_ticket_won: Optional[float] = None
    avg_ticket_open: Optional[float] = None
    total_area_pipeline: float = 0.0
    total_area_won: float = 0.0
    total_area_lost: float = 0.0
    avg_price_per_area_won: Optional[float] = None
    avg_price_per_area_open: Optional[float] = None
    win_rate: float = 0.0
    loss_rate: float = 0.0
    stage_breakdown: List[StageMetric] = Field(default_factory=list)


# ─── Reports ───────────────────────────────────────────────

class DailyReport(_Frozen):
    report_date: date
    timezone: str
    new_leads: List[EnrichedDeal] = Field(default_factory=list)
    closed_won: List[EnrichedDeal] = Field(default_factory=list)
    closed_lost: List[EnrichedDeal] = Field(default_factory=list)
    follow_up_needed: List[EnrichedDeal] = Field(default_factory=list)
    total_pipeline_amount: float = 0.0
    total_pipeline_area: float = 0.0
    closed_won_amount: float = 0.0
    price_stats: PriceAnalysisStats = Field(default_factory=PriceAnalysisStats)


class PriceAnalysisReport(_Frozen):
    analyses: List[DealPriceAnalysis] = Field(default_factory=list)
    stats: PriceAnalysisStats = Field(default_factory=PriceAnalysisStats)


class ReportLineItem(_Frozen):
    deal_id: str
    deal_name: str
    create_date: Optional[datetime] = None
    client_name: str = ""
    payment_terms: Optional[str] = None
    stage_label: str = ""
    quantity: float = 0.0
    length_mm: float = 0.0
    width_mm: float = 0.0
    height_mm: float = 0.0
    unit_area: float = 0.0
    total_area: float = 0.0
    quality: str = ""
    unit_price: float = 0.0
    subtotal: float = 0.0


class ItemsReport(_Frozen):
    line_items: List[ReportLineItem] = Field(default_factory=list)
    total_area: float = 0.0
    total_subtotal: float = 0.0
    total_deals: int = 0


class FollowUpData(_Frozen):
    urgent: List[EnrichedDeal] = Field(default_factory=list)
    normal: List[EnrichedDeal] = Field(default_factory=list)
    total_deals: int = 0
    total_area: float = 0.0
    total_amount: float = 0.0


class OrdersData(_Frozen):
    confirmed: List[EnrichedDeal] = Field(default_factory=list)
    closed_won: List[EnrichedDeal] = Field(default_factory=list)
    total_orders: int = 0
    total_amount: float = 0.0
    total_area: float = 0.0


class ClientRanking(_Frozen):
    name: str
    value: float
    area: float
    deals: int


class StageSlice(_Frozen):
    name: str
    value: int
    fill: str


class ReportData(_Frozen):
    monthly_data: List[TimeBucket] = Field(default_factory=list)
    top_clients: List[ClientRanking] = Field(default_factory=list)
    stage_distribution: List[StageSlice] = Field(default_factory=list)
    deal_count: int = 0


# ─── Action plans ──────────────────────────────────────────

class ActionPlanInput(_Frozen):
    """What the sales assistant is told about one deal."""
    deal_id: str
    deal_name: str
    client_name: str = ""
    client_company: str = ""
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    stage_label: str = ""
    amount: float = 0.0
    total_area: float = 0.0
    avg_price_per_area: Optional[float] = None
    days_since_creation: int = 0
    payment_terms: Optional[str] = None
    quick_notes: Optional[str] = None
    price_status: Optional[PriceStatus] = None
    percent_diff: Optional[int] = None


class ActionStep(_Frozen):
    order: int
    action: str
    timing: str
    channel: ActionChannel = "email"
    priority: ActionPriority = "medium"
    template: Optional[str] = None


class ActionPlan(_Frozen):
    """Follow-up plan for a deal, valid until expires_at."""
    deal_id: str
    summary: str
    urgency: Urgency = "normal"
    next_steps: List[ActionStep] = Field(default_factory=list)
    suggested_approach: str = ""
    risk_assessment: str = ""
    generated_at: datetime
    expires_at: datetime
    # "ai" when the model answered, "fallback" for the canned plan
    source: Literal["ai", "fallback"] = "ai"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def dump(model: BaseModel) -> Dict[str, Any]:
    """JSON-safe dict for API responses and processed files."""
    return model.model_dump(mode="json")
