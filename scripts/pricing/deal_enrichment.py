"""
Deal Price Analytics — Deal Enrichment
========================================

Merges a raw HubSpot deal with its line items, its stage and its client
fields into one EnrichedDeal. Pure transform: every input has already been
fetched, and "now" is passed in so results are reproducible.

Functions:
  build_stage_index()     - HubSpot pipeline -> {stage_id: Stage}
  stage_outcome()         - open / won / lost for a stage
  parse_line_item()       - HubSpot line item or mp_items_json entry -> LineItem
  line_items_from_deal()  - line items embedded in the deal's mp_items_json
  enrich_deal()           - raw deal -> EnrichedDeal
  enrich_deals()          - batch version sharing one reference time
"""
from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from models.pricing_models import EnrichedDeal, LineItem, Stage
from scripts.lib.config import get_config
from scripts.lib.logger import setup_logger
from scripts.lib.utils import now_utc, parse_ts, safe_float, safe_int

logger = setup_logger("deal_enrichment")

UNMAPPED_STAGE_ID = "__unmapped__"
UNMAPPED_STAGE_LABEL = "Unknown stage"
# Sorts after every configured stage
UNMAPPED_DISPLAY_ORDER = 1_000_000

SECONDS_PER_DAY = 86_400

WON_KEYWORDS = ("cierre ganado", "closedwon", "closed won")
LOST_KEYWORDS = ("cierre perdido", "closedlost", "closed lost")

RawLineItem = Union[LineItem, Mapping[str, Any]]


def _first(props: Mapping[str, Any], *keys: str) -> Any:
    """First non-empty value among *keys*."""
    for key in keys:
        value = props.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _optional_text(value: Any) -> Optional[str]:
    text = _text(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def build_stage_index(pipeline: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]) -> Dict[str, Stage]:
    """
    Build {stage_id: Stage} from a HubSpot pipeline object or a list of stages.

    Accepts HubSpot's shape (displayOrder, metadata.probability,
    metadata.isClosed) as well as already-flat dicts.
    """
    if isinstance(pipeline, Mapping):
        pipeline_id = _text(pipeline.get("id"))
        raw_stages = pipeline.get("stages", [])
    else:
        pipeline_id = ""
        raw_stages = pipeline

    index: Dict[str, Stage] = {}
    for position, raw in enumerate(raw_stages):
        if isinstance(raw, Stage):
            index[raw.id] = raw
            continue
        sid = _text(raw.get("id"))
        if not sid:
            continue
        meta = raw.get("metadata") or {}
        probability = _first(meta, "probability")
        if probability is None:
            probability = raw.get("probability")
        is_closed = _first(meta, "isClosed")
        if is_closed is None:
            is_closed = raw.get("is_closed", False)
        index[sid] = Stage(
            id=sid,
            label=_text(raw.get("label")) or sid,
            display_order=safe_int(_first(raw, "displayOrder", "display_order"), position),
            probability=None if probability is None else safe_float(probability),
            is_closed=str(is_closed).lower() == "true",
            pipeline_id=pipeline_id or _text(raw.get("pipeline_id")),
        )
    return index


def stage_outcome(stage: Optional[Stage]) -> str:
    """
    Classify a stage as "won", "lost" or "open".

    Label keywords win; otherwise closed stages with probability 1.0 are
    won and other closed stages lost.
    """
    if stage is None:
        return "open"
    text = f"{stage.id} {stage.label}".lower()
    if any(k in text for k in WON_KEYWORDS):
        return "won"
    if any(k in text for k in LOST_KEYWORDS):
        return "lost"
    if stage.is_closed:
        return "won" if (stage.probability or 0.0) >= 1.0 else "lost"
    return "open"


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------

def parse_line_item(raw: RawLineItem, deal_id: str = "") -> LineItem:
    """Normalise a HubSpot line item (or an mp_items_json entry) to a LineItem."""
    if isinstance(raw, LineItem):
        return raw

    props = raw.get("properties") if isinstance(raw.get("properties"), Mapping) else raw
    quantity = safe_float(_first(props, "quantity", "cantidad"))
    unit_price = safe_float(_first(props, "price", "mp_precio_unitario", "precio_unitario"))
    amount = _first(props, "amount", "mp_subtotal", "subtotal")
    amount = safe_float(amount) if amount is not None else unit_price * quantity

    return LineItem(
        id=_text(raw.get("id") or props.get("hs_object_id")),
        deal_id=_text(raw.get("deal_id") or deal_id),
        name=_text(props.get("name")),
        quantity=quantity,
        length_mm=safe_float(_first(props, "mp_largo_mm", "length_mm", "largo")),
        width_mm=safe_float(_first(props, "mp_ancho_mm", "width_mm", "ancho")),
        height_mm=safe_float(_first(props, "mp_alto_mm", "height_mm", "alto")),
        style_tag=_optional_text(_first(props, "mp_tipo_caja", "box_style", "estilo", "name")),
        quality=_text(_first(props, "mp_calidad", "calidad", "hs_sku")),
        unit_price=unit_price,
        amount=amount,
    )


def parse_line_items(raw_items: Iterable[Any], deal_id: str = "") -> List[LineItem]:
    """Parse a batch of line items, skipping entries that are not objects."""
    return [
        parse_line_item(item, deal_id)
        for item in raw_items
        if isinstance(item, (Mapping, LineItem))
    ]


def line_items_from_deal(raw_deal: Mapping[str, Any]) -> List[LineItem]:
    """Line items stored as JSON on the deal itself (mp_items_json)."""
    props = raw_deal.get("properties") or {}
    deal_id = _text(raw_deal.get("id"))
    raw_items = props.get("mp_items_json")
    if not raw_items:
        return []
    if isinstance(raw_items, str):
        try:
            raw_items = json.loads(raw_items)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Deal %s has unreadable mp_items_json", deal_id)
            return []
    if not isinstance(raw_items, list):
        return []
    return parse_line_items(raw_items, deal_id)


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

def _association_ids(
    raw_deal: Mapping[str, Any],
    kind: str,
    flat_key: str,
    fetched: Optional[Mapping[str, Iterable[Any]]] = None,
) -> tuple:
    """
    Ids from HubSpot's associations block, a flat list under *flat_key* and
    ids fetched separately from the associations API, first seen first.
    """
    ids: List[str] = []
    block = (raw_deal.get("associations") or {}).get(kind) or {}
    values: List[Any] = []
    if isinstance(block, Mapping):
        values.extend(entry.get("id") for entry in block.get("results", []))
    values.extend(raw_deal.get(flat_key) or [])
    values.extend((fetched or {}).get(kind) or [])
    for value in values:
        if value not in (None, "") and str(value) not in ids:
            ids.append(str(value))
    return tuple(ids)


def days_since(created: Optional[datetime], now: datetime) -> int:
    """Whole days between *created* and *now*, never negative. Naive values are UTC."""
    if created is None:
        return 0
    created, now = parse_ts(created), parse_ts(now)
    return max(0, math.floor((now - created).total_seconds() / SECONDS_PER_DAY))


def enrich_deal(
    raw_deal: Mapping[str, Any],
    line_items: Optional[Iterable[RawLineItem]] = None,
    stage_index: Optional[Mapping[str, Stage]] = None,
    company_name: Optional[str] = None,
    now: Optional[datetime] = None,
    vat_rate: Optional[float] = None,
    associations: Optional[Mapping[str, Iterable[Any]]] = None,
) -> EnrichedDeal:
    """
    Build the denormalised view of one deal.

    Args:
        raw_deal: HubSpot deal object ({"id", "properties", ...}).
        line_items: Line items fetched for the deal. When None the deal's
            embedded mp_items_json is used. Items tagged with another deal id
            are ignored.
        stage_index: {stage_id: Stage}; unknown ids resolve to the unmapped stage.
        company_name: Associated company name, if the caller looked it up.
        now: Reference time for days_since_creation (defaults to current UTC).
        vat_rate: Rate for the tax total when the deal carries none.
        associations: {"contacts": [...], "companies": [...]} ids fetched
            from the associations API, merged with any the deal embeds.

    Returns:
        EnrichedDeal. avg_price_per_area is None whenever total_area is 0.
    """
    props = raw_deal.get("properties") or {}
    deal_id = _text(raw_deal.get("id") or props.get("hs_object_id"))
    now = parse_ts(now) or now_utc()
    stage_index = stage_index or {}
    if vat_rate is None:
        vat_rate = get_config().get("vat_rate", 0.0)

    if line_items is None:
        items = line_items_from_deal(raw_deal)
    else:
        items = parse_line_items(line_items, deal_id)
    items = [li for li in items if not li.deal_id or li.deal_id == deal_id]

    # Area
    item_area = sum(li.total_area for li in items)
    total_area = item_area if item_area > 0 else max(safe_float(props.get("mp_metros_cuadrados_totales")), 0.0)

    amount = safe_float(props.get("amount"))
    avg_price_per_area = amount / total_area if total_area > 0 else None

    # Money
    item_subtotal = sum(li.amount for li in items)
    subtotal = item_subtotal if item_subtotal > 0 else safe_float(props.get("mp_total_subtotal"))
    stored_tax = props.get("mp_total_iva")
    tax_total = safe_float(stored_tax) if stored_tax not in (None, "") else subtotal * vat_rate

    # Stage
    raw_stage_id = _text(props.get("dealstage"))
    stage = stage_index.get(raw_stage_id)
    if stage is None:
        logger.warning(
            "Deal %s references unknown stage '%s'; reporting it as unmapped",
            deal_id, raw_stage_id,
        )
        stage_id, stage_label, display_order = UNMAPPED_STAGE_ID, UNMAPPED_STAGE_LABEL, UNMAPPED_DISPLAY_ORDER
    else:
        stage_id, stage_label, display_order = stage.id, stage.label, stage.display_order

    create_date = parse_ts(props.get("createdate")) or parse_ts(raw_deal.get("createdAt"))
    close_date = parse_ts(props.get("closedate"))

    return EnrichedDeal(
        id=deal_id,
        name=_text(props.get("dealname")),
        amount=amount,
        pipeline_id=_text(props.get("pipeline")),
        raw_stage_id=raw_stage_id,
        stage_id=stage_id,
        stage_label=stage_label,
        stage_display_order=display_order,
        stage_outcome=stage_outcome(stage),
        create_date=create_date,
        close_date=close_date,
        contact_ids=_association_ids(raw_deal, "contacts", "contact_ids", associations),
        company_ids=_association_ids(raw_deal, "companies", "company_ids", associations),
        line_items=tuple(items),
        total_area=total_area,
        avg_price_per_area=avg_price_per_area,
        subtotal=subtotal,
        tax_total=tax_total,
        days_since_creation=days_since(create_date, now),
        client_name=_text(props.get("mp_cliente_nombre")),
        client_company=_text(props.get("mp_cliente_empresa")),
        client_email=_text(props.get("mp_cliente_email")),
        client_phone=_text(props.get("mp_cliente_telefono")),
        company_name=company_name or _optional_text(raw_deal.get("associatedCompanyName")),
        payment_terms=_optional_text(props.get("mp_condiciones_pago")),
        delivery_terms=_optional_text(props.get("mp_condiciones_entrega")),
        validity_terms=_optional_text(props.get("mp_condiciones_validez")),
        quick_notes=_optional_text(props.get("mp_notas_rapidas")),
        lost_reason=_optional_text(props.get("motivo_de_no_compra")),
        quote_pdf_url=_optional_text(props.get("mp_pdf_presupuesto_url")),
    )


def enrich_deals(
    raw_deals: Iterable[Mapping[str, Any]],
    stage_index: Mapping[str, Stage],
    line_items_by_deal: Optional[Mapping[str, Iterable[RawLineItem]]] = None,
    company_names: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
    vat_rate: Optional[float] = None,
    associations_by_deal: Optional[Mapping[str, Mapping[str, Iterable[Any]]]] = None,
) -> List[EnrichedDeal]:
    """Enrich a batch against a single reference time; input order is kept."""
    now = parse_ts(now) or now_utc()
    line_items_by_deal = line_items_by_deal or {}
    company_names = company_names or {}
    associations_by_deal = associations_by_deal or {}

    enriched = []
    for raw in raw_deals:
        deal_id = _text(raw.get("id"))
        enriched.append(enrich_deal(
            raw,
            line_items=line_items_by_deal.get(deal_id),
            stage_index=stage_index,
            company_name=company_names.get(deal_id),
            now=now,
            vat_rate=vat_rate,
            associations=associations_by_deal.get(deal_id),
        ))

    unmapped = sum(1 for d in enriched if d.stage_id == UNMAPPED_STAGE_ID)
    logger.info("Enriched %d deals (%d with unmapped stage)", len(enriched), unmapped)
    return enriched
