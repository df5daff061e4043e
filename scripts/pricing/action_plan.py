"""
Deal Price Analytics — Deal Action Plans
==========================================

Drafts a follow-up plan for one deal with the AI provider. The deal's
client, stage, area and market position go into the prompt and the JSON
answer is validated into an ActionPlan. When the provider is unavailable
or its answer is unusable, a canned plan based on the deal's age is
returned instead. Plans are valid for action_plan_ttl_hours.

Functions:
  build_action_plan_input() - EnrichedDeal -> ActionPlanInput
  build_user_prompt()       - prompt text for one deal
  parse_action_plan()       - provider JSON answer -> ActionPlan
  fallback_action_plan()    - plan used when the AI cannot answer
  generate_action_plan()    - prompt, call, validate (or fall back)
  save_action_plan()        - store a plan in Supabase
  load_action_plan()        - stored plan for a deal, None once expired
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from models.pricing_models import ActionPlan, ActionPlanInput, ActionStep, EnrichedDeal, MarketBand, dump
from scripts.lib import supabase_client
from scripts.lib.ai_provider import ai_complete, default_provider, log_ai_error
from scripts.lib.config import get_config
from scripts.lib.logger import setup_logger
from scripts.lib.utils import now_utc, parse_ts, safe_int
from scripts.pricing.market_classifier import analyze_deal_price

logger = setup_logger("action_plan")

TASK = "action_plan"
MAX_STEPS = 4
URGENCIES = ("urgent", "normal", "low")
CHANNELS = ("email", "phone", "whatsapp", "meeting", "internal")
PRIORITIES = ("high", "medium", "low")

SYSTEM_PROMPT = """Eres un experto en ventas B2B de cajas de cartón corrugado en Argentina.
Analizás oportunidades de venta y proponés planes de acción concretos para el equipo comercial.

Contexto del negocio:
- Se venden cajas de cartón corrugado fabricadas a medida
- El ciclo de venta típico es de 2 a 4 semanas
- Los clientes son empresas que necesitan embalaje para sus productos
- Los precios se comparan por m² de cartón

Respondé SOLO con JSON válido con la estructura pedida."""

RESPONSE_SHAPE = """{
  "summary": "Resumen ejecutivo de 1-2 oraciones",
  "urgency": "urgent|normal|low",
  "next_steps": [
    {
      "order": 1,
      "action": "Acción concreta",
      "timing": "Hoy|Mañana|Esta semana|Próxima semana",
      "channel": "email|phone|whatsapp|meeting|internal",
      "priority": "high|medium|low",
      "template": "Mensaje sugerido, si aplica"
    }
  ],
  "suggested_approach": "Estrategia recomendada para este cliente",
  "risk_assessment": "Riesgos y cómo mitigarlos"
}"""


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def build_action_plan_input(
    deal: EnrichedDeal,
    bands: Optional[Mapping[str, MarketBand]] = None,
) -> ActionPlanInput:
    """Project a deal and its market classification into the prompt input."""
    analysis = analyze_deal_price(deal, bands)
    return ActionPlanInput(
        deal_id=deal.id,
        deal_name=deal.name,
        client_name=deal.client_name,
        client_company=deal.client_company or deal.company_name or "",
        client_email=deal.client_email or None,
        client_phone=deal.client_phone or None,
        stage_label=deal.stage_label,
        amount=deal.amount,
        total_area=deal.total_area,
        avg_price_per_area=deal.avg_price_per_area,
        days_since_creation=deal.days_since_creation,
        payment_terms=deal.payment_terms,
        quick_notes=deal.quick_notes,
        price_status=analysis.classification.status if analysis else None,
        percent_diff=analysis.classification.percent_diff if analysis else None,
    )


def _ar_number(value: Optional[float]) -> str:
    """1234567.5 -> '1.234.567,5' (es-AR grouping, up to 2 decimals)."""
    text = f"{value or 0:,.2f}".rstrip("0").rstrip(".")
    return text.replace(",", "_").replace(".", ",").replace("_", ".")


def _price_context(plan_input: ActionPlanInput) -> str:
    status, diff = plan_input.price_status, plan_input.percent_diff or 0
    if status is None:
        return "Sin precio por m² para comparar con el mercado."
    if status == "in_range":
        return "El precio cotizado está dentro del rango de mercado."
    if status == "below_market":
        return (f"El precio cotizado está {abs(diff)}% por debajo del mercado. "
                "Considerar ajuste de precio o negociación.")
    return (f"El precio cotizado está {diff}% por encima del mercado. "
            "Considerar descuento o justificación de valor.")


def build_user_prompt(plan_input: ActionPlanInput, follow_up_days: Optional[int] = None) -> str:
    if follow_up_days is None:
        follow_up_days = get_config()["follow_up_threshold_days"]
    price_per_area = (
        f"${_ar_number(plan_input.avg_price_per_area)}"
        if plan_input.avg_price_per_area is not None else "Sin datos"
    )
    lines = [
        "Analiza esta oportunidad de venta y genera un plan de acción:",
        "",
        f"DEAL: {plan_input.deal_name}",
        f"CLIENTE: {plan_input.client_company or plan_input.client_name or 'Sin nombre'}",
        f"EMAIL: {plan_input.client_email or 'No disponible'}",
        f"TELÉFONO: {plan_input.client_phone or 'No disponible'}",
        f"ETAPA ACTUAL: {plan_input.stage_label}",
        f"MONTO: ${_ar_number(plan_input.amount)}",
        f"M² TOTAL: {_ar_number(plan_input.total_area)} m²",
        f"PRECIO/M²: {price_per_area}",
        f"DÍAS EN PIPELINE: {plan_input.days_since_creation}",
        f"CONDICIONES DE PAGO: {plan_input.payment_terms or 'No especificadas'}",
        f"NOTAS: {plan_input.quick_notes or 'Sin notas'}",
        "",
        f"ANÁLISIS DE PRECIO: {_price_context(plan_input)}",
        "",
        "Genera el plan en este formato JSON:",
        RESPONSE_SHAPE,
        "",
        "Considera:",
        f"- Si el deal tiene más de {follow_up_days} días, priorizar seguimiento urgente",
        "- Si el precio está fuera de mercado, sugerir ajustes",
        "- Si hay poca información de contacto, sugerir obtenerla",
        f"- Máximo {MAX_STEPS} pasos de acción",
        "- Incluir al menos un paso con template de mensaje",
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Answer validation
# ---------------------------------------------------------------------------

def _extract_json(content: str) -> Dict[str, Any]:
    """JSON object from a model answer, tolerating prose or fences around it."""
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        first, last = content.find("{"), content.rfind("}")
        if first == -1 or last <= first:
            raise ValueError("No JSON object in AI response")
        data = json.loads(content[first:last + 1])
    if not isinstance(data, dict):
        raise ValueError("AI response is not a JSON object")
    return data


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _choice(value: Any, allowed: Sequence[str], default: str) -> str:
    return value if value in allowed else default


def _steps(raw_steps: Any) -> List[ActionStep]:
    if not isinstance(raw_steps, list):
        return []
    entries = [s for s in raw_steps if isinstance(s, Mapping)][:MAX_STEPS]
    return [
        ActionStep(
            order=safe_int(step.get("order")) or index,
            action=_text(step.get("action")) or "Seguimiento pendiente",
            timing=_text(step.get("timing")) or "Esta semana",
            channel=_choice(step.get("channel"), CHANNELS, "email"),
            priority=_choice(step.get("priority"), PRIORITIES, "medium"),
            template=_text(step.get("template")) or None,
        )
        for index, step in enumerate(entries, start=1)
    ]


def _expiry(now: datetime, ttl_hours: Optional[float]) -> datetime:
    if ttl_hours is None:
        ttl_hours = get_config()["action_plan_ttl_hours"]
    return now + timedelta(hours=ttl_hours)


def parse_action_plan(
    content: str,
    deal_id: str,
    now: Optional[datetime] = None,
    ttl_hours: Optional[float] = None,
) -> ActionPlan:
    """
    Validate a model answer into an ActionPlan.

    Unknown urgency, channel or priority values take their defaults and at
    most MAX_STEPS steps are kept. camelCase keys are accepted too.

    Raises:
        ValueError: the answer holds no JSON object.
    """
    data = _extract_json(content)
    now = parse_ts(now) or now_utc()
    return ActionPlan(
        deal_id=deal_id,
        summary=_text(data.get("summary")) or "Plan de acción generado",
        urgency=_choice(data.get("urgency"), URGENCIES, "normal"),
        next_steps=_steps(data.get("next_steps", data.get("nextSteps"))),
        suggested_approach=_text(data.get("suggested_approach", data.get("suggestedApproach"))),
        risk_assessment=_text(data.get("risk_assessment", data.get("riskAssessment"))),
        generated_at=now,
        expires_at=_expiry(now, ttl_hours),
        source="ai",
    )


def fallback_action_plan(
    plan_input: ActionPlanInput,
    now: Optional[datetime] = None,
    ttl_hours: Optional[float] = None,
    follow_up_days: Optional[int] = None,
) -> ActionPlan:
    """Two-step plan (client follow-up, internal price check) keyed on deal age."""
    if follow_up_days is None:
        follow_up_days = get_config()["follow_up_threshold_days"]
    now = parse_ts(now) or now_utc()
    urgent = plan_input.days_since_creation > follow_up_days
    first_name = (plan_input.client_name.split() or [""])[0]
    greeting = f"Hola {first_name}," if first_name else "Hola,"

    steps = [
        ActionStep(
            order=1,
            action=("Contactar al cliente inmediatamente para verificar estado" if urgent
                    else "Enviar seguimiento por email sobre la cotización"),
            timing="Hoy" if urgent else "Esta semana",
            channel="email",
            priority="high" if urgent else "medium",
            template=f"{greeting} quería hacer seguimiento sobre la cotización que enviamos. "
                     "¿Tienen alguna consulta?",
        ),
        ActionStep(
            order=2,
            action="Verificar si el precio está alineado con el mercado",
            timing="Esta semana",
            channel="internal",
            priority="medium",
        ),
    ]
    return ActionPlan(
        deal_id=plan_input.deal_id,
        summary=f"Seguimiento requerido para {plan_input.deal_name}",
        urgency="urgent" if urgent else "normal",
        next_steps=steps,
        suggested_approach="Mantener comunicación proactiva y ofrecer valor agregado.",
        risk_assessment=(
            f"Deal con más de {follow_up_days} días sin avance. Riesgo de perder la oportunidad."
            if urgent else "Seguimiento estándar. Sin riesgos inmediatos identificados."
        ),
        generated_at=now,
        expires_at=_expiry(now, ttl_hours),
        source="fallback",
    )


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

async def generate_action_plan(
    deal: EnrichedDeal,
    *,
    provider: Optional[str] = None,
    bands: Optional[Mapping[str, MarketBand]] = None,
    now: Optional[datetime] = None,
) -> ActionPlan:
    """
    Ask the AI provider for a follow-up plan for *deal*.

    Never raises for provider trouble: a missing API key, a failed call or
    an unparseable answer is logged and the fallback plan is returned.
    """
    config = get_config()
    follow_up_days = config["follow_up_threshold_days"]
    ttl_hours = config["action_plan_ttl_hours"]
    now = parse_ts(now) or now_utc()
    chosen = provider or default_provider()
    plan_input = build_action_plan_input(deal, bands)

    try:
        response = await ai_complete(
            task=TASK,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=build_user_prompt(plan_input, follow_up_days),
            provider=chosen,
            deal_id=deal.id,
            json_mode=True,
            max_tokens=1000,
            temperature=0.7,
        )
        plan = parse_action_plan(response.content, deal.id, now=now, ttl_hours=ttl_hours)
    except Exception as e:
        logger.error("Action plan generation failed for deal %s: %s", deal.id, e)
        await log_ai_error(task=TASK, provider=chosen, model="unknown", error=e, deal_id=deal.id)
        return fallback_action_plan(plan_input, now=now, ttl_hours=ttl_hours, follow_up_days=follow_up_days)

    logger.info(
        "Action plan for deal %s: urgency=%s, %d steps",
        deal.id, plan.urgency, len(plan.next_steps),
    )
    return plan


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def save_action_plan(plan: ActionPlan) -> bool:
    return supabase_client.save_action_plan(dump(plan))


def load_action_plan(deal_id: str, now: Optional[datetime] = None) -> Optional[ActionPlan]:
    """Stored plan for a deal while it is still valid."""
    row = supabase_client.get_saved_action_plan(deal_id, now=parse_ts(now))
    if row is None:
        return None
    try:
        return ActionPlan.model_validate(row)
    except ValidationError as e:
        logger.warning("Stored action plan for deal %s is unreadable: %s", deal_id, e)
        return None
