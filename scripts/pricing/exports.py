"""
Deal Price Analytics — Exports
================================

CSV and printable HTML renderings of the report models.

CSV: comma separated, UTF-8 with BOM (so Excel picks the encoding), every
field double-quoted with embedded quotes doubled.

HTML: a self-contained page from a static template; every interpolated
value is HTML-escaped. Meant to be opened and printed to PDF.
"""
from __future__ import annotations

import csv
import html
import io
from datetime import datetime
from string import Template
from typing import Any, Iterable, List, Optional, Sequence

import pytz

from models.pricing_models import DailyReport, EnrichedDeal, ItemsReport, PriceAnalysisStats
from scripts.lib.config import get_config

BOM = "\ufeff"

MONTH_NAMES = ["Ene", "Feb", "Mar", "Abr", "May", "Jun", "Jul", "Ago", "Sep", "Oct", "Nov", "Dic"]

ITEMS_HEADERS = [
    "Fecha Ingreso", "Negocio", "Cliente/Origen", "Cantidad",
    "Largo (mm)", "Ancho (mm)", "Alto (mm)",
    "m2/Unidad", "m2 Totales", "Calidad",
    "Precio Unitario", "Subtotal SIN IVA", "Estado Pago",
]

DEALS_HEADERS = [
    "Fecha Creación", "Negocio", "Cliente", "Etapa", "Monto",
    "m2 Totales", "Precio m2", "Días", "Condiciones Pago",
]


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def _esc(text: Any) -> str:
    """HTML-escape a value; converts None to empty string."""
    if text is None:
        return ""
    return html.escape(str(text))


def _cell(value: Any) -> str:
    """CSV cell text: None -> "", whole floats without the trailing .0"""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _local(dt: Optional[datetime], tz: Optional[str]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.astimezone(pytz.timezone(tz or get_config()["report_timezone"]))


def format_date_dd_mmm(dt: Optional[datetime], tz: Optional[str] = None) -> str:
    """'05-Mar' style date used in the items sheet."""
    local = _local(dt, tz)
    if local is None:
        return "-"
    return f"{local.day:02d}-{MONTH_NAMES[local.month - 1]}"


def format_currency(value: Optional[float]) -> str:
    """ARS, no decimals: $ 1.234.567"""
    if value is None:
        return "-"
    sign = "-" if value < 0 else ""
    return f"{sign}$ " + f"{abs(value):,.0f}".replace(",", ".")


def format_area(value: Optional[float]) -> str:
    """Two decimals, Spanish separators: 1.234,56 m²"""
    if value is None:
        return "-"
    text = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{text} m²"


def to_csv(rows: Iterable[Sequence[Any]]) -> str:
    """Serialise rows as a BOM-prefixed, fully quoted CSV string."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return BOM + buffer.getvalue()


# ---------------------------------------------------------------------------
# CSV exports
# ---------------------------------------------------------------------------

def items_report_to_csv(report: ItemsReport, tz: Optional[str] = None) -> str:
    """Items sheet with a trailing TOTALES row."""
    rows: List[List[Any]] = [ITEMS_HEADERS]
    for li in report.line_items:
        rows.append([
            format_date_dd_mmm(li.create_date, tz),
            li.deal_name,
            li.client_name,
            li.quantity,
            li.length_mm or "",
            li.width_mm or "",
            li.height_mm or "",
            li.unit_area,
            li.total_area,
            li.quality,
            li.unit_price,
            li.subtotal,
            li.payment_terms or "",
        ])
    rows.append([
        "", "", "TOTALES", "", "", "", "", "",
        report.total_area, "", "", report.total_subtotal, "",
    ])
    return to_csv(rows)


def deals_to_csv(deals: Sequence[EnrichedDeal], tz: Optional[str] = None) -> str:
    """One row per deal; price per m2 is blank when the deal has no area."""
    rows: List[List[Any]] = [DEALS_HEADERS]
    for deal in deals:
        local = _local(deal.create_date, tz)
        rows.append([
            local.strftime("%Y-%m-%d") if local else "",
            deal.name,
            deal.display_client,
            deal.stage_label,
            deal.amount,
            deal.total_area,
            deal.avg_price_per_area,
            deal.days_since_creation,
            deal.payment_terms or "",
        ])
    return to_csv(rows)


# ---------------------------------------------------------------------------
# Printable daily report
# ---------------------------------------------------------------------------

DAILY_REPORT_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="es">
<head>
<meta charset="utf-8">
<title>Reporte Diario - $date</title>
<style>
  body { font-family: Arial, Helvetica, sans-serif; margin: 32px; color: #0f172a; }
  h1 { font-size: 22px; margin-bottom: 4px; }
  h2 { font-size: 16px; margin-top: 28px; border-bottom: 1px solid #cbd5e1; padding-bottom: 4px; }
  .muted { color: #64748b; font-size: 12px; }
  .kpis { display: flex; gap: 16px; margin-top: 16px; }
  .kpi { flex: 1; border: 1px solid #cbd5e1; border-radius: 6px; padding: 12px; }
  .kpi .value { font-size: 22px; font-weight: bold; }
  table { width: 100%; border-collapse: collapse; margin-top: 8px; font-size: 12px; }
  th, td { border-bottom: 1px solid #e2e8f0; padding: 6px; text-align: left; }
  td.num, th.num { text-align: right; }
  @media print { body { margin: 12mm; } }
</style>
</head>
<body>
<h1>Reporte Diario</h1>
<div class="muted">$date &middot; $timezone &middot; generado $generated</div>

<div class="kpis">
  <div class="kpi"><div class="muted">Nuevos Leads</div><div class="value">$new_count</div></div>
  <div class="kpi"><div class="muted">Cerrados Ganados</div><div class="value">$won_count</div><div class="muted">$won_amount</div></div>
  <div class="kpi"><div class="muted">Cerrados Perdidos</div><div class="value">$lost_count</div></div>
  <div class="kpi"><div class="muted">Requieren Seguimiento</div><div class="value">$follow_count</div></div>
</div>

<h2>Pipeline Actual</h2>
<div class="kpis">
  <div class="kpi"><div class="muted">Monto Total</div><div class="value">$pipeline_amount</div></div>
  <div class="kpi"><div class="muted">m² Total</div><div class="value">$pipeline_area</div></div>
</div>

<h2>Análisis de Precios m²</h2>
$price_stats

<h2>Nuevos Leads</h2>
$new_table

<h2>Cerrados Ganados</h2>
$won_table

<h2>Cerrados Perdidos</h2>
$lost_table

<h2>Requieren Seguimiento</h2>
$follow_table
</body>
</html>
""")


def _deals_table(deals: Sequence[EnrichedDeal]) -> str:
    if not deals:
        return '<p class="muted">Sin negocios</p>'
    rows = "\n".join(
        "<tr>"
        f"<td>{_esc(d.name)}</td>"
        f"<td>{_esc(d.display_client)}</td>"
        f"<td>{_esc(d.stage_label)}</td>"
        f'<td class="num">{_esc(format_currency(d.amount))}</td>'
        f'<td class="num">{_esc(format_area(d.total_area) if d.total_area > 0 else "-")}</td>'
        f'<td class="num">{_esc(format_currency(d.avg_price_per_area))}</td>'
        f'<td class="num">{d.days_since_creation}</td>'
        "</tr>"
        for d in deals
    )
    return (
        "<table><thead><tr>"
        "<th>Negocio</th><th>Cliente</th><th>Etapa</th>"
        '<th class="num">Monto</th><th class="num">m²</th>'
        '<th class="num">$/m²</th><th class="num">Días</th>'
        f"</tr></thead><tbody>\n{rows}\n</tbody></table>"
    )


def _price_stats_table(stats: PriceAnalysisStats) -> str:
    if stats.total == 0:
        return '<p class="muted">Sin cotizaciones con precio por m²</p>'
    return (
        "<table><tbody>"
        f"<tr><td>Analizados</td><td class=\"num\">{stats.total}</td></tr>"
        f"<tr><td>En precio</td><td class=\"num\">{stats.in_range}</td></tr>"
        f"<tr><td>Por debajo</td><td class=\"num\">{stats.below_market}</td></tr>"
        f"<tr><td>Por encima</td><td class=\"num\">{stats.above_market}</td></tr>"
        f"<tr><td>Diferencia promedio</td><td class=\"num\">{stats.avg_diff_percent:+.1f}%</td></tr>"
        f"<tr><td>Ingreso potencial a precio de mercado</td>"
        f"<td class=\"num\">{_esc(format_currency(stats.potential_revenue))}</td></tr>"
        "</tbody></table>"
    )


def daily_report_to_html(report: DailyReport, generated_at: Optional[datetime] = None) -> str:
    """Printable HTML for a DailyReport. generated_at defaults to now."""
    generated = _local(generated_at or datetime.now(pytz.utc), report.timezone)
    return DAILY_REPORT_TEMPLATE.substitute(
        date=_esc(report.report_date.isoformat()),
        timezone=_esc(report.timezone),
        generated=_esc(generated.strftime("%Y-%m-%d %H:%M")),
        new_count=len(report.new_leads),
        won_count=len(report.closed_won),
        won_amount=_esc(format_currency(report.closed_won_amount)),
        lost_count=len(report.closed_lost),
        follow_count=len(report.follow_up_needed),
        pipeline_amount=_esc(format_currency(report.total_pipeline_amount)),
        pipeline_area=_esc(format_area(report.total_pipeline_area)),
        price_stats=_price_stats_table(report.price_stats),
        new_table=_deals_table(report.new_leads),
        won_table=_deals_table(report.closed_won),
        lost_table=_deals_table(report.closed_lost),
        follow_table=_deals_table(report.follow_up_needed),
    )
