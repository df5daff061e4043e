"""
Deal Price Analytics — Box Geometry
=====================================

Converts a quoted box line (length/width/height in mm plus a free-text
style tag) into the m2 of corrugated board needed to cut it.

The style tag is parsed once into a BoxStyle; the formulas switch on the
enum. Keywords are checked in priority order and the first match wins, so
"dos planchas" is a TWO_SHEETS box even though it also contains "plancha".

Functions:
  parse_box_style()     - free-text tag -> BoxStyle
  compute_unit_area()   - m2 for one unit
  compute_total_area()  - unit m2 x quantity
"""
from __future__ import annotations

import re
import unicodedata
from enum import Enum
from typing import Any, Optional, Tuple

from scripts.lib.utils import safe_float


class BoxStyle(str, Enum):
    TWO_SHEETS = "two_sheets"
    TRAY = "tray"
    FENCE_WRAP = "fence_wrap"
    CROSSED_FLAP_TWO_SIDES = "crossed_flap_two_sides"
    CROSSED_FLAP_ONE_SIDE = "crossed_flap_one_side"
    TELESCOPIC = "telescopic"
    SHEET = "sheet"
    SIMPLE_FLAP = "simple_flap"


# Priority order matters: first match wins. Keywords are in normalised
# form (lowercase, no accents, "×" written as "x", single spaces).
STYLE_KEYWORDS: Tuple[Tuple[BoxStyle, Tuple[str, ...]], ...] = (
    (BoxStyle.TWO_SHEETS, ("two sheets", "2 sheets", "dos planchas", "2 planchas")),
    (BoxStyle.TRAY, ("tray", "bandeja")),
    (BoxStyle.FENCE_WRAP, ("fence", "wrap", "cerco", "envolvente")),
    (BoxStyle.CROSSED_FLAP_TWO_SIDES, (
        "crossed flap x2", "crossed flaps x2",
        "aleta cruzada x2", "aletas cruzadas x2",
        "cruzada x2", "cruzadas x2",
    )),
    (BoxStyle.CROSSED_FLAP_ONE_SIDE, (
        "crossed flap x1", "crossed flaps x1",
        "aleta cruzada x1", "aletas cruzadas x1",
        "cruzada x1", "cruzadas x1",
    )),
    (BoxStyle.TELESCOPIC, ("telescopic", "telescopica")),
    (BoxStyle.SHEET, ("sheet", "plancha", "lamina")),
)

MM2_PER_M2 = 1e6

_SPACES = re.compile(r"\s+")


def _normalize_tag(tag: str) -> str:
    """Lowercase, strip accents, unify the multiplication sign and spacing."""
    text = unicodedata.normalize("NFKD", tag.replace("×", "x"))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _SPACES.sub(" ", text.lower()).strip()


def parse_box_style(tag: Optional[str]) -> BoxStyle:
    """Map a free-text box style to a BoxStyle; unknown tags are SIMPLE_FLAP."""
    if not tag or not isinstance(tag, str):
        return BoxStyle.SIMPLE_FLAP
    normalized = _normalize_tag(tag)
    for style, keywords in STYLE_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return style
    return BoxStyle.SIMPLE_FLAP


def _sheet_dimensions(style: BoxStyle, length: float, width: float,
                      height: float) -> Tuple[float, float, int]:
    """Return (sheet length, sheet width, number of sheets) in mm."""
    if style is BoxStyle.TWO_SHEETS:
        return length + width + 40, width + height, 2
    if style is BoxStyle.TRAY:
        return length + 2 * height + 30, width + 2 * height, 1
    if style is BoxStyle.FENCE_WRAP:
        return 2 * (length - 10) + 2 * (width - 10) + 40, width + height, 1
    if style is BoxStyle.CROSSED_FLAP_TWO_SIDES:
        return 2 * length + 2 * width + 40, 2 * width + length - 20, 1
    if style is BoxStyle.CROSSED_FLAP_ONE_SIDE:
        return 2 * length + 2 * width + 40, width + 0.5 * width + height - 10, 1
    if style is BoxStyle.TELESCOPIC:
        return 2 * length + 2 * width + 50, 0.5 * width + height, 1
    if style is BoxStyle.SHEET:
        return length, width, 1
    return 2 * length + 2 * width + 40, width + height, 1


def compute_unit_area(
    style_tag: Any,
    length_mm: Any,
    width_mm: Any,
    height_mm: Any,
) -> float:
    """
    Board area in m2 for a single unit.

    Missing or non-numeric dimensions count as 0. Returns 0 when length or
    width is not positive; never negative. Accepts a BoxStyle or a raw tag.
    """
    length = safe_float(length_mm)
    width = safe_float(width_mm)
    height = safe_float(height_mm)
    if length <= 0 or width <= 0:
        return 0.0

    style = style_tag if isinstance(style_tag, BoxStyle) else parse_box_style(style_tag)
    sheet_len, sheet_width, sheets = _sheet_dimensions(style, length, width, height)
    area = (sheet_len * sheet_width * sheets) / MM2_PER_M2
    return max(area, 0.0)


def compute_total_area(unit_area: float, quantity: Any) -> float:
    """Total m2 for a line: unit area x quantity (negative quantities count as 0)."""
    return unit_area * max(safe_float(quantity), 0.0)
