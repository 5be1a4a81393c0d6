"""
Sampling heuristics over a bounded prefix of rows.

These are performance/accuracy tradeoffs, not schema declarations:
- build_color_map() looks at the first 500 rows only; categorical
  highlight colours are expected to show up that early in a roster.
- detect_date_columns() looks at 100 rows per column and can misclassify
  sparse columns.
- detect_percent_scale() looks at 10 grades.
Scanning whole sheets instead would bring back the cost these avoid.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional, Sequence

from .dates import is_number

logger = logging.getLogger(__name__)

COLOR_SAMPLE_ROWS = 500
DATE_SAMPLE_ROWS = 100
SCALE_SAMPLE_ROWS = 10

WHITE = "#FFFFFF"
BLACK = "#000000"
NEW_ROW_COLOR = "#ADD8E6"
EXCLUDED_COLORS: frozenset[str] = frozenset({WHITE, BLACK, NEW_ROW_COLOR})

# 1930-01-01 .. 2099-12-31 as Excel serials.
DATE_SERIAL_MIN = 10959
DATE_SERIAL_MAX = 73415

DATE_FORMAT = "mm-dd-yy"

_NOT_A_DATE_HEADER = re.compile(
    r"(?:^|[\s_#])id(?:$|[\s_#])|number|code|zip|grade|score|days|count|phone|%",
    re.IGNORECASE,
)

ColorMap = dict[int, dict[str, str]]


def normalize_color(color) -> Optional[str]:
    """'ffadd8e6' / 'ADD8E6' / '#add8e6' -> '#ADD8E6'. Anything else -> None."""
    if not color:
        return None
    text = str(color).strip().lstrip("#").upper()
    if len(text) == 8:
        text = text[2:]
    if len(text) != 6 or not re.fullmatch(r"[0-9A-F]{6}", text):
        return None
    return f"#{text}"


def value_key(value) -> str:
    """String form used to match cell values across sheets."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def build_color_map(
    rows: Sequence[Sequence],
    fills: Sequence[Sequence[Optional[str]]],
    sample_limit: int = COLOR_SAMPLE_ROWS,
    excluded_colors: frozenset[str] = EXCLUDED_COLORS,
) -> ColorMap:
    """
    Map column index -> {cell value: fill colour} from the first
    `sample_limit` rows. The first colour seen for a value is kept.
    """
    excluded = {normalize_color(c) for c in excluded_colors}
    color_map: ColorMap = {}
    for r, row in enumerate(rows[:sample_limit]):
        if r >= len(fills):
            break
        fill_row = fills[r]
        for c, value in enumerate(row):
            color = normalize_color(fill_row[c]) if c < len(fill_row) else None
            if color is None or color in excluded:
                continue
            key = value_key(value)
            if not key:
                continue
            color_map.setdefault(c, {}).setdefault(key, color)
    logger.info(
        "[sampling] cached %d value colours across %d columns",
        sum(len(v) for v in color_map.values()), len(color_map),
    )
    return color_map


def _in_date_range(value) -> bool:
    if isinstance(value, date):
        return True
    return DATE_SERIAL_MIN <= value <= DATE_SERIAL_MAX


def detect_date_columns(
    headers: Sequence,
    rows: Sequence[Sequence],
    sample_limit: int = DATE_SAMPLE_ROWS,
) -> list[int]:
    """Indices of columns where more than half of the sampled numbers look like date serials."""
    detected: list[int] = []
    sample = rows[:sample_limit]
    for c, header in enumerate(headers):
        if _NOT_A_DATE_HEADER.search(str(header or "")):
            continue
        numeric = 0
        in_range = 0
        for row in sample:
            if c >= len(row):
                continue
            value = row[c]
            if is_number(value) or isinstance(value, date):
                numeric += 1
                if _in_date_range(value):
                    in_range += 1
        if numeric and in_range > numeric / 2:
            detected.append(c)
            logger.info("[sampling] '%s' detected as a date column (%d/%d)", header, in_range, numeric)
    return detected


def detect_percent_scale(values: Sequence, sample_limit: int = SCALE_SAMPLE_ROWS) -> bool:
    """True when grades look like 0-100 rather than 0-1."""
    return any(is_number(v) and v > 1 for v in values[:sample_limit])
