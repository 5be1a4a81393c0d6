"""
Retention Rule Engine.

Per student, a prioritized rule chain decides the outreach message and the
highlighting of the report row:

  1. do-not-contact   history tag equal to "dnc" (trimmed, any case)
  2. engagement       a scheduled "LDA <date>" follow-up today or later
  3. none

History tags are read once per run into two maps with deliberately
different accumulation rules (both scan newest row first):

  dnc         any tag containing "dnc"; each later-scanned row overwrites
  engagement  first qualifying row per student is kept, older ones ignored
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from .dates import format_mm_dd_yy, is_number, parse_date
from .sampling import ColorMap, value_key

logger = logging.getLogger(__name__)

DNC_COLOR = "#FFC7CE"
HIGHLIGHT_COLOR = "#FFEDD5"

DNC_MESSAGE = "Do not contact"
ENGAGEMENT_MESSAGE = "LDA follow-up scheduled {date}"

_ENGAGEMENT_TAG = re.compile(
    r"\blda\b.*?(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{4}-\d{1,2}-\d{1,2})",
    re.IGNORECASE,
)


def person_key(value) -> str:
    """History/Master List student identifier as a comparable string."""
    if value is None:
        return ""
    if is_number(value) and float(value).is_integer():
        return str(int(value))
    return str(value).strip()


@dataclass
class Engagement:
    date: date
    text: str


@dataclass
class HistoryTagMaps:
    dnc: dict[str, str] = field(default_factory=dict)
    engagement: dict[str, Engagement] = field(default_factory=dict)


@dataclass
class Classification:
    kind: str                      # "dnc" | "engagement" | "none"
    message: Optional[str] = None
    color: Optional[str] = None


@dataclass
class CellHighlight:
    col: int
    color: str
    strikethrough: bool = False


@dataclass
class OutreachDirective:
    message: Optional[str] = None
    row_color: Optional[str] = None
    cell_highlights: list[CellHighlight] = field(default_factory=list)

    def resolved_highlights(self, col_count: int) -> list[CellHighlight]:
        """
        Row colour expanded to every column, then cell highlights laid over
        it. Later cell highlights for the same column win.
        """
        by_col: dict[int, CellHighlight] = {}
        if self.row_color:
            for c in range(col_count):
                by_col[c] = CellHighlight(c, self.row_color)
        for h in self.cell_highlights:
            if 0 <= h.col < col_count:
                by_col[h.col] = h
        return [by_col[c] for c in sorted(by_col)]


@dataclass
class RowLayout:
    """Positions of the output columns the rules care about."""
    outreach_col: int = -1
    contact_cols: list[int] = field(default_factory=list)
    phone_cols: list[int] = field(default_factory=list)


def parse_engagement_tag(text: str) -> Optional[date]:
    match = _ENGAGEMENT_TAG.search(text or "")
    if not match:
        return None
    return parse_date(match.group(1))


def build_history_maps(
    rows: Sequence[Sequence],
    id_col: int,
    tag_col: int,
    today: date,
    include_engagement: bool = True,
) -> HistoryTagMaps:
    """Scan the history log newest-first (bottom row first)."""
    maps = HistoryTagMaps()
    if id_col < 0 or tag_col < 0:
        return maps
    for row in reversed(rows):
        if max(id_col, tag_col) >= len(row):
            continue
        key = person_key(row[id_col])
        if not key:
            continue
        raw_tag = "" if row[tag_col] is None else str(row[tag_col])
        lowered = raw_tag.lower()

        if "dnc" in lowered:
            maps.dnc[key] = raw_tag

        if include_engagement and key not in maps.engagement:
            when = parse_engagement_tag(raw_tag)
            if when is not None and when >= today:
                maps.engagement[key] = Engagement(date=when, text=raw_tag)

    logger.info(
        "[rules] history tags: %d DNC students, %d scheduled follow-ups",
        len(maps.dnc), len(maps.engagement),
    )
    return maps


def is_full_dnc(tag: Optional[str]) -> bool:
    return tag is not None and tag.strip().lower() == "dnc"


def classify(
    student_key: str,
    maps: HistoryTagMaps,
    include_dnc: bool = True,
    include_engagement: bool = True,
) -> Classification:
    """First matching rule wins: full DNC, then engagement, then none."""
    if not student_key:
        return Classification("none")
    if include_dnc and is_full_dnc(maps.dnc.get(student_key)):
        return Classification("dnc", DNC_MESSAGE, DNC_COLOR)
    engagement = maps.engagement.get(student_key) if include_engagement else None
    if engagement is not None:
        return Classification(
            "engagement",
            ENGAGEMENT_MESSAGE.format(date=format_mm_dd_yy(engagement.date)),
            HIGHLIGHT_COLOR,
        )
    return Classification("none")


def build_directive(
    classification: Classification,
    layout: RowLayout,
    dnc_tag: Optional[str] = None,
    include_dnc: bool = True,
) -> OutreachDirective:
    directive = OutreachDirective(message=classification.message)

    if classification.message and classification.color:
        if layout.outreach_col >= 0:
            directive.cell_highlights.extend(
                CellHighlight(c, classification.color)
                for c in range(layout.outreach_col + 1)
            )
        else:
            directive.row_color = classification.color

    if include_dnc and dnc_tag is not None:
        struck = layout.contact_cols if classification.kind == "dnc" else layout.phone_cols
        for c in struck:
            directive.cell_highlights.append(CellHighlight(c, DNC_COLOR, strikethrough=True))

    return directive


def apply_color_map(
    directive: OutreachDirective,
    row_values: Sequence,
    color_map: ColorMap,
    source_for_output: Sequence[int],
) -> OutreachDirective:
    """
    Re-apply manual value colours (e.g. advisor colours). They override the
    retention colour of the same cell; strikethrough is kept.
    """
    for out_col, src_col in enumerate(source_for_output):
        colors = color_map.get(src_col)
        if not colors or out_col >= len(row_values):
            continue
        color = colors.get(value_key(row_values[out_col]))
        if color is None:
            continue
        struck = any(h.col == out_col and h.strikethrough for h in directive.cell_highlights)
        directive.cell_highlights.append(CellHighlight(out_col, color, strikethrough=struck))
    return directive
