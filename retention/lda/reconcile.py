"""
Tabular Reconciler.

Partitions incoming rows into new vs existing students by normalized name
and carries preserved fields (gradebook links, assigned advisor, static
columns) from the rows being replaced.

CONTRACT ANCHORS
----------------
- Every incoming row lands in exactly one of new_rows / existing_rows.
- Output order is new_rows ++ existing_rows, incoming order kept inside each.
- A preserved value never overrides a non-empty incoming value.
- Blank keys are never preserved and never match (known limitation).
- Exact key match after normalization only. No edit-distance matching.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .name_key import normalize_name

logger = logging.getLogger(__name__)

LINK_FALLBACK_LABEL = "Link"

_HYPERLINK = re.compile(
    r"""^=\s*HYPERLINK\s*\(\s*["']([^"']*)["']\s*(?:,\s*["']([^"']*)["']\s*)?\)\s*$""",
    re.IGNORECASE,
)


def parse_hyperlink(text) -> tuple[Optional[str], Optional[str]]:
    """
    Split =HYPERLINK("url","label") into (url, label). A bare http(s) URL
    is its own label. Anything else gives (None, None).
    """
    if not isinstance(text, str):
        return None, None
    s = text.strip()
    match = _HYPERLINK.match(s)
    if match:
        url = match.group(1).strip()
        label = match.group(2).strip() if match.group(2) is not None else url
        return url, label
    if re.match(r"^https?://", s, re.IGNORECASE):
        return s, s
    return None, None


def make_hyperlink_formula(url: str, label: Optional[str] = None) -> str:
    esc_url = str(url).replace('"', '""')
    esc_label = esc_url if label is None else str(label).replace('"', '""')
    return f'=HYPERLINK("{esc_url}","{esc_label}")'


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass
class PreserveSpec:
    field: str
    column: int
    kind: str = "value"  # "value" | "link"


@dataclass
class PreservedValue:
    value: object
    formula: Optional[str] = None


@dataclass
class MergedRow:
    values: list
    formulas: list
    key: str
    is_new: bool
    preserved: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    new_rows: list[list]
    existing_rows: list[list]
    preserved_by_key: dict[str, dict[str, PreservedValue]]
    merged: list[MergedRow]

    def preserved_count(self, field_name: str) -> int:
        return sum(1 for row in self.merged if field_name in row.preserved)


def _capture(spec: PreserveSpec, values: Sequence, formulas: Optional[Sequence]) -> Optional[PreservedValue]:
    if spec.column < 0 or spec.column >= len(values):
        return None
    value = values[spec.column]
    formula = None
    if formulas is not None and spec.column < len(formulas):
        formula = formulas[spec.column]
    if spec.kind == "link":
        if isinstance(formula, str) and formula.strip():
            return PreservedValue(value=value, formula=formula.strip())
        url, _ = parse_hyperlink(value)
        if url:
            return PreservedValue(value=value, formula=make_hyperlink_formula(url, LINK_FALLBACK_LABEL))
        return None
    if is_blank(value):
        return None
    return PreservedValue(value=value)


def _link_label(formula: str) -> str:
    _, label = parse_hyperlink(formula)
    if label:
        return label
    # Formula we could not fully parse: take the second quoted argument.
    match = re.search(r',\s*"([^"]+)"\s*\)', formula)
    return match.group(1) if match else LINK_FALLBACK_LABEL


def reconcile(
    dest_rows: Sequence[Sequence],
    dest_key_col: int,
    incoming_rows: Sequence[Sequence],
    incoming_key_col: int,
    preserve_specs: Sequence[PreserveSpec],
    dest_formulas: Optional[Sequence[Sequence]] = None,
    incoming_formulas: Optional[Sequence[Sequence]] = None,
) -> ReconcileResult:
    """
    Preserve-spec columns index both the destination rows and the incoming
    rows, so incoming rows must already be laid out like the destination.
    """
    preserved_by_key: dict[str, dict[str, PreservedValue]] = {}
    known_keys: set[str] = set()

    for r, row in enumerate(dest_rows):
        if dest_key_col < 0 or dest_key_col >= len(row):
            continue
        key = normalize_name(row[dest_key_col])
        if not key:
            continue
        known_keys.add(key)
        row_formulas = dest_formulas[r] if dest_formulas is not None and r < len(dest_formulas) else None
        for spec in preserve_specs:
            captured = _capture(spec, row, row_formulas)
            if captured is not None:
                preserved_by_key.setdefault(key, {})[spec.field] = captured

    new_rows: list[list] = []
    existing_rows: list[list] = []
    new_merged: list[MergedRow] = []
    existing_merged: list[MergedRow] = []

    for r, row in enumerate(incoming_rows):
        key = ""
        if 0 <= incoming_key_col < len(row):
            key = normalize_name(row[incoming_key_col])
        values = list(row)
        if incoming_formulas is not None and r < len(incoming_formulas):
            formulas = list(incoming_formulas[r])
        else:
            formulas = [None] * len(values)
        is_new = not key or key not in known_keys
        merged = MergedRow(values=values, formulas=formulas, key=key, is_new=is_new)

        for spec in preserve_specs:
            kept = preserved_by_key.get(key, {}).get(spec.field) if key else None
            if kept is None or spec.column < 0:
                continue
            while len(merged.values) <= spec.column:
                merged.values.append(None)
                merged.formulas.append(None)
            if not is_blank(merged.values[spec.column]) or merged.formulas[spec.column]:
                continue
            if spec.kind == "link" and kept.formula:
                merged.formulas[spec.column] = kept.formula
                merged.values[spec.column] = _link_label(kept.formula)
            else:
                merged.values[spec.column] = kept.value
            merged.preserved.append(spec.field)

        if is_new:
            new_rows.append(row)
            new_merged.append(merged)
        else:
            existing_rows.append(row)
            existing_merged.append(merged)

    logger.info(
        "[reconcile] %d new, %d existing, %d destination keys with preserved fields",
        len(new_rows), len(existing_rows), len(preserved_by_key),
    )
    return ReconcileResult(
        new_rows=new_rows,
        existing_rows=existing_rows,
        preserved_by_key=preserved_by_key,
        merged=new_merged + existing_merged,
    )
