"""
Column Resolver: Master List / history header mapping.

RULES:
- Deterministic string matching only. No partial or substring matching.
- Pass 1: case-insensitive exact match (outer whitespace trimmed).
- Pass 2: comparison with all whitespace removed ("Student Number" ==
  "studentnumber"). Pass 1 always wins over pass 2.
- First matching header index wins. Not found is -1, never an exception.
- No source column silently dropped: every non-blank header not claimed by
  a declared ColumnSpec is carried as an implicit hidden column.

Public API:
  resolve_index(headers, spec) -> int
  field_spec(specs, field) -> ColumnSpec
  find_field(headers, specs, field) -> int
  build_output_columns(headers, specs) -> list[OutputColumn]
  get_unmatched_columns(headers, output_columns) -> list[str]
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ColumnSpec:
    name: str
    aliases: list[str] = field(default_factory=list)
    hidden: bool = False
    static: bool = False

    def candidates(self) -> list[str]:
        return [self.name, *self.aliases]


@dataclass
class OutputColumn:
    """One column of an OutputColumnSet, bound to its source header index."""
    spec: ColumnSpec
    source_index: int
    implicit: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def hidden(self) -> bool:
        return self.spec.hidden


# ---------------------------------------------------------------------------
# Logical field names
# ---------------------------------------------------------------------------

LOGICAL_FIELDS: frozenset[str] = frozenset({
    "student_name",
    "student_number",
    "student_id",
    "days_out",
    "grade",
    "gradebook",
    "assigned",
    "lda",
    "phone",
    "other_phone",
    "student_email",
    "personal_email",
    "outreach",
    "campus",
    "course",
    "course_id",
    "missing_assignments",
    "zero_assignments",
    "tag",
})

CONTACT_FIELDS: tuple[str, ...] = ("phone", "other_phone", "student_email", "personal_email")
PHONE_FIELDS: tuple[str, ...] = ("phone", "other_phone")

# ---------------------------------------------------------------------------
# Alias libraries
# ---------------------------------------------------------------------------
# Keys are written in their natural export casing; comparison is always
# case-insensitive + whitespace-stripped at lookup time.
#
# "Student ID" is the LMS (Canvas) id used for gradebook links.
# "Student Number" is the internal school id used to match history rows.
# ---------------------------------------------------------------------------

# ── Master List / roster exports ────────────────────────────────────────────
_ROSTER_VARIANTS: dict[str, str] = {
    # student_name
    "Student Name":                    "student_name",
    "StudentName":                     "student_name",
    "Student":                         "student_name",
    "Name":                            "student_name",
    # student_number
    "Student Number":                  "student_number",
    "StudentNumber":                   "student_number",
    "Student Identifier":              "student_number",
    "Student #":                       "student_number",
    # student_id
    "Student ID":                      "student_id",
    "SyStudentId":                     "student_id",
    "ID":                              "student_id",
    # days_out
    "Days Out":                        "days_out",
    "Days_Out":                        "days_out",
    "Days Absent":                     "days_out",
    # grade
    "Grade":                           "grade",
    "Grades":                          "grade",
    "Course Grade":                    "grade",
    "Current Score":                   "grade",
    # gradebook
    "Gradebook":                       "gradebook",
    "Grade Book":                      "gradebook",
    "Gradebook Link":                  "gradebook",
    "Gradelink":                       "gradebook",
    # assigned
    "Assigned":                        "assigned",
    "Assigned To":                     "assigned",
    "Advisor":                         "assigned",
    # lda
    "LDA":                             "lda",
    "Last LDA":                        "lda",
    "Last Date of Attendance":         "lda",
    # campus
    "Campus":                          "campus",
    "Campus Name":                     "campus",
    "Location":                        "campus",
    # outreach
    "Outreach":                        "outreach",
    "Outreach Notes":                  "outreach",
}

# ── Contact details ─────────────────────────────────────────────────────────
_CONTACT_VARIANTS: dict[str, str] = {
    "Phone":                           "phone",
    "Primary Phone":                   "phone",
    "Phone Number":                    "phone",
    "PhoneNumber":                     "phone",
    "Contact Number":                  "phone",
    "Other Phone":                     "other_phone",
    "OtherPhone":                      "other_phone",
    "Student Email":                   "student_email",
    "School Email":                    "student_email",
    "Email":                           "student_email",
    "Personal Email":                  "personal_email",
    "Other Email":                     "personal_email",
    "OtherEmail":                      "personal_email",
}

# ── LMS grade exports ───────────────────────────────────────────────────────
_GRADEBOOK_EXPORT_VARIANTS: dict[str, str] = {
    "Course":                          "course",
    "Course Name":                     "course",
    "Course ID":                       "course_id",
    "CourseID":                        "course_id",
    "Course Missing Assignments":      "missing_assignments",
    "Missing Assignments":             "missing_assignments",
    "Course Zero Assignments":         "zero_assignments",
    "Zero Assignments":                "zero_assignments",
}

# ── Student History log ─────────────────────────────────────────────────────
_HISTORY_VARIANTS: dict[str, str] = {
    "Tag":                             "tag",
    "Tags":                            "tag",
}

_ALL_SOURCES: list[tuple[str, dict[str, str]]] = [
    ("Roster",     _ROSTER_VARIANTS),
    ("Contact",    _CONTACT_VARIANTS),
    ("Gradebook",  _GRADEBOOK_EXPORT_VARIANTS),
    ("History",    _HISTORY_VARIANTS),
]


def _exact_key(text) -> str:
    return "" if text is None else str(text).strip().lower()


def _compact_key(text) -> str:
    return _WHITESPACE.sub("", _exact_key(text))


def _build_alias_lookup() -> dict[str, str]:
    """
    Merge all variant dicts into a single flat lookup keyed by the
    whitespace-stripped lower-case variant.

    Raises ValueError if the same variant maps to different fields in
    different sections.
    """
    lookup: dict[str, str] = {}
    for section, variants in _ALL_SOURCES:
        for raw_variant, logical in variants.items():
            key = _compact_key(raw_variant)
            if key in lookup:
                existing = lookup[key]
                if existing != logical:
                    raise ValueError(
                        f"Alias library conflict in '{section}': variant '{raw_variant}' "
                        f"maps to '{logical}' but was already mapped to '{existing}'."
                    )
                continue
            lookup[key] = logical
    return lookup


# Built once, never mutated.
_ALIAS_LOOKUP: dict[str, str] = _build_alias_lookup()


def _library_variants(logical: str) -> list[str]:
    variants: list[str] = []
    for _, section in _ALL_SOURCES:
        for raw_variant, target in section.items():
            if target == logical and raw_variant not in variants:
                variants.append(raw_variant)
    return variants


def field_for_header(header) -> Optional[str]:
    """Logical field a header (or spec name) belongs to, or None."""
    return _ALIAS_LOOKUP.get(_compact_key(header))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_index(headers: Sequence, spec: ColumnSpec) -> int:
    """
    Return the index of the header matching spec.name or one of its
    aliases, or -1.

    Pass 1 compares case-insensitively after trimming; pass 2 compares with
    all whitespace removed. A pass 1 hit on any header beats a pass 2 hit
    on an earlier header.
    """
    exact = {_exact_key(c) for c in spec.candidates() if _exact_key(c)}
    for i, header in enumerate(headers):
        if _exact_key(header) in exact:
            return i
    compact = {_compact_key(c) for c in spec.candidates() if _compact_key(c)}
    for i, header in enumerate(headers):
        if _compact_key(header) in compact:
            return i
    return -1


def field_spec(specs: Sequence[ColumnSpec], logical: str) -> ColumnSpec:
    """
    Spec used to locate a logical field: the user-declared spec whose name
    or aliases belong to the field (if any), extended with the library
    variants for that field.
    """
    if logical not in LOGICAL_FIELDS:
        raise ValueError(f"Unknown logical field '{logical}'")
    declared: Optional[ColumnSpec] = None
    for spec in specs:
        if any(field_for_header(c) == logical for c in spec.candidates()):
            declared = spec
            break
    library = _library_variants(logical)
    if declared is None:
        return ColumnSpec(name=library[0], aliases=library[1:])
    aliases = list(declared.aliases) + [v for v in library if v not in declared.candidates()]
    return ColumnSpec(
        name=declared.name,
        aliases=aliases,
        hidden=declared.hidden,
        static=declared.static,
    )


def find_field(headers: Sequence, specs: Sequence[ColumnSpec], logical: str) -> int:
    return resolve_index(headers, field_spec(specs, logical))


def _spec_field(spec: ColumnSpec) -> Optional[str]:
    for candidate in spec.candidates():
        logical = field_for_header(candidate)
        if logical is not None:
            return logical
    return None


def _with_library(spec: ColumnSpec, logical: str) -> ColumnSpec:
    """spec extended with the library variants of its logical field."""
    extra = [v for v in _library_variants(logical) if v not in spec.candidates()]
    return ColumnSpec(spec.name, list(spec.aliases) + extra, spec.hidden, spec.static)


def _unique_name(name: str, taken: set[str]) -> str:
    candidate = name
    counter = 2
    while candidate.lower() in taken:
        candidate = f"{name} ({counter})"
        counter += 1
    taken.add(candidate.lower())
    return candidate


def build_output_columns(
    headers: Sequence,
    specs: Sequence[ColumnSpec],
    label: str = "Master List",
) -> list[OutputColumn]:
    """
    Build the OutputColumnSet: declared specs in configured order, then one
    implicit hidden column per unclaimed non-blank header, in header order.

    A declared spec is matched on its own name and aliases first. Specs
    still unmatched after that fall back to the alias library of their
    logical field, over the headers nobody claimed.
    """
    indices: list[int] = []
    claimed: set[int] = set()
    for spec in specs:
        index = resolve_index(headers, spec)
        if index != -1 and index in claimed:
            # Two specs resolving to the same header: the first keeps it.
            logger.warning(
                "[column_mapper] %s: '%s' resolves to already claimed column %d",
                label, spec.name, index,
            )
            index = -1
        elif index != -1:
            claimed.add(index)
        indices.append(index)

    for n, spec in enumerate(specs):
        logical = _spec_field(spec)
        if indices[n] != -1 or logical is None:
            continue
        free = [None if i in claimed else h for i, h in enumerate(headers)]
        index = resolve_index(free, _with_library(spec, logical))
        if index != -1:
            claimed.add(index)
            indices[n] = index

    columns: list[OutputColumn] = []
    for spec, index in zip(specs, indices):
        if index == -1:
            logger.info("[column_mapper] %s: '%s' not found, column left blank", label, spec.name)
        else:
            logger.info("[column_mapper] %s: '%s' → '%s'", label, headers[index], spec.name)
        columns.append(OutputColumn(spec=spec, source_index=index))

    # Table column names must be unique, case-insensitively.
    taken = {_exact_key(spec.name) for spec in specs}
    for i, header in enumerate(headers):
        if i in claimed or not _exact_key(header):
            continue
        name = _unique_name(str(header).strip(), taken)
        if name != str(header).strip():
            logger.warning("[column_mapper] %s: duplicate header '%s' carried as '%s'", label, header, name)
        columns.append(OutputColumn(
            spec=ColumnSpec(name=name, hidden=True),
            source_index=i,
            implicit=True,
        ))
    return columns


def get_unmatched_columns(headers: Sequence, output_columns: Sequence[OutputColumn]) -> list[str]:
    """Headers carried only as implicit hidden columns."""
    return [
        str(headers[col.source_index]).strip()
        for col in output_columns
        if col.implicit
    ]
