"""
Master List imports.

merge_master_list()  Replace the Master List body with an imported roster.
                     New students go first and are filled light blue;
                     gradebook links, assigned advisors and static columns
                     of returning students are carried over; advisor
                     colours are re-applied by value.
update_grades()      Update grades, assignment counts and gradebook links
                     of students already on the Master List.

Both rewrite the sheet through BatchedSheetWriter in bounded chunks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .column_mapper import (
    field_for_header,
    find_field,
    resolve_index,
)
from .dates import parse_date, to_serial
from .errors import LdaError, PreconditionError, SheetWriteError
from .importer import ImportTable
from .name_key import format_last_first, normalize_name
from .reconcile import PreserveSpec, is_blank, make_hyperlink_formula, reconcile
from .rules import OutreachDirective, apply_color_map
from .sampling import COLOR_SAMPLE_ROWS, NEW_ROW_COLOR, build_color_map, detect_percent_scale
from .settings import MASTER_LIST_SHEET, Settings
from .writer import (
    BatchedSheetWriter,
    ColorScale,
    ConditionalFormat,
    NumberFormat,
    OutputRow,
    ProgressCallback,
    SheetPort,
    Snapshot,
)

logger = logging.getLogger(__name__)

LDA_NUMBER_FORMAT = "m-dd-yyyy"
GRADEBOOK_LABEL = "Gradebook"


@dataclass
class MergeSummary:
    new_count: int = 0
    existing_count: int = 0
    links_preserved: int = 0
    assigned_preserved: int = 0
    colors_applied: int = 0
    unmapped_columns: list[str] = field(default_factory=list)


@dataclass
class GradeUpdateSummary:
    students_updated: int = 0
    grades_updated: int = 0
    missing_updated: int = 0
    zeros_updated: int = 0
    links_updated: int = 0
    skipped_rows: int = 0


def _compact(text) -> str:
    return "".join(str(text or "").split()).lower()


def _require_master(port: SheetPort) -> Snapshot:
    if MASTER_LIST_SHEET not in port.sheet_names():
        raise PreconditionError(
            reason=f'Workbook missing "{MASTER_LIST_SHEET}" sheet',
            affected_sheet=MASTER_LIST_SHEET,
            phase="validate",
            missing_fields=[MASTER_LIST_SHEET],
        )
    try:
        master = port.read(MASTER_LIST_SHEET, fill_sample=COLOR_SAMPLE_ROWS)
    except Exception as e:
        raise LdaError(reason=f"Reading failed: {e}", affected_sheet=MASTER_LIST_SHEET, phase="read") from e
    if not master.headers:
        raise PreconditionError(
            reason=f"'{MASTER_LIST_SHEET}' is empty or has no header row",
            affected_sheet=MASTER_LIST_SHEET,
            phase="read",
        )
    return master


def _require_column(headers, specs, logical: str, display: str, sheet: str) -> int:
    index = find_field(headers, specs, logical)
    if index == -1:
        raise PreconditionError(
            reason=f"'{sheet}' is missing a '{display}' column",
            affected_sheet=sheet,
            phase="read",
            missing_fields=[display],
            fix_steps=[f"Add a '{display}' column or declare its alias in Settings."],
        )
    return index


def map_import_columns(import_headers, master_headers, specs) -> list[int]:
    """Master column index for each import column (-1 when it has no home)."""
    by_header = {}
    for i, h in enumerate(master_headers):
        by_header.setdefault(_compact(h), i)
    mapping = []
    for h in import_headers:
        key = _compact(h)
        index = by_header.get(key, -1) if key else -1
        if index == -1 and key:
            logical = field_for_header(h)
            if logical:
                index = find_field(master_headers, specs, logical)
        mapping.append(index)
    return mapping


def _grade_scale(master: Snapshot, grade_col: int, values) -> list[ConditionalFormat]:
    if grade_col < 0 or not values:
        return []
    if any(rule.col == grade_col for rule in master.conditional_formats):
        return []
    mid = 70 if detect_percent_scale(values) else 0.7
    return [ConditionalFormat(grade_col, 1, len(values), color_scale=ColorScale(mid_value=mid))]


def merge_master_list(
    port: SheetPort,
    table: ImportTable,
    settings: Optional[Settings] = None,
    on_progress: Optional[ProgressCallback] = None,
    today: Optional[date] = None,
) -> MergeSummary:
    settings = settings or Settings()
    today = today or date.today()
    specs = settings.output_columns

    _require_column(table.headers, specs, "student_name", "Student Name", table.label)
    master = _require_master(port)
    headers = master.headers
    name_col = _require_column(headers, specs, "student_name", "Student Name", MASTER_LIST_SHEET)
    logger.info("[master_list] '%s' headers: [%s]", MASTER_LIST_SHEET, ", ".join(headers))

    mapping = map_import_columns(table.headers, headers, specs)
    summary = MergeSummary(
        unmapped_columns=[h for h, m in zip(table.headers, mapping) if m == -1 and h],
    )
    if summary.unmapped_columns:
        logger.warning(
            "[master_list] import columns with no Master List home: %s",
            ", ".join(summary.unmapped_columns),
        )

    import_lda_col = find_field(table.headers, specs, "lda")
    master_lda_col = find_field(headers, specs, "lda")
    master_days_col = find_field(headers, specs, "days_out")
    gradebook_col = find_field(headers, specs, "gradebook")
    assigned_col = find_field(headers, specs, "assigned")
    grade_col = find_field(headers, specs, "grade")

    projected: list[list] = []
    for row in table.rows:
        out = [None] * len(headers)
        for i, target in enumerate(mapping):
            if target == -1 or i >= len(row):
                continue
            value = row[i]
            if target == name_col:
                value = format_last_first(value)
            out[target] = value
        if 0 <= import_lda_col < len(row):
            lda = parse_date(row[import_lda_col])
            if lda is not None:
                if master_lda_col != -1:
                    out[master_lda_col] = to_serial(lda)
                if master_days_col != -1:
                    out[master_days_col] = max((today - lda).days, 0)
        projected.append(out)

    preserve = []
    if gradebook_col != -1:
        preserve.append(PreserveSpec("gradebook", gradebook_col, kind="link"))
    if assigned_col != -1:
        preserve.append(PreserveSpec("assigned", assigned_col))
    for spec in specs:
        if not spec.static:
            continue
        index = resolve_index(headers, spec)
        if index != -1 and index not in (gradebook_col, assigned_col):
            preserve.append(PreserveSpec(spec.name, index))

    result = reconcile(
        master.rows, name_col, projected, name_col, preserve,
        dest_formulas=master.formulas,
    )
    summary.new_count = len(result.new_rows)
    summary.existing_count = len(result.existing_rows)
    summary.links_preserved = result.preserved_count("gradebook")
    summary.assigned_preserved = result.preserved_count("assigned")
    logger.info(
        "[master_list] %d new students, %d existing; %d gradebook links and %d assigned values preserved",
        summary.new_count, summary.existing_count, summary.links_preserved, summary.assigned_preserved,
    )

    if not result.merged:
        logger.info("[master_list] no students to import, Master List left unchanged")
        return summary

    color_map = build_color_map(master.rows, master.fills, sample_limit=COLOR_SAMPLE_ROWS)
    identity = list(range(len(headers)))
    rows: list[OutputRow] = []
    for merged in result.merged:
        directive = OutreachDirective(row_color=NEW_ROW_COLOR if merged.is_new else None)
        apply_color_map(directive, merged.values, color_map, identity)
        summary.colors_applied += len(directive.cell_highlights)
        rows.append(OutputRow(values=merged.values, formulas=merged.formulas, directive=directive))

    try:
        port.clear_rows(MASTER_LIST_SHEET, 1)
    except Exception as e:
        raise SheetWriteError(
            reason=f"Clearing the sheet failed: {e}",
            affected_sheet=MASTER_LIST_SHEET,
            phase="writing",
        ) from e

    writer = BatchedSheetWriter(port, MASTER_LIST_SHEET, on_progress=on_progress)
    writer.write_rows(1, rows, MASTER_LIST_SHEET, len(headers))
    if master_lda_col != -1:
        writer.apply_layout(number_formats=[NumberFormat(master_lda_col, 1, len(rows), LDA_NUMBER_FORMAT)])
    grades = [r.values[grade_col] for r in rows] if grade_col != -1 else []
    writer.apply_conditional_formats(_grade_scale(master, grade_col, grades))
    writer.autofit()

    logger.info("[master_list] update complete: %d rows written", len(rows))
    return summary


def update_grades(
    port: SheetPort,
    table: ImportTable,
    settings: Optional[Settings] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> GradeUpdateSummary:
    settings = settings or Settings()
    specs = settings.output_columns
    summary = GradeUpdateSummary()

    name_in = _require_column(table.headers, specs, "student_name", "Student Name", table.label)
    course_in = _require_column(table.headers, specs, "course", "Course", table.label)
    grade_in = _require_column(table.headers, specs, "grade", "Current Score", table.label)
    course_id_in = find_field(table.headers, specs, "course_id")
    student_id_in = find_field(table.headers, specs, "student_id")
    missing_in = find_field(table.headers, specs, "missing_assignments")
    zero_in = find_field(table.headers, specs, "zero_assignments")

    def cell(row, index):
        return row[index] if 0 <= index < len(row) else None

    marker = settings.excluded_course_marker.upper()
    imported: dict[str, dict] = {}
    for row in table.rows:
        course = cell(row, course_in)
        if marker and course is not None and marker in str(course).upper():
            summary.skipped_rows += 1
            continue
        key = normalize_name(cell(row, name_in))
        if not key:
            continue
        grade = cell(row, grade_in)
        if is_blank(grade) and settings.treat_empty_grades_as_zero:
            grade = 0
        imported[key] = {
            "grade": grade,
            "course_id": cell(row, course_id_in),
            "student_id": cell(row, student_id_in),
            "missing": cell(row, missing_in),
            "zero": cell(row, zero_in),
            "has_zero": zero_in != -1,
        }
    logger.info(
        "[master_list] grade import: %d students (skipped %d '%s' rows)",
        len(imported), summary.skipped_rows, settings.excluded_course_marker,
    )

    master = _require_master(port)
    headers = master.headers
    name_col = _require_column(headers, specs, "student_name", "Student Name", MASTER_LIST_SHEET)
    grade_col = _require_column(headers, specs, "grade", "Grade", MASTER_LIST_SHEET)
    gradebook_col = _require_column(headers, specs, "gradebook", "Gradebook", MASTER_LIST_SHEET)
    missing_col = find_field(headers, specs, "missing_assignments")
    zero_col = find_field(headers, specs, "zero_assignments")

    rows: list[OutputRow] = []
    for r, row in enumerate(master.rows):
        values = list(row) + [None] * (len(headers) - len(row))
        formulas = list(master.formulas[r]) if r < len(master.formulas) else []
        formulas += [None] * (len(headers) - len(formulas))
        rows.append(OutputRow(values=values, formulas=formulas))

        data = imported.get(normalize_name(values[name_col]))
        if data is None:
            continue
        summary.students_updated += 1

        if not is_blank(data["grade"]):
            values[grade_col] = data["grade"]
            formulas[grade_col] = None
            summary.grades_updated += 1

        will_have_link = bool(data["course_id"] and data["student_id"])
        existing_link = formulas[gradebook_col]
        has_link = will_have_link or (
            isinstance(existing_link, str) and "hyperlink" in existing_link.lower()
        )

        if missing_col != -1:
            if has_link:
                values[missing_col] = 0 if is_blank(data["missing"]) else data["missing"]
                summary.missing_updated += 1
            else:
                values[missing_col] = None
            formulas[missing_col] = None

        if zero_col != -1 and data["has_zero"]:
            values[zero_col] = data["zero"]
            formulas[zero_col] = None
            summary.zeros_updated += 1

        if will_have_link:
            url = settings.gradebook_url_template.format(
                course_id=_id_text(data["course_id"]),
                student_id=_id_text(data["student_id"]),
            )
            formulas[gradebook_col] = make_hyperlink_formula(url, GRADEBOOK_LABEL)
            values[gradebook_col] = GRADEBOOK_LABEL
            summary.links_updated += 1

    logger.info(
        "[master_list] prepared updates for %d students: %d grades, %d missing, %d zero, %d links",
        summary.students_updated, summary.grades_updated, summary.missing_updated,
        summary.zeros_updated, summary.links_updated,
    )
    if summary.students_updated == 0:
        return summary

    writer = BatchedSheetWriter(port, MASTER_LIST_SHEET, on_progress=on_progress)
    writer.write_rows(1, rows, MASTER_LIST_SHEET, len(headers))
    writer.apply_conditional_formats(_grade_scale(master, grade_col, [r.values[grade_col] for r in rows]))
    writer.autofit()
    return summary


def _id_text(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
