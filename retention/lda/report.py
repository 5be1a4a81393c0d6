"""
LDA report generation.

Reads the Master List (and the Student History log when present), keeps
every student whose Days Out meets the threshold, and writes them to a new
"LDA M-D-YYYY" sheet as a table, highest Days Out first. Optionally a
"Failing Students (Active)" table follows: grade below 60% while Days Out
is 4 or less, lowest grade first.

Progress:
  on_step(step_id, "active" | "completed") for the coarse steps in STEPS
  on_progress(current, total, phase, table_label) after every flush

Either the whole report is written or a single LdaError is raised; a
partially written sheet is left in place for inspection.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional, Sequence

from .column_mapper import (
    CONTACT_FIELDS,
    PHONE_FIELDS,
    OutputColumn,
    build_output_columns,
    find_field,
    get_unmatched_columns,
)
from .dates import is_number
from .errors import LdaError, PreconditionError
from .reconcile import is_blank, make_hyperlink_formula, parse_hyperlink
from .rules import (
    HistoryTagMaps,
    RowLayout,
    apply_color_map,
    build_directive,
    build_history_maps,
    classify,
    person_key,
)
from .sampling import (
    COLOR_SAMPLE_ROWS,
    DATE_FORMAT,
    build_color_map,
    detect_date_columns,
    detect_percent_scale,
)
from .settings import HISTORY_SHEET, MASTER_LIST_SHEET, Settings
from .writer import (
    BatchedSheetWriter,
    ColorScale,
    ConditionalFormat,
    NumberFormat,
    OutputRow,
    ProgressCallback,
    SheetPort,
    Snapshot,
    TableNamer,
)

logger = logging.getLogger(__name__)

STEPS: tuple[str, ...] = (
    "validate", "read", "filter", "failing", "createSheet", "tags", "format", "finalize",
)

FAILING_TITLE = "Failing Students (Active)"
FAILING_GRADE_FRACTION = 0.60
FAILING_GRADE_PERCENT = 60
RECENT_DAYS_OUT = 4
GRADEBOOK_LABEL = "Gradebook"
MAX_SHEET_NAME = 31

StepCallback = Callable[[str, str], None]


@dataclass
class ReportResult:
    sheet_name: str
    primary_count: int
    failing_count: int
    date_columns: list[str] = field(default_factory=list)
    hidden_columns: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Row selection
# ---------------------------------------------------------------------------


def is_failing_grade(grade) -> bool:
    """Below 60% on either a 0-1 or a 0-100 scale."""
    if not is_number(grade):
        return False
    return grade < FAILING_GRADE_FRACTION or 1 <= grade < FAILING_GRADE_PERCENT


def select_days_out(rows: Sequence[Sequence], days_out_col: int, threshold: float) -> list[int]:
    """Indices of rows with numeric Days Out >= threshold, highest first, ties in sheet order."""
    picked = [
        i for i, row in enumerate(rows)
        if days_out_col < len(row) and is_number(row[days_out_col]) and row[days_out_col] >= threshold
    ]
    return sorted(picked, key=lambda i: -rows[i][days_out_col])


def select_failing(rows: Sequence[Sequence], grade_col: int, days_out_col: int) -> list[int]:
    """Indices of failing-but-recently-active rows, lowest grade first."""
    picked = []
    for i, row in enumerate(rows):
        if max(grade_col, days_out_col) >= len(row):
            continue
        days_out = row[days_out_col]
        if is_failing_grade(row[grade_col]) and is_number(days_out) and days_out <= RECENT_DAYS_OUT:
            picked.append(i)
    return sorted(picked, key=lambda i: rows[i][grade_col])


# ---------------------------------------------------------------------------
# Sheet naming
# ---------------------------------------------------------------------------


def _sheet_safe(text: str) -> str:
    return re.sub(r"[\[\]:*?/\\]", "-", text).strip().strip("'")


def base_sheet_name(today: date, mode: str = "date", campus: Optional[str] = None) -> str:
    stamp = f"LDA {today.month}-{today.day}-{today.year}"
    if mode != "campus" or not campus:
        return stamp
    # Room for the stamp and a " (nn)" suffix.
    room = MAX_SHEET_NAME - len(stamp) - 6
    prefix = _sheet_safe(campus)[:max(room, 0)].strip()
    return f"{prefix} {stamp}" if prefix else stamp


def unique_sheet_name(existing: Sequence[str], base: str) -> str:
    taken = {n.lower() for n in existing}
    name = base
    counter = 2
    while name.lower() in taken:
        name = f"{base} ({counter})"
        counter += 1
    return name


def most_common_value(rows: Sequence[Sequence], indices: Sequence[int], col: int) -> Optional[str]:
    if col < 0:
        return None
    counts = Counter(
        str(rows[i][col]).strip()
        for i in indices
        if col < len(rows[i]) and not is_blank(rows[i][col])
    )
    if not counts:
        return None
    return counts.most_common(1)[0][0]


# ---------------------------------------------------------------------------
# Row building
# ---------------------------------------------------------------------------


def _is_hyperlink_formula(formula) -> bool:
    return isinstance(formula, str) and formula.strip().lower().startswith("=hyperlink")


class _RowBuilder:
    def __init__(
        self,
        master: Snapshot,
        columns: list[OutputColumn],
        settings: Settings,
        maps: HistoryTagMaps,
        student_key_col: int,
        gradebook_col: int,
    ):
        self.master = master
        self.columns = columns
        self.settings = settings
        self.maps = maps
        self.student_key_col = student_key_col
        self.gradebook_col = gradebook_col
        self.color_map = build_color_map(master.rows, master.fills, sample_limit=COLOR_SAMPLE_ROWS)
        self.source_for_output = [c.source_index for c in columns]

        out_headers = [c.name for c in columns]
        specs = settings.output_columns
        self.layout = RowLayout(
            outreach_col=find_field(out_headers, specs, "outreach"),
            contact_cols=[i for i in (find_field(out_headers, specs, f) for f in CONTACT_FIELDS) if i >= 0],
            phone_cols=[i for i in (find_field(out_headers, specs, f) for f in PHONE_FIELDS) if i >= 0],
        )

    def build(self, source_row: int) -> OutputRow:
        row = self.master.rows[source_row]
        row_formulas = self.master.formulas[source_row] if source_row < len(self.master.formulas) else []
        values: list = []
        formulas: list = []
        for col in self.columns:
            s = col.source_index
            value = row[s] if 0 <= s < len(row) else None
            formula = row_formulas[s] if 0 <= s < len(row_formulas) else None
            if _is_hyperlink_formula(formula):
                if value is None:
                    _, value = parse_hyperlink(formula)
            else:
                formula = None
                if s == self.gradebook_col and s >= 0 and isinstance(value, str) and value.startswith(("http://", "https://")):
                    formula = make_hyperlink_formula(value, GRADEBOOK_LABEL)
                    value = GRADEBOOK_LABEL
            values.append(value)
            formulas.append(formula)

        key = ""
        if 0 <= self.student_key_col < len(row):
            key = person_key(row[self.student_key_col])
        classification = classify(
            key, self.maps,
            include_dnc=self.settings.include_dnc_tag,
            include_engagement=self.settings.include_engagement_tag,
        )
        directive = build_directive(
            classification, self.layout,
            dnc_tag=self.maps.dnc.get(key) if key else None,
            include_dnc=self.settings.include_dnc_tag,
        )
        outreach = self.layout.outreach_col
        if directive.message and outreach >= 0 and is_blank(values[outreach]) and not formulas[outreach]:
            values[outreach] = directive.message
        apply_color_map(directive, values, self.color_map, self.source_for_output)
        return OutputRow(values=values, formulas=formulas, directive=directive)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def _read(port: SheetPort, sheet_name: str, fill_sample: int = 0) -> Snapshot:
    try:
        return port.read(sheet_name, fill_sample=fill_sample)
    except LdaError:
        raise
    except Exception as e:
        raise LdaError(
            reason=f"Reading failed: {e}",
            affected_sheet=sheet_name,
            phase="read",
        ) from e


def _history_maps(history: Optional[Snapshot], settings: Settings, today: date) -> HistoryTagMaps:
    if history is None or not history.headers:
        return HistoryTagMaps()
    specs = settings.output_columns
    id_col = find_field(history.headers, specs, "student_number")
    if id_col == -1:
        id_col = find_field(history.headers, specs, "student_id")
    tag_col = find_field(history.headers, specs, "tag")
    if id_col == -1 or tag_col == -1:
        logger.warning(
            "[report] '%s' has no student id or tag column, tags skipped", HISTORY_SHEET,
        )
        return HistoryTagMaps()
    return build_history_maps(
        history.rows, id_col, tag_col, today,
        include_engagement=settings.include_engagement_tag,
    )


def create_lda_report(
    port: SheetPort,
    settings: Optional[Settings] = None,
    on_step: Optional[StepCallback] = None,
    on_progress: Optional[ProgressCallback] = None,
    today: Optional[date] = None,
) -> ReportResult:
    """
    Create the LDA report sheet.

    Raises
    ------
    PreconditionError
        Master List or its Days Out column is missing, or no output
        columns are configured. Nothing has been written.
    SheetWriteError
        A chunk could not be written. The new sheet is left as-is.
    """
    settings = settings or Settings()
    today = today or date.today()

    def step(step_id: str, status: str) -> None:
        if on_step:
            on_step(step_id, status)

    # --- validate ---------------------------------------------------------
    step("validate", "active")
    if not settings.output_columns:
        raise PreconditionError(
            reason="No output columns configured",
            phase="validate",
            fix_steps=["Configure the report columns in Settings first."],
        )
    sheet_names = port.sheet_names()
    if MASTER_LIST_SHEET not in sheet_names:
        raise PreconditionError(
            reason=f'Workbook missing "{MASTER_LIST_SHEET}" sheet',
            affected_sheet=MASTER_LIST_SHEET,
            phase="validate",
            missing_fields=[MASTER_LIST_SHEET],
            fix_steps=["Import a roster to create the Master List."],
        )
    step("validate", "completed")

    # --- read -------------------------------------------------------------
    step("read", "active")
    master = _read(port, MASTER_LIST_SHEET, fill_sample=COLOR_SAMPLE_ROWS)
    history = _read(port, HISTORY_SHEET) if HISTORY_SHEET in sheet_names else None
    if on_progress:
        on_progress(1, 1, "reading", MASTER_LIST_SHEET)

    specs = settings.output_columns
    days_out_col = find_field(master.headers, specs, "days_out")
    if days_out_col == -1:
        raise PreconditionError(
            reason="Could not find 'Days Out' column in Master List",
            affected_sheet=MASTER_LIST_SHEET,
            phase="read",
            missing_fields=["Days Out"],
            fix_steps=["Check the column names and aliases in Settings."],
        )
    grade_col = find_field(master.headers, specs, "grade")
    student_key_col = find_field(master.headers, specs, "student_number")
    gradebook_col = find_field(master.headers, specs, "gradebook")
    step("read", "completed")

    # --- filter -----------------------------------------------------------
    step("filter", "active")
    primary = select_days_out(master.rows, days_out_col, settings.days_out_threshold)
    logger.info(
        "[report] %d of %d students at or above %s days out",
        len(primary), len(master.rows), settings.days_out_threshold,
    )
    step("filter", "completed")

    # --- failing ----------------------------------------------------------
    step("failing", "active")
    failing: list[int] = []
    if settings.include_failing_list:
        if grade_col == -1:
            logger.warning("[report] 'Grade' column not found, failing list skipped")
        else:
            failing = select_failing(master.rows, grade_col, days_out_col)
            logger.info("[report] %d failing students with recent activity", len(failing))
    step("failing", "completed")

    # --- createSheet ------------------------------------------------------
    step("createSheet", "active")
    campus = None
    if settings.sheet_naming_mode == "campus":
        campus = most_common_value(master.rows, primary, find_field(master.headers, specs, "campus"))
    sheet_name = unique_sheet_name(sheet_names, base_sheet_name(today, settings.sheet_naming_mode, campus))
    try:
        port.add_sheet(sheet_name)
    except Exception as e:
        raise LdaError(reason=f"Could not create sheet: {e}", affected_sheet=sheet_name, phase="createSheet") from e
    logger.info("[report] created sheet '%s'", sheet_name)
    step("createSheet", "completed")

    # --- tags -------------------------------------------------------------
    step("tags", "active")
    maps = HistoryTagMaps()
    if student_key_col == -1:
        logger.warning("[report] 'Student Number' column not found, history tags skipped")
    else:
        maps = _history_maps(history, settings, today)
    step("tags", "completed")

    # --- format -----------------------------------------------------------
    step("format", "active")
    columns = build_output_columns(master.headers, specs, MASTER_LIST_SHEET)
    unmatched = get_unmatched_columns(master.headers, columns)
    if unmatched:
        logger.info("[report] carrying %d unlisted columns hidden: %s", len(unmatched), ", ".join(unmatched))
    headers = [c.name for c in columns]
    builder = _RowBuilder(master, columns, settings, maps, student_key_col, gradebook_col)
    primary_rows = [builder.build(i) for i in primary]
    failing_rows = [builder.build(i) for i in failing]

    writer = BatchedSheetWriter(port, sheet_name, on_progress=on_progress)
    namer = TableNamer(port.table_names())
    table_base = re.sub(r"[^A-Za-z0-9]", "_", sheet_name)

    # (first data row, last data row) per written table
    data_spans: list[tuple[int, int]] = []
    primary_last = writer.write_table(
        0, headers, primary_rows, "LDA",
        table_name=namer.next(f"{table_base}_LDA") if primary_rows else None,
    )
    if primary_rows:
        data_spans.append((1, primary_last))

    if failing_rows:
        title_row = primary_last + 2
        writer.write_title(title_row, FAILING_TITLE)
        failing_last = writer.write_table(
            title_row + 1, headers, failing_rows, "Failing",
            table_name=namer.next(f"{table_base}_Failing"),
        )
        data_spans.append((title_row + 2, failing_last))

    all_rows = [r.values for r in primary_rows + failing_rows]
    date_cols = detect_date_columns(headers, all_rows)
    hidden = [i for i, c in enumerate(columns) if c.hidden]
    writer.apply_layout(
        hidden_columns=hidden,
        number_formats=[
            NumberFormat(col, first, last, DATE_FORMAT)
            for col in date_cols
            for first, last in data_spans
        ],
    )

    writer.apply_conditional_formats(
        _conditional_formats(master, columns, data_spans, find_field(headers, specs, "grade"), all_rows)
    )
    writer.autofit()
    step("format", "completed")

    # --- finalize ---------------------------------------------------------
    step("finalize", "active")
    result = ReportResult(
        sheet_name=sheet_name,
        primary_count=len(primary_rows),
        failing_count=len(failing_rows),
        date_columns=[headers[c] for c in date_cols],
        hidden_columns=[headers[c] for c in hidden],
    )
    logger.info(
        "[report] '%s' complete: %d LDA rows, %d failing rows",
        sheet_name, result.primary_count, result.failing_count,
    )
    step("finalize", "completed")
    return result


def _conditional_formats(
    master: Snapshot,
    columns: Sequence[OutputColumn],
    data_spans: Sequence[tuple[int, int]],
    grade_out_col: int,
    rows: Sequence[Sequence],
) -> list[ConditionalFormat]:
    """Master List rules re-targeted to the report columns, plus a grade colour scale."""
    formats: list[ConditionalFormat] = []
    covered: set[int] = set()
    for rule in master.conditional_formats:
        for out_col, col in enumerate(columns):
            if col.source_index == rule.col and col.source_index >= 0:
                covered.add(out_col)
                formats.extend(
                    ConditionalFormat(out_col, first, last, rule=rule.rule, rule_origin=rule.origin)
                    for first, last in data_spans
                )
    if grade_out_col >= 0 and grade_out_col not in covered:
        grades = [r[grade_out_col] for r in rows if grade_out_col < len(r)]
        mid = 70 if detect_percent_scale(grades) else 0.7
        formats.extend(
            ConditionalFormat(grade_out_col, first, last, color_scale=ColorScale(mid_value=mid))
            for first, last in data_spans
        )
    return formats


# ---------------------------------------------------------------------------
# CLI / direct execution
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    from .settings import load_settings
    from .workbook_port import OpenpyxlSheetPort

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if len(sys.argv) not in (2, 3):
        print("Usage: python -m retention.lda.report <workbook.xlsx> [settings.json]")
        sys.exit(1)

    try:
        run_settings = load_settings(sys.argv[2]) if len(sys.argv) == 3 else Settings()
        workbook = OpenpyxlSheetPort.from_path(sys.argv[1])
        outcome = create_lda_report(workbook, run_settings)
        workbook.save(sys.argv[1])
        print(
            f"Created '{outcome.sheet_name}': {outcome.primary_count} LDA rows, "
            f"{outcome.failing_count} failing rows"
        )
    except LdaError as e:
        print(str(e))
        sys.exit(2)
