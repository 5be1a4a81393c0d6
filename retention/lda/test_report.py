"""
LDA report tests.

End-to-end runs against in-memory openpyxl workbooks, plus the row
selection and sheet naming helpers. `today` is fixed for every run.
"""

from datetime import date

import pytest
from openpyxl import Workbook
from openpyxl.formatting.rule import FormulaRule
from openpyxl.styles import PatternFill

from retention.lda.column_mapper import ColumnSpec
from retention.lda.errors import PreconditionError, SheetWriteError
from retention.lda.report import (
    FAILING_TITLE,
    STEPS,
    base_sheet_name,
    create_lda_report,
    is_failing_grade,
    most_common_value,
    select_days_out,
    select_failing,
    unique_sheet_name,
)
from retention.lda.settings import Settings
from retention.lda.workbook_port import OpenpyxlSheetPort

TODAY = date(2024, 9, 10)
SHEET = "LDA 9-10-2024"

MASTER_HEADERS = [
    "Assigned", "Student Name", "Student Number", "LDA", "Days Out",
    "Grade", "Phone", "Outreach", "Campus", "Gradebook",
]
MASTER_ROWS = [
    ["Smith", "Doe, Jane", 1001, 45500, 10, 0.8, "555-0100", None, "Main",
     '=HYPERLINK("https://lms/courses/1/grades/11","Gradebook")'],
    ["Jones", "Roe, Rick", 1002, 45510, 7, 0.5, "555-0101", None, "Main", None],
    ["Smith", "Poe, Ed", 1003, 45540, 2, 0.4, "555-0102", None, "North", None],
    ["Lee", "Low, Al", 1004, 45541, 1, 0.9, "555-0103", None, "North", None],
    ["Jones", "Kay, Bo", 1005, 45520, 10, 0.7, "555-0104", "Left voicemail", "North", None],
]
HISTORY_ROWS = [
    [1001, "dnc"],
    [1002, "LDA 09/20/2024"],
]

JONES_BLUE = "FF00B0F0"


def make_workbook(rows=None, history=True, headers=None) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = "Master List"
    ws.append(headers or MASTER_HEADERS)
    for row in MASTER_ROWS if rows is None else rows:
        ws.append(row)
    # Advisor colour: Jones is blue.
    ws["A3"].fill = PatternFill(fill_type="solid", fgColor=JONES_BLUE)
    if history:
        hs = wb.create_sheet("Student History")
        hs.append(["Student Number", "Tag"])
        for row in HISTORY_ROWS:
            hs.append(row)
    return wb


def run(wb: Workbook, **kwargs):
    settings = kwargs.pop("settings", Settings())
    port = OpenpyxlSheetPort(wb)
    return create_lda_report(port, settings, today=TODAY, **kwargs)


def column_values(ws, col: int, first: int, last: int) -> list:
    return [ws.cell(row=r, column=col).value for r in range(first, last + 1)]


class CountingPort(OpenpyxlSheetPort):
    def __init__(self, workbook, fail_sheet=None):
        super().__init__(workbook)
        self.batches = []
        self.fail_sheet = fail_sheet

    def write(self, sheet_name, batch):
        if sheet_name == self.fail_sheet and batch.values:
            raise OSError("disk full")
        self.batches.append(batch)
        super().write(sheet_name, batch)


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------

class TestSelection:
    def test_days_out_threshold_inclusive_and_sorted(self):
        assert select_days_out(MASTER_ROWS, 4, 5) == [0, 4, 1]

    def test_non_numeric_days_out_skipped(self):
        rows = [["a", "n/a"], ["b", None], ["c", 6]]
        assert select_days_out(rows, 1, 5) == [2]

    def test_failing_grade_scales(self):
        assert is_failing_grade(0.59)
        assert is_failing_grade(45)
        assert not is_failing_grade(0.6)
        assert not is_failing_grade(60)
        assert not is_failing_grade(None)
        assert not is_failing_grade("F")

    def test_failing_requires_recent_activity(self):
        assert select_failing(MASTER_ROWS, 5, 4) == [2]

    def test_failing_sorted_by_grade(self):
        rows = [[0.5, 1], [0.2, 0], [0.4, 4]]
        assert select_failing(rows, 0, 1) == [1, 2, 0]


class TestSheetNaming:
    def test_date_mode(self):
        assert base_sheet_name(TODAY) == SHEET

    def test_campus_mode(self):
        assert base_sheet_name(TODAY, "campus", "Main") == f"Main {SHEET}"

    def test_campus_mode_without_campus(self):
        assert base_sheet_name(TODAY, "campus", None) == SHEET

    def test_campus_name_fits_sheet_limit(self):
        name = base_sheet_name(TODAY, "campus", "A Very Long Campus Name Indeed")
        assert len(name) <= 31 - len(" (99)")
        assert name.endswith(SHEET)

    def test_unique_suffix(self):
        assert unique_sheet_name([SHEET, f"{SHEET} (2)"], SHEET) == f"{SHEET} (3)"

    def test_most_common_value(self):
        assert most_common_value(MASTER_ROWS, [0, 1, 4], 8) == "Main"
        assert most_common_value(MASTER_ROWS, [0], -1) is None


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestCreateReport:
    def test_primary_rows_sorted_by_days_out(self):
        wb = make_workbook()
        result = run(wb)
        ws = wb[SHEET]
        assert result.sheet_name == SHEET
        assert result.primary_count == 3
        assert [ws.cell(row=1, column=c).value for c in range(1, 9)] == [
            "Assigned", "Student Name", "Student Number", "LDA", "Days Out", "Grade", "Phone", "Outreach",
        ]
        assert column_values(ws, 2, 2, 4) == ["Doe, Jane", "Kay, Bo", "Roe, Rick"]

    def test_new_sheet_is_active(self):
        wb = make_workbook()
        run(wb)
        assert wb.active.title == SHEET

    def test_unlisted_columns_carried_hidden(self):
        wb = make_workbook()
        result = run(wb)
        ws = wb[SHEET]
        assert result.hidden_columns == ["Campus", "Gradebook"]
        assert ws["I1"].value == "Campus"
        assert ws.column_dimensions["I"].hidden is True
        assert ws.column_dimensions["J"].hidden is True
        assert not ws.column_dimensions["A"].hidden

    def test_hyperlink_formula_carried(self):
        wb = make_workbook()
        run(wb)
        assert wb[SHEET]["J2"].value == '=HYPERLINK("https://lms/courses/1/grades/11","Gradebook")'

    def test_bare_gradebook_url_wrapped(self):
        rows = [list(MASTER_ROWS[0])]
        rows[0][9] = "https://lms/courses/1/grades/11"
        wb = make_workbook(rows=rows)
        run(wb)
        assert wb[SHEET]["J2"].value == '=HYPERLINK("https://lms/courses/1/grades/11","Gradebook")'

    def test_date_column_formatted(self):
        wb = make_workbook()
        result = run(wb)
        assert result.date_columns == ["LDA"]
        assert wb[SHEET]["D2"].number_format == "mm-dd-yy"

    def test_primary_table_registered(self):
        wb = make_workbook()
        run(wb)
        table = wb[SHEET].tables["LDA_9_10_2024_LDA"]
        assert table.ref == "A1:J4"


class TestOutreachTags:
    def test_full_dnc_message_and_strike(self):
        wb = make_workbook()
        run(wb)
        ws = wb[SHEET]
        assert ws["H2"].value == "Do not contact"
        assert ws["B2"].fill.fgColor.rgb == "00FFC7CE"
        assert ws["H2"].fill.fgColor.rgb == "00FFC7CE"
        assert ws["G2"].font.strike is True
        assert not ws["B2"].font.strike
        assert ws["I2"].fill.fill_type is None

    def test_engagement_message_and_highlight(self):
        wb = make_workbook()
        run(wb)
        ws = wb[SHEET]
        assert ws["H4"].value == "LDA follow-up scheduled 09-20-24"
        assert ws["B4"].fill.fgColor.rgb == "00FFEDD5"
        assert not ws["G4"].font.strike

    def test_advisor_color_overrides_highlight(self):
        wb = make_workbook()
        run(wb)
        ws = wb[SHEET]
        assert ws["A4"].fill.fgColor.rgb == "0000B0F0"
        assert ws["A3"].fill.fgColor.rgb == "0000B0F0"

    def test_existing_outreach_text_kept(self):
        wb = make_workbook()
        run(wb)
        assert wb[SHEET]["H3"].value == "Left voicemail"

    def test_tags_disabled(self):
        wb = make_workbook()
        run(wb, settings=Settings(include_dnc_tag=False, include_engagement_tag=False))
        ws = wb[SHEET]
        assert ws["H2"].value is None
        assert ws["H4"].value is None
        assert not ws["G2"].font.strike

    def test_library_aliased_headers_fill_declared_columns(self):
        headers = ["Advisor", "Student Name", "Student Number", "Days Absent", "Phone Number"]
        wb = make_workbook(rows=[["Smith", "Doe, Jane", 1001, 10, "555-0100"]], headers=headers)
        result = run(wb)
        ws = wb[SHEET]
        assert [ws.cell(row=2, column=c).value for c in range(1, 9)] == [
            "Smith", "Doe, Jane", 1001, None, 10, None, "555-0100", "Do not contact",
        ]
        assert result.hidden_columns == []
        assert ws["G2"].font.strike is True
        assert ws.max_column == 8

    def test_missing_history_sheet(self):
        wb = make_workbook(history=False)
        result = run(wb)
        assert result.primary_count == 3
        assert wb[SHEET]["H2"].value is None


class TestConditionalFormats:
    def test_expression_rule_follows_moved_column(self):
        wb = make_workbook(
            rows=[[0.5, "Doe, Jane", 10], [0.9, "Roe, Rick", 8]],
            history=False,
            headers=["Grade", "Student Name", "Days Out"],
        )
        wb["Master List"].conditional_formatting.add(
            "A2:A100", FormulaRule(formula=["A2<0.6"], fill=PatternFill(fill_type="solid", fgColor="FFC7CE")),
        )
        run(wb)
        ws = wb[SHEET]
        rules = [(str(cf.sqref), list(r.formula)) for cf in ws.conditional_formatting for r in cf.rules]
        assert rules == [("F2:F3", ["F2<0.6"])]

    def test_absolute_reference_kept(self):
        wb = make_workbook(
            rows=[[0.5, "Doe, Jane", 10]],
            history=False,
            headers=["Grade", "Student Name", "Days Out"],
        )
        wb["Master List"].conditional_formatting.add(
            "A2:A100", FormulaRule(formula=["A2<$Z$1"], fill=PatternFill(fill_type="solid", fgColor="FFC7CE")),
        )
        run(wb)
        rules = [list(r.formula) for cf in wb[SHEET].conditional_formatting for r in cf.rules]
        assert rules == [["F2<$Z$1"]]

    def test_grade_scale_added_without_master_rule(self):
        wb = make_workbook()
        run(wb)
        ranges = [str(cf.sqref) for cf in wb[SHEET].conditional_formatting]
        assert ranges == ["F2:F4"]


class TestFailingList:
    def test_failing_table_below_primary(self):
        wb = make_workbook()
        result = run(wb, settings=Settings(include_failing_list=True))
        ws = wb[SHEET]
        assert result.failing_count == 1
        assert ws["A6"].value == FAILING_TITLE
        assert ws["A6"].font.bold is True
        assert ws["B7"].value == "Student Name"
        assert ws["B8"].value == "Poe, Ed"
        assert ws.tables["LDA_9_10_2024_Failing"].ref == "A7:J8"
        assert ws["D8"].number_format == "mm-dd-yy"

    def test_failing_list_off_by_default(self):
        wb = make_workbook()
        result = run(wb)
        assert result.failing_count == 0
        assert wb[SHEET]["A6"].value is None


class TestRunBehaviour:
    def test_steps_reported_in_order(self):
        seen = []
        run(make_workbook(), on_step=lambda s, status: seen.append((s, status)))
        expected = [(s, status) for s in STEPS for status in ("active", "completed")]
        assert seen == expected

    def test_second_run_gets_suffix(self):
        wb = make_workbook()
        run(wb)
        result = run(wb)
        assert result.sheet_name == f"{SHEET} (2)"
        assert "LDA_9_10_2024__2__LDA" in wb[result.sheet_name].tables

    def test_campus_naming(self):
        wb = make_workbook()
        result = run(wb, settings=Settings(sheet_naming_mode="campus"))
        # Primary rows: Doe (Main), Kay (North), Roe (Main).
        assert result.sheet_name == f"Main {SHEET}"

    def test_no_students_over_threshold(self):
        wb = make_workbook()
        result = run(wb, settings=Settings(days_out_threshold=100))
        ws = wb[SHEET]
        assert result.primary_count == 0
        assert ws["A1"].value == "Assigned"
        assert ws["A2"].value is None
        assert len(ws.tables) == 0

    def test_student_under_threshold_left_out(self):
        rows = [["Smith, John", 10], ["Roe, Rick", 2], ["Poe, Ed", 4]]
        wb = make_workbook(rows=rows, history=False, headers=["Student Name", "Days Out"])
        settings = Settings(output_columns=[ColumnSpec("Student Name"), ColumnSpec("Days Out")])
        result = run(wb, settings=settings)
        ws = wb[SHEET]
        assert result.primary_count == 1
        assert column_values(ws, 1, 2, 3) == ["Smith, John", None]

    def test_declared_aliases_resolve(self):
        headers = list(MASTER_HEADERS)
        headers[4] = "Absent Days"
        wb = make_workbook(headers=headers)
        settings = Settings(output_columns=[
            ColumnSpec("Student Name"),
            ColumnSpec("Days Out", aliases=["Absent Days"]),
        ])
        result = run(wb, settings=settings)
        assert result.primary_count == 3
        assert wb[SHEET]["B1"].value == "Days Out"

    def test_value_chunks_for_large_master(self):
        rows = [["Smith", f"Student {i:04d}", 2000 + i, 45500, 10, 0.9, None, None, "Main", None] for i in range(1200)]
        wb = make_workbook(rows=rows, history=False)
        port = CountingPort(wb)
        result = create_lda_report(port, Settings(), today=TODAY)
        assert result.primary_count == 1200
        assert len([b for b in port.batches if b.values]) == 3


class TestPreconditions:
    def test_missing_master_list(self):
        wb = Workbook()
        with pytest.raises(PreconditionError) as exc_info:
            run(wb)
        assert "Master List" in str(exc_info.value)
        assert wb.sheetnames == ["Sheet"]

    def test_missing_days_out(self):
        headers = [h if h != "Days Out" else "Something" for h in MASTER_HEADERS]
        wb = make_workbook(headers=headers)
        with pytest.raises(PreconditionError) as exc_info:
            run(wb)
        assert exc_info.value.missing_fields == ["Days Out"]
        assert SHEET not in wb.sheetnames

    def test_no_output_columns(self):
        with pytest.raises(PreconditionError):
            run(make_workbook(), settings=Settings(output_columns=[]))

    def test_write_failure_leaves_sheet(self):
        wb = make_workbook()
        port = CountingPort(wb, fail_sheet=SHEET)
        with pytest.raises(SheetWriteError) as exc_info:
            create_lda_report(port, Settings(), today=TODAY)
        assert exc_info.value.affected_sheet == SHEET
        assert SHEET in wb.sheetnames
