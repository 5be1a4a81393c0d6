"""
openpyxl implementation of SheetPort.

openpyxl keeps formulas and cached results in separate loads of the same
file; from_path() and from_bytes() load both so Snapshot.rows carries
displayed values and Snapshot.formulas carries the formula text. Without a
cached result (built in memory, or last saved by openpyxl) a HYPERLINK
formula reads as its label and any other formula reads as None.
"""

from __future__ import annotations

import logging
from copy import copy
from io import BytesIO
from pathlib import Path
from typing import Optional

from openpyxl import Workbook, load_workbook
from openpyxl.formatting.rule import ColorScaleRule
from openpyxl.formula.translate import Translator
from openpyxl.styles import PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from .reconcile import parse_hyperlink
from .sampling import normalize_color
from .writer import ConditionalRule, Snapshot, WriteBatch

logger = logging.getLogger(__name__)

MIN_COLUMN_WIDTH = 8
MAX_COLUMN_WIDTH = 60


def _hex(color: str) -> str:
    return color.lstrip("#").upper()


def _fill_color(cell) -> Optional[str]:
    fill = cell.fill
    if fill is None or fill.fill_type != "solid":
        return None
    fg = fill.fgColor
    if fg is None or fg.type != "rgb" or not isinstance(fg.rgb, str):
        return None
    return normalize_color(fg.rgb)


def _is_formula(value) -> bool:
    return isinstance(value, str) and value.startswith("=")


def _moved_rule(rule, origin: Optional[str], target: str):
    """Copy of `rule` with relative references shifted from `origin` to `target`."""
    moved = copy(rule)
    if origin and rule.formula:
        moved.formula = [
            Translator(f"={f}", origin=origin).translate_formula(target)[1:]
            for f in rule.formula
        ]
    return moved


class OpenpyxlSheetPort:
    def __init__(self, workbook: Workbook, cached_values: Optional[Workbook] = None):
        self.workbook = workbook
        self.cached_values = cached_values

    @classmethod
    def from_path(cls, path) -> "OpenpyxlSheetPort":
        path = Path(path)
        return cls(load_workbook(path), load_workbook(path, data_only=True))

    @classmethod
    def from_bytes(cls, data: bytes) -> "OpenpyxlSheetPort":
        return cls(load_workbook(BytesIO(data)), load_workbook(BytesIO(data), data_only=True))

    def to_bytes(self) -> bytes:
        buffer = BytesIO()
        self.workbook.save(buffer)
        return buffer.getvalue()

    def save(self, path) -> None:
        self.workbook.save(path)

    def sheet_names(self) -> list[str]:
        return list(self.workbook.sheetnames)

    def table_names(self) -> list[str]:
        names: list[str] = []
        for ws in self.workbook.worksheets:
            names.extend(ws.tables.keys())
        return names

    def _display_value(self, sheet_name: str, cell):
        raw = cell.value
        if not _is_formula(raw):
            return raw
        if self.cached_values is not None and sheet_name in self.cached_values.sheetnames:
            cached = self.cached_values[sheet_name].cell(row=cell.row, column=cell.column).value
            if cached is not None:
                return cached
        _, label = parse_hyperlink(raw)
        return label

    def read(self, sheet_name: str, fill_sample: int = 0) -> Snapshot:
        ws = self.workbook[sheet_name]
        grid = [list(r) for r in ws.iter_rows(min_row=1, max_row=ws.max_row, max_col=ws.max_column)]
        while grid and all(c.value is None for c in grid[-1]):
            grid.pop()
        if not grid:
            return Snapshot(headers=[], rows=[], formulas=[])

        headers = ["" if c.value is None else str(c.value).strip() for c in grid[0]]
        rows: list[list] = []
        formulas: list[list] = []
        fills: list[list] = []
        for r, cells in enumerate(grid[1:]):
            rows.append([self._display_value(sheet_name, c) for c in cells])
            formulas.append([c.value if _is_formula(c.value) else None for c in cells])
            if r < fill_sample:
                fills.append([_fill_color(c) for c in cells])

        conditional: list[ConditionalRule] = []
        for cf in ws.conditional_formatting:
            for cell_range in cf.sqref.ranges:
                origin = f"{get_column_letter(cell_range.min_col)}{cell_range.min_row}"
                for col in range(cell_range.min_col, cell_range.max_col + 1):
                    for rule in cf.rules:
                        conditional.append(ConditionalRule(col=col - 1, rule=rule, origin=origin))

        logger.info("[workbook_port] read '%s': %d rows x %d columns", sheet_name, len(rows), len(headers))
        return Snapshot(headers, rows, formulas, fills, conditional)

    def add_sheet(self, sheet_name: str) -> None:
        ws = self.workbook.create_sheet(sheet_name)
        self.workbook.active = self.workbook.index(ws)

    def clear_rows(self, sheet_name: str, first_row: int) -> None:
        ws = self.workbook[sheet_name]
        count = ws.max_row - first_row
        if count > 0:
            ws.delete_rows(first_row + 1, count)

    def write(self, sheet_name: str, batch: WriteBatch) -> None:
        ws = self.workbook[sheet_name]

        for r, row in enumerate(batch.values):
            formula_row = batch.formulas[r] if r < len(batch.formulas) else []
            for c, value in enumerate(row):
                formula = formula_row[c] if c < len(formula_row) else None
                cell = ws.cell(row=batch.origin_row + r + 1, column=batch.origin_col + c + 1)
                cell.value = formula if formula else value

        for run in batch.fills:
            fill = PatternFill(fill_type="solid", fgColor=_hex(run.color))
            for col in range(run.start_col, run.end_col + 1):
                cell = ws.cell(row=run.row + 1, column=col + 1)
                cell.fill = fill
                if run.strikethrough:
                    font = copy(cell.font)
                    font.strike = True
                    cell.font = font

        for row, col in batch.bold_cells:
            cell = ws.cell(row=row + 1, column=col + 1)
            font = copy(cell.font)
            font.bold = True
            cell.font = font

        for fmt in batch.number_formats:
            for row in range(fmt.first_row, fmt.last_row + 1):
                ws.cell(row=row + 1, column=fmt.col + 1).number_format = fmt.number_format

        for col in batch.hidden_columns:
            ws.column_dimensions[get_column_letter(col + 1)].hidden = True

        for spec in batch.tables:
            ref = f"A{spec.first_row + 1}:{get_column_letter(spec.col_count)}{spec.last_row + 1}"
            table = Table(displayName=spec.name, ref=ref)
            table.tableStyleInfo = TableStyleInfo(name=spec.style, showRowStripes=True)
            ws.add_table(table)

        for cf in batch.conditional_formats:
            letter = get_column_letter(cf.col + 1)
            ref = f"{letter}{cf.first_row + 1}:{letter}{cf.last_row + 1}"
            if cf.color_scale is not None:
                scale = cf.color_scale
                ws.conditional_formatting.add(ref, ColorScaleRule(
                    start_type="min", start_color=_hex(scale.min_color),
                    mid_type="num", mid_value=scale.mid_value, mid_color=_hex(scale.mid_color),
                    end_type="max", end_color=_hex(scale.max_color),
                ))
            elif cf.rule is not None:
                ws.conditional_formatting.add(ref, _moved_rule(cf.rule, cf.rule_origin, f"{letter}{cf.first_row + 1}"))

        if batch.autofit:
            self._autofit(ws)

    @staticmethod
    def _autofit(ws) -> None:
        widths: dict[int, int] = {}
        for row in ws.iter_rows():
            for cell in row:
                if cell.value is None:
                    continue
                text = str(cell.value)
                if _is_formula(text):
                    _, label = parse_hyperlink(text)
                    text = label or ""
                widths[cell.column] = max(widths.get(cell.column, 0), len(text))
        for col, width in widths.items():
            dim = ws.column_dimensions[get_column_letter(col)]
            dim.width = max(MIN_COLUMN_WIDTH, min(width + 2, MAX_COLUMN_WIDTH))
