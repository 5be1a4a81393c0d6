"""
Batched Sheet Writer.

The core never holds a live workbook handle. It reads Snapshots and hands
WriteBatch descriptions to a SheetPort; each port.write() call is one
flush to the host and batches are strictly sequential.

Chunking:
  values/formulas   VALUE_CHUNK_ROWS rows per flush
  fills/fonts       FORMAT_CHUNK_ROWS rows per flush

Fill colours are coalesced per row: adjacent same-colour cells become one
FillRun unless either cell is struck through.

Any write failure is fatal for the run and surfaces as SheetWriteError.
Conditional formats and autofit are cosmetic: failures are logged only.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence

from .errors import SheetWriteError
from .rules import CellHighlight, OutreachDirective

logger = logging.getLogger(__name__)

VALUE_CHUNK_ROWS = 500
FORMAT_CHUNK_ROWS = 100

TABLE_STYLE = "TableStyleLight9"

ProgressCallback = Callable[[int, int, str, str], None]


# ---------------------------------------------------------------------------
# Data shapes exchanged with a SheetPort
# ---------------------------------------------------------------------------


@dataclass
class ConditionalRule:
    """
    A conditional format bound to one source column. `rule` is host-specific;
    `origin` is the A1 cell its formulas are written relative to.
    """
    col: int
    rule: Any
    origin: Optional[str] = None


@dataclass
class Snapshot:
    headers: list[str]
    rows: list[list]
    formulas: list[list]
    fills: list[list[Optional[str]]] = field(default_factory=list)
    conditional_formats: list[ConditionalRule] = field(default_factory=list)


@dataclass
class FillRun:
    row: int
    start_col: int
    end_col: int
    color: str
    strikethrough: bool = False


@dataclass
class NumberFormat:
    col: int
    first_row: int
    last_row: int
    number_format: str


@dataclass
class TableSpec:
    name: str
    first_row: int
    last_row: int
    col_count: int
    style: str = TABLE_STYLE


@dataclass
class ColorScale:
    min_color: str = "#F8696B"
    mid_value: float = 0.7
    mid_color: str = "#FFEB84"
    max_color: str = "#63BE7B"


@dataclass
class ConditionalFormat:
    col: int
    first_row: int
    last_row: int
    rule: Any = None
    rule_origin: Optional[str] = None
    color_scale: Optional[ColorScale] = None


@dataclass
class WriteBatch:
    """Everything in one batch reaches the host in a single flush. Indices are 0-based."""
    origin_row: int = 0
    origin_col: int = 0
    values: list[list] = field(default_factory=list)
    formulas: list[list] = field(default_factory=list)
    fills: list[FillRun] = field(default_factory=list)
    bold_cells: list[tuple[int, int]] = field(default_factory=list)
    number_formats: list[NumberFormat] = field(default_factory=list)
    hidden_columns: list[int] = field(default_factory=list)
    tables: list[TableSpec] = field(default_factory=list)
    conditional_formats: list[ConditionalFormat] = field(default_factory=list)
    autofit: bool = False


class SheetPort(Protocol):
    def sheet_names(self) -> list[str]: ...

    def table_names(self) -> list[str]: ...

    def read(self, sheet_name: str, fill_sample: int = 0) -> Snapshot: ...

    def add_sheet(self, sheet_name: str) -> None: ...

    def clear_rows(self, sheet_name: str, first_row: int) -> None: ...

    def write(self, sheet_name: str, batch: WriteBatch) -> None: ...


@dataclass
class OutputRow:
    values: list
    formulas: list
    directive: OutreachDirective = field(default_factory=OutreachDirective)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def coalesce_highlights(row: int, highlights: Sequence[CellHighlight]) -> list[FillRun]:
    """Merge adjacent same-colour, non-struck cells of one row into runs."""
    runs: list[FillRun] = []
    current: Optional[FillRun] = None
    for h in sorted(highlights, key=lambda h: h.col):
        if (
            current is not None
            and not current.strikethrough
            and not h.strikethrough
            and h.color == current.color
            and h.col == current.end_col + 1
        ):
            current.end_col = h.col
            continue
        current = FillRun(row, h.col, h.col, h.color, h.strikethrough)
        runs.append(current)
    return runs


def chunk_count(row_count: int, chunk_rows: int) -> int:
    return math.ceil(row_count / chunk_rows) if row_count > 0 else 0


class TableNamer:
    """Unique table names: base, base_2, base_3 ... skipping names in use."""

    def __init__(self, existing: Sequence[str] = ()):
        self._taken = {n.lower() for n in existing}

    def next(self, base: str) -> str:
        clean = re.sub(r"[^A-Za-z0-9_]", "_", base) or "Table"
        if not (clean[0].isalpha() or clean[0] == "_"):
            clean = f"T_{clean}"
        name = clean
        counter = 2
        while name.lower() in self._taken:
            name = f"{clean}_{counter}"
            counter += 1
        self._taken.add(name.lower())
        return name


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class BatchedSheetWriter:
    def __init__(
        self,
        port: SheetPort,
        sheet_name: str,
        on_progress: Optional[ProgressCallback] = None,
        value_chunk_rows: int = VALUE_CHUNK_ROWS,
        format_chunk_rows: int = FORMAT_CHUNK_ROWS,
    ):
        if value_chunk_rows < 1 or format_chunk_rows < 1:
            raise ValueError("chunk sizes must be positive")
        self.port = port
        self.sheet_name = sheet_name
        self.on_progress = on_progress
        self.value_chunk_rows = value_chunk_rows
        self.format_chunk_rows = format_chunk_rows

    def _flush(self, batch: WriteBatch, phase: str, chunk: int = 1) -> None:
        try:
            self.port.write(self.sheet_name, batch)
        except Exception as exc:
            logger.error("[writer] %s: %s chunk %d failed: %s", self.sheet_name, phase, chunk, exc)
            raise SheetWriteError(
                reason=f"Writing chunk {chunk} failed: {exc}",
                affected_sheet=self.sheet_name,
                phase=phase,
                fix_steps=[
                    "Inspect or delete the partially written sheet.",
                    "Re-run the operation from the start.",
                ],
            ) from exc

    def _report(self, current: int, total: int, phase: str, label: str) -> None:
        if self.on_progress:
            self.on_progress(current, total, phase, label)

    def write_rows(self, start_row: int, rows: Sequence[OutputRow], label: str, col_count: int) -> None:
        """Write values then formatting for `rows`, first data row at `start_row`."""
        total = chunk_count(len(rows), self.value_chunk_rows)
        for i in range(total):
            lo = i * self.value_chunk_rows
            chunk = rows[lo:lo + self.value_chunk_rows]
            self._flush(
                WriteBatch(
                    origin_row=start_row + lo,
                    values=[list(r.values) for r in chunk],
                    formulas=[list(r.formulas) for r in chunk],
                ),
                "writing", i + 1,
            )
            logger.info("[writer] %s: wrote rows %d-%d", label, lo + 1, lo + len(chunk))
            self._report(i + 1, total, "writing", label)
        self._write_formatting(start_row, rows, label, col_count)

    def _write_formatting(self, start_row: int, rows: Sequence[OutputRow], label: str, col_count: int) -> None:
        # Chunks without a highlighted cell are never flushed and never reported.
        batches: list[tuple[int, WriteBatch]] = []
        for i in range(chunk_count(len(rows), self.format_chunk_rows)):
            lo = i * self.format_chunk_rows
            batch = WriteBatch()
            for offset, row in enumerate(rows[lo:lo + self.format_chunk_rows]):
                highlights = row.directive.resolved_highlights(col_count)
                batch.fills.extend(coalesce_highlights(start_row + lo + offset, highlights))
            if batch.fills:
                batches.append((i + 1, batch))
        for flushed, (chunk, batch) in enumerate(batches, 1):
            self._flush(batch, "formatting", chunk)
            self._report(flushed, len(batches), "formatting", label)
        if batches:
            logger.info(
                "[writer] %s: applied %d fill ranges", label, sum(len(b.fills) for _, b in batches),
            )

    def write_table(
        self,
        start_row: int,
        headers: Sequence[str],
        rows: Sequence[OutputRow],
        label: str,
        table_name: Optional[str] = None,
    ) -> int:
        """
        Header at `start_row`, data beneath it. The header goes out with the
        first value chunk. Returns the index of the last row written.
        """
        col_count = len(headers)
        if not rows:
            self._flush(WriteBatch(origin_row=start_row, values=[list(headers)]), "writing")
            self._report(1, 1, "writing", label)
            return start_row

        total = chunk_count(len(rows), self.value_chunk_rows)
        for i in range(total):
            lo = i * self.value_chunk_rows
            chunk = rows[lo:lo + self.value_chunk_rows]
            values = [list(r.values) for r in chunk]
            formulas = [list(r.formulas) for r in chunk]
            origin = start_row + 1 + lo
            if i == 0:
                values.insert(0, list(headers))
                formulas.insert(0, [None] * col_count)
                origin = start_row
            self._flush(WriteBatch(origin_row=origin, values=values, formulas=formulas), "writing", i + 1)
            self._report(i + 1, total, "writing", label)
        logger.info("[writer] %s: wrote %d rows in %d chunks", label, len(rows), total)

        self._write_formatting(start_row + 1, rows, label, col_count)

        last_row = start_row + len(rows)
        if table_name:
            self._flush(
                WriteBatch(tables=[TableSpec(table_name, start_row, last_row, col_count)]),
                "formatting",
            )
        return last_row

    def write_title(self, row: int, text: str) -> None:
        self._flush(WriteBatch(origin_row=row, values=[[text]], bold_cells=[(row, 0)]), "writing")

    def apply_layout(
        self,
        hidden_columns: Sequence[int] = (),
        number_formats: Sequence[NumberFormat] = (),
    ) -> None:
        if not hidden_columns and not number_formats:
            return
        self._flush(
            WriteBatch(hidden_columns=list(hidden_columns), number_formats=list(number_formats)),
            "formatting",
        )

    def apply_conditional_formats(self, formats: Sequence[ConditionalFormat]) -> bool:
        """Cosmetic. Returns False when the host rejected the formats."""
        if not formats:
            return True
        try:
            self.port.write(self.sheet_name, WriteBatch(conditional_formats=list(formats)))
        except Exception as exc:
            logger.warning("[writer] %s: conditional formatting skipped: %s", self.sheet_name, exc)
            return False
        return True

    def autofit(self) -> bool:
        """Cosmetic. Returns False when autofit failed."""
        try:
            self.port.write(self.sheet_name, WriteBatch(autofit=True))
        except Exception as exc:
            logger.warning("[writer] %s: autofit skipped: %s", self.sheet_name, exc)
            return False
        return True
