"""
Batched sheet writer tests.

A recording port stands in for the host so flush counts, chunk origins
and failure handling can be checked exactly.
"""

import pytest

from retention.lda.errors import SheetWriteError
from retention.lda.rules import CellHighlight, OutreachDirective
from retention.lda.writer import (
    BatchedSheetWriter,
    ConditionalFormat,
    FillRun,
    OutputRow,
    TableNamer,
    WriteBatch,
    chunk_count,
    coalesce_highlights,
)


class RecordingPort:
    def __init__(self, fail_on: int = 0, fail_cosmetic: bool = False):
        self.batches: list[WriteBatch] = []
        self.fail_on = fail_on
        self.fail_cosmetic = fail_cosmetic

    def write(self, sheet_name, batch):
        if self.fail_cosmetic and (batch.autofit or batch.conditional_formats):
            raise RuntimeError("host refused")
        if self.fail_on and len(self.batches) + 1 == self.fail_on:
            raise RuntimeError("host refused")
        self.batches.append(batch)

    def value_batches(self):
        return [b for b in self.batches if b.values]

    def fill_batches(self):
        return [b for b in self.batches if b.fills]


def plain_rows(n: int, cols: int = 3) -> list[OutputRow]:
    return [OutputRow(values=[f"r{i}c{c}" for c in range(cols)], formulas=[None] * cols) for i in range(n)]


def colored_rows(n: int, cols: int = 3) -> list[OutputRow]:
    return [
        OutputRow(values=[i] * cols, formulas=[None] * cols, directive=OutreachDirective(row_color="#FFEDD5"))
        for i in range(n)
    ]


class TestChunkCount:
    @pytest.mark.parametrize("rows, size, expected", [
        (0, 500, 0), (1, 500, 1), (500, 500, 1), (501, 500, 2), (1200, 500, 3), (250, 100, 3),
    ])
    def test_ceiling(self, rows, size, expected):
        assert chunk_count(rows, size) == expected


class TestCoalesce:
    def test_adjacent_same_color_merged(self):
        runs = coalesce_highlights(4, [CellHighlight(c, "#AAAAAA") for c in range(5)])
        assert runs == [FillRun(4, 0, 4, "#AAAAAA")]

    def test_color_change_splits(self):
        highlights = [CellHighlight(0, "#AAAAAA"), CellHighlight(1, "#AAAAAA"), CellHighlight(2, "#BBBBBB")]
        runs = coalesce_highlights(0, highlights)
        assert [(r.start_col, r.end_col, r.color) for r in runs] == [(0, 1, "#AAAAAA"), (2, 2, "#BBBBBB")]

    def test_gap_splits(self):
        runs = coalesce_highlights(0, [CellHighlight(0, "#AAAAAA"), CellHighlight(2, "#AAAAAA")])
        assert len(runs) == 2

    def test_gap_gives_two_ranges(self):
        highlights = [CellHighlight(0, "#AAAAAA"), CellHighlight(1, "#AAAAAA"), CellHighlight(3, "#AAAAAA")]
        runs = coalesce_highlights(2, highlights)
        assert runs == [FillRun(2, 0, 1, "#AAAAAA"), FillRun(2, 3, 3, "#AAAAAA")]

    def test_struck_cells_never_merged(self):
        highlights = [CellHighlight(c, "#AAAAAA", strikethrough=True) for c in range(3)]
        runs = coalesce_highlights(0, highlights)
        assert len(runs) == 3
        assert all(r.strikethrough for r in runs)

    def test_unsorted_input(self):
        runs = coalesce_highlights(0, [CellHighlight(1, "#AAAAAA"), CellHighlight(0, "#AAAAAA")])
        assert runs == [FillRun(0, 0, 1, "#AAAAAA")]


class TestTableNamer:
    def test_unique_names(self):
        namer = TableNamer(["LDA_Table"])
        assert namer.next("LDA_Table") == "LDA_Table_2"
        assert namer.next("LDA_Table") == "LDA_Table_3"

    def test_invalid_characters_replaced(self):
        assert TableNamer().next("LDA 9-10-2024") == "LDA_9_10_2024"

    def test_leading_digit_prefixed(self):
        assert TableNamer().next("2024") == "T_2024"


class TestWriteTable:
    def test_value_flush_count_is_ceiling_of_rows(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_table(0, ["a", "b", "c"], plain_rows(1200), "LDA")
        assert len(port.value_batches()) == 3

    def test_header_travels_with_first_chunk(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_table(0, ["a", "b", "c"], plain_rows(501), "LDA")
        first, second = port.value_batches()
        assert first.origin_row == 0
        assert first.values[0] == ["a", "b", "c"]
        assert len(first.values) == 501
        assert second.origin_row == 501
        assert len(second.values) == 1

    def test_returns_last_row_index(self):
        port = RecordingPort()
        last = BatchedSheetWriter(port, "S").write_table(5, ["a"], plain_rows(3, 1), "LDA")
        assert last == 8

    def test_empty_table_writes_header_only(self):
        port = RecordingPort()
        last = BatchedSheetWriter(port, "S").write_table(0, ["a", "b"], [], "LDA", table_name="T")
        assert last == 0
        assert len(port.batches) == 1
        assert port.batches[0].values == [["a", "b"]]
        assert port.batches[0].tables == []

    def test_fill_flush_count_uses_format_chunk(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_table(0, ["a", "b", "c"], colored_rows(250), "LDA")
        assert len(port.fill_batches()) == 3
        first_run = port.fill_batches()[0].fills[0]
        assert first_run == FillRun(1, 0, 2, "#FFEDD5")

    def test_no_fill_flush_without_highlights(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_table(0, ["a"], plain_rows(10, 1), "LDA")
        assert port.fill_batches() == []

    def test_table_registered_over_header_and_data(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_table(2, ["a", "b"], plain_rows(4, 2), "LDA", table_name="T1")
        table = [b for b in port.batches if b.tables][0].tables[0]
        assert (table.name, table.first_row, table.last_row, table.col_count) == ("T1", 2, 6, 2)

    def test_progress_reported_per_chunk(self):
        port = RecordingPort()
        seen = []
        writer = BatchedSheetWriter(port, "S", on_progress=lambda *a: seen.append(a))
        writer.write_table(0, ["a"], plain_rows(1001, 1), "LDA")
        writing = [s for s in seen if s[2] == "writing"]
        assert writing == [(1, 3, "writing", "LDA"), (2, 3, "writing", "LDA"), (3, 3, "writing", "LDA")]

    def test_formatting_progress_only_for_flushed_chunks(self):
        port = RecordingPort()
        seen = []
        writer = BatchedSheetWriter(port, "S", on_progress=lambda *a: seen.append(a))
        writer.write_table(0, ["a"], plain_rows(100, 1) + colored_rows(1, 1), "LDA")
        formatting = [s for s in seen if s[2] == "formatting"]
        assert formatting == [(1, 1, "formatting", "LDA")]
        assert len(port.fill_batches()) == 1

    def test_no_formatting_progress_without_highlights(self):
        seen = []
        writer = BatchedSheetWriter(RecordingPort(), "S", on_progress=lambda *a: seen.append(a))
        writer.write_table(0, ["a"], plain_rows(10, 1), "LDA")
        assert [s for s in seen if s[2] == "formatting"] == []

    def test_custom_chunk_sizes(self):
        port = RecordingPort()
        writer = BatchedSheetWriter(port, "S", value_chunk_rows=2, format_chunk_rows=1)
        writer.write_table(0, ["a"], colored_rows(3, 1), "LDA")
        assert len(port.value_batches()) == 2
        assert len(port.fill_batches()) == 3

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            BatchedSheetWriter(RecordingPort(), "S", value_chunk_rows=0)


class TestFailures:
    def test_value_write_failure_is_fatal(self):
        port = RecordingPort(fail_on=2)
        writer = BatchedSheetWriter(port, "S")
        with pytest.raises(SheetWriteError) as exc_info:
            writer.write_table(0, ["a"], plain_rows(1200, 1), "LDA")
        assert exc_info.value.affected_sheet == "S"
        assert exc_info.value.phase == "writing"
        assert "chunk 2" in str(exc_info.value)

    def test_no_retry_after_failure(self):
        port = RecordingPort(fail_on=1)
        with pytest.raises(SheetWriteError):
            BatchedSheetWriter(port, "S").write_table(0, ["a"], plain_rows(1200, 1), "LDA")
        assert port.batches == []

    def test_fill_failure_is_fatal(self):
        port = RecordingPort(fail_on=2)
        with pytest.raises(SheetWriteError) as exc_info:
            BatchedSheetWriter(port, "S").write_table(0, ["a"], colored_rows(5, 1), "LDA")
        assert exc_info.value.phase == "formatting"

    def test_cosmetic_failures_swallowed(self):
        port = RecordingPort(fail_cosmetic=True)
        writer = BatchedSheetWriter(port, "S")
        assert writer.apply_conditional_formats([ConditionalFormat(0, 1, 2)]) is False
        assert writer.autofit() is False

    def test_cosmetic_success(self):
        writer = BatchedSheetWriter(RecordingPort(), "S")
        assert writer.apply_conditional_formats([]) is True
        assert writer.autofit() is True


class TestWriteRows:
    def test_rows_start_at_given_row(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_rows(1, plain_rows(600), "Master List", 3)
        assert [b.origin_row for b in port.value_batches()] == [1, 501]

    def test_title_is_bold(self):
        port = RecordingPort()
        BatchedSheetWriter(port, "S").write_title(7, "Failing")
        assert port.batches[0].values == [["Failing"]]
        assert port.batches[0].bold_cells == [(7, 0)]
