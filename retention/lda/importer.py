"""CSV / XLSX roster and grade-export parsing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .errors import PreconditionError

logger = logging.getLogger(__name__)


@dataclass
class ImportTable:
    headers: list[str]
    rows: list[list]
    label: str = "import"

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=self.headers)


def _clean_header(value) -> str:
    return "" if value is None or pd.isna(value) else str(value).strip()


def frame_to_table(df: pd.DataFrame, label: str = "import") -> ImportTable:
    headers = [_clean_header(c) for c in df.columns]
    # Unnamed pandas headers are blank in the source file.
    headers = ["" if h.startswith("Unnamed:") else h for h in headers]
    cleaned = df.astype(object).where(pd.notna(df), None)
    return ImportTable(headers=headers, rows=cleaned.values.tolist(), label=label)


def read_import_file(source, file_name: str | None = None) -> ImportTable:
    """
    Parse a .csv or .xlsx export. `source` is a path or a file-like object;
    `file_name` decides the format when `source` has no usable name.
    """
    name = file_name or str(getattr(source, "name", source))
    label = Path(name).name
    suffix = Path(name).suffix.lower()
    try:
        if suffix in (".xlsx", ".xlsm"):
            df = pd.read_excel(source, sheet_name=0, engine="openpyxl")
        elif suffix == ".csv":
            df = pd.read_csv(source, encoding="utf-8-sig")
        else:
            raise PreconditionError(
                reason=f"Unsupported import file type '{suffix or name}'",
                affected_sheet=label,
                phase="import",
                fix_steps=["Export the roster as .csv or .xlsx."],
            )
    except PreconditionError:
        raise
    except Exception as e:
        raise PreconditionError(
            reason=f"Import file is not parseable: {e}",
            affected_sheet=label,
            phase="import",
            fix_steps=["Verify the file opens in Excel and has a header row."],
        ) from e

    table = frame_to_table(df, label)
    logger.info("[importer] %s: %d rows, headers [%s]", label, len(table.rows), ", ".join(table.headers))
    return table
