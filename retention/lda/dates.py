"""Date parsing and Excel serial-date conversion."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional

# Day zero of the 1900 date system as Excel counts it (1900 leap-year bug included).
EXCEL_EPOCH = date(1899, 12, 30)

# Serial 25569 is 1970-01-01; smaller numbers are not treated as dates.
MIN_PLAUSIBLE_SERIAL = 25569

_DATE_FORMATS = (
    "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%m-%d-%y",
    "%Y-%m-%d", "%Y/%m/%d", "%Y-%m-%d %H:%M:%S", "%m/%d/%Y %H:%M",
)


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_serial(value: date) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return (value - EXCEL_EPOCH).days


def from_serial(serial: float) -> date:
    return EXCEL_EPOCH + timedelta(days=int(serial))


def parse_date(val) -> Optional[date]:
    """Parse a date value tolerantly. Return None if unparseable."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if is_number(val):
        if val > MIN_PLAUSIBLE_SERIAL:
            return from_serial(val)
        return None
    s = str(val).strip()
    if not s:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def format_mm_dd_yy(value: date) -> str:
    return value.strftime("%m-%d-%y")
