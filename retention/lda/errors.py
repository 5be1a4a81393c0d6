"""
Error taxonomy for LDA report generation and Master List imports.

PreconditionError  missing sheet / column / configuration, raised before
                   any write begins.
SheetWriteError    host failure during a chunked write. Fatal for the run,
                   never retried, partially written sheets are left as-is.
SettingsError      invalid settings document.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LdaError(Exception):
    """Structured halt error surfaced to the UI as a single message."""
    reason: str
    affected_sheet: str = ""
    phase: str = ""
    missing_fields: list[str] = field(default_factory=list)
    fix_steps: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        parts = [self.reason]
        if self.affected_sheet:
            parts.append(f"sheet '{self.affected_sheet}'")
        if self.phase:
            parts.append(f"phase '{self.phase}'")
        if self.missing_fields:
            parts.append(f"missing: {', '.join(self.missing_fields)}")
        message = " | ".join(parts)
        if self.fix_steps:
            steps = " ".join(f"({i}) {step}" for i, step in enumerate(self.fix_steps, 1))
            message = f"{message}. Fix: {steps}"
        return message


class PreconditionError(LdaError):
    """A required sheet, column or setting is missing."""


class SheetWriteError(LdaError):
    """Writing a chunk to the workbook failed."""


class SettingsError(LdaError):
    """Settings could not be parsed or validated."""
