"""
Run settings.

Accepts the add-in's camelCase settings document:

    {
      "daysOutThreshold": 5,
      "includeFailingList": false,
      "includeEngagementTag": true,
      "includeDncTag": true,
      "sheetNamingMode": "date",
      "outputColumns": [{"name": "Assigned", "alias": ["Advisor"], "hidden": false, "static": true}, ...]
    }

Unknown keys are ignored. Invalid values raise SettingsError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .column_mapper import ColumnSpec
from .errors import SettingsError

logger = logging.getLogger(__name__)

MASTER_LIST_SHEET = "Master List"
HISTORY_SHEET = "Student History"

SHEET_NAMING_MODES: frozenset[str] = frozenset({"date", "campus"})

DEFAULT_OUTPUT_COLUMNS: tuple[str, ...] = (
    "Assigned", "Student Name", "Student Number", "LDA", "Days Out", "Grade", "Phone", "Outreach",
)

DEFAULT_GRADEBOOK_URL = "https://nuc.instructure.com/courses/{course_id}/grades/{student_id}"


def _default_columns() -> list[ColumnSpec]:
    return [ColumnSpec(name=n) for n in DEFAULT_OUTPUT_COLUMNS]


@dataclass
class Settings:
    days_out_threshold: float = 5
    include_failing_list: bool = False
    include_engagement_tag: bool = True
    include_dnc_tag: bool = True
    sheet_naming_mode: str = "date"
    output_columns: list[ColumnSpec] = field(default_factory=_default_columns)
    treat_empty_grades_as_zero: bool = False
    gradebook_url_template: str = DEFAULT_GRADEBOOK_URL
    excluded_course_marker: str = "CAPV"

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Settings":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise SettingsError(reason="Settings must be a JSON object", phase="settings")
        settings = cls()

        threshold = data.get("daysOutThreshold", data.get("daysOut"))
        if threshold is not None:
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
                raise SettingsError(
                    reason=f"daysOutThreshold must be a number, got {threshold!r}",
                    phase="settings",
                    missing_fields=["daysOutThreshold"],
                )
            settings.days_out_threshold = threshold

        for key, attr in (
            ("includeFailingList", "include_failing_list"),
            ("includeEngagementTag", "include_engagement_tag"),
            ("includeLDATag", "include_engagement_tag"),
            ("includeDncTag", "include_dnc_tag"),
            ("includeDNCTag", "include_dnc_tag"),
            ("treatEmptyGradesAsZero", "treat_empty_grades_as_zero"),
        ):
            if key in data:
                setattr(settings, attr, _flag(data[key], key))

        mode = data.get("sheetNamingMode")
        if mode is not None:
            if mode not in SHEET_NAMING_MODES:
                raise SettingsError(
                    reason=f"sheetNamingMode must be one of {sorted(SHEET_NAMING_MODES)}, got {mode!r}",
                    phase="settings",
                )
            settings.sheet_naming_mode = mode

        if "gradebookUrlTemplate" in data:
            settings.gradebook_url_template = str(data["gradebookUrlTemplate"])
        if "excludedCourseMarker" in data:
            settings.excluded_course_marker = str(data["excludedCourseMarker"])

        columns = data.get("outputColumns", data.get("columns"))
        if columns is not None:
            settings.output_columns = [_column_from_dict(c) for c in columns]
        return settings


def _flag(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise SettingsError(
            reason=f"{key} must be true or false, got {value!r}",
            phase="settings",
            missing_fields=[key],
        )
    return value


def _column_from_dict(raw: Any) -> ColumnSpec:
    if isinstance(raw, str):
        return ColumnSpec(name=raw)
    if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
        raise SettingsError(
            reason=f"Each output column needs a name, got {raw!r}",
            phase="settings",
            missing_fields=["outputColumns[].name"],
        )
    aliases = raw.get("aliases", raw.get("alias")) or []
    if isinstance(aliases, str):
        aliases = [aliases]
    return ColumnSpec(
        name=str(raw["name"]).strip(),
        aliases=[str(a) for a in aliases],
        hidden=_flag(raw.get("hidden", False), "outputColumns[].hidden"),
        static=_flag(raw.get("static", False), "outputColumns[].static"),
    )


def load_settings(path) -> Settings:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SettingsError(
            reason=f"Settings file is not readable JSON: {e}",
            phase="settings",
            fix_steps=[f"Check the file at {path}"],
        ) from e
    logger.info("[settings] loaded %s", path)
    return Settings.from_dict(data)
