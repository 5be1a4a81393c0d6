"""
Student name keys.

normalize_name() produces the matching key used by every merge: case,
spacing and "Last, First" vs "First Last" ordering do not affect it.
format_last_first() produces the display form written into the Master List.
"""

from __future__ import annotations


def _collapse(text: str) -> str:
    return " ".join(text.split())


def normalize_name(raw) -> str:
    """
    Return the canonical "first last" key for a student name.

    Never raises. None or blank input gives "", which matches nothing.
    normalize_name(normalize_name(x)) == normalize_name(x) for all x.
    """
    if raw is None:
        return ""
    text = _collapse(str(raw)).lower()
    if "," in text:
        last, _, first = text.partition(",")
        text = f"{first.replace(',', ' ')} {last.replace(',', ' ')}"
        text = _collapse(text)
    return text


def format_last_first(raw) -> str:
    """"Jane Q Doe" -> "Doe, Jane Q". Names already containing a comma are tidied only."""
    if raw is None:
        return ""
    text = _collapse(str(raw))
    if not text:
        return ""
    if "," in text:
        return ", ".join(part.strip() for part in text.split(","))
    parts = text.split(" ")
    if len(parts) > 1:
        return f"{parts[-1]}, {' '.join(parts[:-1])}"
    return text
