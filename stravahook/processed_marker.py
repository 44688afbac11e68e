"""The "already processed" flag, kept in the activity description.

Strava has no private metadata field, so the description carries a marker.
Everything that reads or writes the marker goes through this module.
"""
from __future__ import annotations

MARKER = "~~"


def is_processed(description: str | None) -> bool:
    return bool(description) and MARKER in description


def mark_processed(description: str | None = None, *, suffix: str = "") -> str:
    """Return ``description`` with the marker appended, followed by ``suffix``."""
    return f"{description or ''}{MARKER}{suffix}"
