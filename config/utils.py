"""Helper utilities for reading configuration values regardless of the backing object."""
from __future__ import annotations

from datetime import time as dt_time
from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from a Config, SectionProxy, or plain dict."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return candidate if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, dict):
            return candidate
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            return to_dict()

    return {}


def parse_clock(value: Any) -> dt_time:
    """Parse an ``HH:MM`` string (or a ``datetime.time``) into a time of day."""
    if isinstance(value, dt_time):
        return value
    text = str(value).strip()
    try:
        hours, minutes = text.split(':', 1)
        return dt_time(int(hours), int(minutes))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid clock value '{value}', expected HH:MM") from exc
