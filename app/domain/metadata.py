"""
Helpers for reading checkout metadata.

Payment provider metadata is a flat string-to-string map; every number
and flag in it arrives as text and some values are missing or malformed.
"""
import re
from typing import Any, Mapping

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def parse_int(value: Any, default: int = 0) -> int:
    """Read the leading integer of a metadata value ("3", "3 cards" -> 3)"""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    match = _LEADING_INT_RE.match(str(value))
    if not match:
        return default
    return int(match.group(1))


def is_true(value: Any) -> bool:
    """Metadata flags are the literal string "true" """
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true" if value is not None else False


def get_str(metadata: Mapping[str, Any], key: str) -> str | None:
    """Non-empty string value for ``key`` or None"""
    value = metadata.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None
