"""Normalization helpers.

Centralizes lenient parsing of values arriving from serial frames,
HTTP requests and the settings file.
"""

from __future__ import annotations

import math
from typing import Any

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def parse_bool(value: Any) -> bool:
    """Parse *value* with the ``1/t/TRUE/true/0/f/FALSE/false`` vocabulary.

    Raises :class:`ValueError` for anything outside it.
    """
    if isinstance(value, bool):
        return value
    text = value_to_text(value).strip()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def value_to_text(value: Any) -> str:
    """Canonical string form used for comparisons and persisted settings."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
