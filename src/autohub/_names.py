"""Name formatting shared by the session and settings tables."""

from __future__ import annotations

import re

_WHITESPACE = re.compile(r"\s+")
_VALID_NAME = re.compile(r"[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)*")

_POSITIVE_REQUESTS = frozenset({"ON", "UP", "LOCK", "OPEN", "TOGGLE", "PUSH"})
_NEGATIVE_REQUESTS = frozenset({"OFF", "DOWN", "UNLOCK", "CLOSE"})


def format_name(name: str) -> str:
    """Return *name* upper-cased with runs of whitespace replaced by ``_``."""
    collapsed = _WHITESPACE.sub(" ", name).strip()
    return collapsed.replace(" ", "_").upper()


def is_valid_name(name: str) -> bool:
    """Whether the canonical form of *name* is usable as a table key.

    Keys are ``[A-Za-z0-9_]+`` segments; ``.`` separates namespaced
    sub-keys such as ``ACCELERATION.X``.
    """
    return _VALID_NAME.fullmatch(format_name(name)) is not None


def is_positive_request(request: str) -> bool:
    """Translate ``UP``/``LOCK``/``ON``... into ``True`` and their opposites into ``False``.

    Raises :class:`ValueError` for anything else.
    """
    word = format_name(request)
    if word in _POSITIVE_REQUESTS:
        return True
    if word in _NEGATIVE_REQUESTS:
        return False
    raise ValueError(f"{request} is an invalid command")
