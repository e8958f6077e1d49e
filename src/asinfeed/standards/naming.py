"""Centralized naming utilities for report headers and metric keys."""
from __future__ import annotations

import re

_SEPARATORS = re.compile(r"[\s_\-]+")
_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_header_token(token: object) -> str:
    """Normalize a header or alias for case-insensitive matching.

    ``" Ordered  Items "``, ``"ordered_items"`` and ``"Ordered-Items"`` all
    become ``"ordered items"``.
    """
    if token is None:
        return ""
    return _SEPARATORS.sub(" ", str(token).strip().lower()).strip()


def to_snake_case(name: str) -> str:
    """Convert ``orderedItems`` / ``Ordered Items`` style keys to ``ordered_items``."""
    if name is None:
        return ""
    s = _CAMEL.sub("_", str(name).strip())
    return _SEPARATORS.sub("_", s.lower()).strip("_")
