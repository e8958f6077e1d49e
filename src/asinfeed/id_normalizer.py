from __future__ import annotations

import re
from typing import Any, Iterable, List

import pandas as pd


ASIN_FULL_RX = re.compile(r"^[B0-9][A-Z0-9]{9}$")
ASIN_SEARCH_RX = re.compile(r"\b[B0-9][A-Z0-9]{9}\b")


def normalize_asin(x: Any) -> str:
    """Trim and uppercase an ASIN cell. Missing values become an empty string."""

    if x is None or (isinstance(x, float) and pd.isna(x)):
        return ""
    return str(x).strip().upper()


def is_valid_asin(x: Any) -> bool:
    """Return True if value looks like an ASIN: 10 alphanumerics starting with B or a digit.

    Whitespace is stripped and letters uppercased before validation.
    """

    s = normalize_asin(x)
    if not s:
        return False
    return bool(ASIN_FULL_RX.fullmatch(s))


def find_asins(text: Any) -> List[str]:
    """Return ASIN-shaped tokens found in free text, in order of appearance."""

    if text is None:
        return []
    return ASIN_SEARCH_RX.findall(str(text).upper())


def unique_asins(values: Iterable[Any]) -> List[str]:
    """Normalize ASINs and drop duplicates, keeping the first occurrence."""

    seen = dict.fromkeys(normalize_asin(v) for v in values)
    seen.pop("", None)
    return list(seen)
