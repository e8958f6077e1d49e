from __future__ import annotations

import math
import re
from typing import Any


_CURRENCY_RX = re.compile(r"[\s$,£€‚ƒ₣₹¥₩₽₺\u00a0]")


def strip_currency(value: Any) -> float | None:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    if s == "":
        return None
    # remove currency symbols, spaces, and thousands separators
    s = _CURRENCY_RX.sub("", s)
    # handle parentheses for negatives e.g., (1,234.50)
    neg = False
    if s.startswith("(") and s.endswith(")"):
        neg = True
        s = s[1:-1]
    try:
        val = float(s)
    except ValueError:
        return None
    if math.isnan(val) or math.isinf(val):
        return None
    return -val if neg else val


def coerce_metric(value: Any) -> float:
    """Parse a report metric cell. Unparsable or empty cells become 0, negatives clamp to 0."""

    val = strip_currency(value)
    if val is None or val < 0:
        return 0.0
    return val
