"""ASIN aggregation and ranking.

Groups report line items by ASIN, sums the metrics, derives rate metrics
and ranks the result by a selectable key.

All functions are pure: they return new frozen records and never mutate
their inputs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ConfigurationError
from .models import AggregatedProduct, LineItem
from .logging_utils import get_logger
from .standards.naming import to_snake_case


LOGGER_NAME = "asinfeed.aggregator"

SUM_FIELDS = ("ordered_items", "revenue", "earnings", "clicks")
DERIVED_FIELDS = ("conversion_rate", "revenue_per_click", "earnings_per_click", "average_order_value")
FILTERABLE_FIELDS = SUM_FIELDS + DERIVED_FIELDS

RANKING_KEYS = ("ordered_items", "revenue", "earnings", "conversion_rate", "revenue_per_click")

# Names used by older report tooling and config files.
RANKING_KEY_ALIASES = {
    "shipped_revenue": "revenue",
    "epc": "earnings_per_click",
    "aov": "average_order_value",
}

PRICE_RANGES = (
    ("budget", 0.0, 25.0),
    ("mid", 25.0, 100.0),
    ("premium", 100.0, 500.0),
    ("luxury", 500.0, float("inf")),
)


@dataclass(frozen=True)
class RankFilters:
    """Filters applied before ranking.

    ``minimums`` maps any summed or derived field to an inclusive lower bound.
    """

    minimums: Mapping[str, float] = field(default_factory=dict)
    include_asins: Optional[frozenset] = None
    exclude_asins: frozenset = frozenset()

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "RankFilters":
        """Build filters from config style keys.

        Accepts ``min_revenue: 10`` / ``minRevenue: 10`` style thresholds and
        ``include_asins`` / ``exclude_asins`` lists.
        """
        if not data:
            return cls()
        minimums: Dict[str, float] = {}
        include = None
        exclude: frozenset = frozenset()
        for raw_key, value in data.items():
            key = to_snake_case(raw_key)
            if key == "include_asins":
                include = frozenset(str(a).strip().upper() for a in (value or []))
            elif key == "exclude_asins":
                exclude = frozenset(str(a).strip().upper() for a in (value or []))
            elif key.startswith("min_"):
                minimums[_canonical_field(key[4:])] = float(value)
            else:
                raise ConfigurationError(f"Unknown filter: {raw_key}")
        return cls(minimums=minimums, include_asins=include, exclude_asins=exclude)


def _canonical_field(name: str) -> str:
    key = to_snake_case(name)
    key = RANKING_KEY_ALIASES.get(key, key)
    if key not in FILTERABLE_FIELDS:
        raise ConfigurationError(
            f"Invalid filter field: {name}. Available: {', '.join(FILTERABLE_FIELDS)}"
        )
    return key


def resolve_ranking_key(rank_by: str) -> str:
    """Map a ranking key (snake_case, camelCase or legacy name) to its canonical form."""

    key = to_snake_case(rank_by) if rank_by else ""
    key = RANKING_KEY_ALIASES.get(key, key)
    if key not in RANKING_KEYS:
        raise ConfigurationError(
            f"Invalid ranking strategy: {rank_by}. Available: {', '.join(RANKING_KEYS)}"
        )
    return key


def _safe_divide(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.where(denominator > 0, numerator / denominator.where(denominator > 0, 1.0), 0.0)
    return pd.Series(out, index=numerator.index, dtype="float64")


def _with_derived(frame: pd.DataFrame) -> pd.DataFrame:
    out = frame.copy()
    out["conversion_rate"] = _safe_divide(out["ordered_items"], out["clicks"])
    out["revenue_per_click"] = _safe_divide(out["revenue"], out["clicks"])
    out["earnings_per_click"] = _safe_divide(out["earnings"], out["clicks"])
    out["average_order_value"] = _safe_divide(out["revenue"], out["ordered_items"])
    return out


def _distinct_tags(values: Iterable[Any]) -> tuple:
    tags: Dict[str, None] = {}
    for value in values:
        if isinstance(value, tuple):
            tags.update(dict.fromkeys(t for t in value if t))
        elif isinstance(value, str) and value:
            tags[value] = None
    return tuple(tags)


def _group(frame: pd.DataFrame) -> List[AggregatedProduct]:
    """Group a frame of per-ASIN rows, summing metrics and recomputing rates once."""

    if frame.empty:
        return []
    grouped = frame.groupby("asin", sort=False).agg(
        ordered_items=("ordered_items", "sum"),
        revenue=("revenue", "sum"),
        earnings=("earnings", "sum"),
        clicks=("clicks", "sum"),
        items_shipped=("items_shipped", lambda s: s.sum(min_count=1)),
    )
    grouped = _with_derived(grouped.reset_index())
    tags: Dict[str, List[Any]] = {}
    for asin, value in zip(frame["asin"], frame["source_tags"]):
        tags.setdefault(asin, []).append(value)

    products: List[AggregatedProduct] = []
    for rec in grouped.to_dict("records"):
        shipped = rec["items_shipped"]
        products.append(
            AggregatedProduct(
                asin=rec["asin"],
                ordered_items=float(rec["ordered_items"]),
                revenue=float(rec["revenue"]),
                earnings=float(rec["earnings"]),
                clicks=float(rec["clicks"]),
                conversion_rate=float(rec["conversion_rate"]),
                revenue_per_click=float(rec["revenue_per_click"]),
                earnings_per_click=float(rec["earnings_per_click"]),
                average_order_value=float(rec["average_order_value"]),
                source_tags=_distinct_tags(tags.get(rec["asin"], [])),
                items_shipped=None if pd.isna(shipped) else float(shipped),
            )
        )
    return products


def aggregate_by_asin(line_items: Sequence[LineItem]) -> List[AggregatedProduct]:
    """Combine duplicate ASINs. Output order is first appearance in ``line_items``."""

    frame = pd.DataFrame(
        [
            {
                "asin": item.asin,
                "ordered_items": item.ordered_items,
                "revenue": item.revenue,
                "earnings": item.earnings,
                "clicks": item.clicks,
                "items_shipped": item.items_shipped,
                "source_tags": (item.source_tag,) if item.source_tag else (),
            }
            for item in line_items
        ]
    )
    if not frame.empty:
        frame["items_shipped"] = pd.to_numeric(frame["items_shipped"], errors="coerce")
    return _group(frame)


def merge_aggregates(*groups: Sequence[AggregatedProduct]) -> List[AggregatedProduct]:
    """Merge aggregate lists (e.g. from several report files) by summing matching ASINs.

    Ranks are dropped; rank the merged list again.
    """

    frame = pd.DataFrame(
        [
            {
                "asin": p.asin,
                "ordered_items": p.ordered_items,
                "revenue": p.revenue,
                "earnings": p.earnings,
                "clicks": p.clicks,
                "items_shipped": p.items_shipped,
                "source_tags": tuple(p.source_tags),
            }
            for group in groups
            for p in group
        ]
    )
    if not frame.empty:
        frame["items_shipped"] = pd.to_numeric(frame["items_shipped"], errors="coerce")
    return _group(frame)


def filter_products(products: Sequence[AggregatedProduct], filters: Optional[RankFilters] = None) -> List[AggregatedProduct]:
    if filters is None:
        return list(products)
    minimums = {_canonical_field(k): float(v) for k, v in filters.minimums.items()}
    out: List[AggregatedProduct] = []
    for product in products:
        if filters.include_asins is not None and product.asin not in filters.include_asins:
            continue
        if product.asin in filters.exclude_asins:
            continue
        if any(getattr(product, name) < bound for name, bound in minimums.items()):
            continue
        out.append(product)
    return out


def rank_products(products: Sequence[AggregatedProduct], rank_by: str = "ordered_items") -> List[AggregatedProduct]:
    """Sort descending by ``rank_by`` and assign 1-based ranks.

    The sort is stable (mergesort), so ties keep their input order.
    """

    key = resolve_ranking_key(rank_by)
    if not products:
        return []
    values = pd.Series([getattr(p, key) for p in products], dtype="float64")
    order = values.sort_values(ascending=False, kind="mergesort").index
    return [replace(products[pos], rank=rank) for rank, pos in enumerate(order, start=1)]


def summarize_products(products: Sequence[AggregatedProduct]) -> Dict[str, float]:
    count = len(products)
    total_items = float(sum(p.ordered_items for p in products))
    total_revenue = float(sum(p.revenue for p in products))
    total_earnings = float(sum(p.earnings for p in products))
    total_clicks = float(sum(p.clicks for p in products))
    return {
        "total_ordered_items": total_items,
        "total_revenue": total_revenue,
        "total_earnings": total_earnings,
        "total_clicks": total_clicks,
        "avg_ordered_items": total_items / count if count else 0.0,
        "avg_revenue": total_revenue / count if count else 0.0,
        "avg_earnings": total_earnings / count if count else 0.0,
        "avg_conversion_rate": total_items / total_clicks if total_clicks > 0 else 0.0,
        "avg_revenue_per_click": total_revenue / total_clicks if total_clicks > 0 else 0.0,
        "avg_epc": total_earnings / total_clicks if total_clicks > 0 else 0.0,
    }


@dataclass
class AggregationResult:
    products: List[AggregatedProduct]
    summary: Dict[str, Any]


def aggregate_and_rank(
    line_items: Sequence[LineItem],
    *,
    rank_by: str = "ordered_items",
    top_n: Optional[int] = None,
    filters: Optional[RankFilters] = None,
    logger: Optional[logging.Logger] = None,
) -> AggregationResult:
    """Aggregate, filter, rank and truncate in one step.

    Ranks reflect position in the filtered list and are kept after ``top_n``
    truncation, so they are stable across different ``top_n`` values.

    Raises:
        ConfigurationError: Unknown ``rank_by`` or filter field, or ``top_n < 1``.
    """

    lg = logger or get_logger(LOGGER_NAME)
    key = resolve_ranking_key(rank_by)
    if top_n is not None and int(top_n) < 1:
        raise ConfigurationError(f"top_n must be a positive integer, got {top_n}")

    aggregated = aggregate_by_asin(line_items)
    filtered = filter_products(aggregated, filters)
    ranked = rank_products(filtered, key)
    top = ranked[: int(top_n)] if top_n is not None else ranked

    lg.info(
        "Aggregated %s line items into %s ASINs (%s after filters), returning %s ranked by %s",
        len(line_items),
        len(aggregated),
        len(filtered),
        len(top),
        key,
    )
    summary: Dict[str, Any] = {
        "total_products": len(aggregated),
        "filtered_products": len(filtered),
        "returned_products": len(top),
        "ranking_metric": key,
        "top_n": top_n if top_n is not None else "all",
    }
    summary.update(summarize_products(top))
    return AggregationResult(products=top, summary=summary)


def calculate_percentiles(products: Sequence[AggregatedProduct], metric: str = "ordered_items") -> Dict[str, float]:
    """Percentile snapshot (p10..p99, min, max) for one summed or derived metric."""

    key = _canonical_field(metric)
    values = sorted(getattr(p, key) for p in products)
    n = len(values)
    if n == 0:
        return {}
    out = {f"p{q}": values[int(n * q / 100)] for q in (10, 25, 50, 75, 90, 95, 99)}
    out["min"] = values[0]
    out["max"] = values[-1]
    return out


def cluster_by_price_range(products: Sequence[AggregatedProduct]) -> Dict[str, List[AggregatedProduct]]:
    """Bucket products by average order value into budget/mid/premium/luxury."""

    clusters: Dict[str, List[AggregatedProduct]] = {}
    for product in products:
        aov = product.average_order_value
        name = next((label for label, low, high in PRICE_RANGES if low <= aov < high), "unknown")
        clusters.setdefault(name, []).append(product)
    return clusters
