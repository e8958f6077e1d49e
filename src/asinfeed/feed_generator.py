"""Feed assembly and output.

Formats enriched products into the public feed schema, computes the
metadata sibling (sums, averages, sale statistics) and writes both under
``{output_dir}/{publisher}/{credential}/{YYYYMMDD}/``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .ingestion_utils import ensure_directory
from .logging_utils import get_logger, log_warning
from .models import EnrichedProduct, EnrichmentStats, FeedMetadata, FeedResult, FeedStatus
from .paapi_client import DEFAULT_CURRENCY, UNKNOWN_AVAILABILITY, UNKNOWN_TITLE, fallback_detail_url


LOGGER_NAME = "asinfeed.feed"

FEED_FILE = "top-products.json"
SALES_FEED_FILE = "top-products-sales.json"
METADATA_FILE = "top-products-meta.json"

SALE_FIELDS = ("is_on_sale", "original_price", "discount_amount", "discount_percentage")


@dataclass
class FeedOptions:
    output_dir: Union[str, Path] = "feeds"
    publisher: str = "mula"
    credential: str = "primary"
    partner_tag: Optional[str] = None
    base_url: str = "https://www.amazon.com"
    report_date: Optional[str] = None
    ranking_metric: str = "ordered_items"
    sales_only: bool = False
    enrichment_stats: Optional[EnrichmentStats] = None
    min_success_rate: float = 0.95
    generated_at: Optional[datetime] = None


@dataclass
class FeedPaths:
    directory: Path
    feed_path: Path
    metadata_path: Path


def format_product(product: EnrichedProduct, partner_tag: Optional[str] = None, base_url: str = "https://www.amazon.com") -> Dict[str, Any]:
    """Render one enriched product in the public feed schema."""

    agg = product.product
    out: Dict[str, Any] = {
        "asin": agg.asin,
        "title": product.title or UNKNOWN_TITLE,
        "price": product.price,
        "currency": product.currency or DEFAULT_CURRENCY,
        "image_url": product.image_url,
        "link": product.detail_url or fallback_detail_url(agg.asin, base_url, partner_tag or ""),
        "availability": product.availability or UNKNOWN_AVAILABILITY,
        "rank": agg.rank,
        "ordered_items": agg.ordered_items,
        "revenue": agg.revenue,
        "earnings": agg.earnings,
        "clicks": agg.clicks,
        "conversion_rate": agg.conversion_rate,
        "revenue_per_click": agg.revenue_per_click,
        "epc": agg.earnings_per_click,
        "average_order_value": agg.average_order_value,
    }
    if agg.items_shipped is not None:
        out["items_shipped"] = agg.items_shipped
    if len(agg.source_tags) == 1:
        out["tag"] = agg.source_tags[0]
    elif agg.source_tags:
        out["tags"] = list(agg.source_tags)
    if product.sale is not None:
        out["is_on_sale"] = True
        out["original_price"] = product.sale.original_price
        out["discount_amount"] = product.sale.discount_amount
        out["discount_percentage"] = product.sale.discount_percentage
    return out


def filter_sales_only(products: Sequence[EnrichedProduct]) -> List[EnrichedProduct]:
    return [p for p in products if p.is_on_sale]


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def generate_metadata(formatted: Sequence[Dict[str, Any]], options: FeedOptions) -> FeedMetadata:
    """Compute feed-level sums, averages and sale statistics over ``formatted``."""

    generated = options.generated_at or datetime.now(timezone.utc)
    total_orders = sum(p.get("ordered_items") or 0 for p in formatted)
    total_clicks = sum(p.get("clicks") or 0 for p in formatted)
    priced = [p["price"] for p in formatted if p.get("price")]
    on_sale = [p for p in formatted if p.get("is_on_sale")]

    stats = options.enrichment_stats
    if stats is not None:
        enrichment = {
            "requested_count": stats.total_requested,
            "enriched_count": stats.enriched_count,
            "failed_count": stats.failed_count,
            "success_rate": stats.success_rate,
        }
        below = stats.total_requested > 0 and stats.success_rate < options.min_success_rate
    else:
        enrichment = {
            "requested_count": len(formatted),
            "enriched_count": len(formatted),
            "failed_count": 0,
            "success_rate": None,
        }
        below = False

    return FeedMetadata(
        generated_at=generated.isoformat(),
        report_date=options.report_date or generated.date().isoformat(),
        total_asins=len(formatted),
        ranking_metric=options.ranking_metric,
        publisher=options.publisher,
        credential=options.credential,
        partner_tag=options.partner_tag,
        sales_only=options.sales_only,
        enrichment=enrichment,
        summary={
            "total_revenue": float(sum(p.get("revenue") or 0 for p in formatted)),
            "total_earnings": float(sum(p.get("earnings") or 0 for p in formatted)),
            "total_orders": float(total_orders),
            "total_clicks": float(total_clicks),
            "average_price": _ratio(sum(priced), len(priced)),
            "average_conversion_rate": _ratio(total_orders, total_clicks),
        },
        sales={
            "total_on_sale": len(on_sale),
            "sale_percentage": _ratio(len(on_sale), len(formatted)) * 100,
            "average_discount_percentage": _ratio(
                sum(p.get("discount_percentage") or 0 for p in on_sale), len(on_sale)
            ),
        },
        below_success_threshold=below,
    )


def assemble_feed(
    products: Sequence[EnrichedProduct],
    options: Optional[FeedOptions] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> FeedResult:
    """Format products and build metadata. An empty feed is a status, not an error."""

    lg = logger or get_logger(LOGGER_NAME)
    opts = options or FeedOptions()
    selected = list(products)
    if opts.sales_only:
        selected = filter_sales_only(products)
        lg.info("Filtering to sales-only: %s/%s products", len(selected), len(products))

    formatted = [format_product(p, opts.partner_tag, opts.base_url) for p in selected]
    metadata = generate_metadata(formatted, opts)
    if metadata.below_success_threshold:
        log_warning(
            lg,
            f"Enrichment success rate {metadata.enrichment['success_rate'] * 100:.1f}% "
            f"is below the {opts.min_success_rate * 100:.0f}% threshold",
        )
    status = FeedStatus.OK if formatted else FeedStatus.EMPTY
    return FeedResult(products=formatted, metadata=metadata, status=status)


def feed_to_json(result: FeedResult) -> Dict[str, str]:
    """Serialize feed and metadata independently (indent 2)."""

    return {
        "feed": json.dumps(result.products, indent=2, ensure_ascii=False),
        "metadata": json.dumps(result.metadata.to_dict(), indent=2, ensure_ascii=False),
    }


def feed_directory(options: FeedOptions, report_date: str) -> Path:
    return Path(options.output_dir) / options.publisher / options.credential / report_date.replace("-", "")


def write_json(path: Path, payload: Any) -> Path:
    path = Path(path)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=False)
    return path


def write_feed(
    result: FeedResult,
    options: Optional[FeedOptions] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> FeedPaths:
    """Write the feed and metadata files and return their paths."""

    lg = logger or get_logger(LOGGER_NAME)
    opts = options or FeedOptions()
    directory = ensure_directory(feed_directory(opts, result.metadata.report_date))
    feed_path = write_json(directory / (SALES_FEED_FILE if opts.sales_only else FEED_FILE), result.products)
    metadata_path = write_json(directory / METADATA_FILE, result.metadata.to_dict())
    lg.info("Feed written: %s (%s products)", feed_path, len(result.products))
    return FeedPaths(directory=directory, feed_path=feed_path, metadata_path=metadata_path)


def read_feed(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Load a feed file written by :func:`write_feed`."""

    with Path(path).open("r", encoding="utf-8") as fh:
        products = json.load(fh)
    if not isinstance(products, list):
        raise ValueError(f"Feed file {path} does not contain a JSON array")
    return products


def list_feeds(output_dir: Union[str, Path] = "feeds", publisher: str = "mula", credential: str = "primary") -> List[Dict[str, Any]]:
    """List dated feeds for a publisher/credential, newest first.

    Sales-only feeds are listed alongside the full feed of the same day.
    """

    base = Path(output_dir) / publisher / credential
    if not base.is_dir():
        return []
    feeds: List[Dict[str, Any]] = []
    for day_dir in sorted(base.iterdir(), key=lambda d: d.name, reverse=True):
        for file_name in (FEED_FILE, SALES_FEED_FILE):
            feed_path = day_dir / file_name
            if not feed_path.is_file():
                continue
            stat = feed_path.stat()
            feeds.append(
                {
                    "date": day_dir.name,
                    "path": feed_path,
                    "sales_only": file_name == SALES_FEED_FILE,
                    "size": stat.st_size,
                    "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    "product_count": len(read_feed(feed_path)),
                }
            )
    return feeds
