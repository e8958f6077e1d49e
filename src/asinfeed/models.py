"""Typed records passed between the parser, aggregator, enrichment and feed stages."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class LineItem:
    """One valid report row."""

    asin: str
    ordered_items: float = 0.0
    revenue: float = 0.0
    earnings: float = 0.0
    clicks: float = 0.0
    source_tag: Optional[str] = None
    items_shipped: Optional[float] = None


@dataclass(frozen=True)
class RowIssue:
    """A report row skipped during parsing (recorded in strict mode)."""

    row_number: int
    reason: str
    asin_value: str = ""


@dataclass(frozen=True)
class AggregatedProduct:
    """Per-ASIN totals with derived rate metrics and an optional rank."""

    asin: str
    ordered_items: float
    revenue: float
    earnings: float
    clicks: float
    conversion_rate: float = 0.0
    revenue_per_click: float = 0.0
    earnings_per_click: float = 0.0
    average_order_value: float = 0.0
    source_tags: Tuple[str, ...] = ()
    items_shipped: Optional[float] = None
    rank: Optional[int] = None


@dataclass(frozen=True)
class SaleInfo:
    """Discount details; present only when the list price exceeds the current price."""

    original_price: float
    discount_amount: float
    discount_percentage: int


@dataclass(frozen=True)
class EnrichedProduct:
    """An aggregated product merged with catalog attributes."""

    product: AggregatedProduct
    title: str = "Unknown Product"
    price: Optional[float] = None
    currency: str = "USD"
    image_url: Optional[str] = None
    detail_url: Optional[str] = None
    availability: str = "Unknown"
    sale: Optional[SaleInfo] = None

    @property
    def asin(self) -> str:
        return self.product.asin

    @property
    def rank(self) -> Optional[int]:
        return self.product.rank

    @property
    def is_on_sale(self) -> bool:
        return self.sale is not None


@dataclass(frozen=True)
class ItemError:
    asin: str
    code: str
    message: str


@dataclass
class BatchResult:
    """Outcome of one GetItems batch.

    Every requested ASIN ends up in exactly one of ``items`` or ``errors``.
    """

    batch_number: int
    asins: List[str]
    items: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[ItemError] = field(default_factory=list)
    attempts: int = 0

    @property
    def failed_asins(self) -> List[str]:
        return [err.asin for err in self.errors]


@dataclass
class EnrichmentStats:
    total_requested: int = 0
    enriched_count: int = 0
    failed_count: int = 0
    success_rate: float = 0.0
    batch_count: int = 0
    retry_count: int = 0
    inter_batch_delays: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnrichmentResult:
    enriched: List[EnrichedProduct]
    failed: List[str]
    errors: List[ItemError]
    stats: EnrichmentStats
    batches: List[BatchResult] = field(default_factory=list)


class FeedStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"


@dataclass
class FeedMetadata:
    generated_at: str
    report_date: str
    total_asins: int
    ranking_metric: str
    publisher: str
    credential: str
    partner_tag: Optional[str]
    sales_only: bool
    enrichment: Dict[str, Any]
    summary: Dict[str, float]
    sales: Dict[str, float]
    below_success_threshold: bool = False
    version: str = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeedResult:
    products: List[Dict[str, Any]]
    metadata: FeedMetadata
    status: FeedStatus = FeedStatus.OK

    @property
    def is_empty(self) -> bool:
        return self.status is FeedStatus.EMPTY
