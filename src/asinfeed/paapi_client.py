"""Product Advertising API (PA-API 5.0) enrichment client.

Enriches ASINs with catalog data through the ``GetItems`` operation:

  - fixed-size batches, processed strictly one after another
  - a mandatory delay between batches to honour the 1 request/second quota
  - whole-batch retry with exponential backoff on transport/server failures
  - per-item rejections recorded as final failures, never retried
  - exact accounting: every requested ASIN is either enriched or failed

Usage::

    result = enrich_asins(products, paapi_config)
    result.enriched   # List[EnrichedProduct]
    result.stats      # EnrichmentStats
"""
from __future__ import annotations

import json
import logging
import threading
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

import requests

from .common.config_validator import PaApiConfig
from .errors import (
    BATCH_FAILED,
    CANCELLED,
    NO_RESPONSE,
    ReconciliationError,
    TransportError,
)
from .id_normalizer import find_asins, normalize_asin, unique_asins
from .logging_utils import get_logger
from .models import (
    AggregatedProduct,
    BatchResult,
    EnrichedProduct,
    EnrichmentResult,
    EnrichmentStats,
    ItemError,
    SaleInfo,
)
from .signing import RequestSigner, SigV4Signer, sign_paapi_request


LOGGER_NAME = "asinfeed.enrichment"

PARTNER_TYPE = "Associates"
UNKNOWN_TITLE = "Unknown Product"
DEFAULT_CURRENCY = "USD"
UNKNOWN_AVAILABILITY = "Unknown"

TIMEOUT = "TIMEOUT"
CONNECTION_ERROR = "CONNECTION_ERROR"
INVALID_RESPONSE = "INVALID_RESPONSE"
REQUEST_ERROR = "REQUEST_ERROR"


def chunk_asins(asins: Sequence[str], batch_size: int) -> List[List[str]]:
    """Split ``asins`` into consecutive chunks of at most ``batch_size``."""

    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [list(asins[i:i + batch_size]) for i in range(0, len(asins), batch_size)]


def build_request_body(asins: Sequence[str], config: PaApiConfig) -> bytes:
    """Serialize the GetItems payload deterministically (compact, fixed key order)."""

    payload = {
        "ItemIds": list(asins),
        "PartnerTag": config.partner_tag,
        "PartnerType": PARTNER_TYPE,
        "Marketplace": config.marketplace,
        "Resources": list(config.resources),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _error_message_from_body(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:200] or response.reason or ""
    errors = body.get("Errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list) and isinstance(errors[0], dict):
        first = errors[0]
        return f"{first.get('Code', '')}: {first.get('Message', '')}".strip(": ")
    return json.dumps(body)[:200]


def normalize_transport_error(exc: BaseException) -> TransportError:
    """Map any failure raised while calling the API onto one ``TransportError``.

    Timeouts, connection failures, 5xx and 429 responses are retryable.
    Other 4xx responses are not: the same request would fail again.
    """

    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, requests.Timeout):
        return TransportError(TIMEOUT, f"Request timed out: {exc}")
    if isinstance(exc, requests.ConnectionError):
        return TransportError(CONNECTION_ERROR, f"Connection failed: {exc}")
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        status = response.status_code if response is not None else None
        message = _error_message_from_body(response) if response is not None else str(exc)
        retryable = status is None or status >= 500 or status == 429
        code = f"HTTP_{status}" if status is not None else REQUEST_ERROR
        return TransportError(code, message or str(exc), status=status, retryable=retryable)
    if isinstance(exc, ValueError):
        # JSON decoding failures subclass ValueError
        return TransportError(INVALID_RESPONSE, f"Invalid JSON response: {exc}")
    if isinstance(exc, requests.RequestException):
        return TransportError(REQUEST_ERROR, str(exc))
    return TransportError(REQUEST_ERROR, f"{type(exc).__name__}: {exc}")


class RequestPacer:
    """Keep consecutive request starts at least ``min_interval`` seconds apart."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last_start: Optional[float] = None

    def wait(self) -> float:
        """Block until the next request may start. Returns the seconds waited."""

        waited = 0.0
        if self._last_start is not None:
            remaining = self.min_interval - (self._clock() - self._last_start)
            if remaining > 0:
                self._sleep(remaining)
                waited = remaining
        self._last_start = self._clock()
        return waited


class ProductApiClient:
    """One signed GetItems call per :meth:`get_items`."""

    def __init__(
        self,
        config: PaApiConfig,
        session: Optional[requests.Session] = None,
        signer: Optional[RequestSigner] = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.signer = signer or SigV4Signer(config.access_key, config.secret_key, config.region)
        parts = urlsplit(config.endpoint)
        self.host = parts.netloc
        self.path = parts.path or "/"

    def get_items(self, asins: Sequence[str]) -> Dict[str, Any]:
        """POST one batch and return the decoded response body.

        Raises:
            TransportError: On any network, HTTP or decoding failure.
        """

        body = build_request_body(asins, self.config)
        headers = sign_paapi_request(self.signer, self.host, self.path, body)
        try:
            response = self.session.post(
                self.config.endpoint,
                data=body,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise normalize_transport_error(exc) from exc
        if not isinstance(data, dict):
            raise TransportError(INVALID_RESPONSE, "Response body is not a JSON object", retryable=False)
        return data


def _dig(data: Any, *keys: Union[str, int]) -> Any:
    for key in keys:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
        elif not isinstance(data, dict):
            return None
        data = data[key] if isinstance(key, int) else data.get(key)
        if data is None:
            return None
    return data


def _as_price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def derive_sale_info(price: Optional[float], list_price: Optional[float]) -> Optional[SaleInfo]:
    """Return sale details when ``list_price`` is strictly above ``price``."""

    if price is None or list_price is None or list_price <= price or list_price <= 0:
        return None
    amount = list_price - price
    percentage = Decimal(str(amount / list_price * 100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return SaleInfo(
        original_price=list_price,
        discount_amount=round(amount, 2),
        discount_percentage=int(percentage),
    )


def fallback_detail_url(asin: str, base_url: str, partner_tag: str) -> str:
    return f"{base_url.rstrip('/')}/dp/{asin}?tag={partner_tag}"


def extract_product_data(item: Mapping[str, Any], partner_tag: str, base_url: str = "https://www.amazon.com") -> Dict[str, Any]:
    """Pull catalog attributes out of one ``ItemsResult.Items`` entry.

    Missing attributes fall back to fixed defaults; the sale block is only
    present when the listing's saving basis exceeds its price.
    """

    asin = normalize_asin(item.get("ASIN"))
    listing = _dig(item, "Offers", "Listings", 0) or {}
    price = _as_price(_dig(listing, "Price", "Amount"))
    currency = _dig(listing, "Price", "Currency") or DEFAULT_CURRENCY
    list_price = _as_price(_dig(listing, "SavingBasis", "Amount"))

    return {
        "asin": asin,
        "title": _dig(item, "ItemInfo", "Title", "DisplayValue") or UNKNOWN_TITLE,
        "price": price,
        "currency": currency,
        "image_url": _dig(item, "Images", "Primary", "Medium", "URL"),
        "detail_url": item.get("DetailPageURL") or fallback_detail_url(asin, base_url, partner_tag),
        "availability": _dig(listing, "Availability", "Type") or UNKNOWN_AVAILABILITY,
        "sale": derive_sale_info(price, list_price),
    }


def _error_asin(error: Mapping[str, Any], pending: Iterable[str]) -> Optional[str]:
    asin = normalize_asin(error.get("ASIN") or error.get("ItemId"))
    if asin:
        return asin
    # PA-API puts the offending ItemId in the message text
    candidates = set(pending)
    for token in find_asins(error.get("Message", "")):
        if token in candidates:
            return token
    return None


def interpret_response(batch_number: int, asins: Sequence[str], data: Mapping[str, Any], config: PaApiConfig) -> BatchResult:
    """Split a GetItems response into enriched items and item errors.

    ASINs in neither list are failed with ``NO_RESPONSE``.
    """

    result = BatchResult(batch_number=batch_number, asins=list(asins))
    requested = set(asins)
    for item in _dig(data, "ItemsResult", "Items") or []:
        if not isinstance(item, dict):
            continue
        extracted = extract_product_data(item, config.partner_tag, config.base_url)
        asin = extracted["asin"]
        if asin in requested and asin not in result.items:
            result.items[asin] = extracted

    reported = set(result.items)
    for error in data.get("Errors") or []:
        if not isinstance(error, dict):
            continue
        pending = [a for a in asins if a not in reported]
        asin = _error_asin(error, pending)
        if asin is None or asin in reported or asin not in requested:
            continue
        reported.add(asin)
        result.errors.append(ItemError(asin, str(error.get("Code") or "ItemError"), str(error.get("Message") or "")))

    for asin in asins:
        if asin not in reported:
            result.errors.append(ItemError(asin, NO_RESPONSE, "ASIN missing from API response"))
    return result


def fetch_batch(
    client: ProductApiClient,
    batch_number: int,
    asins: Sequence[str],
    config: PaApiConfig,
    *,
    pacer: RequestPacer,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
) -> BatchResult:
    """Run one batch with retry and backoff. Never raises for transport failures."""

    lg = logger or get_logger(LOGGER_NAME)
    last_error: Optional[TransportError] = None
    attempt = 0
    while attempt < config.retry_attempts:
        attempt += 1
        pacer.wait()
        try:
            data = client.get_items(asins)
        except TransportError as err:
            last_error = err
            if not err.retryable:
                lg.warning("Batch %s failed with non-retryable %s", batch_number, err)
                break
            if attempt < config.retry_attempts:
                delay_ms = config.retry_delay_ms * (config.backoff_multiplier ** (attempt - 1))
                lg.warning(
                    "Batch %s failed (attempt %s/%s): %s. Retrying in %.0fms",
                    batch_number,
                    attempt,
                    config.retry_attempts,
                    err,
                    delay_ms,
                )
                sleep(delay_ms / 1000.0)
            continue
        result = interpret_response(batch_number, asins, data, config)
        result.attempts = attempt
        return result

    message = str(last_error) if last_error is not None else "Batch failed"
    lg.error("Batch %s failed after %s attempt(s): %s", batch_number, attempt, message)
    return BatchResult(
        batch_number=batch_number,
        asins=list(asins),
        errors=[ItemError(asin, BATCH_FAILED, message) for asin in asins],
        attempts=attempt,
    )


def _split_input(
    asins_or_products: Sequence[Union[str, AggregatedProduct]],
) -> Tuple[List[str], Dict[str, AggregatedProduct]]:
    originals: Dict[str, AggregatedProduct] = {}
    raw: List[str] = []
    for entry in asins_or_products:
        if isinstance(entry, AggregatedProduct):
            asin = normalize_asin(entry.asin)
            originals.setdefault(asin, entry)
        else:
            asin = normalize_asin(entry)
        raw.append(asin)
    return unique_asins(raw), originals


def _merge(asin: str, attributes: Mapping[str, Any], originals: Mapping[str, AggregatedProduct]) -> EnrichedProduct:
    base = originals.get(asin) or AggregatedProduct(asin=asin, ordered_items=0.0, revenue=0.0, earnings=0.0, clicks=0.0)
    return EnrichedProduct(
        product=base,
        title=attributes["title"],
        price=attributes["price"],
        currency=attributes["currency"],
        image_url=attributes["image_url"],
        detail_url=attributes["detail_url"],
        availability=attributes["availability"],
        sale=attributes["sale"],
    )


def enrich_asins(
    asins_or_products: Sequence[Union[str, AggregatedProduct]],
    config: PaApiConfig,
    *,
    session: Optional[requests.Session] = None,
    signer: Optional[RequestSigner] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> EnrichmentResult:
    """Enrich ASINs (or aggregated products) with PA-API catalog data.

    Batches run sequentially with ``request_delay_ms`` slept between them.
    Enriched products keep input order and every field of the aggregated
    product they were built from.

    Raises:
        ReconciliationError: If enriched + failed does not equal the number
            of distinct ASINs requested.
    """

    lg = logger or get_logger(LOGGER_NAME)
    asins, originals = _split_input(asins_or_products)
    batches = chunk_asins(asins, config.batch_size)
    client = ProductApiClient(config, session=session, signer=signer)
    delay_s = config.request_delay_ms / 1000.0
    pacer = RequestPacer(delay_s, clock=clock, sleep=sleep)
    stats = EnrichmentStats(total_requested=len(asins), batch_count=len(batches))

    lg.info("Enriching %s ASINs in %s batches", len(asins), len(batches))
    results: List[BatchResult] = []
    for index, batch in enumerate(batches, start=1):
        if cancel_event is not None and cancel_event.is_set():
            stats.cancelled = True
            lg.warning("Enrichment cancelled before batch %s/%s", index, len(batches))
            for rest_number, rest in enumerate(batches[index - 1:], start=index):
                results.append(
                    BatchResult(
                        batch_number=rest_number,
                        asins=list(rest),
                        errors=[ItemError(a, CANCELLED, "Enrichment cancelled") for a in rest],
                    )
                )
            break

        lg.info("Processing batch %s/%s (%s ASINs)", index, len(batches), len(batch))
        result = fetch_batch(client, index, batch, config, pacer=pacer, sleep=sleep, logger=lg)
        stats.retry_count += max(result.attempts - 1, 0)
        results.append(result)

        cancelled = cancel_event is not None and cancel_event.is_set()
        if index < len(batches) and not cancelled:
            sleep(delay_s)
            stats.inter_batch_delays += 1

    items: Dict[str, Dict[str, Any]] = {}
    errors: List[ItemError] = []
    for result in results:
        items.update(result.items)
        errors.extend(result.errors)

    enriched = [_merge(asin, items[asin], originals) for asin in asins if asin in items]
    failed = [err.asin for err in errors]

    stats.enriched_count = len(enriched)
    stats.failed_count = len(failed)
    stats.success_rate = stats.enriched_count / stats.total_requested if stats.total_requested else 0.0
    if stats.enriched_count + stats.failed_count != stats.total_requested:
        raise ReconciliationError(
            f"Enriched ({stats.enriched_count}) + failed ({stats.failed_count}) "
            f"!= requested ({stats.total_requested})"
        )

    lg.info(
        "Enrichment complete: %s/%s successful (%.1f%%)",
        stats.enriched_count,
        stats.total_requested,
        stats.success_rate * 100,
    )
    return EnrichmentResult(enriched=enriched, failed=failed, errors=errors, stats=stats, batches=results)
