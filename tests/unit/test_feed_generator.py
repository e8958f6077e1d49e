import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from asinfeed.feed_generator import (
    SALE_FIELDS,
    FeedOptions,
    assemble_feed,
    feed_to_json,
    format_product,
    list_feeds,
    read_feed,
    write_feed,
)
from asinfeed.models import AggregatedProduct, EnrichedProduct, EnrichmentStats, FeedStatus, SaleInfo


def _product(asin, rank, price=20.0, sale=None, tags=(), ordered=4, revenue=80.0, clicks=8):
    base = AggregatedProduct(
        asin,
        ordered_items=ordered,
        revenue=revenue,
        earnings=revenue / 10,
        clicks=clicks,
        conversion_rate=ordered / clicks if clicks else 0.0,
        revenue_per_click=revenue / clicks if clicks else 0.0,
        earnings_per_click=revenue / 10 / clicks if clicks else 0.0,
        average_order_value=revenue / ordered if ordered else 0.0,
        source_tags=tuple(tags),
        rank=rank,
    )
    return EnrichedProduct(base, title=f"Item {asin}", price=price, detail_url=None, sale=sale)


def _options(tmp_path=None, **kwargs):
    defaults = dict(
        output_dir=tmp_path or "feeds",
        partner_tag="mytag-20",
        report_date="2024-05-06",
        generated_at=datetime(2024, 5, 7, 8, 0, tzinfo=timezone.utc),
    )
    defaults.update(kwargs)
    return FeedOptions(**defaults)


def test_formatted_product_json_round_trip():
    sale = SaleInfo(original_price=49.99, discount_amount=20.0, discount_percentage=40)
    result = assemble_feed([_product("B000000001", 1, price=29.99, sale=sale, tags=("t1",))], _options())

    parsed = json.loads(feed_to_json(result)["feed"])

    assert parsed[0]["asin"] == "B000000001"
    assert parsed[0]["title"] == "Item B000000001"
    assert parsed[0]["price"] == 29.99
    assert parsed[0]["rank"] == 1
    assert parsed[0]["link"] == "https://www.amazon.com/dp/B000000001?tag=mytag-20"
    assert parsed[0]["epc"] == pytest.approx(1.0)
    assert parsed[0]["tag"] == "t1"
    assert json.loads(feed_to_json(result)["metadata"])["total_asins"] == 1


def test_sale_fields_all_or_nothing():
    on_sale = format_product(_product("B000000001", 1, sale=SaleInfo(30.0, 10.0, 33)))
    full_price = format_product(_product("B000000002", 2))

    assert all(f in on_sale for f in SALE_FIELDS)
    assert on_sale["is_on_sale"] is True
    assert not any(f in full_price for f in SALE_FIELDS)


def test_multiple_tags_listed_and_missing_attributes_fall_back():
    product = EnrichedProduct(
        AggregatedProduct("B000000003", 1, 1, 1, 1, source_tags=("a", "b"), items_shipped=2.0),
        title="",
        currency="",
        availability="",
    )

    out = format_product(product, "mytag-20")

    assert out["tags"] == ["a", "b"]
    assert "tag" not in out
    assert out["items_shipped"] == 2.0
    assert out["title"] == "Unknown Product"
    assert out["currency"] == "USD"
    assert out["availability"] == "Unknown"


def test_metadata_sums_and_sale_statistics():
    products = [
        _product("B000000001", 1, price=10.0, sale=SaleInfo(20.0, 10.0, 50), ordered=2, revenue=20.0, clicks=4),
        _product("B000000002", 2, price=30.0, ordered=3, revenue=90.0, clicks=6),
        _product("B000000003", 3, price=None, ordered=0, revenue=0.0, clicks=0),
    ]
    stats = EnrichmentStats(total_requested=4, enriched_count=3, failed_count=1, success_rate=0.75)

    meta = assemble_feed(products, _options(enrichment_stats=stats)).metadata

    assert meta.total_asins == 3
    assert meta.summary["total_orders"] == 5
    assert meta.summary["total_revenue"] == 110.0
    assert meta.summary["total_clicks"] == 10
    assert meta.summary["average_price"] == 20.0
    assert meta.summary["average_conversion_rate"] == pytest.approx(0.5)
    assert meta.sales["total_on_sale"] == 1
    assert meta.sales["sale_percentage"] == pytest.approx(100 / 3)
    assert meta.sales["average_discount_percentage"] == 50
    assert meta.enrichment["success_rate"] == 0.75
    assert meta.below_success_threshold is True
    assert meta.report_date == "2024-05-06"
    assert meta.generated_at == "2024-05-07T08:00:00+00:00"


def test_sales_only_restricts_feed_and_metadata():
    products = [
        _product("B000000001", 1, sale=SaleInfo(30.0, 10.0, 33), revenue=10.0),
        _product("B000000002", 2, revenue=500.0),
    ]

    result = assemble_feed(products, _options(sales_only=True))

    assert [p["asin"] for p in result.products] == ["B000000001"]
    assert result.metadata.summary["total_revenue"] == 10.0
    assert result.metadata.sales["sale_percentage"] == 100.0
    assert result.status is FeedStatus.OK


def test_sales_only_with_no_sale_items_is_empty_status_not_error():
    result = assemble_feed([_product("B000000001", 1)], _options(sales_only=True))

    assert result.status is FeedStatus.EMPTY
    assert result.is_empty
    assert result.products == []
    assert result.metadata.summary["average_conversion_rate"] == 0.0
    assert result.metadata.sales["sale_percentage"] == 0.0


def test_write_read_and_list_feeds(tmp_path: Path):
    result = assemble_feed([_product("B000000001", 1)], _options(tmp_path))
    paths = write_feed(result, _options(tmp_path))

    assert paths.feed_path == tmp_path / "mula" / "primary" / "20240506" / "top-products.json"
    assert paths.metadata_path.name == "top-products-meta.json"
    assert read_feed(paths.feed_path)[0]["asin"] == "B000000001"

    older = assemble_feed([_product("B000000002", 1)], _options(tmp_path, report_date="2024-05-01"))
    write_feed(older, _options(tmp_path, report_date="2024-05-01"))

    feeds = list_feeds(tmp_path)
    assert [f["date"] for f in feeds] == ["20240506", "20240501"]
    assert feeds[0]["product_count"] == 1
    assert list_feeds(tmp_path / "nowhere") == []


def test_sales_only_feed_file_name(tmp_path: Path):
    opts = _options(tmp_path, sales_only=True, publisher="pub", credential="alt")
    result = assemble_feed([_product("B000000001", 1, sale=SaleInfo(30.0, 10.0, 33))], opts)

    paths = write_feed(result, opts)

    assert paths.feed_path == tmp_path / "pub" / "alt" / "20240506" / "top-products-sales.json"
    meta = json.loads(paths.metadata_path.read_text(encoding="utf-8"))
    assert meta["sales_only"] is True
    assert meta["publisher"] == "pub"


def test_list_feeds_includes_sales_only_days(tmp_path: Path):
    sales_opts = _options(tmp_path, sales_only=True)
    write_feed(assemble_feed([_product("B000000001", 1, sale=SaleInfo(30.0, 10.0, 33))], sales_opts), sales_opts)
    full_opts = _options(tmp_path, report_date="2024-05-01")
    write_feed(assemble_feed([_product("B000000002", 1), _product("B000000003", 2)], full_opts), full_opts)

    feeds = list_feeds(tmp_path)

    assert [(f["date"], f["sales_only"], f["product_count"]) for f in feeds] == [
        ("20240506", True, 1),
        ("20240501", False, 2),
    ]
    assert feeds[0]["path"].name == "top-products-sales.json"


def test_read_feed_rejects_non_array(tmp_path: Path):
    path = tmp_path / "feed.json"
    path.write_text("{}", encoding="utf-8")

    with pytest.raises(ValueError):
        read_feed(path)
