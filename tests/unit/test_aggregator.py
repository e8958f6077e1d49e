import pytest

from asinfeed.aggregator import (
    RankFilters,
    aggregate_and_rank,
    aggregate_by_asin,
    calculate_percentiles,
    cluster_by_price_range,
    merge_aggregates,
    rank_products,
)
from asinfeed.errors import ConfigurationError
from asinfeed.models import LineItem


def _items():
    return [
        LineItem("B00000000A", ordered_items=2, revenue=20, earnings=2, clicks=10, source_tag="tag-a"),
        LineItem("B00000000B", ordered_items=5, revenue=50, earnings=4, clicks=0),
        LineItem("B00000000A", ordered_items=3, revenue=30, earnings=3, clicks=10, source_tag="tag-b"),
        LineItem("B00000000C", ordered_items=5, revenue=10, earnings=1, clicks=5, source_tag="tag-a"),
        LineItem("B00000000A", ordered_items=0, revenue=0, earnings=0, clicks=5, source_tag="tag-a"),
    ]


def test_aggregate_sums_and_derives_rates_once():
    products = {p.asin: p for p in aggregate_by_asin(_items())}

    a = products["B00000000A"]
    assert a.ordered_items == 5
    assert a.revenue == 50
    assert a.clicks == 25
    assert a.conversion_rate == pytest.approx(5 / 25)
    assert a.revenue_per_click == pytest.approx(2.0)
    assert a.earnings_per_click == pytest.approx(5 / 25)
    assert a.average_order_value == pytest.approx(10.0)
    assert a.source_tags == ("tag-a", "tag-b")

    b = products["B00000000B"]
    assert b.conversion_rate == 0.0
    assert b.revenue_per_click == 0.0
    assert b.source_tags == ()


def test_aggregate_keeps_first_appearance_order():
    assert [p.asin for p in aggregate_by_asin(_items())] == ["B00000000A", "B00000000B", "B00000000C"]


def test_rank_by_revenue_top_one():
    items = [
        LineItem("B00000000A", revenue=10),
        LineItem("B00000000B", revenue=50),
    ]

    result = aggregate_and_rank(items, rank_by="revenue", top_n=1)

    assert [(p.asin, p.rank) for p in result.products] == [("B00000000B", 1)]
    assert result.summary["total_products"] == 2
    assert result.summary["returned_products"] == 1


def test_ties_keep_grouping_order_and_ranks_are_stable():
    items = _items()
    first = aggregate_and_rank(items, rank_by="ordered_items").products
    second = aggregate_and_rank(items, rank_by="ordered_items").products

    # A, B and C all have 5 ordered items
    assert [p.asin for p in first] == ["B00000000A", "B00000000B", "B00000000C"]
    assert [p.rank for p in first] == [1, 2, 3]
    assert first == second


def test_top_n_does_not_renumber_ranks():
    full = aggregate_and_rank(_items(), rank_by="revenue").products
    top_two = aggregate_and_rank(_items(), rank_by="revenue", top_n=2).products

    assert [(p.asin, p.rank) for p in top_two] == [(p.asin, p.rank) for p in full[:2]]


def test_camel_case_and_legacy_ranking_keys_accepted():
    by_camel = aggregate_and_rank(_items(), rank_by="revenuePerClick").products
    by_legacy = aggregate_and_rank(_items(), rank_by="shipped_revenue").products

    assert by_camel[0].asin == "B00000000A"
    assert by_legacy[0].asin in {"B00000000A", "B00000000B"}


def test_invalid_rank_key_lists_valid_keys():
    with pytest.raises(ConfigurationError) as excinfo:
        aggregate_and_rank(_items(), rank_by="popularity")

    assert "conversion_rate" in str(excinfo.value)
    assert "revenue_per_click" in str(excinfo.value)


def test_invalid_top_n_rejected():
    with pytest.raises(ConfigurationError):
        aggregate_and_rank(_items(), top_n=0)


def test_filters_apply_before_ranking():
    filters = RankFilters.from_mapping({"minRevenue": 15, "exclude_asins": ["b00000000b"]})

    result = aggregate_and_rank(_items(), rank_by="revenue", filters=filters)

    assert [(p.asin, p.rank) for p in result.products] == [("B00000000A", 1)]
    assert result.summary["filtered_products"] == 1


def test_include_filter_and_unknown_filter_field():
    included = aggregate_and_rank(_items(), filters=RankFilters(include_asins=frozenset({"B00000000C"})))
    assert [p.asin for p in included.products] == ["B00000000C"]

    with pytest.raises(ConfigurationError):
        RankFilters.from_mapping({"min_popularity": 3})
    with pytest.raises(ConfigurationError):
        RankFilters.from_mapping({"max_revenue": 3})


def test_merging_partition_aggregates_equals_aggregating_everything():
    items = _items()
    whole = aggregate_by_asin(items)

    for split in range(len(items) + 1):
        merged = merge_aggregates(aggregate_by_asin(items[:split]), aggregate_by_asin(items[split:]))
        assert sorted(merged, key=lambda p: p.asin) == sorted(whole, key=lambda p: p.asin)


def test_rank_products_empty_input():
    assert rank_products([], "revenue") == []
    assert aggregate_and_rank([]).products == []


def test_percentiles_and_price_clusters():
    items = [LineItem(f"B00000000{i}", ordered_items=1, revenue=price) for i, price in enumerate([5, 30, 150, 900])]
    products = aggregate_by_asin(items)

    pct = calculate_percentiles(products, "revenue")
    clusters = cluster_by_price_range(products)

    assert pct["min"] == 5
    assert pct["max"] == 900
    assert pct["p50"] == 150
    assert {k: [p.asin for p in v] for k, v in clusters.items()} == {
        "budget": ["B000000000"],
        "mid": ["B000000001"],
        "premium": ["B000000002"],
        "luxury": ["B000000003"],
    }
    assert calculate_percentiles([], "revenue") == {}
