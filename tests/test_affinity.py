import math
from datetime import datetime, timezone

import pytest

from affinity_engine.core.errors import TrainingBudgetExceeded, ValidationError
from affinity_engine.domain.models.order import Order
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.services.affinity_svc import (
    analyze_category_affinity,
    analyze_sequential_patterns,
    build_affinity_snapshot,
    build_co_occurrence_matrix,
    calculate_affinity_score,
    calculate_product_stats,
    compute_pair_metrics,
    count_recent_orders,
    find_product_bundles,
    generate_association_rules,
    get_affinity_matrix,
    get_all_affinity_rules,
    get_complementary_products,
    get_cross_category_recommendations,
    predict_next_purchase,
)
from affinity_engine.domain.services.training_svc import (
    analyze_frequently_bought_together,
    update_affinity_with_order,
)

from tests.sample_data import CATALOG, ORDERS


def _orders(*baskets, customer=None):
    return [
        Order(id=f"o{i}", customer_id=customer, items=[{"product_id": p} for p in basket])
        for i, basket in enumerate(baskets)
    ]


def _catalog():
    return {p["product_id"]: Product.model_validate(p) for p in CATALOG}


def test_support_and_directional_confidence():
    orders = _orders(["A", "B"], ["A", "B"], ["A", "C"])
    co = build_co_occurrence_matrix(orders)
    stats = calculate_product_stats(orders)

    ab = compute_pair_metrics(co, stats, len(orders), "A", "B")
    ba = compute_pair_metrics(co, stats, len(orders), "B", "A")
    assert ab.support == pytest.approx(2 / 3)
    assert ba.support == pytest.approx(2 / 3)
    # P(B|A): A is in all three orders
    assert ab.confidence == pytest.approx(2 / 3)
    # P(A|B): every order with B has A
    assert ba.confidence == pytest.approx(1.0)


def test_co_occurrence_counts_each_direction_once_per_order():
    orders = _orders(["A", "B", "B"], ["B", "A"])
    co = build_co_occurrence_matrix(orders)
    assert co["A"]["B"] == 2
    assert co["B"]["A"] == 2


def test_product_stats_on_empty_history():
    assert calculate_product_stats([]) == {}


def test_rules_only_keep_positive_correlation_sorted_by_lift():
    orders = _orders(["A", "B"], ["A", "B"], ["C", "D"], ["C"], ["A", "B", "C"])
    co = build_co_occurrence_matrix(orders)
    stats = calculate_product_stats(orders)
    rules = generate_association_rules(co, stats, len(orders), min_support=0.1, min_confidence=0.3)

    pairs = {(r.product_a, r.product_b) for r in rules}
    assert ("A", "B") in pairs
    assert ("A", "C") not in pairs  # lift < 1
    for r in rules:
        assert r.lift > 1.0
        assert r.support >= 0.1
        assert r.confidence >= 0.3
    lifts = [r.lift for r in rules]
    assert lifts == sorted(lifts, reverse=True)


def test_rules_are_deterministic_for_identical_input():
    orders = _orders(["A", "B"], ["A", "B"], ["C", "D"], ["C"], ["B", "D"])
    co = build_co_occurrence_matrix(orders)
    stats = calculate_product_stats(orders)
    at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    first = generate_association_rules(co, stats, len(orders), 0.0, 0.0, computed_at=at)
    second = generate_association_rules(co, stats, len(orders), 0.0, 0.0, computed_at=at)
    assert first == second


def test_snapshot_lookups():
    snapshot = build_affinity_snapshot([Order.model_validate(o) for o in ORDERS], _catalog())

    comps = get_complementary_products(snapshot, "tent")
    assert [c.product_id for c in comps] == ["stakes"]
    assert comps[0].affinity_score == pytest.approx(2.0)
    assert comps[0].reasoning.startswith("100.0% of customers")

    score = calculate_affinity_score(snapshot, "stakes", "tent")
    assert score.score == pytest.approx(2.0)
    assert calculate_affinity_score(snapshot, "tent", "mug") is None

    matrix = get_affinity_matrix(snapshot, ["tent", "stakes", "mug"])
    assert matrix.matrix[0][0].is_self
    assert matrix.matrix[0][1].score == pytest.approx(2.0)
    assert matrix.matrix[0][2].score == 0.0

    assert get_all_affinity_rules(snapshot, min_lift=2.5) == []
    assert len(get_all_affinity_rules(snapshot, product_id="stakes")) == 2


def test_sequential_patterns_cross_orders_only():
    orders = [
        Order.model_validate({"id": "1", "customer_id": "c1", "created_at": "2026-01-01T00:00:00Z",
                              "items": [{"product_id": "A"}, {"product_id": "B"}]}),
        Order.model_validate({"id": "2", "customer_id": "c1", "created_at": "2026-01-03T00:00:00Z",
                              "items": [{"product_id": "C"}]}),
        Order.model_validate({"id": "3", "customer_id": "c2", "created_at": "2026-01-01T00:00:00Z",
                              "items": [{"product_id": "A"}]}),
        Order.model_validate({"id": "4", "customer_id": "c2", "created_at": "2026-01-05T00:00:00Z",
                              "items": [{"product_id": "C"}]}),
    ]
    patterns = analyze_sequential_patterns(orders)
    assert "B" not in patterns.get("A", {})  # same order
    ac = patterns["A"]["C"]
    assert ac.count == 2
    assert ac.avg_time_delta == pytest.approx(3.0)
    assert ac.median_time_delta == pytest.approx(3.0)
    assert sorted(ac.occurrences) == [2.0, 4.0]


def test_predict_next_purchase_probabilities_sum_to_one():
    snapshot = build_affinity_snapshot([Order.model_validate(o) for o in ORDERS], _catalog())
    predictions = predict_next_purchase(snapshot, "tent")
    assert {p.product_id for p in predictions} == {"lantern", "headlamp"}
    assert sum(p.probability for p in predictions) == pytest.approx(1.0)
    assert predict_next_purchase(snapshot, "mug") == []


def test_category_affinity_is_pmi():
    catalog = _catalog()
    orders = _orders(["tent", "lantern"], ["tent", "lantern"], ["mug"])
    table = analyze_category_affinity(orders, catalog)
    # P(camping) = P(lighting) = P(both) = 2/3
    assert table["camping"]["lighting"].score == pytest.approx(math.log2(1.5))
    assert table["camping"]["lighting"].co_occurrences == 2


def test_cross_category_recommendations_ranked_by_score():
    snapshot = build_affinity_snapshot([Order.model_validate(o) for o in ORDERS], _catalog())
    items = get_cross_category_recommendations(snapshot, "camping")
    assert [i.category for i in items] == ["lighting"]
    assert items[0].affinity_score == pytest.approx(math.log2(2 / 3))
    assert get_cross_category_recommendations(snapshot, "unknown") == []


def test_bundles_extend_frequent_pairs():
    transactions = [frozenset(t) for t in (["A", "B", "C"],) * 3 + (["A", "B"], ["D"])]
    bundles = find_product_bundles(transactions, min_support=0.5, max_products=4)
    assert [b.products for b in bundles] == [["A", "B"], ["A", "B", "C"], ["A", "C"], ["B", "C"]]
    assert bundles[1].support == pytest.approx(0.6)
    assert bundles[1].size == 3


def test_bundles_respect_size_limits_and_empty_input():
    transactions = [frozenset(["A", "B", "C"])] * 2
    assert all(b.size == 2 for b in find_product_bundles(transactions, 0.5, max_products=2))
    assert all(b.size == 3 for b in find_product_bundles(transactions, 0.5, min_products=3))
    assert find_product_bundles([], 0.1) == []


def test_bundles_stop_at_deadline():
    transactions = [frozenset(["A", "B", "C"])] * 2
    with pytest.raises(TrainingBudgetExceeded):
        find_product_bundles(transactions, 0.5, deadline=0.0)


def test_recent_order_counts_window():
    orders = [Order.model_validate(o) for o in ORDERS]
    counts = count_recent_orders(orders, datetime(2026, 2, 14, tzinfo=timezone.utc), window_days=7)
    # o3 (Feb 10) and o6 (Feb 12)
    assert counts == {"tent": 1, "stakes": 1, "headlamp": 1}


def test_analyze_requires_orders_with_items(engine):
    with pytest.raises(ValidationError):
        analyze_frequently_bought_together(engine, [{"id": "empty", "items": []}])


def test_analyze_skips_malformed_orders(engine):
    summary = analyze_frequently_bought_together(engine, ORDERS + [{"items": "nope"}])
    assert summary.total_orders == len(ORDERS)
    assert summary.total_rules == 2
    assert summary.avg_lift == pytest.approx(2.0)


def test_update_with_order_rebuilds_from_history(trained_engine):
    before = trained_engine.store.current.affinity.total_orders
    summary = update_affinity_with_order(
        trained_engine,
        {"id": "o7", "customer_id": "c5", "items": [{"product_id": "mug"}, {"product_id": "lantern"}]},
    )
    assert summary.total_orders == before + 1
    assert trained_engine.store.current.affinity.co_occurrence["mug"]["lantern"] == 1
