import time

import pytest

from affinity_engine.core.errors import TrainingBudgetExceeded
from affinity_engine.domain.services.similarity import (
    build_similarity_index,
    compute_product_similarities,
    compute_user_similarities,
    cosine_similarity,
    paired_ratings,
    pearson_correlation,
)


def test_cosine_is_symmetric_and_bounded():
    a = {"x": 1.0, "y": 2.0}
    b = {"y": 1.0, "z": 3.0}
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert 0.0 <= cosine_similarity(a, b) <= 1.0
    assert cosine_similarity(a, a) == pytest.approx(1.0)


def test_cosine_degenerate_inputs_are_zero():
    assert cosine_similarity({}, {"x": 1.0}) == 0.0
    assert cosine_similarity({"x": 0.0}, {"x": 1.0}) == 0.0
    assert cosine_similarity({"x": 1.0}, {"y": 1.0}) == 0.0


def test_pearson_perfect_correlation():
    assert pearson_correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert pearson_correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)


@pytest.mark.parametrize("xs,ys", [
    ([1.0], [1.0]),               # fewer than two observations
    ([], []),
    ([2.0, 2.0, 2.0], [1, 2, 3]),  # zero variance
])
def test_pearson_degenerate_inputs_are_zero(xs, ys):
    assert pearson_correlation(xs, ys) == 0.0


def test_paired_ratings_keeps_common_keys_only():
    xs, ys = paired_ratings({"u1": 5, "u2": 3, "u3": 1}, {"u2": 4, "u3": 2, "u4": 5})
    assert xs == [3.0, 1.0]
    assert ys == [4.0, 2.0]


def test_product_similarities_keep_both_directions_above_threshold():
    users = {
        "u1": {"p1": 5, "p2": 4, "p3": 1},
        "u2": {"p1": 1, "p2": 2, "p3": 5},
        "u3": {"p1": 3, "p2": 3, "p3": 3},
    }
    index = compute_product_similarities(users, min_common_raters=2, min_similarity=0.3)
    assert index["p1"]["p2"] == pytest.approx(1.0)
    assert index["p2"]["p1"] == pytest.approx(1.0)
    # p1 / p3 are anti-correlated and dropped
    assert "p3" not in index.get("p1", {})


def test_product_similarities_respect_min_common_raters():
    users = {"u1": {"p1": 5, "p2": 4}, "u2": {"p1": 1, "p2": 2}}
    assert compute_product_similarities(users, min_common_raters=3) == {}


def test_user_similarities_skip_users_without_overlap():
    users = {"u1": {"p1": 1}, "u2": {"p1": 1, "p2": 1}, "u3": {"p9": 1}}
    table = compute_user_similarities(users, top_k=5)
    assert set(table["u1"]) == {"u2"}
    assert "u3" not in table


def test_build_index_raises_past_deadline():
    users = {"u1": {"p1": 1, "p2": 2}, "u2": {"p1": 2, "p2": 1}}
    with pytest.raises(TrainingBudgetExceeded):
        build_similarity_index(users, deadline=time.monotonic() - 1)
