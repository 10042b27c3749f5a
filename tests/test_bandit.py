import threading

import numpy as np
import pytest

from affinity_engine.core.errors import ValidationError
from affinity_engine.domain.models.recommendation import PerformanceEvent, PerformanceMetrics
from affinity_engine.domain.services.bandit import PerformanceTracker, beta_parameters, thompson_sampling


def test_beta_parameters_from_counters():
    assert beta_parameters(PerformanceMetrics(impressions=100, conversions=80)) == (81.0, 21.0)
    assert beta_parameters(PerformanceMetrics()) == (1.0, 1.0)


def test_strong_performer_wins_most_draws():
    tracker = PerformanceTracker()
    tracker.set("strong", PerformanceMetrics(impressions=100, conversions=80))
    tracker.set("weak", PerformanceMetrics(impressions=100, conversions=5))
    rng = np.random.default_rng(42)

    wins = sum(
        thompson_sampling(["weak", "strong"], tracker, num_samples=1, rng=rng)[0][0] == "strong"
        for _ in range(1000)
    )
    assert wins > 900


def test_unseen_products_still_get_explored():
    tracker = PerformanceTracker()
    tracker.set("known", PerformanceMetrics(impressions=50, conversions=10))
    rng = np.random.default_rng(1)
    winners = {thompson_sampling(["known", "new"], tracker, num_samples=1, rng=rng)[0][0] for _ in range(200)}
    assert winners == {"known", "new"}


def test_thompson_sampling_shapes():
    tracker = PerformanceTracker()
    assert thompson_sampling([], tracker) == []
    ranked = thompson_sampling(["a", "b", "c", "a"], tracker, num_samples=None)
    assert sorted(pid for pid, _ in ranked) == ["a", "b", "c"]
    samples = [s for _, s in ranked]
    assert samples == sorted(samples, reverse=True)
    assert len(thompson_sampling(["a", "b", "c"], tracker, num_samples=2)) == 2


def test_tracker_counts_concurrent_increments():
    tracker = PerformanceTracker()

    def worker():
        for _ in range(500):
            tracker.track("p1", PerformanceEvent(type="impression"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert tracker.get("p1").impressions == 4000


def test_tracker_totals():
    tracker = PerformanceTracker()
    for _ in range(4):
        tracker.track("p1", PerformanceEvent(type="impression"))
    tracker.track("p1", PerformanceEvent(type="click"))
    tracker.track("p1", PerformanceEvent(type="click"))
    tracker.track("p1", PerformanceEvent(type="conversion", revenue=30.0))

    totals = tracker.totals()
    assert totals.ctr == pytest.approx(0.5)
    assert totals.conversion_rate == pytest.approx(0.5)
    assert totals.avg_revenue_per_conversion == pytest.approx(30.0)


def test_tracker_rejects_missing_product():
    with pytest.raises(ValidationError):
        PerformanceTracker().track("", PerformanceEvent(type="click"))
