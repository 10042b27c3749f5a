import asyncio
import time

import numpy as np
import pytest

from affinity_engine.core.config import get_settings
from affinity_engine.core.errors import ValidationError
from affinity_engine.domain.models.order import SessionEvent
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.models.recommendation import (
    PerformanceMetrics,
    RecoContext,
    RecoFilters,
    RecommendationRequest,
)
from affinity_engine.domain.services import recommendation_svc
from affinity_engine.domain.services.recommendation_svc import (
    calculate_preference_boost,
    collaborative_filtering,
    content_based_filtering,
    extract_product_features,
    generate_recommendations,
    get_new_arrivals,
    get_popular_products,
    get_recommendation,
    hybrid_recommendations,
    thompson_recommendations,
)
from affinity_engine.domain.services.training_svc import train_collaborative_model

PURCHASES = [
    {"customer_id": "u1", "product_id": "p1"},
    {"customer_id": "u1", "product_id": "p2"},
    {"customer_id": "u1", "product_id": "p3"},
    {"customer_id": "u2", "product_id": "p1"},
    {"customer_id": "u2", "product_id": "p2"},
    {"customer_id": "u3", "product_id": "p1"},
    {"customer_id": "u3", "product_id": "p2"},
    {"customer_id": "u3", "product_id": "p4"},
]


def test_collaborative_recommends_what_neighbours_bought(engine):
    result = train_collaborative_model(engine, PURCHASES)
    assert result["user_count"] == 3

    recs = collaborative_filtering(engine.store.current, "u2", 5)
    assert [r.product_id for r in recs] == ["p3", "p4"]
    assert all(r.model == "collaborative_filtering" for r in recs)
    assert all(0 <= r.confidence <= 0.95 for r in recs)


def test_collaborative_never_returns_owned_products(engine):
    train_collaborative_model(engine, PURCHASES)
    recs = collaborative_filtering(engine.store.current, "u1", 10)
    assert not {"p1", "p2", "p3"} & {r.product_id for r in recs}


def test_cold_start_falls_back_to_popularity(trained_engine):
    recs = collaborative_filtering(trained_engine.store.current, "nobody", 3)
    assert [r.model for r in recs] == ["popularity"] * 3
    # tent and stakes are in three orders each
    assert {r.product_id for r in recs[:2]} == {"tent", "stakes"}


def test_popularity_on_empty_state(engine):
    assert get_popular_products(engine.store.current, 5) == []


def test_filters_apply_before_truncation(trained_engine):
    state = trained_engine.store.current
    recs = get_popular_products(state, 2, RecoFilters(category="lighting"))
    assert [r.product_id for r in recs] == ["lantern", "headlamp"]

    recs = get_popular_products(state, 10, RecoFilters(category="lighting", in_stock=True))
    assert [r.product_id for r in recs] == ["lantern"]

    recs = get_popular_products(state, 10, RecoFilters(price_min=20, price_max=100, exclude=["lantern"]))
    assert [r.product_id for r in recs] == ["headlamp"]


def test_new_arrivals_newest_first(trained_engine):
    recs = get_new_arrivals(trained_engine.store.current, 3)
    assert [r.product_id for r in recs] == ["tent_pro", "tent", "stakes"]


def test_feature_extraction_and_preference_cap():
    p = Product(product_id="x", category_id="c", brand="b", current_price=120.0, tags=["t"], color="red")
    features = extract_product_features(p)
    assert features == {"category_c": 1.0, "brand_b": 1.0, "price_100": 1.0, "tag_t": 1.0, "color_red": 1.0}
    assert calculate_preference_boost(features, {k: 1.0 for k in features}) == 0.5
    assert calculate_preference_boost(features, {}) == 0.0


def test_content_based_scores_similar_products(trained_engine):
    recs = content_based_filtering(trained_engine.store.current, None, RecoContext(product_id="tent"), 3)
    assert recs[0].product_id == "tent_pro"
    assert "tent" not in {r.product_id for r in recs}
    assert all(r.score > 0 for r in recs)


def test_hybrid_combines_sources(trained_engine):
    train_collaborative_model(trained_engine, [
        {"customer_id": "c1", "product_id": "tent"},
        {"customer_id": "c2", "product_id": "tent"},
        {"customer_id": "c2", "product_id": "lantern"},
    ])
    recs = hybrid_recommendations(trained_engine.store.current, "c1", RecoContext(), 5)
    assert recs
    assert all(r.model == "hybrid" for r in recs)
    assert recs[0].confidence == pytest.approx(0.95)
    lantern = next(r for r in recs if r.product_id == "lantern")
    assert "collaborative" in lantern.sources


def test_thompson_reranks_pool(trained_engine):
    for pid in ("tent", "tent_pro", "lantern", "headlamp", "mug"):
        trained_engine.tracker.set(pid, PerformanceMetrics(impressions=100, conversions=2))
    trained_engine.tracker.set("stakes", PerformanceMetrics(impressions=100, conversions=90))
    recs = thompson_recommendations(
        trained_engine.store.current, trained_engine.tracker, None, RecoContext(product_id="tent"), 3,
        rng=np.random.default_rng(3),
    )
    assert len(recs) == 3
    assert all(r.model == "thompson_sampling" for r in recs)
    assert recs[0].product_id == "stakes"


async def test_unknown_strategy_is_rejected(engine):
    with pytest.raises(ValidationError):
        await generate_recommendations(engine, RecommendationRequest(strategy="magic"))


async def test_result_is_logged_and_retrievable(trained_engine):
    res = await generate_recommendations(trained_engine, RecommendationRequest(strategy="trending", max_recommendations=2))
    assert res.id.startswith("rec_")
    assert len(res.recommendations) == 2
    assert res.expires_at > res.timestamp
    assert not res.degraded

    stored = await get_recommendation(trained_engine, res.id)
    assert stored.id == res.id
    assert await get_recommendation(trained_engine, "rec_missing") is None


async def test_session_strategy_uses_sequential_patterns(trained_engine):
    await trained_engine.events.add_events("s1", [SessionEvent(type="view", product_id="tent")])
    res = await generate_recommendations(
        trained_engine,
        RecommendationRequest(session_id="s1", strategy="session-based", max_recommendations=5),
    )
    assert {r.product_id for r in res.recommendations} == {"lantern", "headlamp"}
    assert all(r.model == "session_based" for r in res.recommendations)


async def test_timeout_degrades_to_popularity(trained_engine, monkeypatch):
    def slow(*args, **kwargs):
        time.sleep(0.5)
        return []

    monkeypatch.setattr(recommendation_svc, "run_strategy", slow)
    monkeypatch.setattr(get_settings(), "recommendation_timeout_s", 0.05)

    res = await generate_recommendations(trained_engine, RecommendationRequest(strategy="hybrid", max_recommendations=3))
    assert res.degraded
    assert [r.model for r in res.recommendations] == ["popularity"] * 3
    await asyncio.sleep(0.5)  # let the abandoned worker finish
