import pytest
from fastapi.testclient import TestClient

from affinity_engine.domain.services.engine import reset_engine
from affinity_engine.main import app

from tests.sample_data import CATALOG, ORDERS


@pytest.fixture
def client():
    reset_engine()
    with TestClient(app) as c:
        yield c


@pytest.fixture
def trained_client(client):
    assert client.post("/api/ml/train/content", json={"products": CATALOG}).status_code == 200
    assert client.post("/api/affinity/analyze", json={"orders": ORDERS}).status_code == 200
    return client


def test_health_without_stores(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["checks"]["mongodb"] == "skipped"
    assert body["checks"]["redis"] == "skipped"


def test_config_hides_connection_strings(client):
    body = client.get("/config").json()
    assert "MONGO_URI" not in body
    assert body["free_shipping_threshold"] == 75.0


def test_training_endpoints(client):
    res = client.post("/api/ml/train/content", json={"products": CATALOG + [{"name": "broken"}]})
    assert res.status_code == 200
    assert res.json()["skipped"] == 1

    res = client.post("/api/ml/train/collaborative", json={"purchases": [
        {"customerId": "c1", "productId": "tent"},
        {"customerId": "c2", "productId": "tent"},
        {"customerId": "c2", "productId": "stakes"},
    ]})
    assert res.json()["user_count"] == 2

    metrics = client.get("/api/ml/metrics").json()
    assert metrics["users"] == 2
    assert metrics["products"] == len(CATALOG)


def test_retrain_without_mongo_is_a_client_error(client):
    assert client.post("/api/ml/retrain").status_code == 400


def test_affinity_endpoints(trained_client):
    comps = trained_client.get("/api/affinity/complementary/tent").json()
    assert [i["product_id"] for i in comps["items"]] == ["stakes"]

    score = trained_client.get("/api/affinity/score", params={"product_a": "tent", "product_b": "stakes"})
    assert score.json()["score"] == pytest.approx(2.0)
    assert trained_client.get("/api/affinity/score", params={"product_a": "tent", "product_b": "mug"}).status_code == 404

    matrix = trained_client.post("/api/affinity/matrix", json={"productIds": ["tent", "stakes"]}).json()
    assert matrix["matrix"][0][0]["is_self"] is True

    rules = trained_client.get("/api/affinity/rules", params={"min_lift": 1.5}).json()
    assert rules["count"] == 2

    nxt = trained_client.get("/api/affinity/next/tent").json()
    assert {i["product_id"] for i in nxt["items"]} == {"lantern", "headlamp"}

    cats = trained_client.get("/api/affinity/category/camping").json()
    assert cats["items"][0]["category"] == "lighting"

    bundles = trained_client.get("/api/affinity/bundles", params={"product_id": "tent"}).json()
    assert bundles["items"][0]["products"] == ["stakes", "tent"]


def test_analyze_rejects_empty_history(client):
    assert client.post("/api/affinity/analyze", json={"orders": []}).status_code == 400


def test_add_single_order(trained_client):
    res = trained_client.post("/api/affinity/orders", json={
        "id": "o7", "customer_id": "c5", "items": [{"product_id": "mug"}, {"product_id": "lantern"}],
    })
    assert res.status_code == 200
    assert res.json()["total_orders"] == len(ORDERS) + 1
    assert trained_client.post("/api/affinity/orders", json={"customer_id": "c5"}).status_code == 400


def test_recommendation_round_trip(trained_client):
    res = trained_client.post("/api/recommendations", json={"strategy": "trending", "maxRecommendations": 3})
    assert res.status_code == 200
    body = res.json()
    assert len(body["recommendations"]) == 3

    fetched = trained_client.get(f"/api/recommendations/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]
    assert trained_client.get("/api/recommendations/rec_unknown").status_code == 404


def test_unknown_strategy_is_400(client):
    res = client.post("/api/recommendations", json={"strategy": "magic"})
    assert res.status_code == 400
    assert "Unknown strategy" in res.json()["detail"]


def test_tracking_and_thompson(client):
    for _ in range(3):
        client.post("/api/recommendations/track/p1", json={"type": "impression"})
    client.post("/api/recommendations/track/p1", json={"type": "conversion", "revenue": 12.5})

    metrics = client.get("/api/ml/metrics").json()["performance"]
    assert metrics["impressions"] == 3
    assert metrics["conversions"] == 1

    res = client.post("/api/recommendations/thompson", json={"productIds": ["p1", "p2", "p3"], "numSamples": 2})
    assert res.json()["count"] == 2


def test_session_events_feed_session_strategy(trained_client):
    res = trained_client.post("/api/recommendations/sessions/s1/events", json={"events": [
        {"type": "view", "productId": "tent"},
    ]})
    assert res.json()["added"] == 1

    body = trained_client.post("/api/recommendations", json={"sessionId": "s1", "strategy": "session-based"}).json()
    assert {r["product_id"] for r in body["recommendations"]} == {"lantern", "headlamp"}


def test_cart_flow(trained_client):
    cart = {"id": "cart1", "customerId": "c1", "items": [{"productId": "tent", "quantity": 1, "price": 120.0}]}
    res = trained_client.post("/api/cart/optimize", json={"cart": cart})
    assert res.status_code == 200
    body = res.json()
    assert body["free_shipping"]["qualified"] is True
    assert body["predicted_final_value"]["current_value"] == pytest.approx(120.0)

    res = trained_client.post("/api/cart/cart1/recover", json={"strategy": "aggressive"})
    assert res.status_code == 200
    assert res.json()["incentives"][0]["type"] == "discount"

    assert trained_client.post("/api/cart/cart1/recover", json={"strategy": "bribe"}).status_code == 400
    assert trained_client.post("/api/cart/nope/recover").status_code == 404

    res = trained_client.post("/api/cart/outcomes", json={"customerId": "c1", "category": "upsells", "accepted": True})
    assert res.json() == {"ok": True}


def test_rules_crud(client):
    rule = {
        "id": "vip",
        "name": "VIP free shipping",
        "condition": {"field": "customer_id", "op": "eq", "value": "vip"},
        "action": {"type": "free_shipping"},
    }
    assert client.post("/api/cart/rules", json=rule).status_code == 200
    assert client.get("/api/cart/rules").json()["count"] == 1
    assert client.delete("/api/cart/rules/vip").status_code == 200
    assert client.delete("/api/cart/rules/vip").status_code == 404


def test_analytics_summary(trained_client):
    body = trained_client.get("/api/analytics/summary").json()
    assert body["rules"]["total_rules"] == 2
    assert body["carts_total"] == 0
