from datetime import timedelta

import pytest

from affinity_engine.core.errors import NotFoundError, ValidationError
from affinity_engine.domain.models.cart import Cart
from affinity_engine.domain.services.cart_optimizer_svc import optimize_cart
from affinity_engine.domain.services.recovery_svc import (
    base_recovery_probability,
    generate_discount_code,
    get_abandoned_carts,
    recover_abandoned_cart,
)

from tests.sample_data import NOW


def _seed(engine, cart_id, hours_ago, *items):
    cart = Cart(id=cart_id, items=[{"product_id": pid, "quantity": 1, "price": price} for pid, price in items])
    optimize_cart(engine, cart, now=NOW - timedelta(hours=hours_ago))


def test_base_probability_never_increases_with_time():
    hours = [0, 0.5, 1, 3, 6, 12, 24, 48, 72, 200]
    probs = [base_recovery_probability(h) for h in hours]
    assert probs == sorted(probs, reverse=True)
    assert probs[0] == pytest.approx(0.65)
    assert probs[-1] == pytest.approx(0.05)


def test_discount_code_shape():
    code = generate_discount_code()
    assert code.startswith("SAVE")
    assert len(code) == 12
    assert code[4:].isalnum() and code[4:].upper() == code[4:]


def test_aggressive_recovery(trained_engine):
    _seed(trained_engine, "cart1", 3, ("mug", 9.0))
    result = recover_abandoned_cart(trained_engine, "cart1", "aggressive", now=NOW)

    assert result.hours_since_abandonment == pytest.approx(3.0)
    (incentive,) = result.incentives
    assert incentive.type == "discount"
    assert incentive.value == 10
    assert incentive.code.startswith("SAVE")
    assert result.messaging.type == "social_proof"
    # 0.45 base (1-6h) + 0.15 aggressive
    assert result.estimated_recovery_probability == pytest.approx(0.60)


def test_scarcity_messaging_for_low_stock(trained_engine):
    _seed(trained_engine, "cart2", 30, ("tent_pro", 150.0))
    result = recover_abandoned_cart(trained_engine, "cart2", "standard", now=NOW)

    assert result.messaging.type == "scarcity"
    assert result.messaging.urgency == "high"
    assert result.incentives[0].type == "free_shipping"
    # 0.15 base (24-72h) + 0.08 standard + 0.10 scarcity
    assert result.estimated_recovery_probability == pytest.approx(0.33)


def test_reminder_has_no_incentive_and_probability_is_capped(trained_engine):
    _seed(trained_engine, "cart3", 0.1, ("tent_pro", 150.0))
    result = recover_abandoned_cart(trained_engine, "cart3", "reminder", now=NOW)
    assert result.incentives == []
    assert result.estimated_recovery_probability <= 0.95


def test_recovery_attempts_are_appended(trained_engine):
    _seed(trained_engine, "cart4", 2, ("mug", 9.0))
    recover_abandoned_cart(trained_engine, "cart4", "reminder", now=NOW)
    recover_abandoned_cart(trained_engine, "cart4", "aggressive", now=NOW + timedelta(hours=1))

    cart = trained_engine.carts.get("cart4")
    assert [a.strategy for a in cart.recovery_attempts] == ["reminder", "aggressive"]
    assert cart.status == "abandoned"

    # the customer comes back: attempts are kept, status flips
    optimize_cart(trained_engine, cart, now=NOW + timedelta(hours=2))
    returned = trained_engine.carts.get("cart4")
    assert returned.status == "recovered"
    assert len(returned.recovery_attempts) == 2


def test_recovered_cart_left_again_is_abandoned(trained_engine):
    _seed(trained_engine, "again", 10, ("mug", 9.0))
    recover_abandoned_cart(trained_engine, "again", "reminder", now=NOW - timedelta(hours=9))
    _seed(trained_engine, "again", 5, ("mug", 9.0))
    assert trained_engine.carts.get("again").status == "recovered"

    (view,) = get_abandoned_carts(trained_engine, now=NOW)
    assert view.cart.id == "again"
    assert view.hours_since_abandonment == pytest.approx(5.0)


def test_recovery_errors(trained_engine):
    with pytest.raises(NotFoundError):
        recover_abandoned_cart(trained_engine, "missing")
    _seed(trained_engine, "cart5", 2, ("mug", 9.0))
    with pytest.raises(ValidationError):
        recover_abandoned_cart(trained_engine, "cart5", "bribe")


def test_abandoned_carts_listing(trained_engine):
    _seed(trained_engine, "fresh", 0.1, ("mug", 9.0))
    _seed(trained_engine, "idle", 2, ("mug", 9.0))
    _seed(trained_engine, "idle_big", 5, ("tent", 120.0))
    _seed(trained_engine, "stale", 100, ("tent", 120.0))

    carts = get_abandoned_carts(trained_engine, now=NOW)
    assert [v.cart.id for v in carts] == ["idle_big", "stale", "idle"]

    assert [v.cart.id for v in get_abandoned_carts(trained_engine, min_value=50, max_hours_since=24, now=NOW)] == ["idle_big"]
