# affinity_engine/domain/services/recovery_svc.py
"""
Abandoned-cart recovery: idle-time based recovery probability, incentive and
messaging per strategy, and the listing of carts that went idle.
"""
import logging
import secrets
import string
from datetime import datetime
from typing import List, Optional

from affinity_engine.core.config import get_settings
from affinity_engine.core.errors import ValidationError
from affinity_engine.domain.models.cart import (
    AbandonedCartView,
    Cart,
    RecoveryAttempt,
    RecoveryIncentive,
    RecoveryMessaging,
    RecoveryResult,
)
from affinity_engine.domain.services import constants as C
from affinity_engine.domain.services.state import EngineState, utcnow

logger = logging.getLogger(__name__)

STRATEGIES = ("standard", "aggressive", "reminder")
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def base_recovery_probability(hours_since: float) -> float:
    """Non-increasing in elapsed hours."""
    for max_hours, probability in C.RECOVERY_PROBABILITY_TABLE:
        if hours_since < max_hours:
            return probability
    return C.RECOVERY_PROBABILITY_FLOOR


def generate_discount_code() -> str:
    return "SAVE" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def hours_since_update(cart: Cart, now: datetime) -> float:
    if cart.last_updated is None:
        return 0.0
    return max(0.0, (now - cart.last_updated).total_seconds() / 3600)


def _messaging(cart: Cart, state: EngineState, low_stock_threshold: int, window_days: int) -> RecoveryMessaging:
    low_stock = []
    for pid in cart.product_ids:
        p = state.products.get(pid)
        if p is not None and p.stock is not None and p.stock < low_stock_threshold:
            low_stock.append(pid)
    if low_stock:
        return RecoveryMessaging(
            type="scarcity",
            message=f"{len(low_stock)} item(s) in your cart are running low on stock!",
            urgency="high",
        )

    buyers = sum(state.affinity.recent_order_counts.get(pid, 0) for pid in cart.product_ids)
    if buyers:
        message = f"{buyers} people bought items from your cart in the last {window_days} days"
    else:
        message = "Items in your cart are popular with other shoppers"
    return RecoveryMessaging(type="social_proof", message=message, urgency="medium")


def recover_abandoned_cart(engine, cart_id: str, strategy: str = "standard", now: Optional[datetime] = None) -> RecoveryResult:
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown recovery strategy '{strategy}'. Expected one of: {', '.join(STRATEGIES)}")
    settings = get_settings()
    now = now or utcnow()
    cart = engine.carts.require(cart_id)  # NotFoundError
    state = engine.store.current

    hours = hours_since_update(cart, now)
    probability = base_recovery_probability(hours)
    incentives: List[RecoveryIncentive] = []

    if strategy == "aggressive":
        incentives.append(RecoveryIncentive(
            type="discount",
            value=10 if hours < 24 else 15,
            code=generate_discount_code(),
            expires_in="24 hours",
        ))
        probability += C.AGGRESSIVE_BONUS
    elif strategy == "standard":
        incentives.append(RecoveryIncentive(type="free_shipping", value=settings.shipping_cost, expires_in="48 hours"))
        probability += C.STANDARD_BONUS

    messaging = _messaging(cart, state, settings.low_stock_threshold, settings.trending_window_days)
    if messaging.type == "scarcity":
        probability += C.SCARCITY_BONUS

    probability = min(C.RECOVERY_MAX_PROBABILITY, probability)
    engine.carts.append_recovery_attempt(cart_id, RecoveryAttempt(timestamp=now, strategy=strategy, incentives=incentives))

    logger.info(
        "recovery cart_id=%s strategy=%s hours=%.2f probability=%.2f messaging=%s",
        cart_id, strategy, hours, probability, messaging.type,
    )
    return RecoveryResult(
        cart_id=cart_id,
        hours_since_abandonment=round(hours, 4),
        strategy=strategy,
        incentives=incentives,
        messaging=messaging,
        estimated_recovery_probability=round(probability, 4),
    )


def get_abandoned_carts(
    engine,
    min_value: Optional[float] = None,
    max_hours_since: Optional[float] = None,
    now: Optional[datetime] = None,
) -> List[AbandonedCartView]:
    """
    Carts idle for at least the abandonment window, most valuable first.
    Idle time alone decides: a recovered cart left again is listed like any other.
    """
    settings = get_settings()
    now = now or utcnow()
    idle_hours = settings.abandonment_minutes / 60

    out = []
    for cart in engine.carts.list_carts():
        if not cart.items:
            continue
        hours = hours_since_update(cart, now)
        if hours < idle_hours:
            continue
        if min_value is not None and cart.current_value < min_value:
            continue
        if max_hours_since is not None and hours > max_hours_since:
            continue
        out.append(AbandonedCartView(
            cart=cart,
            hours_since_abandonment=round(hours, 4),
            estimated_recovery_probability=base_recovery_probability(hours),
        ))
    out.sort(key=lambda v: (-v.cart.current_value, v.cart.id))
    return out
