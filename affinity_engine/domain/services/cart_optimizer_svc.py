# affinity_engine/domain/services/cart_optimizer_svc.py
"""
Cart Optimizer: upsells, cross-sells, bundles, shipping / quantity nudges,
time-limited offers and a probability-weighted value prediction for one cart.

Catalog facts come from a `CatalogLookup` over the current engine snapshot and
customer acceptance rates from an `AcceptanceHistory`; nothing here mutates
the shared similarity / affinity tables.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from affinity_engine.core.config import Settings, get_settings
from affinity_engine.core.errors import ValidationError
from affinity_engine.core.logging import json_preview
from affinity_engine.domain.models.cart import (
    BundleOffer,
    BundleProduct,
    Cart,
    CartContext,
    CartItem,
    CartOptimization,
    CrossSell,
    FreeShippingNudge,
    FreeShippingSuggestion,
    QuantityDiscount,
    SuggestionCategory,
    TimeLimitedOffer,
    Upsell,
    ValuePrediction,
)
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.models.recommendation import Recommendation, RecoContext, RecoFilters
from affinity_engine.domain.services import constants as C
from affinity_engine.domain.services.affinity_svc import get_complementary_products
from affinity_engine.domain.services.recommendation_svc import content_similarity, hybrid_recommendations
from affinity_engine.domain.services.state import EngineState, utcnow

logger = logging.getLogger(__name__)


def format_currency(amount: float) -> str:
    return f"${amount:.2f}"


def calculate_cart_value(cart: Cart) -> float:
    """Σ price × quantity, recomputed on every call."""
    return round(sum(i.price * i.quantity for i in cart.items), 2)


# --- collaborators ----------------------------------------------------------

class CatalogLookup:
    """Catalog / inventory facts for one request, read from a single engine snapshot."""

    def __init__(self, state: EngineState):
        self.state = state

    def product(self, product_id: str) -> Optional[Product]:
        return self.state.products.get(product_id)

    def price(self, product_id: str) -> Optional[float]:
        return self.state.price_of(product_id)

    def stock(self, product_id: str) -> Optional[int]:
        p = self.product(product_id)
        return p.stock if p else None

    def category(self, product_id: str) -> Optional[str]:
        p = self.product(product_id)
        return p.category_id if p else None

    def name(self, product_id: str) -> str:
        p = self.product(product_id)
        return (p.name if p and p.name else None) or product_id

    def higher_value_alternatives(self, product_id: str, current_price: float, limit: int = C.UPSELL_ALTERNATIVES) -> List[Product]:
        """Same category, in stock, pricier; closest by content first, then cheapest."""
        category = self.category(product_id)
        if not category:
            return []
        candidates = [
            p for p in self.state.products.values()
            if p.product_id != product_id
            and p.category_id == category
            and p.in_stock
            and p.current_price is not None
            and p.current_price > current_price
        ]
        candidates.sort(key=lambda p: (-content_similarity(self.state, product_id, p.product_id), p.current_price, p.product_id))
        return candidates[:limit]

    def quantity_tiers(self, product_id: str) -> List[Tuple[int, float]]:
        p = self.product(product_id)
        if p and p.quantity_tiers:
            return sorted((t.min_quantity, t.discount) for t in p.quantity_tiers)
        return list(C.DEFAULT_QUANTITY_TIERS)

    def flash_sales(self, now: datetime) -> List[Product]:
        return [
            p for p in self.state.products.values()
            if p.sale_price is not None and p.sale_ends is not None and p.sale_ends > now
        ]

    def products_for_gap(self, remaining: float, exclude: Sequence[str], limit: int = C.FREE_SHIPPING_SUGGESTIONS) -> List[Product]:
        """Cheapest in-stock products that alone close the free-shipping gap."""
        skip = set(exclude)
        candidates = [
            p for p in self.state.products.values()
            if p.product_id not in skip
            and p.in_stock
            and p.current_price is not None
            and p.current_price >= remaining
        ]
        candidates.sort(key=lambda p: (p.current_price, p.product_id))
        return candidates[:limit]


class AcceptanceHistory:
    """Per-customer offered / accepted counts per suggestion category."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, List[int]]] = defaultdict(lambda: defaultdict(lambda: [0, 0]))

    def record(self, customer_id: str, category: SuggestionCategory, accepted: bool) -> None:
        if not customer_id:
            raise ValidationError("customer_id is required")
        with self._lock:
            row = self._counts[customer_id][category]
            row[0] += 1
            if accepted:
                row[1] += 1

    def rate(self, customer_id: Optional[str], category: str, base: float) -> float:
        """Base rate shrunk towards the customer's own acceptance rate as evidence grows."""
        if not customer_id:
            return base
        with self._lock:
            row = self._counts.get(customer_id, {}).get(category)
            offered, accepted = (row[0], row[1]) if row else (0, 0)
        k = C.ACCEPTANCE_PRIOR_WEIGHT
        return (accepted + base * k) / (offered + k)

    def has_history(self, customer_id: Optional[str]) -> bool:
        with self._lock:
            return bool(customer_id) and customer_id in self._counts


# --- 2) upsells -------------------------------------------------------------

def _quantity_upsell(item: CartItem, lookup: CatalogLookup) -> Optional[Upsell]:
    tiers = lookup.quantity_tiers(item.product_id)
    if not tiers or item.quantity >= tiers[0][0]:
        return None
    min_q, discount = tiers[0]
    return Upsell(
        type="quantity",
        current_product=item.product_id,
        current_price=item.price,
        current_quantity=item.quantity,
        suggested_quantity=min_q,
        discount_percent=round(discount * 100, 2),
        savings=round(item.price * min_q * discount, 2),
        value_increase=round(item.price * (min_q - item.quantity) * (1 - discount), 2),
        reasoning=f"Buy {min_q} and save {discount * 100:g}%",
    )


def _upsell_score(u: Upsell) -> float:
    score = u.value_increase or 0.0
    if u.urgency == "low_stock":
        score *= 1.3
    if u.percent_increase and u.percent_increase <= 30:
        score *= 1.2
    return score


def generate_upsells(cart: Cart, lookup: CatalogLookup, settings: Settings) -> List[Upsell]:
    upsells: List[Upsell] = []
    for item in cart.items:
        if item.price > 0:
            for alt in lookup.higher_value_alternatives(item.product_id, item.price):
                increase = alt.current_price - item.price
                pct = round(increase / item.price * 100, 6)
                if not (C.UPSELL_MIN_INCREASE_PCT <= pct <= C.UPSELL_MAX_INCREASE_PCT):
                    continue
                low_stock = alt.stock is not None and alt.stock < settings.low_stock_threshold
                upsells.append(Upsell(
                    type="upgrade",
                    current_product=item.product_id,
                    suggested_product=alt.product_id,
                    current_price=item.price,
                    suggested_price=alt.current_price,
                    value_increase=round(increase, 2),
                    percent_increase=round(pct, 2),
                    reasoning=f"Upgrade to {alt.name or alt.product_id} for {pct:.0f}% more",
                    benefits=alt.upgrade_benefits or ["Premium quality", "Enhanced features"],
                    urgency="low_stock" if low_stock else None,
                ))
        if item.quantity == 1:
            q = _quantity_upsell(item, lookup)
            if q:
                upsells.append(q)

    scored = [u.model_copy(update={"score": _upsell_score(u)}) for u in upsells]
    scored.sort(key=lambda u: -u.score)
    return scored[:C.UPSELL_LIMIT]


# --- 3) cross-sells ---------------------------------------------------------

def _bundle_discount(state: EngineState, product_a: str, product_b: str, pct: float) -> Optional[float]:
    for bundle in state.affinity.bundles:
        if product_a in bundle.products and product_b in bundle.products:
            return pct
    return None


def _cross_sell_score(cs: CrossSell) -> float:
    score = cs.affinity_score or cs.model_score or 0.5
    if cs.confidence:
        score *= 1 + cs.confidence
    if cs.bundle_discount:
        score *= C.CROSS_SELL_BUNDLE_BOOST
    return score


def customer_recommendations(state: EngineState, customer_id: str, in_cart: Sequence[str], settings: Settings) -> List[Recommendation]:
    """Hybrid picks for a known customer, cart products excluded."""
    return hybrid_recommendations(
        state,
        customer_id,
        RecoContext(cart_products=list(in_cart)),
        10,
        RecoFilters(exclude=list(in_cart)),
        user_k=settings.user_neighbours_k,
        item_k=settings.item_neighbours_k,
    )


def generate_cross_sells(
    cart: Cart,
    state: EngineState,
    context: CartContext,
    settings: Settings,
    ai_recommendations: Optional[List[Recommendation]] = None,
) -> List[CrossSell]:
    """
    Affinity complements of every cart item plus hybrid picks for known customers.
    `ai_recommendations` replaces the hybrid call when already computed
    (an empty list means affinity-only).
    """
    in_cart = cart.product_ids
    in_cart_set = set(in_cart)
    candidates: List[CrossSell] = []

    for item in cart.items:
        for comp in get_complementary_products(state.affinity, item.product_id, C.CROSS_SELL_PER_ITEM):
            if comp.product_id in in_cart_set:
                continue
            candidates.append(CrossSell(
                type="complementary",
                trigger_product=item.product_id,
                suggested_product=comp.product_id,
                affinity_score=comp.affinity_score,
                confidence=comp.confidence,
                reasoning=comp.reasoning,
                bundle_discount=_bundle_discount(state, item.product_id, comp.product_id, settings.bundle_discount_pct),
            ))

    customer_id = context.customer_id or cart.customer_id
    recs = ai_recommendations
    if recs is None and customer_id:
        recs = customer_recommendations(state, customer_id, in_cart, settings)
    if recs:
        for rec in recs:
            candidates.append(CrossSell(
                type="ai_recommended",
                suggested_product=rec.product_id,
                model_score=rec.score,
                confidence=rec.confidence,
                reasoning=rec.reasoning,
                model=rec.model,
            ))

    # first occurrence wins
    seen = set()
    unique = []
    for cs in candidates:
        if cs.suggested_product in seen:
            continue
        seen.add(cs.suggested_product)
        unique.append(cs.model_copy(update={"score": _cross_sell_score(cs)}))
    unique.sort(key=lambda cs: -cs.score)
    return unique[:C.CROSS_SELL_LIMIT]


# --- 4) bundles -------------------------------------------------------------

def _bundle_offer(
    bundle_id: str,
    name: str,
    kind: str,
    products: Sequence[str],
    cart: Cart,
    lookup: CatalogLookup,
    discount_pct: float,
    support: Optional[float],
) -> Optional[BundleOffer]:
    cart_prices = {i.product_id: i.price for i in cart.items}
    present, missing = [], []
    for pid in products:
        price = cart_prices.get(pid)
        if price is None:
            price = lookup.price(pid)
        if price is None:
            return None  # cannot price the bundle
        (present if pid in cart_prices else missing).append(BundleProduct(product_id=pid, price=price))

    if not missing or len(missing) > C.BUNDLE_MAX_MISSING or not present:
        return None
    regular = sum(p.price for p in present) + sum(p.price for p in missing)
    bundle_price = round(regular * (1 - discount_pct / 100), 2)
    savings = round(regular - bundle_price, 2)
    return BundleOffer(
        bundle_id=bundle_id,
        bundle_name=name,
        kind=kind,
        products=list(products),
        missing_products=missing,
        current_products_in_bundle=present,
        regular_price=round(regular, 2),
        bundle_price=bundle_price,
        savings=savings,
        savings_percent=round(savings / regular * 100, 2) if regular else 0.0,
        support=support,
        reasoning=f"Complete the {name} and save {format_currency(savings)}",
    )


def generate_bundle_offers(cart: Cart, state: EngineState, lookup: CatalogLookup, settings: Settings) -> List[BundleOffer]:
    in_cart = set(cart.product_ids)
    offers: List[BundleOffer] = []
    seen_sets = set()

    for bundle in state.affinity.bundles:
        if not in_cart & set(bundle.products):
            continue
        key = frozenset(bundle.products)
        offer = _bundle_offer(
            "bundle_" + "_".join(bundle.products),
            " + ".join(lookup.name(p) for p in bundle.products) + " bundle",
            "mined",
            bundle.products,
            cart,
            lookup,
            settings.bundle_discount_pct,
            bundle.support,
        )
        if offer:
            offers.append(offer)
            seen_sets.add(key)

    # dynamic: each cart item with its strongest affinity partner
    for pid in cart.product_ids:
        rules = state.affinity.rules_by_antecedent.get(pid, ())
        partner = next((r for r in rules if r.product_b not in in_cart), None)
        if partner is None:
            continue
        key = frozenset((pid, partner.product_b))
        if key in seen_sets:
            continue
        offer = _bundle_offer(
            f"dynamic_{pid}_{partner.product_b}",
            f"{lookup.name(pid)} + {lookup.name(partner.product_b)} set",
            "dynamic",
            [pid, partner.product_b],
            cart,
            lookup,
            settings.dynamic_bundle_discount_pct,
            partner.support,
        )
        if offer:
            offers.append(offer)
            seen_sets.add(key)

    offers.sort(key=lambda b: (-b.savings, b.bundle_id))
    return offers[:C.BUNDLE_OFFER_LIMIT]


# --- 5) free shipping -------------------------------------------------------

def calculate_free_shipping_nudge(
    cart_value: float,
    settings: Settings,
    lookup: Optional[CatalogLookup] = None,
    exclude: Sequence[str] = (),
) -> Optional[FreeShippingNudge]:
    threshold = settings.free_shipping_threshold
    if cart_value >= threshold:
        return FreeShippingNudge(qualified=True, message="You qualify for free shipping!", saved=settings.shipping_cost)

    remaining = round(threshold - cart_value, 2)
    if remaining > settings.free_shipping_window:
        return None

    suggestions = []
    if lookup is not None:
        suggestions = [
            FreeShippingSuggestion(product_id=p.product_id, price=p.current_price, name=p.name)
            for p in lookup.products_for_gap(remaining, exclude)
        ]
    return FreeShippingNudge(
        qualified=False,
        remaining=remaining,
        shipping_cost=settings.shipping_cost,
        message=f"Add {format_currency(remaining)} more for free shipping",
        suggestions=suggestions,
        urgency="high" if remaining <= C.FREE_SHIPPING_HIGH_URGENCY else "medium",
    )


# --- 6) quantity discounts --------------------------------------------------

def calculate_quantity_discounts(cart: Cart, lookup: CatalogLookup) -> List[QuantityDiscount]:
    discounts = []
    for item in cart.items:
        for min_q, discount in lookup.quantity_tiers(item.product_id):
            if item.quantity >= min_q:
                continue
            additional = min_q - item.quantity
            new_cost = item.price * min_q * (1 - discount)
            discounts.append(QuantityDiscount(
                product_id=item.product_id,
                current_quantity=item.quantity,
                suggested_quantity=min_q,
                additional_quantity=additional,
                discount_percent=round(discount * 100, 2),
                current_cost=round(item.price * item.quantity, 2),
                new_cost=round(new_cost, 2),
                savings=round(item.price * min_q - new_cost, 2),
                reasoning=f"Buy {additional} more and save {discount * 100:g}%",
            ))
            break  # nearest unmet tier only
    return discounts


# --- 7) time-limited offers -------------------------------------------------

def generate_time_limited_offers(
    cart: Cart,
    cart_value: float,
    lookup: CatalogLookup,
    settings: Settings,
    now: datetime,
) -> List[TimeLimitedOffer]:
    in_cart = set(cart.product_ids)
    offers = []
    for p in lookup.flash_sales(now):
        if p.product_id in in_cart:
            continue
        hours = math.floor((p.sale_ends - now).total_seconds() / 3600)
        if not (0 < hours <= C.FLASH_SALE_WINDOW_HOURS):
            continue
        regular = p.current_price if p.current_price is not None else p.sale_price
        offers.append(TimeLimitedOffer(
            type="flash_sale",
            product_id=p.product_id,
            regular_price=regular,
            sale_price=p.sale_price,
            savings=round(regular - p.sale_price, 2),
            ends_at=p.sale_ends,
            hours_remaining=hours,
            urgency="high" if hours <= C.FLASH_SALE_HIGH_URGENCY_HOURS else "medium",
            reasoning=f"Flash sale ends in {hours} hours!",
        ))
    offers.sort(key=lambda o: (o.hours_remaining, o.product_id))

    if settings.value_bonus_min <= cart_value < settings.value_bonus_threshold:
        remaining = round(settings.value_bonus_threshold - cart_value, 2)
        offers.append(TimeLimitedOffer(
            type="value_bonus",
            threshold=settings.value_bonus_threshold,
            remaining=remaining,
            reward="Free premium gift",
            urgency="medium",
            expires_in="2 hours",
            reasoning=f"Spend {format_currency(remaining)} more to get a free premium gift!",
        ))
    return offers


# --- 8) value prediction ----------------------------------------------------

def suggestion_values(opt: CartOptimization, lookup: CatalogLookup) -> Dict[str, float]:
    """Cart-value increase per category if every suggestion in it were accepted."""
    cross = 0.0
    for cs in opt.cross_sells:
        cross += lookup.price(cs.suggested_product) or 0.0
    return {
        "upsells": sum(u.value_increase for u in opt.upsells),
        "cross_sells": cross,
        "bundle_offers": sum(
            max(0.0, b.bundle_price - sum(p.price for p in b.current_products_in_bundle))
            for b in opt.bundle_offers
        ),
        "free_shipping": (opt.free_shipping.remaining or 0.0) if opt.free_shipping and not opt.free_shipping.qualified else 0.0,
        "quantity_discounts": sum(max(0.0, q.new_cost - q.current_cost) for q in opt.quantity_discounts),
        "time_limited_offers": sum(
            (o.sale_price or 0.0) if o.type == "flash_sale" else (o.remaining or 0.0)
            for o in opt.time_limited_offers
        ),
    }


def predict_final_cart_value(
    opt: CartOptimization,
    lookup: CatalogLookup,
    acceptance: AcceptanceHistory,
    customer_id: Optional[str],
) -> ValuePrediction:
    values = suggestion_values(opt, lookup)
    probs = {c: acceptance.rate(customer_id, c, base) for c, base in C.BASE_ACCEPTANCE.items()}
    by_category = {c: round(values[c] * probs[c], 2) for c in values}
    expected = round(sum(by_category.values()), 2)

    miss = 1.0
    for c, v in values.items():
        if v > 0:
            miss *= 1 - probs[c]
    return ValuePrediction(
        current_value=opt.current_value,
        predicted=round(opt.current_value + expected, 2),
        expected_increase=expected,
        confidence=0.85 if acceptance.has_history(customer_id) else 0.75,
        uplift_probability=round(1 - miss, 4) if expected > 0 else 0.0,
        by_category=by_category,
        acceptance_probabilities={c: round(p, 4) for c, p in probs.items()},
    )


# --- entry point -------------------------------------------------------------

def optimize_cart(
    engine,
    cart: Cart,
    context: Optional[CartContext] = None,
    now: Optional[datetime] = None,
    *,
    state: Optional[EngineState] = None,
    ai_recommendations: Optional[List[Recommendation]] = None,
) -> CartOptimization:
    t0 = time.perf_counter()
    settings = get_settings()
    context = context or CartContext()
    now = now or utcnow()
    state = state or engine.store.current

    # ---- 1) value + active cart record ----
    current_value = calculate_cart_value(cart)
    stored = engine.carts.touch(cart, current_value=current_value, now=now)
    logger.info(
        "cart start cart_id=%s items=%s value=%.2f attempts=%s version=%s",
        cart.id, len(cart.items), current_value, stored.optimization_attempts, state.version,
    )
    opt = CartOptimization(cart_id=cart.id, current_value=current_value)
    if not cart.items:
        logger.info("cart done cart_id=%s empty=True total_time=%.3fs", cart.id, time.perf_counter() - t0)
        return opt

    lookup = CatalogLookup(state)
    customer_id = context.customer_id or cart.customer_id

    opt.upsells = generate_upsells(cart, lookup, settings)                                # 2
    opt.cross_sells = generate_cross_sells(cart, state, context, settings, ai_recommendations)  # 3
    opt.bundle_offers = generate_bundle_offers(cart, state, lookup, settings)             # 4
    opt.free_shipping = calculate_free_shipping_nudge(current_value, settings, lookup, cart.product_ids)  # 5
    opt.quantity_discounts = calculate_quantity_discounts(cart, lookup)                   # 6
    opt.time_limited_offers = generate_time_limited_offers(cart, current_value, lookup, settings, now)  # 7

    # ---- 8) value prediction ----
    opt.predicted_final_value = predict_final_cart_value(opt, lookup, acceptance=engine.acceptance, customer_id=customer_id)
    opt.estimated_value_increase = opt.predicted_final_value.expected_increase

    # ---- 9) rule overlay ----
    opt.applied_rules = engine.rules.apply(cart, opt, lookup.category, settings.shipping_cost)

    logger.debug("cart result=%s", json_preview(opt.model_dump(mode="json"), limit=2000))
    logger.info(
        "cart done cart_id=%s upsells=%s cross_sells=%s bundles=%s rules=%s total_time=%.3fs",
        cart.id, len(opt.upsells), len(opt.cross_sells), len(opt.bundle_offers),
        len(opt.applied_rules), time.perf_counter() - t0,
    )
    return opt


async def optimize_cart_async(
    engine,
    cart: Cart,
    context: Optional[CartContext] = None,
    now: Optional[datetime] = None,
) -> CartOptimization:
    """
    `optimize_cart` off the event loop. The hybrid cross-sell step is bounded by
    `recommendation_timeout_s`; past it the cart gets affinity-only cross-sells
    and `degraded=True`.
    """
    settings = get_settings()
    context = context or CartContext()
    state = engine.store.current
    customer_id = context.customer_id or cart.customer_id

    recs: Optional[List[Recommendation]] = None
    degraded = False
    if customer_id and cart.items:
        try:
            recs = await asyncio.wait_for(
                asyncio.to_thread(customer_recommendations, state, customer_id, cart.product_ids, settings),
                timeout=settings.recommendation_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "cart hybrid timeout cart_id=%s budget=%.2fs -> affinity-only cross-sells",
                cart.id, settings.recommendation_timeout_s,
            )
            recs = []
            degraded = True

    opt = await asyncio.to_thread(optimize_cart, engine, cart, context, now, state=state, ai_recommendations=recs)
    opt.degraded = degraded
    return opt


def record_suggestion_outcome(engine, customer_id: str, category: SuggestionCategory, accepted: bool) -> None:
    engine.acceptance.record(customer_id, category, accepted)
    logger.info("cart outcome customer_id=%s category=%s accepted=%s", customer_id, category, accepted)
