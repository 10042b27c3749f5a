# affinity_engine/domain/services/rules.py
"""
Cart optimization rules: `{field, op, value}` condition -> action, applied as
the last overlay of `optimize_cart`.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from affinity_engine.core.errors import NotFoundError, ValidationError
from affinity_engine.domain.models.cart import (
    AppliedRule,
    Cart,
    CartOptimization,
    FreeShippingNudge,
    OptimizationRule,
    RuleAction,
    RuleCondition,
    TimeLimitedOffer,
)

logger = logging.getLogger(__name__)

CategoryOf = Callable[[str], Optional[str]]

_NUMERIC_OPS = {
    "gte": lambda a, b: a >= b,
    "gt": lambda a, b: a > b,
    "lte": lambda a, b: a <= b,
    "lt": lambda a, b: a < b,
}


def _field_value(field: str, cart: Cart, cart_value: float, category_of: CategoryOf) -> Any:
    if field == "cart_value":
        return cart_value
    if field == "item_count":
        return sum(i.quantity for i in cart.items)
    if field == "customer_id":
        return cart.customer_id
    if field == "product_id":
        return cart.product_ids
    # category
    return [c for c in dict.fromkeys(category_of(pid) for pid in cart.product_ids) if c]


def evaluate_condition(condition: RuleCondition, cart: Cart, cart_value: float, category_of: CategoryOf) -> bool:
    actual = _field_value(condition.field, cart, cart_value, category_of)
    op, expected = condition.op, condition.value

    if isinstance(actual, list):
        # multi-valued fields: product ids, categories
        if op in ("eq", "contains"):
            return expected in actual
        if op == "in":
            return any(a in (expected or []) for a in actual)
        return False

    if op in _NUMERIC_OPS:
        try:
            return _NUMERIC_OPS[op](float(actual), float(expected))
        except (TypeError, ValueError):
            return False
    if op == "eq":
        return actual == expected
    if op == "in":
        return actual in (expected or [])
    if op == "contains":
        return isinstance(actual, str) and str(expected) in actual
    return False


def _suggested_products(opt: CartOptimization) -> Dict[str, List[str]]:
    return {
        "upsells": [u.suggested_product or u.current_product for u in opt.upsells],
        "cross_sells": [c.suggested_product for c in opt.cross_sells],
        "bundle_offers": [p.product_id for b in opt.bundle_offers for p in b.missing_products],
    }


def execute_action(action: RuleAction, opt: CartOptimization, shipping_cost: float) -> Dict[str, Any]:
    """Mutate the optimization in place and report what changed."""
    if action.type == "discount":
        pct = float(action.value or 0)
        opt.time_limited_offers.append(TimeLimitedOffer(
            type="rule_discount",
            discount_percent=pct,
            savings=round(opt.current_value * pct / 100, 2),
            urgency="medium",
            expires_in="24 hours",
            reasoning=f"Take {pct:g}% off your order",
        ))
        return {"discount_percent": pct}

    if action.type == "free_shipping":
        opt.free_shipping = FreeShippingNudge(qualified=True, message="Free shipping unlocked for this cart", saved=shipping_cost)
        return {"free_shipping": True}

    if action.type == "limit_suggestions":
        n = int(action.value or 0)
        opt.upsells = opt.upsells[:n]
        opt.cross_sells = opt.cross_sells[:n]
        opt.bundle_offers = opt.bundle_offers[:n]
        opt.quantity_discounts = opt.quantity_discounts[:n]
        opt.time_limited_offers = opt.time_limited_offers[:n]
        return {"limit": n}

    # exclude_products
    excluded = set(action.value or [])
    before = sum(len(v) for v in _suggested_products(opt).values())
    opt.upsells = [u for u in opt.upsells if (u.suggested_product or u.current_product) not in excluded]
    opt.cross_sells = [c for c in opt.cross_sells if c.suggested_product not in excluded]
    opt.bundle_offers = [b for b in opt.bundle_offers if not excluded & {p.product_id for p in b.missing_products}]
    opt.time_limited_offers = [t for t in opt.time_limited_offers if t.product_id not in excluded]
    after = sum(len(v) for v in _suggested_products(opt).values())
    return {"removed": before - after}


class RuleEvaluator:
    """Registry of optimization rules, evaluated in insertion order."""

    def __init__(self, rules: Optional[List[OptimizationRule]] = None):
        self._lock = threading.Lock()
        self._rules: Dict[str, OptimizationRule] = {r.id: r for r in rules or []}

    def add(self, rule: OptimizationRule) -> OptimizationRule:
        if not rule.id:
            raise ValidationError("rule id is required")
        with self._lock:
            self._rules[rule.id] = rule
        logger.info("rules add id=%s name=%s action=%s", rule.id, rule.name, rule.action.type)
        return rule

    def remove(self, rule_id: str) -> None:
        with self._lock:
            if self._rules.pop(rule_id, None) is None:
                raise NotFoundError(f"Rule '{rule_id}' not found")

    def list_rules(self) -> List[OptimizationRule]:
        with self._lock:
            return list(self._rules.values())

    def apply(
        self,
        cart: Cart,
        opt: CartOptimization,
        category_of: CategoryOf,
        shipping_cost: float,
    ) -> List[AppliedRule]:
        applied: List[AppliedRule] = []
        for rule in self.list_rules():
            if not rule.active:
                continue
            if not evaluate_condition(rule.condition, cart, opt.current_value, category_of):
                continue
            result = execute_action(rule.action, opt, shipping_cost)
            applied.append(AppliedRule(rule_id=rule.id, rule_name=rule.name, action=rule.action.type, result=result))
            logger.debug("rules applied id=%s cart_id=%s result=%s", rule.id, cart.id, result)
        return applied
