# affinity_engine/api/v1/routers/cart.py
from fastapi import APIRouter, Depends, Query
from typing import Optional
import time
import logging

from affinity_engine.api.deps import engine_dep, http_error
from affinity_engine.api.v1.schemas.requests import OptimizeCartRequest, RecoverRequest
from affinity_engine.core.errors import EngineError
from affinity_engine.domain.models.cart import OptimizationRule, SuggestionOutcome
from affinity_engine.domain.services.cart_optimizer_svc import optimize_cart_async, record_suggestion_outcome
from affinity_engine.domain.services.recovery_svc import get_abandoned_carts, recover_abandoned_cart

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["cart"])


@router.post("/optimize")
async def optimize(body: OptimizeCartRequest, engine=Depends(engine_dep)):
    """
    Value-raising suggestions for a cart: upsells, cross-sells, bundles,
    free-shipping nudge, quantity discounts, time-limited offers, and the
    predicted final value. Active merchandising rules are applied last.
    """
    logger.info("Request: optimize cart_id=%s items=%s", body.cart.id, len(body.cart.items))
    start_time = time.perf_counter()
    try:
        res = await optimize_cart_async(engine, body.cart, body.context)
    except EngineError as e:
        raise http_error(e) from e
    logger.info(
        "Response: optimize cart_id=%s increase=%.2f degraded=%s elapsed_time=%.4fs",
        res.cart_id, res.estimated_value_increase, res.degraded, time.perf_counter() - start_time,
    )
    return res.model_dump(mode="json")


@router.post("/{cart_id}/recover")
async def recover(cart_id: str, body: Optional[RecoverRequest] = None, engine=Depends(engine_dep)):
    strategy = body.strategy if body else "standard"
    try:
        res = recover_abandoned_cart(engine, cart_id, strategy)
    except EngineError as e:
        raise http_error(e) from e
    return res.model_dump(mode="json")


@router.get("/abandoned")
async def abandoned(
    min_value: Optional[float] = Query(None, ge=0),
    max_hours_since: Optional[float] = Query(None, gt=0),
    engine=Depends(engine_dep),
):
    items = get_abandoned_carts(engine, min_value=min_value, max_hours_since=max_hours_since)
    return {"items": [i.model_dump(mode="json") for i in items], "count": len(items)}


@router.post("/outcomes")
async def outcomes(body: SuggestionOutcome, engine=Depends(engine_dep)):
    """Feed back whether a suggestion was accepted; drives the acceptance estimates."""
    record_suggestion_outcome(engine, body.customer_id, body.category, body.accepted)
    return {"ok": True}


# --- merchandising rules ------------------------------------------------------

@router.get("/rules")
async def list_rules(engine=Depends(engine_dep)):
    items = engine.rules.list_rules()
    return {"items": [r.model_dump() for r in items], "count": len(items)}


@router.post("/rules")
async def add_rule(rule: OptimizationRule, engine=Depends(engine_dep)):
    return engine.rules.add(rule).model_dump()


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, engine=Depends(engine_dep)):
    try:
        engine.rules.remove(rule_id)
    except EngineError as e:
        raise http_error(e) from e
    return {"ok": True, "rule_id": rule_id}
