from fastapi import APIRouter, Depends

from affinity_engine.api.deps import engine_dep
from affinity_engine.domain.services.affinity_svc import summarize_rules
from affinity_engine.domain.services.recommendation_svc import get_model_metrics
from affinity_engine.domain.services.recovery_svc import get_abandoned_carts

router = APIRouter(prefix="/analytics", tags=["analytics"])

@router.get("/health")
def analytics_health():
    return {"ok": True}

@router.get("/summary")
def analytics_summary(engine=Depends(engine_dep)):
    state = engine.store.current
    carts = engine.carts.list_carts()
    abandoned = get_abandoned_carts(engine)
    return {
        "model_version": state.version,
        "rules": summarize_rules(state.affinity).model_dump(),
        "performance": get_model_metrics(engine).model_dump(),
        "carts_total": len(carts),
        "carts_recovered": sum(1 for c in carts if c.status == "recovered"),
        "carts_abandoned": len(abandoned),
        "abandoned_value": round(sum(v.cart.current_value for v in abandoned), 2),
    }

@router.get("/top-products")
def analytics_top_products(engine=Depends(engine_dep), limit: int = 10):
    stats = engine.store.current.affinity.product_stats
    ranked = sorted(stats.items(), key=lambda kv: (-kv[1].total_orders, kv[0]))[:limit]
    return {"items": [{"product_id": pid, **s.model_dump()} for pid, s in ranked]}
