"""Catalog and order history shared by the test modules."""
from datetime import datetime, timezone

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

CATALOG = [
    {"product_id": "tent", "name": "Trail Tent", "category_id": "camping", "brand": "northpeak",
     "current_price": 120.0, "stock": 15, "tags": ["outdoor", "shelter"], "created_at": "2026-01-05T00:00:00Z"},
    {"product_id": "tent_pro", "name": "Trail Tent Pro", "category_id": "camping", "brand": "northpeak",
     "current_price": 150.0, "stock": 4, "tags": ["outdoor", "shelter"], "created_at": "2026-02-20T00:00:00Z"},
    {"product_id": "stakes", "name": "Steel Stakes", "category_id": "camping", "brand": "northpeak",
     "current_price": 12.0, "stock": 100, "tags": ["outdoor"], "created_at": "2025-11-01T00:00:00Z"},
    {"product_id": "lantern", "name": "Camp Lantern", "category_id": "lighting", "brand": "lumen",
     "current_price": 25.0, "stock": 30, "tags": ["outdoor"]},
    {"product_id": "headlamp", "name": "Headlamp", "category_id": "lighting", "brand": "lumen",
     "current_price": 30.0, "stock": 0, "tags": ["outdoor"]},
    {"product_id": "mug", "name": "Enamel Mug", "category_id": "kitchen", "brand": "tinware",
     "current_price": 9.0, "stock": 50},
]


def _order(oid, customer, day, *items):
    return {
        "id": oid,
        "customer_id": customer,
        "created_at": f"2026-02-{day:02d}T10:00:00Z",
        "items": [{"product_id": pid, "quantity": 1, "price": price} for pid, price in items],
    }


# tent <-> stakes is the only pair with lift > 1 (lift 2.0, confidence 1.0)
ORDERS = [
    _order("o1", "c1", 1, ("tent", 120.0), ("stakes", 12.0)),
    _order("o2", "c2", 3, ("tent", 120.0), ("stakes", 12.0), ("lantern", 25.0)),
    _order("o3", "c3", 10, ("tent", 120.0), ("stakes", 12.0)),
    _order("o4", "c1", 5, ("lantern", 25.0)),
    _order("o5", "c4", 20, ("mug", 9.0)),
    _order("o6", "c2", 12, ("headlamp", 30.0)),
]
