# affinity_engine/domain/repositories/product_repo.py

from __future__ import annotations
from typing import Optional, List
from motor.motor_asyncio import AsyncIOMotorDatabase
from affinity_engine.domain.models.product import Product

# Fields the engine reads; everything else stays in Mongo
_PROJECTION = {
    "_id": 0,
    "product_id": 1,
    "name": 1,
    "brand": 1,
    "description": 1,
    "category_id": 1,
    "category_path": 1,
    "current_price": 1,
    "original_price": 1,
    "currency": 1,
    "tags": 1,
    "color": 1,
    "size": 1,
    "image_url": 1,
    "stock": 1,
    "quantity_tiers": 1,
    "sale_price": 1,
    "sale_ends": 1,
    "upgrade_benefits": 1,
    "created_at": 1,
    "updated_at": 1,
}


class ProductRepo:
    """
    Catalog source backed by the 'products' collection.
    `list_products` returns raw documents; the training job validates them and
    skips malformed ones.
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str = "products"):
        self.col = db[collection_name]

    async def get_by_product_id(self, product_id: str) -> Optional[Product]:
        doc = await self.col.find_one({"product_id": product_id}, _PROJECTION)
        return Product.model_validate(doc) if doc else None

    async def list_products(self, limit: Optional[int] = None) -> List[dict]:
        cursor = self.col.find({}, _PROJECTION).sort("product_id", 1)
        if limit:
            cursor = cursor.limit(limit)
        return [doc async for doc in cursor]
