from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, timezone


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming from Mongo or JSON payloads are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QuantityTier(BaseModel):
    min_quantity: int = Field(ge=2, validation_alias=AliasChoices("min_quantity", "minQuantity"))
    discount: float = Field(gt=0, lt=1)  # fraction, 0.10 == 10% off
    model_config = {"frozen": True}


class Product(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId", "id"))
    name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("category_id", "categoryId", "category"))
    category_path: Optional[str] = None
    brand: Optional[str] = None
    current_price: Optional[float] = Field(default=None, ge=0, validation_alias=AliasChoices("current_price", "currentPrice", "price"))
    original_price: Optional[float] = None
    currency: Optional[str] = None
    stock: Optional[int] = None
    image_url: Optional[str] = None
    tags: List[str] = []
    color: Optional[str] = None
    size: Optional[str] = None
    quantity_tiers: List[QuantityTier] = Field(default_factory=list, validation_alias=AliasChoices("quantity_tiers", "quantityTiers"))
    sale_price: Optional[float] = Field(default=None, validation_alias=AliasChoices("sale_price", "salePrice"))
    sale_ends: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("sale_ends", "saleEnds"))
    upgrade_benefits: List[str] = Field(default_factory=list, validation_alias=AliasChoices("upgrade_benefits", "upgradeBenefits"))
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("created_at", "createdAt"))
    updated_at: Optional[datetime] = None

    model_config = {"frozen": True}  # immuable = safe

    @field_validator("sale_ends", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return [] if v is None else v

    @property
    def in_stock(self) -> bool:
        return self.stock is not None and self.stock > 0
