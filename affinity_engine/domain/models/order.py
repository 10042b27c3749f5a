from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from affinity_engine.domain.models.product import ensure_utc


class OrderItem(BaseModel):
    product_id: str = Field(min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = Field(default=1, ge=1)
    price: float = Field(default=0.0, ge=0)
    model_config = {"frozen": True}


class Order(BaseModel):
    id: str = Field(validation_alias=AliasChoices("id", "order_id", "orderId"))
    customer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    items: List[OrderItem] = []
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("created_at", "createdAt"))
    model_config = {"frozen": True}

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @property
    def product_ids(self) -> List[str]:
        """Distinct product ids in first-seen order."""
        return list(dict.fromkeys(i.product_id for i in self.items))


class Purchase(BaseModel):
    """One row of the user-product matrix (implicit rating defaults to 1)."""
    customer_id: str = Field(min_length=1, validation_alias=AliasChoices("customer_id", "customerId"))
    product_id: str = Field(min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    rating: float = 1.0
    model_config = {"frozen": True}


class SessionEvent(BaseModel):
    type: str = Field(validation_alias=AliasChoices("type", "event_type", "eventType"))
    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("product_id", "productId"))
    timestamp: Optional[datetime] = None
    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)
