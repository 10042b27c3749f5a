# api/v1/schemas/requests.py
from pydantic import AliasChoices, BaseModel, Field
from typing import Any, Dict, List, Optional

from affinity_engine.domain.models.cart import Cart, CartContext
from affinity_engine.domain.models.order import SessionEvent


class OptimizeCartRequest(BaseModel):
    cart: Cart
    context: CartContext = Field(default_factory=CartContext)


class RecoverRequest(BaseModel):
    strategy: str = "standard"


# Training payloads stay loosely typed: malformed records are skipped, not rejected.
class TrainCollaborativeRequest(BaseModel):
    purchases: List[Dict[str, Any]]


class TrainContentRequest(BaseModel):
    products: List[Dict[str, Any]]


class AnalyzeRequest(BaseModel):
    orders: List[Dict[str, Any]]
    min_support: Optional[float] = Field(default=None, ge=0, le=1, validation_alias=AliasChoices("min_support", "minSupport"))
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1, validation_alias=AliasChoices("min_confidence", "minConfidence"))


class MatrixRequest(BaseModel):
    product_ids: List[str] = Field(min_length=1, validation_alias=AliasChoices("product_ids", "productIds"))


class SessionEventsRequest(BaseModel):
    events: List[SessionEvent]


class ThompsonRequest(BaseModel):
    product_ids: List[str] = Field(min_length=1, validation_alias=AliasChoices("product_ids", "productIds"))
    num_samples: Optional[int] = Field(default=5, ge=1, validation_alias=AliasChoices("num_samples", "numSamples"))


class ThompsonItemOut(BaseModel):
    product_id: str
    sample: float


class ThompsonResultOut(BaseModel):
    items: List[ThompsonItemOut]
    count: int
