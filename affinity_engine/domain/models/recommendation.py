from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime
from enum import Enum

from affinity_engine.core.errors import ValidationError


class Strategy(str, Enum):
    COLLABORATIVE = "collaborative"
    CONTENT_BASED = "content-based"
    HYBRID = "hybrid"
    TRENDING = "trending"
    NEW_ARRIVALS = "new-arrivals"
    SESSION_BASED = "session-based"
    THOMPSON_SAMPLING = "thompson-sampling"

    @classmethod
    def parse(cls, name: str) -> "Strategy":
        try:
            return cls(name)
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown strategy '{name}'. Expected one of: {allowed}") from None


# Tag carried by every scored item; one value per producing model.
ModelName = Literal[
    "collaborative_filtering",
    "content_based",
    "hybrid",
    "popularity",
    "trending",
    "new_arrivals",
    "session_based",
    "thompson_sampling",
]


class Recommendation(BaseModel):
    product_id: str
    score: float = Field(ge=0)
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    model: ModelName
    sources: List[str] = []
    model_config = {"frozen": True}  # immuable = safe


class RecoFilters(BaseModel):
    category: Optional[str] = None
    price_min: Optional[float] = Field(default=None, validation_alias=AliasChoices("price_min", "priceMin"))
    price_max: Optional[float] = Field(default=None, validation_alias=AliasChoices("price_max", "priceMax"))
    in_stock: bool = Field(default=False, validation_alias=AliasChoices("in_stock", "inStock"))
    exclude: List[str] = []
    model_config = {"frozen": True}


class RecoContext(BaseModel):
    """Request-scoped context. Unknown keys are kept for the analytics log."""
    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("product_id", "productId"))
    cart_products: List[str] = Field(default_factory=list, validation_alias=AliasChoices("cart_products", "cartProducts"))
    model_config = {"frozen": True, "extra": "allow"}

    @property
    def in_context_products(self) -> List[str]:
        ids = ([self.product_id] if self.product_id else []) + list(self.cart_products)
        return list(dict.fromkeys(ids))


class RecommendationRequest(BaseModel):
    customer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    context: RecoContext = Field(default_factory=RecoContext)
    strategy: str = Strategy.HYBRID.value
    max_recommendations: int = Field(default=10, ge=1, le=200, validation_alias=AliasChoices("max_recommendations", "maxRecommendations"))
    filters: RecoFilters = Field(default_factory=RecoFilters)


class RecommendationResult(BaseModel):
    id: str
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    strategy: Strategy
    recommendations: List[Recommendation]
    context: RecoContext
    timestamp: datetime
    expires_at: datetime
    degraded: bool = False  # True when the request timed out and popularity was served
    model_config = {"frozen": True}


class PerformanceMetrics(BaseModel):
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0


class PerformanceEvent(BaseModel):
    type: Literal["impression", "click", "conversion"]
    revenue: float = 0.0


class ModelMetrics(BaseModel):
    impressions: int
    clicks: int
    conversions: int
    revenue: float
    ctr: float
    conversion_rate: float
    avg_revenue_per_conversion: float
