from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Any, Dict, Optional, List, Literal
from datetime import datetime

from affinity_engine.domain.models.product import ensure_utc

SuggestionCategory = Literal[
    "upsells",
    "cross_sells",
    "bundle_offers",
    "free_shipping",
    "quantity_discounts",
    "time_limited_offers",
]
RecoveryStrategy = Literal["standard", "aggressive", "reminder"]
CartStatus = Literal["active", "abandoned", "recovered"]


# ----- Cart ------------------------------------------------------------------

class CartItem(BaseModel):
    product_id: str = Field(min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = Field(default=1, ge=1)
    price: float = Field(ge=0)
    model_config = {"frozen": True}


class RecoveryIncentive(BaseModel):
    type: Literal["discount", "free_shipping"]
    value: float
    code: Optional[str] = None
    expires_in: str


class RecoveryAttempt(BaseModel):
    timestamp: datetime
    strategy: RecoveryStrategy
    incentives: List[RecoveryIncentive] = []
    model_config = {"frozen": True}


class Cart(BaseModel):
    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "cart_id", "cartId"))
    customer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    items: List[CartItem] = []
    current_value: float = 0.0
    last_updated: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("last_updated", "lastUpdated"))
    optimization_attempts: int = 0
    recovery_attempts: List[RecoveryAttempt] = []
    status: CartStatus = "active"
    model_config = {"frozen": True}

    @field_validator("last_updated")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @property
    def product_ids(self) -> List[str]:
        return list(dict.fromkeys(i.product_id for i in self.items))


class CartContext(BaseModel):
    customer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_id", "customerId"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    model_config = {"frozen": True, "extra": "allow"}


# ----- Suggestions -----------------------------------------------------------

class Upsell(BaseModel):
    type: Literal["upgrade", "quantity"]
    current_product: str
    suggested_product: Optional[str] = None
    current_price: float
    suggested_price: Optional[float] = None
    value_increase: float = 0.0
    percent_increase: Optional[float] = None
    current_quantity: Optional[int] = None
    suggested_quantity: Optional[int] = None
    discount_percent: Optional[float] = None
    savings: Optional[float] = None
    reasoning: str
    benefits: List[str] = []
    urgency: Optional[str] = None
    score: float = 0.0


class CrossSell(BaseModel):
    type: Literal["complementary", "ai_recommended"]
    trigger_product: Optional[str] = None
    suggested_product: str
    affinity_score: Optional[float] = None
    model_score: Optional[float] = None
    confidence: float = 0.0
    reasoning: str
    bundle_discount: Optional[float] = None   # percent
    model: Optional[str] = None
    score: float = 0.0


class BundleProduct(BaseModel):
    product_id: str
    price: float


class BundleOffer(BaseModel):
    bundle_id: str
    bundle_name: str
    kind: Literal["mined", "dynamic"]
    products: List[str]
    missing_products: List[BundleProduct]
    current_products_in_bundle: List[BundleProduct]
    regular_price: float
    bundle_price: float
    savings: float
    savings_percent: float
    support: Optional[float] = None
    reasoning: str


class FreeShippingSuggestion(BaseModel):
    product_id: str
    price: float
    name: Optional[str] = None


class FreeShippingNudge(BaseModel):
    qualified: bool
    message: str
    saved: Optional[float] = None
    remaining: Optional[float] = None
    shipping_cost: Optional[float] = None
    suggestions: List[FreeShippingSuggestion] = []
    urgency: Optional[Literal["high", "medium"]] = None


class QuantityDiscount(BaseModel):
    product_id: str
    current_quantity: int
    suggested_quantity: int
    additional_quantity: int
    discount_percent: float
    current_cost: float
    new_cost: float
    savings: float
    reasoning: str


class TimeLimitedOffer(BaseModel):
    type: Literal["flash_sale", "value_bonus", "rule_discount"]
    product_id: Optional[str] = None
    regular_price: Optional[float] = None
    sale_price: Optional[float] = None
    savings: Optional[float] = None
    ends_at: Optional[datetime] = None
    hours_remaining: Optional[int] = None
    threshold: Optional[float] = None
    remaining: Optional[float] = None
    reward: Optional[str] = None
    discount_percent: Optional[float] = None
    urgency: Literal["high", "medium"] = "medium"
    expires_in: Optional[str] = None
    reasoning: str


class ValuePrediction(BaseModel):
    current_value: float
    predicted: float
    expected_increase: float
    confidence: float
    uplift_probability: float
    by_category: Dict[str, float] = {}
    acceptance_probabilities: Dict[str, float] = {}


# ----- Optimization rules ----------------------------------------------------

class RuleCondition(BaseModel):
    field: Literal["cart_value", "item_count", "customer_id", "product_id", "category"]
    op: Literal["gte", "gt", "lte", "lt", "eq", "in", "contains"]
    value: Any


class RuleAction(BaseModel):
    type: Literal["discount", "free_shipping", "limit_suggestions", "exclude_products"]
    value: Any = None


class OptimizationRule(BaseModel):
    id: str
    name: str
    active: bool = True
    condition: RuleCondition
    action: RuleAction
    model_config = {"frozen": True}


class AppliedRule(BaseModel):
    rule_id: str
    rule_name: str
    action: str
    result: Dict[str, Any] = {}


class CartOptimization(BaseModel):
    cart_id: str
    current_value: float
    upsells: List[Upsell] = []
    cross_sells: List[CrossSell] = []
    bundle_offers: List[BundleOffer] = []
    free_shipping: Optional[FreeShippingNudge] = None
    quantity_discounts: List[QuantityDiscount] = []
    time_limited_offers: List[TimeLimitedOffer] = []
    estimated_value_increase: float = 0.0
    predicted_final_value: Optional[ValuePrediction] = None
    applied_rules: List[AppliedRule] = []
    degraded: bool = False


# ----- Recovery --------------------------------------------------------------

class RecoveryMessaging(BaseModel):
    type: Literal["scarcity", "social_proof"]
    message: str
    urgency: Literal["high", "medium"]


class RecoveryResult(BaseModel):
    cart_id: str
    hours_since_abandonment: float
    strategy: RecoveryStrategy
    incentives: List[RecoveryIncentive] = []
    messaging: Optional[RecoveryMessaging] = None
    estimated_recovery_probability: float = Field(ge=0, le=0.95)


class AbandonedCartView(BaseModel):
    cart: Cart
    hours_since_abandonment: float
    estimated_recovery_probability: float


class SuggestionOutcome(BaseModel):
    customer_id: str = Field(validation_alias=AliasChoices("customer_id", "customerId"))
    category: SuggestionCategory
    accepted: bool
