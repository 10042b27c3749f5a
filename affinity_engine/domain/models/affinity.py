from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class ProductStats(BaseModel):
    total_orders: int
    support: float = Field(ge=0, le=1)
    revenue: float
    avg_basket_size: float
    model_config = {"frozen": True}


class PairMetrics(BaseModel):
    """Raw directional measures for A -> B, before any threshold is applied."""
    product_a: str
    product_b: str
    co_occurrences: int
    support: float
    confidence: float
    lift: float
    model_config = {"frozen": True}


class AffinityRule(BaseModel):
    product_a: str
    product_b: str
    support: float = Field(ge=0, le=1)
    confidence: float = Field(ge=0, le=1)
    lift: float = Field(gt=1.0)
    co_occurrences: int = Field(ge=1)
    type: str = "frequently_bought_together"
    computed_at: datetime
    model_config = {"frozen": True}


class ComplementaryProduct(BaseModel):
    product_id: str
    affinity_score: float
    confidence: float
    support: float
    reasoning: str
    model_config = {"frozen": True}


class SequentialPattern(BaseModel):
    count: int
    avg_time_delta: float      # days
    median_time_delta: float   # days
    occurrences: List[float]
    model_config = {"frozen": True}


class NextPurchase(BaseModel):
    product_id: str
    probability: float = Field(ge=0, le=1)
    avg_days_until_purchase: float
    median_days_until_purchase: float
    occurrences: int
    model_config = {"frozen": True}


class CategoryAffinity(BaseModel):
    score: float               # PMI, can be negative
    co_occurrences: int
    support: float
    model_config = {"frozen": True}


class CrossCategory(BaseModel):
    category: str
    affinity_score: float
    support: float
    co_occurrences: int
    model_config = {"frozen": True}


class ProductBundle(BaseModel):
    products: List[str]
    support: float = Field(ge=0, le=1)
    size: int
    model_config = {"frozen": True}


class AffinityScore(BaseModel):
    score: float
    confidence: float = 0.0
    support: float = 0.0
    type: Optional[str] = None
    is_self: bool = False
    model_config = {"frozen": True}


class AffinityMatrix(BaseModel):
    product_ids: List[str]
    matrix: List[List[AffinityScore]]


class RuleSummary(BaseModel):
    total_rules: int
    avg_support: float
    avg_confidence: float
    avg_lift: float
    total_orders: int
    sequential_patterns: int = 0
    category_affinities: int = 0
    bundles: int = 0
