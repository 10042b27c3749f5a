# Constants for the recommendation and cart pipelines.

# Collaborative filtering blend (user-based vs item-based)
CF_USER_WEIGHT = 0.6
CF_ITEM_WEIGHT = 0.4
CF_CONFIDENCE_SCALE = 10.0   # confidence = min(0.95, score / scale)
CF_MAX_CONFIDENCE = 0.95

# Content-based filtering
CONTEXT_PRODUCT_WEIGHT = 1.5  # currently viewed / in-cart products vs history (1.0)
HISTORY_PRODUCT_WEIGHT = 1.0
MAX_PREFERENCE_BOOST = 0.5
CONTENT_MAX_CONFIDENCE = 0.9
PRICE_BUCKET_SIZE = 50

# Hybrid ensemble
HYBRID_WEIGHTS = {
    "collaborative": 0.5,
    "content": 0.4,
    "trending": 0.1,
}
HYBRID_HEADROOM = 2  # each source asks for 2x the final count

# Cart optimizer: per-category acceptance base rates
BASE_ACCEPTANCE = {
    "upsells": 0.15,
    "cross_sells": 0.25,
    "bundle_offers": 0.30,
    "free_shipping": 0.40,
    "quantity_discounts": 0.20,
    "time_limited_offers": 0.35,
}
ACCEPTANCE_PRIOR_WEIGHT = 10  # pseudo-offers given to the base rate when smoothing

UPSELL_MIN_INCREASE_PCT = 10.0
UPSELL_MAX_INCREASE_PCT = 40.0
UPSELL_ALTERNATIVES = 2
UPSELL_LIMIT = 5
CROSS_SELL_PER_ITEM = 5
CROSS_SELL_LIMIT = 8
CROSS_SELL_BUNDLE_BOOST = 1.4
BUNDLE_OFFER_LIMIT = 3
BUNDLE_MAX_MISSING = 3
FREE_SHIPPING_SUGGESTIONS = 3
FREE_SHIPPING_HIGH_URGENCY = 10.0
FLASH_SALE_WINDOW_HOURS = 24
FLASH_SALE_HIGH_URGENCY_HOURS = 6

DEFAULT_QUANTITY_TIERS = (
    (3, 0.10),
    (5, 0.15),
    (10, 0.20),
)

# Abandoned-cart recovery: (max hours since abandonment, base probability)
RECOVERY_PROBABILITY_TABLE = (
    (1, 0.65),
    (6, 0.45),
    (24, 0.30),
    (72, 0.15),
)
RECOVERY_PROBABILITY_FLOOR = 0.05
RECOVERY_MAX_PROBABILITY = 0.95
AGGRESSIVE_BONUS = 0.15
STANDARD_BONUS = 0.08
SCARCITY_BONUS = 0.10
