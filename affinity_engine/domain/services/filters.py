"""Shared post-filters for every recommendation strategy, applied before truncation."""
from typing import Iterable, List, Mapping, Optional

from affinity_engine.domain.models.product import Product
from affinity_engine.domain.models.recommendation import Recommendation, RecoFilters


def _passes(pid: str, product: Optional[Product], filters: RecoFilters, excluded: set) -> bool:
    if pid in excluded:
        return False

    # Catalog-dependent filters: a product we know nothing about cannot prove it matches.
    if filters.category:
        if not product or product.category_id != filters.category:
            return False
    if filters.price_min is not None or filters.price_max is not None:
        if not product or product.current_price is None:
            return False
        if filters.price_min is not None and product.current_price < filters.price_min:
            return False
        if filters.price_max is not None and product.current_price > filters.price_max:
            return False
    if filters.in_stock:
        if not product or not product.in_stock:
            return False
    return True


def apply_filters(
    recs: Iterable[Recommendation],
    catalog: Mapping[str, Product],
    filters: Optional[RecoFilters],
    exclude: Iterable[str] = (),
) -> List[Recommendation]:
    """
    Shared filter pipeline run by every strategy before truncation:
    explicit exclusions, category, price range, stock.
    """
    filters = filters or RecoFilters()
    excluded = set(filters.exclude) | set(exclude)
    return [r for r in recs if _passes(r.product_id, catalog.get(r.product_id), filters, excluded)]
