"""Catalog snapshot reader.

Wraps a ``CatalogPort`` source and enforces the checkout contract: either
every requested product is known and active, or the whole read fails.
"""

from typing import Iterable

from .domain import CatalogPort
from .errors import NotFound, ValidationError


class CatalogSnapshotReader:
    """Read authoritative price, stock and eligibility for a basket."""

    def __init__(self, source: CatalogPort):
        self.source = source

    def get_snapshot(self, product_ids: Iterable[str]) -> dict:
        """Return ``{product_id: ProductSnapshot}`` for every id.

        Raises:
            ValidationError: If no ids are given.
            NotFound: If any id is unknown or inactive. No partial mapping
                is ever returned.
            DependencyUnavailable: Propagated from the source.
        """
        ids = sorted(set(product_ids))
        if not ids:
            raise ValidationError("At least one product id is required.", field="items")
        found = self.source.fetch(ids)
        for product_id in ids:
            snap = found.get(product_id)
            if snap is None:
                raise NotFound(f"Product {product_id} does not exist.", product_id=product_id)
            if not snap.active:
                raise NotFound(f"Product {product_id} is not available.", product_id=product_id)
        return {product_id: found[product_id] for product_id in ids}
