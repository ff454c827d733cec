"""
ProductIdentityResolver -- external identifier -> canonical product.

Lookup order:
    1. Exact (source, type, value).
    2. Exact (type, value) in any other source, accepted only when every
       match points at the same product.
    3. Fuzzy name + location, only when ``policy.fuzzy_matching_enabled``
       and the identifier carries a name.  Exactly one active product
       with the same normalized name must be stocked at the location.

A miss returns None (``resolve``) or raises UnresolvedIdentifierError
(``resolve_strict``).  The resolver never creates products; misses go to
the ReconciliationQueue.  Non-exact matches carry their MatchMethod so the
ledger can record how the product was chosen.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.normalization import normalize_identifier_value, normalize_name
from stock_kernel.domain.types import (
    ExternalIdentifier,
    IdentifierType,
    MatchMethod,
    ResolutionResult,
)
from stock_kernel.exceptions import UnresolvedIdentifierError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.product import Product, ProductIdentifier, ProductLocation
from stock_kernel.services.base import BaseService

logger = get_logger("services.identity_resolver")


class ProductIdentityResolver(BaseService):
    """Read-mostly service; it never writes."""

    def resolve(
        self,
        identifier: ExternalIdentifier,
        location_id: UUID | None = None,
    ) -> ResolutionResult | None:
        identifier_type = IdentifierType(identifier.identifier_type).value
        value = normalize_identifier_value(identifier.identifier_type, identifier.value)

        rows = self.session.execute(
            select(ProductIdentifier.product_id, ProductIdentifier.source).where(
                ProductIdentifier.identifier_type == identifier_type,
                ProductIdentifier.value == value,
            )
        ).all()

        for product_id, source in rows:
            if source == identifier.source:
                return self._matched(identifier, product_id, MatchMethod.EXACT)

        product_ids = {product_id for product_id, _ in rows}
        if len(product_ids) == 1:
            return self._matched(identifier, product_ids.pop(), MatchMethod.EXACT_CROSS_SOURCE)
        if len(product_ids) > 1:
            logger.warning(
                "identifier_ambiguous_across_sources",
                extra={
                    "identifier_type": identifier_type,
                    "identifier_value": value,
                    "candidates": sorted(str(p) for p in product_ids),
                },
            )
            return None

        if self.policy.fuzzy_matching_enabled and identifier.name and location_id:
            product_id = self._fuzzy_name_location(identifier.name, location_id)
            if product_id is not None:
                return self._matched(identifier, product_id, MatchMethod.FUZZY_NAME_LOCATION)

        logger.debug(
            "identifier_unresolved",
            extra={
                "identifier_type": identifier_type,
                "identifier_value": value,
                "source": identifier.source,
            },
        )
        return None

    def resolve_strict(
        self,
        identifier: ExternalIdentifier,
        location_id: UUID | None = None,
    ) -> ResolutionResult:
        """Like ``resolve`` but raises UnresolvedIdentifierError on a miss."""
        result = self.resolve(identifier, location_id)
        if result is None:
            raise UnresolvedIdentifierError(
                IdentifierType(identifier.identifier_type).value,
                identifier.value,
                identifier.source,
            )
        return result

    def resolve_scanned_value(self, value: str) -> ResolutionResult | None:
        """Resolve a raw scanned value regardless of its type or source.

        Uses the index on ``ProductIdentifier.value``.  Ambiguous values
        (linked to more than one product) do not resolve.
        """
        cleaned = "".join(value.split())
        product_ids = set(
            self.session.execute(
                select(ProductIdentifier.product_id)
                .where(ProductIdentifier.value.in_([value.strip(), cleaned]))
                .distinct()
            ).scalars()
        )
        if len(product_ids) != 1:
            return None
        return ResolutionResult(product_ids.pop(), MatchMethod.SCANNED_VALUE)

    def _fuzzy_name_location(self, name: str, location_id: UUID) -> UUID | None:
        candidates = self.session.execute(
            select(Product.id)
            .join(ProductLocation, ProductLocation.product_id == Product.id)
            .where(
                Product.name_key == normalize_name(name),
                Product.is_active.is_(True),
                ProductLocation.location_id == location_id,
            )
        ).scalars().all()
        if len(candidates) == 1:
            return candidates[0]
        return None

    def _matched(
        self,
        identifier: ExternalIdentifier,
        product_id: UUID,
        method: MatchMethod,
    ) -> ResolutionResult:
        log = logger.debug if method is MatchMethod.EXACT else logger.info
        log(
            "identifier_resolved",
            extra={
                "identifier_type": IdentifierType(identifier.identifier_type).value,
                "identifier_value": identifier.value,
                "source": identifier.source,
                "product_id": str(product_id),
                "match_method": method.value,
            },
        )
        return ResolutionResult(product_id, method)
