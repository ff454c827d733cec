"""
CatalogService -- products, identifiers, locations and stocking associations.

Responsibility:
    Writes the canonical catalog the identity resolver reads.  Products
    are soft-deactivated, never deleted.  Identifier values are
    normalized before they are stored so lookups from any channel agree.

Architecture position:
    Kernel > Services.  Delegates StockLevel creation and removal to
    StockLedgerService, the only writer of that table.

Invariants enforced:
    - (source, identifier_type, value) belongs to at most one product.
      A concurrent link surfaces as IdentifierConflictError (retryable).
    - A stocking association is removed only when on_hand, allocated and
      in_transit are all zero.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.normalization import normalize_identifier_value, normalize_name
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import SYSTEM_ACTOR_ID, IdentifierType, MatchMethod
from stock_kernel.exceptions import (
    IdentifierConflictError,
    LocationNotFoundError,
    ProductNotFoundError,
    ProductStillStockedError,
    UnknownLocationRefError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.product import Location, Product, ProductIdentifier, ProductLocation
from stock_kernel.services.base import BaseService
from stock_kernel.services.stock_ledger import StockLedgerService

logger = get_logger("services.catalog")


class CatalogService(BaseService):
    """Catalog writes.  Flushes, never commits."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        super().__init__(session, clock, policy)
        self._ledger = StockLedgerService(session, self.clock, self.policy)

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    def create_product(
        self,
        name: str,
        *,
        category: str | None = None,
        unit_cost: Decimal | None = None,
        unit_price: Decimal | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Product:
        name = name.strip()
        if not name:
            raise ValueError("Product name must not be empty")

        product = Product(
            name=name,
            name_key=normalize_name(name),
            category=category,
            unit_cost=unit_cost,
            unit_price=unit_price,
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(product)
        self.session.flush()
        logger.info(
            "product_created",
            extra={"product_id": str(product.id), "product_name": name},
        )
        return product

    def get_product(self, product_id: UUID) -> Product:
        product = self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def deactivate_product(self, product_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Product:
        """Soft-deactivate.  Idempotent; history and identifiers are kept."""
        product = self.get_product(product_id)
        if product.is_active:
            product.is_active = False
            product.deactivated_at = self.clock.now()
            product.updated_by_id = actor_id
            self.session.flush()
            logger.info("product_deactivated", extra={"product_id": str(product_id)})
        return product

    def add_identifier(
        self,
        product_id: UUID,
        identifier_type: IdentifierType | str,
        value: str,
        source: str,
        match_method: MatchMethod = MatchMethod.MANUAL,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ProductIdentifier:
        """
        Link an external identifier to a product.

        Idempotent for the same product.

        Raises:
            IdentifierConflictError: The triple already belongs to another
                product, including when it was linked concurrently.
        """
        identifier_type = IdentifierType(identifier_type)
        value = normalize_identifier_value(identifier_type, value)
        self.get_product(product_id)

        existing = self._find_identifier(identifier_type, value, source)
        if existing is not None:
            return self._same_product_or_conflict(existing, product_id)

        identifier = ProductIdentifier(
            product_id=product_id,
            identifier_type=identifier_type.value,
            value=value,
            source=source,
            match_method=MatchMethod(match_method).value,
            created_by_id=actor_id,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(identifier)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find_identifier(identifier_type, value, source)
            if existing is None:
                raise
            return self._same_product_or_conflict(existing, product_id)

        logger.info(
            "product_identifier_added",
            extra={
                "product_id": str(product_id),
                "identifier_type": identifier_type.value,
                "identifier_value": value,
                "source": source,
                "match_method": identifier.match_method,
            },
        )
        return identifier

    # -------------------------------------------------------------------------
    # Locations
    # -------------------------------------------------------------------------

    def create_location(
        self,
        name: str,
        merchant_id: str,
        *,
        source: str | None = None,
        external_ref: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Location:
        location = Location(
            name=name,
            merchant_id=merchant_id,
            source=source,
            external_ref=external_ref,
            is_active=True,
            created_by_id=actor_id,
        )
        self.session.add(location)
        self.session.flush()
        logger.info(
            "location_created",
            extra={
                "location_id": str(location.id),
                "merchant_id": merchant_id,
                "external_ref": external_ref,
            },
        )
        return location

    def get_location(self, location_id: UUID) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        return location

    def find_location_by_ref(self, merchant_id: str, location_ref: str) -> Location:
        """
        Map an inbound event's ``location_ref`` to a Location.

        The ref is matched against ``external_ref`` for the merchant first,
        then taken as a location id.

        Raises:
            UnknownLocationRefError: Neither form matches.
        """
        location = self.session.execute(
            select(Location).where(
                Location.merchant_id == merchant_id,
                Location.external_ref == location_ref,
            )
        ).scalar_one_or_none()
        if location is not None:
            return location

        try:
            location_id = UUID(location_ref)
        except ValueError:
            raise UnknownLocationRefError(merchant_id, location_ref) from None
        location = self.session.get(Location, location_id)
        if location is None or location.merchant_id != merchant_id:
            raise UnknownLocationRefError(merchant_id, location_ref)
        return location

    # -------------------------------------------------------------------------
    # Stocking associations
    # -------------------------------------------------------------------------

    def stock_product_at(
        self,
        product_id: UUID,
        location_id: UUID,
        *,
        merchant_id: str | None = None,
        reorder_point: int = 0,
        reorder_quantity: int = 0,
        max_stock_level: int | None = None,
        preferred_vendor: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ProductLocation:
        """Create or update the association, with a zero StockLevel."""
        self.get_product(product_id)
        location = self.get_location(location_id)
        if reorder_point < 0 or reorder_quantity < 0:
            raise ValueError("reorder_point and reorder_quantity must be >= 0")
        if max_stock_level is not None and max_stock_level < reorder_point:
            raise ValueError("max_stock_level must be >= reorder_point")

        self._ledger.ensure_level(
            product_id, location_id, merchant_id or location.merchant_id, actor_id
        )
        association = self._find_association(product_id, location_id)
        association.merchant_id = merchant_id or association.merchant_id or location.merchant_id
        association.reorder_point = reorder_point
        association.reorder_quantity = reorder_quantity
        association.max_stock_level = max_stock_level
        association.preferred_vendor = preferred_vendor
        association.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "product_stocked",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "reorder_point": reorder_point,
            },
        )
        return association

    def unstock_product_at(self, product_id: UUID, location_id: UUID) -> None:
        """
        Remove the association and its StockLevel row.

        Raises:
            ProductStillStockedError: on_hand, allocated or in_transit is
                non-zero.
        """
        level = self._ledger.ensure_level(product_id, location_id)
        if level.on_hand or level.allocated or level.in_transit:
            raise ProductStillStockedError(product_id, location_id, level.on_hand)

        self._ledger.remove_level(product_id, location_id)
        association = self._find_association(product_id, location_id)
        self.session.delete(association)
        self.session.flush()
        logger.info(
            "product_unstocked",
            extra={"product_id": str(product_id), "location_id": str(location_id)},
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _find_identifier(
        self,
        identifier_type: IdentifierType,
        value: str,
        source: str,
    ) -> ProductIdentifier | None:
        return self.session.execute(
            select(ProductIdentifier).where(
                ProductIdentifier.source == source,
                ProductIdentifier.identifier_type == identifier_type.value,
                ProductIdentifier.value == value,
            )
        ).scalar_one_or_none()

    def _same_product_or_conflict(
        self,
        existing: ProductIdentifier,
        product_id: UUID,
    ) -> ProductIdentifier:
        if existing.product_id == product_id:
            return existing
        logger.warning(
            "product_identifier_conflict",
            extra={
                "identifier_type": existing.identifier_type,
                "identifier_value": existing.value,
                "source": existing.source,
                "requested_product_id": str(product_id),
                "existing_product_id": str(existing.product_id),
            },
        )
        raise IdentifierConflictError(
            existing.identifier_type,
            existing.value,
            existing.source,
            existing_product_id=existing.product_id,
        )

    def _find_association(self, product_id: UUID, location_id: UUID) -> ProductLocation:
        return self.session.execute(
            select(ProductLocation).where(
                ProductLocation.product_id == product_id,
                ProductLocation.location_id == location_id,
            )
        ).scalar_one()
