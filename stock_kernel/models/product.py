"""
Module: stock_kernel.models.product
Responsibility: ORM persistence for the canonical catalog: products, their
    external identifiers, locations, and the product/location stocking
    association that carries reorder parameters.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - A (source, identifier_type, value) triple belongs to at most one
      product (uq_product_identifier).
    - Raw scanned values resolve through an index on ``value`` alone
      (idx_product_identifier_value), independent of type and source.
    - One ProductLocation row per (product, location).
    - Products are never deleted; ``is_active`` is cleared instead
      (ORM listener in db/immutability.py).

Failure modes:
    - IntegrityError on a duplicate identifier triple.  CatalogService turns
      this into IdentifierConflictError (retryable).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from stock_kernel.db.types import Quantity, UnitCost


class Product(TrackedBase):
    """Canonical catalog entry. Created on first sighting, soft-deactivated."""

    __tablename__ = "products"

    __table_args__ = (
        Index("idx_product_name_key", "name_key"),
        Index("idx_product_active", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(300), nullable=False)
    name_key: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    unit_cost: Mapped[UnitCost | None] = mapped_column(nullable=True)
    unit_price: Mapped[UnitCost | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    identifiers: Mapped[list["ProductIdentifier"]] = relationship(
        "ProductIdentifier",
        back_populates="product",
    )

    def __repr__(self) -> str:
        return f"<Product {self.id}: {self.name!r}>"


class ProductIdentifier(TrackedBase):
    """External identifier for a product, scoped to a source namespace."""

    __tablename__ = "product_identifiers"

    __table_args__ = (
        UniqueConstraint(
            "source",
            "identifier_type",
            "value",
            name="uq_product_identifier",
        ),
        # Raw scanned value lookups
        Index("idx_product_identifier_value", "value"),
        Index("idx_product_identifier_product", "product_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    identifier_type: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(String(200), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    # How the link was established (manual, manual_link, created_new, ...)
    match_method: Mapped[str] = mapped_column(String(30), nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="identifiers")

    def __repr__(self) -> str:
        return (
            f"<ProductIdentifier {self.source}:{self.identifier_type}="
            f"{self.value!r} -> {self.product_id}>"
        )


class Location(TrackedBase):
    """A stocking location (store, warehouse) owned by a merchant."""

    __tablename__ = "locations"

    __table_args__ = (
        UniqueConstraint("merchant_id", "external_ref", name="uq_location_external_ref"),
        Index("idx_location_active", "is_active"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # How external systems refer to this location (e.g. a POS merchant id)
    external_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Location {self.id}: {self.name!r}>"


class ProductLocation(TrackedBase):
    """Stocking association: absence means the product is not stocked there."""

    __tablename__ = "product_locations"

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", name="uq_product_location"),
        Index("idx_product_location_location", "location_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )
    merchant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reorder_point: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    reorder_quantity: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    max_stock_level: Mapped[Quantity | None] = mapped_column(nullable=True)
    preferred_vendor: Mapped[str | None] = mapped_column(String(200), nullable=True)

    def __repr__(self) -> str:
        return f"<ProductLocation {self.product_id}@{self.location_id}>"


__all__ = [
    "Location",
    "Product",
    "ProductIdentifier",
    "ProductLocation",
]
