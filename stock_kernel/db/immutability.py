"""
ORM-level immutability enforcement for the stock ledger.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | Rule                                | Why
----------------|-------------------------------------|-------------------------------
StockMovement   | No UPDATE, no DELETE, ever          | The ledger is append-only;
                |                                     | corrections are new movements
Product         | No DELETE                           | Soft-deactivated; movements
                |                                     | and snapshots reference it

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below raise ImmutabilityViolationError from those
events, aborting the flush; the caller's transaction is then rolled back.

Bulk ``session.execute(update(...))`` statements bypass mapper events.
The kernel never issues bulk statements against StockMovement.

Usage:

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

    unregister_immutability_listeners()  # TESTS ONLY
"""

from sqlalchemy import event
from sqlalchemy.orm import Session

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_movement_update(mapper, connection, target):
    _block(
        "StockMovement",
        target,
        "UPDATE",
        "stock movements are append-only; post a compensating movement",
    )


def _check_movement_delete(mapper, connection, target):
    _block(
        "StockMovement",
        target,
        "DELETE",
        "stock movements are append-only; post a compensating movement",
    )


def _check_product_delete_before_flush(session, flush_context, instances):
    from stock_kernel.models.product import Product

    for obj in list(session.deleted):
        if isinstance(obj, Product):
            _block(
                "Product",
                obj,
                "DELETE",
                "products are soft-deactivated, never deleted",
            )


_registered = False


def register_immutability_listeners() -> None:
    """Install the ORM listeners (idempotent)."""
    global _registered
    if _registered:
        return

    from stock_kernel.models.stock import StockMovement

    event.listen(StockMovement, "before_update", _check_movement_update)
    event.listen(StockMovement, "before_delete", _check_movement_delete)
    event.listen(Session, "before_flush", _check_product_delete_before_flush)
    _registered = True
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """Remove the ORM listeners. FOR TESTING ONLY."""
    global _registered
    if not _registered:
        return

    from stock_kernel.models.stock import StockMovement

    event.remove(StockMovement, "before_update", _check_movement_update)
    event.remove(StockMovement, "before_delete", _check_movement_delete)
    event.remove(Session, "before_flush", _check_product_delete_before_flush)
    _registered = False
