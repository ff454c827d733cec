"""
StockLedgerService -- the only writer of StockMovement and StockLevel.

Responsibility:
    Appends signed quantity changes to the append-only ledger and keeps
    the materialized StockLevel row in step, inside the caller's
    transaction.  Also owns allocation, stocktake, transfers and the
    replay path that rebuilds StockLevel from the ledger.

Architecture position:
    Kernel > Services -- imperative shell.  Every other component that
    changes stock (ingestor, reconciliation queue, catalog) goes through
    this class.

Invariants enforced:
    - Idempotency: (ref_type, ref_id, product_id, location_id) is looked
      up before insert; the unique constraint uq_stock_movement_ref is the
      backstop, and an IntegrityError inside the insert SAVEPOINT becomes
      ``AppendStatus.DUPLICATE_REF``.
    - Atomic balance update: the StockLevel row is locked
      (``SELECT ... FOR UPDATE``) before the balance is read, and updated
      in the same flush as the movement insert.
    - balance_after chain: ``balance_after = on_hand + qty_change`` in
      insertion (seq) order.
    - available = on_hand - allocated on every write.

Failure modes:
    - InvalidMovementError: zero quantity, unknown reason, half a ref.
    - ProductNotFoundError / LocationNotFoundError: unknown keys.
    - InsufficientAvailableError / OverReleaseError: allocation rules
      (no state change).

Negative balances are allowed.  They surface as NegativeBalance warnings
on the AppendResult and in the log.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.db.types import round_cost
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import (
    SYSTEM_ACTOR_ID,
    AppendResult,
    AppendStatus,
    MatchMethod,
    MovementReason,
    MovementRecord,
    RebuildResult,
    StockLevelView,
)
from stock_kernel.exceptions import (
    InsufficientAvailableError,
    InvalidMovementError,
    LocationNotFoundError,
    NegativeBalance,
    OverReleaseError,
    ProductNotFoundError,
    RecomputeRequired,
    StockWarning,
)
from stock_kernel.invariants import (
    InvariantViolation,
    StockInvariant,
    check_balance_chain,
    check_replay_consistency,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.product import Location, Product, ProductLocation
from stock_kernel.models.snapshot import StockSnapshotDaily
from stock_kernel.models.stock import StockLevel, StockMovement
from stock_kernel.services.base import BaseService
from stock_kernel.services.sequence_service import SequenceService
from stock_kernel.utils.idempotency import movement_ref_key

logger = get_logger("services.stock_ledger")

TRANSFER_REF_TYPE = "transfer"
STOCKTAKE_REF_TYPE = "stocktake"


class StockLedgerService(BaseService):
    """
    Append-only stock ledger with a transactional balance cache.

    Contract:
        ``append_movement`` returns an AppendResult whose status is
        APPLIED or DUPLICATE_REF.  Replaying the same referenced event is
        a no-op that returns the original movement's id and balance.

    Non-goals:
        - Does NOT commit.  The caller's transaction makes the movement
          and the balance update visible together.
        - Does NOT block negative balances.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        super().__init__(session, clock, policy)
        self._sequences = SequenceService(session)

    # =========================================================================
    # Append
    # =========================================================================

    def append_movement(
        self,
        product_id: UUID,
        location_id: UUID,
        qty_change: int,
        reason: MovementReason | str,
        *,
        ref_type: str | None = None,
        ref_id: str | None = None,
        unit_cost: Decimal | None = None,
        note: str | None = None,
        occurred_at: datetime | None = None,
        merchant_id: str | None = None,
        user_id: UUID | None = None,
        match_method: MatchMethod | None = None,
    ) -> AppendResult:
        """
        Append one movement and update the balance cache.

        Preconditions:
            - ``qty_change`` is a non-zero int.
            - ``ref_type`` and ``ref_id`` are both set or both None.

        Postconditions:
            - On APPLIED: exactly one new StockMovement row, and
              StockLevel.on_hand equals its balance_after.
            - On DUPLICATE_REF: no rows written.

        Raises:
            InvalidMovementError: Malformed input.
            ProductNotFoundError, LocationNotFoundError: Unknown keys.
        """
        reason = self._validate(qty_change, reason, ref_type, ref_id, unit_cost)
        occurred_at = occurred_at or self.clock.now()
        if occurred_at.tzinfo is None:
            raise InvalidMovementError("occurred_at must be timezone-aware", "occurred_at")

        self._require_product(product_id)
        location = self._require_location(location_id)
        merchant_id = merchant_id or location.merchant_id

        existing = self._find_by_ref(ref_type, ref_id, product_id, location_id)
        if existing is not None:
            return self._duplicate_result(existing)

        level = self._lock_level(product_id, location_id, merchant_id, user_id)
        new_balance = level.on_hand + qty_change
        seq = self._sequences.next_value(SequenceService.STOCK_MOVEMENT)

        movement = StockMovement(
            product_id=product_id,
            location_id=location_id,
            merchant_id=merchant_id,
            occurred_at=occurred_at,
            seq=seq,
            qty_change=qty_change,
            balance_after=new_balance,
            reason=reason.value,
            ref_type=ref_type,
            ref_id=ref_id,
            unit_cost=unit_cost,
            total_cost=(
                round_cost(unit_cost * abs(qty_change)) if unit_cost is not None else None
            ),
            user_id=user_id,
            note=note,
            match_method=match_method.value if match_method is not None else None,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(movement)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find_by_ref(ref_type, ref_id, product_id, location_id)
            if existing is None:
                raise
            logger.info(
                "movement_duplicate_ref_race",
                extra={"ref_key": movement_ref_key(ref_type, ref_id, product_id, location_id)},
            )
            return self._duplicate_result(existing)

        level.on_hand = new_balance
        level.available = level.on_hand - level.allocated
        if level.last_movement_at is None or occurred_at > level.last_movement_at:
            level.last_movement_at = occurred_at
        self.session.flush()

        warnings = self._collect_warnings(product_id, location_id, reason, new_balance, occurred_at)

        logger.info(
            "movement_appended",
            extra={
                "movement_id": str(movement.id),
                "product_id": str(product_id),
                "location_id": str(location_id),
                "seq": seq,
                "qty_change": qty_change,
                "balance_after": new_balance,
                "reason": reason.value,
                "ref_key": movement_ref_key(ref_type, ref_id, product_id, location_id),
            },
        )

        return AppendResult(
            status=AppendStatus.APPLIED,
            product_id=product_id,
            location_id=location_id,
            movement_id=movement.id,
            balance_after=new_balance,
            warnings=tuple(warnings),
        )

    # =========================================================================
    # Stocktake and transfers
    # =========================================================================

    def record_stocktake(
        self,
        product_id: UUID,
        location_id: UUID,
        counted_qty: int,
        *,
        ref_id: str | None = None,
        note: str | None = None,
        occurred_at: datetime | None = None,
        user_id: UUID | None = None,
    ) -> AppendResult:
        """Post the difference between a physical count and the book.

        A count that matches the book returns NO_CHANGE without writing.
        """
        if isinstance(counted_qty, bool) or not isinstance(counted_qty, int) or counted_qty < 0:
            raise InvalidMovementError("counted_qty must be a non-negative int", "counted_qty")

        ref_type = STOCKTAKE_REF_TYPE if ref_id is not None else None
        existing = self._find_by_ref(ref_type, ref_id, product_id, location_id)
        if existing is not None:
            return self._duplicate_result(existing)

        self._require_product(product_id)
        location = self._require_location(location_id)
        level = self._lock_level(product_id, location_id, location.merchant_id, user_id)
        difference = counted_qty - level.on_hand

        if difference == 0:
            logger.info(
                "stocktake_no_change",
                extra={
                    "product_id": str(product_id),
                    "location_id": str(location_id),
                    "counted_qty": counted_qty,
                },
            )
            return AppendResult(
                status=AppendStatus.NO_CHANGE,
                product_id=product_id,
                location_id=location_id,
                movement_id=None,
                balance_after=level.on_hand,
            )

        return self.append_movement(
            product_id,
            location_id,
            difference,
            MovementReason.STOCKTAKE,
            ref_type=ref_type,
            ref_id=ref_id,
            note=note,
            occurred_at=occurred_at,
            user_id=user_id,
        )

    def start_transfer(
        self,
        product_id: UUID,
        from_location_id: UUID,
        to_location_id: UUID,
        qty: int,
        ref_id: str,
        *,
        occurred_at: datetime | None = None,
        unit_cost: Decimal | None = None,
        user_id: UUID | None = None,
        note: str | None = None,
    ) -> AppendResult:
        """Ship ``qty`` out of the source and mark it in transit at the destination."""
        self._validate_transfer(qty, from_location_id, to_location_id, ref_id)
        result = self.append_movement(
            product_id,
            from_location_id,
            -qty,
            MovementReason.TRANSFER_OUT,
            ref_type=TRANSFER_REF_TYPE,
            ref_id=ref_id,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            user_id=user_id,
            note=note,
        )
        if result.applied:
            destination = self._require_location(to_location_id)
            level = self._lock_level(
                product_id, to_location_id, destination.merchant_id, user_id
            )
            level.in_transit += qty
            self.session.flush()
            logger.info(
                "transfer_started",
                extra={
                    "product_id": str(product_id),
                    "from_location_id": str(from_location_id),
                    "to_location_id": str(to_location_id),
                    "qty": qty,
                    "ref_id": ref_id,
                },
            )
        return result

    def complete_transfer(
        self,
        product_id: UUID,
        to_location_id: UUID,
        qty: int,
        ref_id: str,
        *,
        occurred_at: datetime | None = None,
        unit_cost: Decimal | None = None,
        user_id: UUID | None = None,
        note: str | None = None,
    ) -> AppendResult:
        """Receive a transfer at the destination and clear it from in_transit."""
        self._validate_transfer(qty, None, to_location_id, ref_id)
        result = self.append_movement(
            product_id,
            to_location_id,
            qty,
            MovementReason.TRANSFER_IN,
            ref_type=TRANSFER_REF_TYPE,
            ref_id=ref_id,
            unit_cost=unit_cost,
            occurred_at=occurred_at,
            user_id=user_id,
            note=note,
        )
        if result.applied:
            level = self._get_level(product_id, to_location_id, for_update=True)
            level.in_transit -= min(qty, level.in_transit)
            self.session.flush()
            logger.info(
                "transfer_completed",
                extra={
                    "product_id": str(product_id),
                    "to_location_id": str(to_location_id),
                    "qty": qty,
                    "ref_id": ref_id,
                },
            )
        return result

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(self, product_id: UUID, location_id: UUID, qty: int) -> StockLevelView:
        """
        Reserve ``qty`` units against available stock.

        Raises:
            InsufficientAvailableError: ``qty`` exceeds available.  Nothing
                is written.
        """
        self._validate_positive(qty, "qty")
        level = self._get_level(product_id, location_id, for_update=True)
        available = level.available if level is not None else 0
        if level is None or qty > available:
            logger.info(
                "allocation_rejected",
                extra={
                    "product_id": str(product_id),
                    "location_id": str(location_id),
                    "requested": qty,
                    "available": available,
                },
            )
            raise InsufficientAvailableError(product_id, location_id, qty, available)

        level.allocated += qty
        level.available = level.on_hand - level.allocated
        self.session.flush()
        logger.info(
            "stock_allocated",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "qty": qty,
                "allocated": level.allocated,
            },
        )
        return level.to_view()

    def release(self, product_id: UUID, location_id: UUID, qty: int) -> StockLevelView:
        """Return ``qty`` previously allocated units to available stock."""
        self._validate_positive(qty, "qty")
        level = self._get_level(product_id, location_id, for_update=True)
        allocated = level.allocated if level is not None else 0
        if level is None or qty > allocated:
            raise OverReleaseError(product_id, location_id, qty, allocated)

        level.allocated -= qty
        level.available = level.on_hand - level.allocated
        self.session.flush()
        logger.info(
            "stock_released",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "qty": qty,
                "allocated": level.allocated,
            },
        )
        return level.to_view()

    # =========================================================================
    # Level lifecycle (used by CatalogService)
    # =========================================================================

    def ensure_level(
        self,
        product_id: UUID,
        location_id: UUID,
        merchant_id: str | None = None,
        actor_id: UUID | None = None,
    ) -> StockLevelView:
        """Create the zero StockLevel (and stocking association) if missing."""
        return self._lock_level(product_id, location_id, merchant_id, actor_id).to_view()

    def remove_level(self, product_id: UUID, location_id: UUID) -> None:
        """Delete the StockLevel row when its stocking association is removed."""
        level = self._get_level(product_id, location_id, for_update=True)
        if level is not None:
            self.session.delete(level)
            self.session.flush()

    # =========================================================================
    # Replay and verification
    # =========================================================================

    def movement_records(self, product_id: UUID, location_id: UUID) -> list[MovementRecord]:
        """All movements for one key in replay order (occurred_at, seq)."""
        rows = self.session.execute(
            select(StockMovement)
            .where(
                StockMovement.product_id == product_id,
                StockMovement.location_id == location_id,
            )
            .order_by(StockMovement.occurred_at, StockMovement.seq)
        ).scalars().all()
        return [row.to_record() for row in rows]

    def rebuild_level(self, product_id: UUID, location_id: UUID) -> RebuildResult:
        """
        Replay the ledger into StockLevel.on_hand.

        Postconditions:
            on_hand equals the ledger sum; available is recomputed;
            last_movement_at is the latest occurred_at.  Allocation and
            in_transit are not ledger-derived and are left alone.
        """
        records = self.movement_records(product_id, location_id)
        level = self._get_level(product_id, location_id, for_update=True)
        if level is None:
            location = self._require_location(location_id)
            level = self._lock_level(product_id, location_id, location.merchant_id, None)

        previous = level.on_hand
        rebuilt = sum(r.qty_change for r in records)
        level.on_hand = rebuilt
        level.available = rebuilt - level.allocated
        level.last_movement_at = max((r.occurred_at for r in records), default=None)
        self.session.flush()

        result = RebuildResult(
            product_id=product_id,
            location_id=location_id,
            previous_on_hand=previous,
            rebuilt_on_hand=rebuilt,
            movement_count=len(records),
        )
        if result.drift:
            logger.warning(
                "stock_level_drift_repaired",
                extra={
                    "product_id": str(product_id),
                    "location_id": str(location_id),
                    "previous_on_hand": previous,
                    "rebuilt_on_hand": rebuilt,
                },
            )
        return result

    def rebuild_all_levels(self, location_id: UUID | None = None) -> list[RebuildResult]:
        """Rebuild every (product, location) that has movements or a level row."""
        keys = self._ledger_keys(location_id)
        results = [self.rebuild_level(p, l) for p, l in sorted(keys, key=str)]
        logger.info(
            "stock_levels_rebuilt",
            extra={
                "location_id": str(location_id) if location_id else None,
                "keys": len(results),
                "drifted": sum(1 for r in results if r.drift),
            },
        )
        return results

    def verify_level(self, product_id: UUID, location_id: UUID) -> list[InvariantViolation]:
        """Compare StockLevel with a ledger replay without writing anything."""
        level = self._get_level(product_id, location_id)
        on_hand = level.on_hand if level is not None else 0
        violations = check_replay_consistency(
            self.movement_records(product_id, location_id), on_hand
        )
        if level is not None and level.available != level.on_hand - level.allocated:
            violations.append(
                InvariantViolation(
                    StockInvariant.REPLAY_CONSISTENCY,
                    f"available {level.available} != on_hand {level.on_hand} "
                    f"- allocated {level.allocated}",
                )
            )
        return violations

    def verify_movement_chain(
        self, product_id: UUID, location_id: UUID
    ) -> list[InvariantViolation]:
        """Check every balance_after against the running sum in seq order."""
        return check_balance_chain(self.movement_records(product_id, location_id))

    # =========================================================================
    # Internal
    # =========================================================================

    def _validate(
        self,
        qty_change: int,
        reason: MovementReason | str,
        ref_type: str | None,
        ref_id: str | None,
        unit_cost: Decimal | None,
    ) -> MovementReason:
        if isinstance(qty_change, bool) or not isinstance(qty_change, int):
            raise InvalidMovementError("qty_change must be an int", "qty_change")
        if qty_change == 0:
            raise InvalidMovementError("qty_change must be non-zero", "qty_change")
        try:
            reason = MovementReason(reason)
        except ValueError:
            raise InvalidMovementError(f"unknown reason {reason!r}", "reason") from None
        if (ref_type is None) != (ref_id is None):
            raise InvalidMovementError("ref_type and ref_id must be set together", "ref_id")
        if unit_cost is not None and unit_cost < 0:
            raise InvalidMovementError("unit_cost must not be negative", "unit_cost")
        return reason

    def _validate_positive(self, qty: int, field: str) -> None:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InvalidMovementError(f"{field} must be a positive int", field)

    def _validate_transfer(
        self,
        qty: int,
        from_location_id: UUID | None,
        to_location_id: UUID,
        ref_id: str,
    ) -> None:
        self._validate_positive(qty, "qty")
        if from_location_id is not None and from_location_id == to_location_id:
            raise InvalidMovementError("transfer source and destination are equal", "to_location_id")
        if not ref_id:
            raise InvalidMovementError("transfers require a ref_id", "ref_id")

    def _require_product(self, product_id: UUID) -> Product:
        product = self.session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def _require_location(self, location_id: UUID) -> Location:
        location = self.session.get(Location, location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        return location

    def _find_by_ref(
        self,
        ref_type: str | None,
        ref_id: str | None,
        product_id: UUID,
        location_id: UUID,
    ) -> StockMovement | None:
        if ref_type is None or ref_id is None:
            return None
        return self.session.execute(
            select(StockMovement).where(
                StockMovement.ref_type == ref_type,
                StockMovement.ref_id == ref_id,
                StockMovement.product_id == product_id,
                StockMovement.location_id == location_id,
            )
        ).scalar_one_or_none()

    def _duplicate_result(self, existing: StockMovement) -> AppendResult:
        logger.info(
            "movement_duplicate_ref",
            extra={
                "movement_id": str(existing.id),
                "ref_key": movement_ref_key(
                    existing.ref_type,
                    existing.ref_id,
                    existing.product_id,
                    existing.location_id,
                ),
            },
        )
        return AppendResult(
            status=AppendStatus.DUPLICATE_REF,
            product_id=existing.product_id,
            location_id=existing.location_id,
            movement_id=existing.id,
            balance_after=existing.balance_after,
        )

    def _get_level(
        self,
        product_id: UUID,
        location_id: UUID,
        for_update: bool = False,
    ) -> StockLevel | None:
        stmt = select(StockLevel).where(
            StockLevel.product_id == product_id,
            StockLevel.location_id == location_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def _lock_level(
        self,
        product_id: UUID,
        location_id: UUID,
        merchant_id: str | None,
        actor_id: UUID | None,
    ) -> StockLevel:
        """Locked StockLevel row, created at zero on the first movement."""
        level = self._get_level(product_id, location_id, for_update=True)
        if level is not None:
            return level

        actor_id = actor_id or SYSTEM_ACTOR_ID
        association = self.session.execute(
            select(ProductLocation).where(
                ProductLocation.product_id == product_id,
                ProductLocation.location_id == location_id,
            )
        ).scalar_one_or_none()
        if association is None:
            self.session.add(
                ProductLocation(
                    product_id=product_id,
                    location_id=location_id,
                    merchant_id=merchant_id,
                    created_by_id=actor_id,
                )
            )

        level = StockLevel(
            product_id=product_id,
            location_id=location_id,
            on_hand=0,
            allocated=0,
            available=0,
            in_transit=0,
        )
        self.session.add(level)
        self.session.flush()
        logger.info(
            "stock_level_created",
            extra={"product_id": str(product_id), "location_id": str(location_id)},
        )
        return level

    def _collect_warnings(
        self,
        product_id: UUID,
        location_id: UUID,
        reason: MovementReason,
        new_balance: int,
        occurred_at: datetime,
    ) -> list[StockWarning]:
        warnings: list[StockWarning] = []

        if new_balance < 0 and reason in self.policy.reasons_warn_on_negative:
            warning = NegativeBalance(product_id, location_id, new_balance, reason.value)
            logger.warning(
                "negative_balance_warning",
                extra={
                    "product_id": str(product_id),
                    "location_id": str(location_id),
                    "balance_after": new_balance,
                    "reason": reason.value,
                },
            )
            warnings.append(warning)

        movement_day = occurred_at.astimezone(timezone.utc).date()
        snapshotted = self.session.execute(
            select(StockSnapshotDaily.id)
            .where(
                and_(
                    StockSnapshotDaily.location_id == location_id,
                    StockSnapshotDaily.snapshot_date >= movement_day,
                )
            )
            .limit(1)
        ).first()
        if snapshotted is not None:
            logger.warning(
                "recompute_required",
                extra={"location_id": str(location_id), "snapshot_date": movement_day},
            )
            warnings.append(RecomputeRequired(location_id, movement_day))

        return warnings

    def _ledger_keys(self, location_id: UUID | None) -> set[tuple[UUID, UUID]]:
        movement_keys = select(StockMovement.product_id, StockMovement.location_id).distinct()
        level_keys = select(StockLevel.product_id, StockLevel.location_id)
        if location_id is not None:
            movement_keys = movement_keys.where(StockMovement.location_id == location_id)
            level_keys = level_keys.where(StockLevel.location_id == location_id)
        keys = {tuple(row) for row in self.session.execute(movement_keys)}
        keys |= {tuple(row) for row in self.session.execute(level_keys)}
        return keys
