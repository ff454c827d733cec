"""
Tests for StockLedgerService.append_movement.

Covers idempotent appends, the balance cache, the balance_after chain,
negative-balance warnings, input validation and ledger immutability.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import AppendStatus, MatchMethod, MovementReason
from stock_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidMovementError,
    LocationNotFoundError,
    NegativeBalance,
    ProductNotFoundError,
)
from stock_kernel.models.product import ProductLocation
from stock_kernel.models.stock import StockMovement
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.stock_ledger import StockLedgerService
from tests.conftest import START_TIME


def _movement_count(session, **filters) -> int:
    stmt = select(func.count()).select_from(StockMovement)
    for column, value in filters.items():
        stmt = stmt.where(getattr(StockMovement, column) == value)
    return session.execute(stmt).scalar_one()


@pytest.fixture
def stocked(ledger, product, location):
    """(product, location) with on_hand = 10."""
    ledger.append_movement(
        product.id, location.id, 10, MovementReason.RECEIPT, ref_type="po", ref_id="PO-1"
    )
    return product, location


class TestIdempotentAppend:

    def test_sale_then_redelivery(self, session, ledger, stocked):
        product, location = stocked

        first = ledger.append_movement(
            product.id, location.id, -3, MovementReason.SALE, ref_type="order", ref_id="O1"
        )
        assert first.status is AppendStatus.APPLIED
        assert first.balance_after == 7

        replay = ledger.append_movement(
            product.id, location.id, -3, MovementReason.SALE, ref_type="order", ref_id="O1"
        )
        assert replay.status is AppendStatus.DUPLICATE_REF
        assert replay.is_duplicate
        assert replay.movement_id == first.movement_id
        assert replay.balance_after == 7

        level = StockSelector(session).get_level(product.id, location.id)
        assert level.on_hand == 7
        assert _movement_count(session, ref_type="order", ref_id="O1") == 1

    def test_same_ref_different_location_is_a_new_movement(
        self, session, ledger, stocked, second_location
    ):
        product, location = stocked
        ledger.append_movement(
            product.id, location.id, -1, MovementReason.SALE, ref_type="order", ref_id="O2"
        )
        other = ledger.append_movement(
            product.id, second_location.id, -1, MovementReason.SALE, ref_type="order", ref_id="O2"
        )
        assert other.status is AppendStatus.APPLIED
        assert _movement_count(session, ref_id="O2") == 2

    def test_unreferenced_movements_are_never_deduplicated(self, session, ledger, stocked):
        product, location = stocked
        ledger.append_movement(product.id, location.id, 1, MovementReason.ADJUSTMENT)
        ledger.append_movement(product.id, location.id, 1, MovementReason.ADJUSTMENT)
        assert _movement_count(session, reason="adjustment") == 2
        assert StockSelector(session).get_level(product.id, location.id).on_hand == 12


class TestBalanceCache:

    def test_available_tracks_on_hand_minus_allocated(self, session, ledger, stocked):
        product, location = stocked
        ledger.allocate(product.id, location.id, 4)
        ledger.append_movement(product.id, location.id, -2, MovementReason.SALE)

        level = StockSelector(session).get_level(product.id, location.id)
        assert (level.on_hand, level.allocated, level.available) == (8, 4, 4)

    def test_last_movement_at_keeps_latest(self, session, ledger, stocked, clock):
        product, location = stocked
        late = START_TIME + timedelta(hours=2)
        early = START_TIME - timedelta(days=2)
        ledger.append_movement(product.id, location.id, 1, MovementReason.RECEIPT, occurred_at=late)
        ledger.append_movement(product.id, location.id, 1, MovementReason.RECEIPT, occurred_at=early)
        assert StockSelector(session).get_level(product.id, location.id).last_movement_at == late

    def test_first_movement_creates_association_and_level(
        self, session, ledger, product, second_location
    ):
        result = ledger.append_movement(product.id, second_location.id, 3, MovementReason.RECEIPT)
        assert result.balance_after == 3

        association = session.execute(
            select(ProductLocation).where(
                ProductLocation.product_id == product.id,
                ProductLocation.location_id == second_location.id,
            )
        ).scalar_one()
        assert association.reorder_point == 0
        assert association.merchant_id == second_location.merchant_id

    def test_total_cost_from_unit_cost(self, session, ledger, stocked):
        product, location = stocked
        result = ledger.append_movement(
            product.id, location.id, -4, MovementReason.SALE, unit_cost=Decimal("2.5")
        )
        movement = session.get(StockMovement, result.movement_id)
        assert movement.total_cost == Decimal("10.0000")

    def test_match_method_recorded(self, session, ledger, stocked):
        product, location = stocked
        result = ledger.append_movement(
            product.id,
            location.id,
            -1,
            MovementReason.SALE,
            match_method=MatchMethod.EXACT_CROSS_SOURCE,
        )
        assert session.get(StockMovement, result.movement_id).match_method == "exact_cross_source"


class TestBalanceChain:

    def test_balance_after_follows_insertion_order(self, session, ledger, stocked):
        product, location = stocked
        # Arrives last but happened first
        backdated = ledger.append_movement(
            product.id,
            location.id,
            -4,
            MovementReason.SALE,
            occurred_at=START_TIME - timedelta(days=1),
        )
        assert backdated.balance_after == 6
        assert ledger.verify_movement_chain(product.id, location.id) == []
        assert ledger.verify_level(product.id, location.id) == []

        # In occurred_at order the earlier row keeps the balance it was
        # appended with, not the running sum from the start of the day
        records = ledger.movement_records(product.id, location.id)
        assert [(r.qty_change, r.balance_after) for r in records] == [(-4, 6), (10, 10)]

    def test_replay_order_is_occurred_at_then_seq(self, ledger, stocked):
        product, location = stocked
        ledger.append_movement(
            product.id,
            location.id,
            -1,
            MovementReason.SALE,
            occurred_at=START_TIME - timedelta(days=1),
        )
        records = ledger.movement_records(product.id, location.id)
        assert [r.qty_change for r in records] == [-1, 10]
        assert records[0].seq > records[1].seq


class TestNegativeBalance:

    def test_warning_not_error(self, session, ledger, product, location, captured_logs):
        result = ledger.append_movement(product.id, location.id, -3, MovementReason.SALE)

        assert result.status is AppendStatus.APPLIED
        assert result.balance_after == -3
        [warning] = result.warnings
        assert isinstance(warning, NegativeBalance)
        assert warning.balance_after == -3
        assert warning.code == "NEGATIVE_BALANCE"
        assert StockSelector(session).get_level(product.id, location.id).on_hand == -3
        assert any(r["message"] == "negative_balance_warning" for r in captured_logs())

    def test_policy_can_silence_reasons(self, session, clock, product, location):
        policy = StockPolicy(reasons_warn_on_negative=frozenset({MovementReason.ADJUSTMENT}))
        ledger = StockLedgerService(session, clock, policy)

        sale = ledger.append_movement(product.id, location.id, -1, MovementReason.SALE)
        adjustment = ledger.append_movement(product.id, location.id, -1, MovementReason.ADJUSTMENT)

        assert sale.warnings == ()
        assert len(adjustment.warnings) == 1


class TestValidation:

    @pytest.mark.parametrize(
        "qty, reason, refs, field",
        [
            (0, MovementReason.SALE, {}, "qty_change"),
            (True, MovementReason.SALE, {}, "qty_change"),
            (1.5, MovementReason.SALE, {}, "qty_change"),
            (1, "shrinkage", {}, "reason"),
            (1, MovementReason.SALE, {"ref_type": "order"}, "ref_id"),
            (1, MovementReason.SALE, {"ref_id": "O1"}, "ref_id"),
            (1, MovementReason.SALE, {"unit_cost": Decimal("-1")}, "unit_cost"),
        ],
    )
    def test_invalid_input(self, ledger, product, location, qty, reason, refs, field):
        with pytest.raises(InvalidMovementError) as exc_info:
            ledger.append_movement(product.id, location.id, qty, reason, **refs)
        assert exc_info.value.field == field

    def test_naive_occurred_at_rejected(self, ledger, product, location):
        with pytest.raises(InvalidMovementError):
            ledger.append_movement(
                product.id, location.id, 1, MovementReason.RECEIPT,
                occurred_at=START_TIME.replace(tzinfo=None),
            )

    def test_reason_accepts_plain_string(self, ledger, product, location):
        result = ledger.append_movement(product.id, location.id, 2, "receipt")
        assert result.applied

    def test_unknown_keys(self, ledger, product, location):
        from uuid import uuid4

        with pytest.raises(ProductNotFoundError):
            ledger.append_movement(uuid4(), location.id, 1, MovementReason.RECEIPT)
        with pytest.raises(LocationNotFoundError):
            ledger.append_movement(product.id, uuid4(), 1, MovementReason.RECEIPT)


class TestImmutability:

    def test_movement_update_blocked(self, session, ledger, stocked):
        product, location = stocked
        movement = session.execute(select(StockMovement)).scalars().first()
        movement.qty_change = 99
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_movement_delete_blocked(self, session, ledger, stocked):
        movement = session.execute(select(StockMovement)).scalars().first()
        session.delete(movement)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_product_delete_blocked(self, session, product):
        session.delete(product)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


def test_append_logs_structured_event(ledger, stocked, captured_logs):
    product, location = stocked
    ledger.append_movement(
        product.id, location.id, -2, MovementReason.SALE, ref_type="order", ref_id="O9"
    )
    [record] = [r for r in captured_logs() if r["message"] == "movement_appended"]
    assert record["qty_change"] == -2
    assert record["balance_after"] == 8
    assert record["ref_key"] == f"order:O9:{product.id}@{location.id}"
    assert record["level"] == "INFO"
