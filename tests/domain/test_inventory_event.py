"""Tests for InventoryEvent construction rules."""

from datetime import datetime
from decimal import Decimal

import pytest

from stock_kernel.domain.types import MovementReason
from stock_kernel.exceptions import InvalidMovementError
from tests.conftest import make_event


def test_reason_string_coerced_to_enum():
    event = make_event("O-1", "0001", -1, reason="refund")
    assert event.reason is MovementReason.REFUND


@pytest.mark.parametrize(
    "kwargs, field",
    [
        ({"qty": 0}, "quantity_delta"),
        ({"qty": True}, "quantity_delta"),
        ({"qty": 1.5}, "quantity_delta"),
        ({"reason": "theft"}, "reason"),
        ({"occurred_at": datetime(2024, 1, 1, 9)}, "occurred_at"),
        ({"unit_cost": Decimal("-0.01")}, "unit_cost"),
        ({"ref": ""}, "external_ref_id"),
    ],
)
def test_invalid_event_rejected(kwargs, field):
    args = {"ref": "O-1", "qty": -1, **kwargs}
    ref, qty = args.pop("ref"), args.pop("qty")

    with pytest.raises(InvalidMovementError) as exc_info:
        make_event(ref, "0001", qty, **args)

    assert exc_info.value.field == field
