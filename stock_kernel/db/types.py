"""
Module: stock_kernel.db.types
Responsibility: Annotated column types and the sanctioned rounding helpers for
    quantities, costs and ratios.  Every model and service uses these
    definitions so precision is identical system-wide.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    selectors/, or domain/.

Invariants enforced:
    - Quantities are whole units (signed BigInteger).  Fractional stock is
      not representable.
    - Costs are Decimal with 4 places; round_cost() is the only rounding
      function applied to cost and value columns.
    - No floats anywhere in the ledger.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String

# Signed whole-unit quantity
Quantity = Annotated[int, BigInteger]

# Unit cost / monetary value, 4 decimal places
UnitCost = Annotated[Decimal, Numeric(18, 4)]

# Dimensionless ratio (turnover velocity), 4 decimal places
Ratio = Annotated[Decimal, Numeric(18, 4)]

# Identifiers handed to us by external systems
ExternalRef = Annotated[str, String(200)]

COST_DECIMAL_PLACES = 4
RATIO_DECIMAL_PLACES = 4

_COST_QUANTUM = Decimal(1).scaleb(-COST_DECIMAL_PLACES)
_RATIO_QUANTUM = Decimal(1).scaleb(-RATIO_DECIMAL_PLACES)


def round_cost(value: Decimal) -> Decimal:
    """Round a cost or value to COST_DECIMAL_PLACES (half-up)."""
    return value.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)


def round_ratio(value: Decimal) -> Decimal:
    """Round a ratio to RATIO_DECIMAL_PLACES (half-up)."""
    return value.quantize(_RATIO_QUANTUM, rounding=ROUND_HALF_UP)
