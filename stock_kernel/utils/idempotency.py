"""
Idempotency key helpers for ledger movements.

A movement's key is (ref_type, ref_id, product_id, location_id).  The
ledger enforces it with a unique constraint; this helper gives the key a
single printable form for logs.
"""

from uuid import UUID


def movement_ref_key(
    ref_type: str | None,
    ref_id: str | None,
    product_id: UUID,
    location_id: UUID,
) -> str | None:
    """
    Printable idempotency key, or None for unreferenced movements.

    Example:
        >>> movement_ref_key("order", "O1", p, l)
        "order:O1:<product uuid>@<location uuid>"
    """
    if ref_type is None or ref_id is None:
        return None
    return f"{ref_type}:{ref_id}:{product_id}@{location_id}"

