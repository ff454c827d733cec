"""
Identifier and name normalization.

External systems pad, space and case the same identifier differently.
Every write and every lookup goes through these functions so that
" 0123 4567 " scanned at a till and "01234567" from a marketplace feed
land on the same row.
"""

from stock_kernel.domain.types import IdentifierType

# Types whose values are digit strings where inner spacing is cosmetic
_SPACE_INSENSITIVE = frozenset({IdentifierType.BARCODE, IdentifierType.UPC})


def normalize_identifier_value(identifier_type: IdentifierType, value: str) -> str:
    """Strip surrounding whitespace; barcodes and UPCs also lose inner spaces."""
    cleaned = value.strip()
    if IdentifierType(identifier_type) in _SPACE_INSENSITIVE:
        cleaned = "".join(cleaned.split())
    if not cleaned:
        raise ValueError("Identifier value is empty after normalization")
    return cleaned


def normalize_name(name: str) -> str:
    """Case- and whitespace-insensitive key used by fuzzy name matching."""
    return " ".join(name.lower().split())
