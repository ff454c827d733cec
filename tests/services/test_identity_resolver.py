"""Tests for ProductIdentityResolver."""

import pytest

from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import ExternalIdentifier, IdentifierType, MatchMethod
from stock_kernel.exceptions import UnresolvedIdentifierError
from stock_kernel.services.identity_resolver import ProductIdentityResolver
from tests.conftest import SOURCE


def barcode(value, source=SOURCE, name=None):
    return ExternalIdentifier(IdentifierType.BARCODE, value, source, name)


class TestExact:

    def test_exact_source_match(self, resolver, product):
        result = resolver.resolve(barcode("0001"))
        assert result.product_id == product.id
        assert result.match_method is MatchMethod.EXACT

    def test_normalized_lookup(self, resolver, product):
        assert resolver.resolve(barcode(" 00 01 ")).product_id == product.id

    def test_type_must_match(self, resolver, product):
        assert resolver.resolve(ExternalIdentifier(IdentifierType.SKU, "0001", SOURCE)) is None

    def test_exact_source_wins_over_other_sources(self, catalog, resolver, product):
        other = catalog.create_product("Red Mug")
        catalog.add_identifier(other.id, IdentifierType.BARCODE, "0001", "marketplace")

        assert resolver.resolve(barcode("0001")).product_id == product.id
        assert resolver.resolve(barcode("0001", "marketplace")).product_id == other.id


class TestCrossSource:

    def test_single_candidate(self, resolver, product):
        result = resolver.resolve(barcode("0001", source="web"))
        assert result.product_id == product.id
        assert result.match_method is MatchMethod.EXACT_CROSS_SOURCE

    def test_ambiguous_candidates_do_not_resolve(self, catalog, resolver, product, captured_logs):
        other = catalog.create_product("Red Mug")
        catalog.add_identifier(other.id, IdentifierType.BARCODE, "0001", "marketplace")

        assert resolver.resolve(barcode("0001", source="web")) is None
        assert any(
            r["message"] == "identifier_ambiguous_across_sources" for r in captured_logs()
        )


class TestFuzzy:

    @pytest.fixture
    def fuzzy(self, session, clock):
        return ProductIdentityResolver(session, clock, StockPolicy(fuzzy_matching_enabled=True))

    def test_disabled_by_default(self, resolver, product, location):
        assert resolver.resolve(barcode("9999", name="blue mug"), location.id) is None

    def test_name_at_location(self, fuzzy, product, location):
        result = fuzzy.resolve(barcode("9999", name="  BLUE mug"), location.id)
        assert result.product_id == product.id
        assert result.match_method is MatchMethod.FUZZY_NAME_LOCATION

    def test_requires_stocking_at_location(self, fuzzy, product, second_location):
        assert fuzzy.resolve(barcode("9999", name="Blue Mug"), second_location.id) is None

    def test_ambiguous_name(self, catalog, fuzzy, product, location):
        twin = catalog.create_product("Blue Mug")
        catalog.stock_product_at(twin.id, location.id)
        assert fuzzy.resolve(barcode("9999", name="Blue Mug"), location.id) is None

    def test_inactive_products_ignored(self, catalog, fuzzy, product, location):
        catalog.deactivate_product(product.id)
        assert fuzzy.resolve(barcode("9999", name="Blue Mug"), location.id) is None


class TestStrictAndScanned:

    def test_strict_raises_on_miss(self, resolver, product):
        with pytest.raises(UnresolvedIdentifierError) as exc_info:
            resolver.resolve_strict(barcode("0000000000"))
        assert exc_info.value.value == "0000000000"
        assert exc_info.value.source == SOURCE

    def test_scanned_value_any_type(self, catalog, resolver, product):
        catalog.add_identifier(product.id, IdentifierType.SKU, "MUG-BLUE", "erp")
        result = resolver.resolve_scanned_value("MUG-BLUE")
        assert result.product_id == product.id
        assert result.match_method is MatchMethod.SCANNED_VALUE

    def test_scanned_value_ambiguous(self, catalog, resolver, product):
        other = catalog.create_product("Red Mug")
        catalog.add_identifier(other.id, IdentifierType.SKU, "0001", "erp")
        assert resolver.resolve_scanned_value("0001") is None

    def test_resolver_never_writes(self, session, resolver, product):
        resolver.resolve(barcode("unknown-code"))
        assert not session.new and not session.dirty
