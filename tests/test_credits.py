"""
Tests for Credit Amount Arithmetic and References
"""

from decimal import Decimal

import pytest

from core.credits import MAX_CREDITS, from_units, positive_credits, to_credits, to_units, usd_to_cents
from core.errors import InvalidAmount, InvalidReference
from core.references import ReferenceMetadata, ReferenceTypeRegistry


class TestCreditAmounts:
    """Test 4-dp credit coercion and storage units."""

    def test_float_uses_decimal_representation(self):
        """0.1 should become exactly 0.1000, not its binary expansion."""
        assert to_credits(0.1) == Decimal("0.1000")

    def test_rounds_half_up(self):
        """Amounts are rounded half-up to 4 places."""
        assert to_credits("0.00005") == Decimal("0.0001")
        assert to_credits("1.23444") == Decimal("1.2344")

    def test_invalid_amounts_rejected(self):
        """Non-numeric and non-finite input raises InvalidAmount."""
        with pytest.raises(InvalidAmount):
            to_credits("abc")
        with pytest.raises(InvalidAmount):
            to_credits(float("nan"))

    def test_out_of_range_amounts_rejected(self):
        """Amounts whose storage units would not fit 64 bits raise InvalidAmount."""
        assert to_credits(MAX_CREDITS) == MAX_CREDITS
        assert to_units(MAX_CREDITS) <= 2 ** 63 - 1
        for value in ("1e15", "-1e15", "1e30", Decimal("1e400"), 1e300):
            with pytest.raises(InvalidAmount):
                to_credits(value)
        with pytest.raises(InvalidAmount):
            to_units("1e15")
        with pytest.raises(InvalidAmount):
            usd_to_cents("1e30")

    def test_positive_credits_requires_positive(self):
        """Zero and negative amounts are rejected."""
        with pytest.raises(InvalidAmount):
            positive_credits(0)
        with pytest.raises(InvalidAmount):
            positive_credits("-1")

    def test_units_round_trip_exact(self):
        """Storage units preserve 4-dp values exactly."""
        assert to_units("2.5") == 25000
        assert from_units(25000) == Decimal("2.5000")
        assert from_units(None) == Decimal("0")

    def test_usd_to_cents(self):
        """USD amounts become integer cents."""
        assert usd_to_cents("10.50") == 1050
        assert usd_to_cents(19.99) == 1999


class TestReferenceTypes:
    """Test the reference type registry."""

    def test_untyped_metadata_is_free_form(self):
        """Without a reference type any JSON object is accepted."""
        registry = ReferenceTypeRegistry()
        assert registry.validate(None, {"anything": 1}) == {"anything": 1}
        assert registry.validate(None, None) == {}

    def test_builtin_type_validates(self):
        """Translation metadata is checked against its model."""
        registry = ReferenceTypeRegistry()
        data = registry.validate("ai_translation", {"from_lang": "en", "to_lang": "de"})
        assert data["item_count"] == 1
        assert data["entity_type"] == "standard"

    def test_builtin_type_rejects_bad_metadata(self):
        """Missing required fields raise InvalidReference."""
        registry = ReferenceTypeRegistry()
        with pytest.raises(InvalidReference):
            registry.validate("ai_translation", {"from_lang": "en"})

    def test_unknown_type_rejected(self):
        """Unregistered reference types are refused."""
        registry = ReferenceTypeRegistry()
        with pytest.raises(InvalidReference, match="Unknown reference type"):
            registry.validate("mystery", {})

    def test_register_custom_type(self):
        """Feature code can add its own reference type."""
        class ExportMetadata(ReferenceMetadata):
            export_id: str

        registry = ReferenceTypeRegistry()
        registry.register("data_export", ExportMetadata)

        assert registry.is_registered("data_export")
        assert registry.validate("data_export", {"export_id": "e1", "rows": 5}) == {
            "export_id": "e1",
            "rows": 5,
        }

    def test_metadata_must_be_object(self):
        """Lists and scalars are not valid metadata."""
        registry = ReferenceTypeRegistry()
        with pytest.raises(InvalidReference):
            registry.validate(None, ["not", "an", "object"])
