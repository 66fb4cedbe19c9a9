"""
Tests for address normalisation and customer snapshots.
"""

import pytest

from billing_kernel.exceptions import ValidationError
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    PlainAddress,
    StructuredAddress,
    normalize_address,
)


class TestNormalizeAddress:

    def test_string_becomes_plain(self):
        assert normalize_address("  10 Downing St  ") == PlainAddress(text="10 Downing St")

    def test_blank_string_is_none(self):
        assert normalize_address("   ") is None

    def test_contact_style_mapping_becomes_structured(self):
        address = normalize_address({
            "street": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "zip": "62701",
            "country": "US",
            "unused": "ignored",
        })
        assert address == StructuredAddress(
            street="1 Main St", city="Springfield", state="IL", postal_code="62701", country="US"
        )
        assert address.format() == "1 Main St, Springfield, IL 62701, US"

    def test_tagged_mapping_round_trips(self):
        original = StructuredAddress(street="5 Elm", city="Oslo")
        assert normalize_address(original.to_dict()) == original
        assert normalize_address(PlainAddress("x").to_dict()) == PlainAddress("x")

    def test_empty_mapping_is_none(self):
        assert normalize_address({"street": "", "city": None}) is None

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_address({"kind": "geo", "lat": 1})
        assert exc_info.value.guard == "address_shape"

    def test_other_types_rejected(self):
        with pytest.raises(ValidationError):
            normalize_address(42)


class TestCustomerSnapshot:

    def test_fields_are_trimmed(self):
        snapshot = CustomerSnapshot(name="  Ada ", email=" ", phone=None, address="Paris")
        assert snapshot.name == "Ada"
        assert snapshot.email is None
        assert snapshot.address == PlainAddress("Paris")

    def test_manual_fields_win_over_contact(self):
        manual = CustomerSnapshot(name="Manual Name", email=None)
        filled = manual.filled_from(name="Contact Name", email="c@example.com", phone="555")
        assert filled.name == "Manual Name"
        assert filled.email == "c@example.com"
        assert filled.phone == "555"
