"""
Tests for the Money/LineItem Calculator.

Validates:
- Only items with a non-empty trimmed name count toward the subtotal
- Flat tax rate and fixed/percent discount
- Discount clamp keeps total >= 0
- Half-up rounding to cents and idempotent recomputation
- Rejection of out-of-range inputs with ValidationError
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.exceptions import ValidationError
from billing_modules.invoicing.calculator import (
    Totals,
    amount_due_for,
    compute_totals,
    due_date_for,
)
from billing_modules.invoicing.models import DiscountType, LineItem


def _item(name="Widget", quantity=1, price="10.00"):
    return LineItem(name=name, quantity=quantity, unit_price=Decimal(price))


class TestSubtotal:
    """Subtotal is the sum of quantity x unit price over valid items."""

    def test_no_items_yields_zero_totals(self):
        assert compute_totals([]) == Totals()

    def test_blank_named_items_contribute_nothing(self):
        totals = compute_totals([_item(price="25.00"), _item(name="   ", price="99.00")])
        assert totals.subtotal == Decimal("25.00")
        assert totals.total == Decimal("25.00")

    def test_only_blank_items_yield_zero(self):
        totals = compute_totals([_item(name="", quantity=4, price="12.00")])
        assert totals.subtotal == Decimal("0.00")
        assert totals.total == Decimal("0.00")

    def test_named_items_with_zero_quantity_or_price_contribute_zero(self):
        totals = compute_totals([
            _item(quantity=0, price="40.00"),
            _item(name="Free", price="0"),
            _item(name="Paid", quantity=3, price="1.50"),
        ])
        assert totals.subtotal == Decimal("4.50")

    def test_unit_price_rounds_half_up_to_cents(self):
        assert LineItem(name="x", unit_price=Decimal("10.005")).unit_price == Decimal("10.01")


class TestTaxAndDiscount:
    """Flat tax on the subtotal; discount fixed or percent of subtotal."""

    def test_flat_tax_rate(self):
        totals = compute_totals([_item(price="200.00")], tax_rate=Decimal("8.25"))
        assert totals.tax_amount == Decimal("16.50")
        assert totals.total == Decimal("216.50")

    def test_per_item_tax_rate_is_informational(self):
        item = LineItem(name="Taxed", unit_price=Decimal("100.00"), tax_rate=Decimal("20"))
        totals = compute_totals([item], tax_rate=Decimal("0"))
        assert totals.tax_amount == Decimal("0.00")

    def test_fixed_discount(self):
        totals = compute_totals(
            [_item(price="100.00")],
            tax_rate=Decimal("10"),
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("15.00"),
        )
        assert totals.discount_amount == Decimal("15.00")
        assert totals.total == Decimal("95.00")

    def test_percent_discount_applies_to_subtotal(self):
        totals = compute_totals(
            [_item(price="80.00")],
            tax_rate=Decimal("10"),
            discount_type="percent",
            discount_value=Decimal("25"),
        )
        assert totals.discount_amount == Decimal("20.00")
        assert totals.total == Decimal("68.00")

    def test_percent_discount_over_100_is_clamped(self):
        totals = compute_totals(
            [_item(price="50.00")],
            discount_type=DiscountType.PERCENT,
            discount_value=Decimal("200"),
        )
        assert totals.discount_amount == Decimal("50.00")
        assert totals.total == Decimal("0.00")

    def test_fixed_discount_larger_than_total_is_clamped(self):
        totals = compute_totals(
            [_item(price="10.00")],
            tax_rate=Decimal("10"),
            discount_value=Decimal("500.00"),
        )
        assert totals.discount_amount == Decimal("11.00")
        assert totals.total == Decimal("0.00")

    def test_none_discount_type_means_fixed(self):
        totals = compute_totals([_item(price="10.00")], discount_type=None, discount_value="2")
        assert totals.total == Decimal("8.00")


class TestDeterminism:

    def test_recomputation_is_idempotent(self):
        items = [_item(quantity=3, price="33.33"), _item(name="B", price="0.01")]
        first = compute_totals(items, Decimal("7.5"), DiscountType.PERCENT, Decimal("12.5"))
        second = compute_totals(items, Decimal("7.5"), DiscountType.PERCENT, Decimal("12.5"))
        assert first == second

    def test_tax_rounds_half_up(self):
        # 0.10 * 5% = 0.005 -> 0.01
        totals = compute_totals([_item(price="0.10")], tax_rate=Decimal("5"))
        assert totals.tax_amount == Decimal("0.01")


class TestRejections:

    @pytest.mark.parametrize("rate", [Decimal("-1"), Decimal("100.01")])
    def test_tax_rate_out_of_range(self, rate):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([_item()], tax_rate=rate)
        assert exc_info.value.guard == "tax_rate"

    @pytest.mark.parametrize("rate", ["NaN", "Infinity", "abc", Decimal("NaN")])
    def test_tax_rate_not_a_number(self, rate):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([_item()], tax_rate=rate)
        assert exc_info.value.guard == "tax_rate"

    @pytest.mark.parametrize("value", ["-Infinity", "sNaN", "ten"])
    def test_discount_not_a_number(self, value):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([_item()], discount_value=value)
        assert exc_info.value.guard == "discount_value"

    def test_negative_discount(self):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([_item()], discount_value=Decimal("-5"))
        assert exc_info.value.guard == "discount_value"

    def test_unknown_discount_type(self):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([_item()], discount_type="bogus", discount_value=Decimal("1"))
        assert exc_info.value.guard == "discount_type"

    def test_negative_quantity_rejected_on_line_item(self):
        with pytest.raises(ValidationError) as exc_info:
            LineItem(name="Bad", quantity=-1)
        assert exc_info.value.guard == "line_item_quantity"

    def test_negative_unit_price_rejected_on_line_item(self):
        with pytest.raises(ValidationError):
            LineItem(name="Bad", unit_price=Decimal("-0.01"))

    def test_float_unit_price_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            LineItem(name="Bad", unit_price=1.5)
        assert exc_info.value.guard == "line_item_amount"

    def test_infinite_unit_price_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            LineItem(name="Bad", unit_price="Infinity")
        assert exc_info.value.guard == "line_item_amount"


class TestAmountDueAndDueDate:

    def test_amount_due_never_negative(self):
        assert amount_due_for(Decimal("100.00"), Decimal("150.00")) == Decimal("0.00")

    def test_amount_due_is_remaining_balance(self):
        assert amount_due_for(Decimal("100.00"), Decimal("40.00")) == Decimal("60.00")

    def test_due_date_is_issue_date_plus_terms(self):
        assert due_date_for(date(2024, 1, 15), 30) == date(2024, 2, 14)

    def test_zero_terms_due_on_receipt(self):
        assert due_date_for(date(2024, 1, 15), 0) == date(2024, 1, 15)

    def test_negative_terms_rejected(self):
        with pytest.raises(ValidationError):
            due_date_for(date(2024, 1, 15), -1)
