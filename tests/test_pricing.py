from datetime import datetime
from decimal import Decimal

import pytest

from app.portal.modules.workshops.pricing import (
    calculate_tax,
    calculate_workshop_price,
    format_cents,
    invoice_number_prefix,
    percent_of,
)


@pytest.mark.parametrize(
    "province,rate,tax_type",
    [
        ("ON", Decimal("13"), "HST"),
        ("nova scotia", Decimal("15"), "HST"),
        ("QC", Decimal("14.975"), "GST_PST"),
        ("BC", Decimal("12"), "GST_PST"),
        ("Alberta", Decimal("5"), "GST"),
        ("", Decimal("5"), "GST"),
        (None, Decimal("5"), "GST"),
    ],
)
def test_tax_rates(province, rate, tax_type):
    tax = calculate_tax(10000, province)
    assert tax.tax_rate == rate
    assert tax.tax_type == tax_type


def test_quebec_tax_rounds_half_up():
    # 1000 * 14.975% = 149.75 -> 150
    assert calculate_tax(1000, "QC").tax_amount == 150


def test_percent_of_half_up():
    assert percent_of(5, 50) == 3
    assert percent_of(1999, 35) == 700


def test_free_workshop_is_zero():
    p = calculate_workshop_price(is_paid=False, base_cost=5000, global_discount_percentage=10, membership_percentage=60, province="ON")
    assert p.is_free
    assert p.total == 0
    assert p.tax_type == "None"


def test_paid_with_zero_cost_is_free():
    p = calculate_workshop_price(is_paid=True, base_cost=0, global_discount_percentage=0, membership_percentage=None, province="ON")
    assert p.is_free


def test_discounts_stack_before_tax():
    p = calculate_workshop_price(
        is_paid=True,
        base_cost=10000,
        global_discount_percentage=10,
        membership_percentage=60,
        province="ON",
    )
    assert p.membership_discount_amount == 4000
    assert p.global_discount_amount == 600
    assert p.subtotal == 5400
    assert p.tax_amount == 702
    assert p.total == 6102
    assert p.to_dict()["tax_rate"] == 13.0


def test_unknown_level_pays_full_price():
    p = calculate_workshop_price(is_paid=True, base_cost=2000, global_discount_percentage=None, membership_percentage=None, province="AB")
    assert p.membership_percentage == 100
    assert p.total == 2100


def test_formatting_helpers():
    assert format_cents(6102) == "$61.02"
    assert invoice_number_prefix(datetime(2024, 3, 9)) == "INV-20240309-"
