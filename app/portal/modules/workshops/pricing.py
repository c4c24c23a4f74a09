"""
Workshop pricing: membership discount, global discount and Canadian sales tax.

All amounts are integer cents. Percentages are rounded half-up to the cent.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

HST_RATES: dict[str, Decimal] = {
    "ON": Decimal("13"),
    "ONTARIO": Decimal("13"),
    "NB": Decimal("15"),
    "NEW BRUNSWICK": Decimal("15"),
    "NS": Decimal("15"),
    "NOVA SCOTIA": Decimal("15"),
    "PE": Decimal("15"),
    "PEI": Decimal("15"),
    "PRINCE EDWARD ISLAND": Decimal("15"),
    "NL": Decimal("15"),
    "NEWFOUNDLAND": Decimal("15"),
    "NEWFOUNDLAND AND LABRADOR": Decimal("15"),
}

GST_PST_RATES: dict[str, Decimal] = {
    "BC": Decimal("12"),
    "BRITISH COLUMBIA": Decimal("12"),
    "SK": Decimal("11"),
    "SASKATCHEWAN": Decimal("11"),
    "MB": Decimal("12"),
    "MANITOBA": Decimal("12"),
    "QC": Decimal("14.975"),
    "QUEBEC": Decimal("14.975"),
}

GST_ONLY = frozenset(
    {"AB", "ALBERTA", "NT", "NORTHWEST TERRITORIES", "NU", "NUNAVUT", "YT", "YUKON"}
)
GST_RATE = Decimal("5")


@dataclass(frozen=True)
class TaxCalculation:
    tax_rate: Decimal
    tax_type: str
    tax_amount: int


@dataclass(frozen=True)
class PricingBreakdown:
    base_cost: int
    membership_percentage: int
    membership_discount_amount: int
    global_discount_percentage: int
    global_discount_amount: int
    subtotal: int
    tax_rate: Decimal
    tax_type: str
    tax_amount: int
    total: int

    @property
    def is_free(self) -> bool:
        return self.total == 0

    def to_dict(self) -> dict:
        d = asdict(self)
        d["tax_rate"] = float(self.tax_rate)
        return d


def percent_of(amount: int, pct: Decimal | int) -> int:
    """round(amount * pct / 100) with half-up rounding."""
    value = Decimal(amount) * Decimal(pct) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_tax(subtotal: int, province: str | None) -> TaxCalculation:
    key = (province or "").strip().upper()
    if key in HST_RATES:
        rate, tax_type = HST_RATES[key], "HST"
    elif key in GST_PST_RATES:
        rate, tax_type = GST_PST_RATES[key], "GST_PST"
    elif key in GST_ONLY:
        rate, tax_type = GST_RATE, "GST"
    else:
        # Unknown or missing province falls back to federal GST
        rate, tax_type = GST_RATE, "GST"
    return TaxCalculation(tax_rate=rate, tax_type=tax_type, tax_amount=percent_of(subtotal, rate))


def calculate_workshop_price(
    *,
    is_paid: bool,
    base_cost: int | None,
    global_discount_percentage: int | None,
    membership_percentage: int | None,
    province: str | None,
) -> PricingBreakdown:
    if not is_paid or not base_cost:
        return PricingBreakdown(
            base_cost=0,
            membership_percentage=0,
            membership_discount_amount=0,
            global_discount_percentage=0,
            global_discount_amount=0,
            subtotal=0,
            tax_rate=Decimal("0"),
            tax_type="None",
            tax_amount=0,
            total=0,
        )

    pct = 100 if membership_percentage is None else membership_percentage
    after_membership = percent_of(base_cost, pct)
    global_pct = global_discount_percentage or 0
    global_amount = percent_of(after_membership, global_pct)
    subtotal = after_membership - global_amount
    tax = calculate_tax(subtotal, province)

    return PricingBreakdown(
        base_cost=base_cost,
        membership_percentage=pct,
        membership_discount_amount=base_cost - after_membership,
        global_discount_percentage=global_pct,
        global_discount_amount=global_amount,
        subtotal=subtotal,
        tax_rate=tax.tax_rate,
        tax_type=tax.tax_type,
        tax_amount=tax.tax_amount,
        total=subtotal + tax.tax_amount,
    )


def invoice_number_prefix(now: datetime | None = None) -> str:
    return f"INV-{(now or datetime.utcnow()).strftime('%Y%m%d')}-"


def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"
