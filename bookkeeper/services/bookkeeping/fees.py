"""Monetary primitives for fee calculations.

All amounts are integers in the currency's minor unit (cents, pence...).
Percentages are expressed the human way: ``"0.65"`` means 0.65 %.
Nothing in this module touches the database.
"""
from __future__ import annotations

import math
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol

import pycountry

from bookkeeper.errors import ValidationError
from bookkeeper.models.billing import (
    DiscountAmountType,
    IntervalUnit,
    PaymentMethodType,
    PriceType,
    SubscriptionItemType,
)
from bookkeeper.models.organization import StripeConnectContractType

CARD_CROSS_BORDER_FEE_PERCENTAGE = Decimal("1.5")
CARD_BASE_FEE_PERCENTAGE = Decimal("2.9")
CARD_FIXED_FEE_CENTS = 30
BANK_ACCOUNT_FEE_PERCENTAGE = Decimal("0.8")
BANK_ACCOUNT_MAX_FEE_CENTS = 500
SEPA_DEBIT_FEE_PERCENTAGE = Decimal("0.8")
SEPA_DEBIT_MAX_FEE_CENTS = 600
MOR_SURCHARGE_PERCENTAGE = Decimal("1.1")


class LineItemLike(Protocol):
    price: int
    quantity: int


class BillingItemLike(Protocol):
    unit_price: int
    quantity: int


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_decimal(value: Any, field_name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} is not a valid number: {value}") from exc
    if result.is_nan():
        raise ValidationError(f"{field_name} is NaN")
    return result


def validate_numeric_amount(amount: Any, field_name: str) -> None:
    if amount is None:
        return
    if isinstance(amount, float) and math.isnan(amount):
        raise ValidationError(f"{field_name} is NaN")


def calculate_percentage_fee(amount: int, percentage: Any) -> int:
    """``amount * percentage / 100``, rounded half up to a whole minor unit.

    >>> calculate_percentage_fee(10000, "0.65")
    65
    """
    return _round_half_up(
        Decimal(amount) * _to_decimal(percentage, "Percentage") / Decimal(100)
    )


# ── Base amounts ─────────────────────────────────────────


def calculate_invoice_base_amount(line_items: Iterable[LineItemLike]) -> int:
    return sum(item.price * item.quantity for item in line_items)


def calculate_price_base_amount(price: Any, purchase: Any | None = None) -> int:
    """A purchase locks in its own amount; otherwise the price's unit price."""
    if purchase is None:
        return price.unit_price
    if purchase.first_invoice_value is None and purchase.price_per_billing_cycle is None:
        return price.unit_price
    if price.type == PriceType.single_payment and purchase.first_invoice_value:
        return purchase.first_invoice_value
    if price.type == PriceType.subscription and purchase.price_per_billing_cycle:
        return purchase.price_per_billing_cycle
    return price.unit_price


def calculate_billing_item_base_amount(
    items: Iterable[Any], usage_overages: Iterable[dict[str, Any]] = ()
) -> int:
    """Static items at unit price x quantity plus priced usage overages.

    Each overage is ``{"usage_meter_id", "balance"}``; it is billed against
    the usage item of the same meter as
    ``balance / usage_events_per_unit * unit_price``.
    """
    items = list(items)
    static_total = sum(
        item.unit_price * item.quantity
        for item in items
        if item.type == SubscriptionItemType.static
    )
    usage_items = {
        item.usage_meter_id: item
        for item in items
        if item.type == SubscriptionItemType.usage
    }
    usage_total = Decimal(0)
    for overage in usage_overages:
        item = usage_items.get(overage["usage_meter_id"])
        if item is None:
            raise ValidationError(
                "Usage billing period item not found for usage meter id: "
                f"{overage['usage_meter_id']}"
            )
        per_unit = item.usage_events_per_unit or 1
        usage_total += Decimal(overage["balance"]) / Decimal(per_unit) * item.unit_price
    return static_total + _round_half_up(usage_total)


# ── Discounts ────────────────────────────────────────────


def calculate_discount_amount(base_amount: int, discount: Any | None) -> int:
    if discount is None:
        return 0
    if discount.amount_type == DiscountAmountType.fixed:
        return discount.amount
    if discount.amount_type == DiscountAmountType.percent:
        return calculate_percentage_fee(base_amount, min(discount.amount, 100))
    return 0


def calculate_discount_amount_from_redemption(
    base_amount: int, redemption: Any | None
) -> int:
    if redemption is None:
        return 0
    if redemption.discount_amount_type == DiscountAmountType.fixed:
        return redemption.discount_amount
    return calculate_percentage_fee(base_amount, min(redemption.discount_amount, 100))


# ── Fee percentages ──────────────────────────────────────


def calculate_platform_fee_percentage(organization: Any) -> float:
    return float(_to_decimal(organization.fee_percentage, "Platform fee percentage"))


def calculate_mor_surcharge_percentage(organization: Any) -> float:
    """Extra platform fee taken when the platform is the merchant of record."""
    if (
        organization.stripe_connect_contract_type
        == StripeConnectContractType.merchant_of_record
    ):
        return float(MOR_SURCHARGE_PERCENTAGE)
    return 0.0


def is_valid_country_code(code: str) -> bool:
    return pycountry.countries.get(alpha_2=code.upper()) is not None


def calculate_international_fee_percentage(
    payment_method: PaymentMethodType,
    payment_method_country: str,
    organization: Any,
    organization_country: Any,
) -> float:
    payer_code = payment_method_country.upper()
    if (
        organization.stripe_connect_contract_type
        == StripeConnectContractType.merchant_of_record
        and payer_code == "US"
    ):
        return 0.0
    if not is_valid_country_code(payer_code):
        raise ValidationError(
            f"Billing address country {payer_code} is not in the list of country codes"
        )
    if organization_country.code.upper() == payer_code:
        return 0.0
    if payment_method in (PaymentMethodType.card, PaymentMethodType.sepa_debit):
        return float(CARD_CROSS_BORDER_FEE_PERCENTAGE)
    return 0.0


def calculate_payment_method_fee_amount(
    total_amount_to_charge: int, payment_method: PaymentMethodType | None
) -> int:
    if total_amount_to_charge <= 0:
        return 0
    amount = Decimal(total_amount_to_charge)
    if payment_method == PaymentMethodType.us_bank_account:
        return _round_half_up(
            min(amount * BANK_ACCOUNT_FEE_PERCENTAGE / 100, BANK_ACCOUNT_MAX_FEE_CENTS)
        )
    if payment_method == PaymentMethodType.sepa_debit:
        return _round_half_up(
            min(amount * SEPA_DEBIT_FEE_PERCENTAGE / 100, SEPA_DEBIT_MAX_FEE_CENTS)
        )
    # card, link and anything unrecognised
    return _round_half_up(amount * CARD_BASE_FEE_PERCENTAGE / 100 + CARD_FIXED_FEE_CENTS)


# ── Totals ───────────────────────────────────────────────


def calculate_total_fee_amount(fee_calculation: Any) -> int:
    """Everything the platform keeps: percentage fees, the method fee and tax."""
    base_amount = fee_calculation.base_amount
    discount_amount = fee_calculation.discount_amount_fixed
    validate_numeric_amount(base_amount, "Base amount")
    validate_numeric_amount(discount_amount, "Discount amount fixed")
    validate_numeric_amount(
        fee_calculation.payment_method_fee_fixed, "Payment method fee fixed"
    )
    validate_numeric_amount(fee_calculation.tax_amount_fixed, "Tax amount fixed")
    platform_pct = _to_decimal(
        fee_calculation.platform_fee_percentage, "Platform fee percentage"
    )
    international_pct = _to_decimal(
        fee_calculation.international_fee_percentage or "0",
        "International fee percentage",
    )
    mor_surcharge_pct = _to_decimal(
        fee_calculation.mor_surcharge_percentage or "0", "MoR surcharge percentage"
    )

    safe_discount = max(discount_amount or 0, 0)
    discount_inclusive_amount = max(base_amount - safe_discount, 0)
    platform_fixed = calculate_percentage_fee(discount_inclusive_amount, platform_pct)
    international_fixed = calculate_percentage_fee(
        discount_inclusive_amount, international_pct
    )
    mor_surcharge_fixed = calculate_percentage_fee(
        discount_inclusive_amount, mor_surcharge_pct
    )
    return round(
        platform_fixed
        + mor_surcharge_fixed
        + international_fixed
        + (fee_calculation.payment_method_fee_fixed or 0)
        + (fee_calculation.tax_amount_fixed or 0)
    )


def calculate_total_due_amount(fee_calculation: Any) -> int:
    return max(
        fee_calculation.base_amount
        - (fee_calculation.discount_amount_fixed or 0)
        + (fee_calculation.tax_amount_fixed or 0),
        0,
    )


# ── Recurring revenue ────────────────────────────────────


def normalize_to_monthly_value(
    amount: float, interval_unit: IntervalUnit | str, interval_count: int
) -> float:
    if interval_count is None or interval_count <= 0:
        raise ValidationError(f"Invalid intervalCount: {interval_count}")
    try:
        unit = IntervalUnit(interval_unit)
    except ValueError as exc:
        raise ValidationError(f"Unsupported interval: {interval_unit}") from exc
    if unit == IntervalUnit.month:
        return amount / interval_count
    if unit == IntervalUnit.year:
        return amount / (12 * interval_count)
    if unit == IntervalUnit.week:
        return amount * (52 / 12) / interval_count
    return amount * (365 / 12) / interval_count
