"""Tests for persisted fee-calculation snapshots."""

import uuid
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from bookkeeper.errors import ValidationError
from bookkeeper.models.billing import (
    BillingPeriod,
    BillingPeriodItem,
    Discount,
    DiscountAmountType,
    DiscountRedemption,
    FeeCalculationType,
    IntervalUnit,
    InvoiceCheckoutSession,
    PaymentMethodType,
    Subscription,
    SubscriptionItemType,
    SubscriptionStatus,
)
from bookkeeper.models.organization import StripeConnectContractType
from bookkeeper.services.bookkeeping import fee_calculations


def test_platform_checkout_fee_calculation_skips_tax(
    db_session, fee_ready_checkout_session, fake_gateway
):
    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    assert fee_calc.type == FeeCalculationType.checkout_session_payment
    assert fee_calc.base_amount == 1000
    assert fee_calc.discount_amount_fixed == 0
    assert fee_calc.pretax_total == 1000
    assert fee_calc.platform_fee_percentage == "0.65"
    assert fee_calc.international_fee_percentage == "0"
    assert fee_calc.payment_method_fee_fixed == 59
    assert fee_calc.mor_surcharge_percentage == "0"
    assert fee_calc.tax_amount_fixed == 0
    assert fee_calc.stripe_tax_calculation_id is None
    assert fake_gateway.tax_calculations == []


def test_fee_calculation_applies_discount(
    db_session, organization, fee_ready_checkout_session
):
    discount = Discount(
        organization_id=organization.id,
        name="Launch",
        code="LAUNCH",
        amount=20,
        amount_type=DiscountAmountType.percent,
    )
    db_session.add(discount)
    db_session.flush()
    fee_ready_checkout_session.discount_id = discount.id
    db_session.flush()

    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    assert fee_calc.discount_amount_fixed == 200
    assert fee_calc.pretax_total == 800
    assert fee_calc.discount_id == discount.id


def test_merchant_of_record_fee_calculation_calls_tax(
    db_session, organization, fee_ready_checkout_session, fake_gateway
):
    organization.stripe_connect_contract_type = (
        StripeConnectContractType.merchant_of_record
    )
    fake_gateway.tax_amount = 83
    db_session.flush()

    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    assert fee_calc.tax_amount_fixed == 83
    assert fee_calc.mor_surcharge_percentage == "1.1"
    assert fee_calc.stripe_tax_calculation_id.startswith("taxcalc_")
    assert len(fake_gateway.tax_calculations) == 1
    assert fake_gateway.tax_calculations[0]["amount"] == 1000


def test_merchant_of_record_zero_amount_records_placeholder(
    db_session, organization, price, fee_ready_checkout_session, fake_gateway
):
    organization.stripe_connect_contract_type = (
        StripeConnectContractType.merchant_of_record
    )
    price.unit_price = 0
    db_session.flush()

    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    assert fee_calc.tax_amount_fixed == 0
    assert fee_calculations.is_tax_override_calculation_id(
        fee_calc.stripe_tax_calculation_id
    )
    assert fake_gateway.tax_calculations == []


def test_invoice_fee_calculation_uses_line_items(
    db_session, invoice_factory, organization, us_billing_address
):
    invoice = invoice_factory(amounts=(700, 300))
    session = InvoiceCheckoutSession(
        organization_id=organization.id,
        invoice_id=invoice.id,
        billing_address=us_billing_address,
        payment_method_type=PaymentMethodType.us_bank_account,
    )
    db_session.add(session)
    db_session.flush()

    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, session
    )
    assert fee_calc.base_amount == 1000
    assert fee_calc.discount_amount_fixed == 0
    assert fee_calc.payment_method_fee_fixed == 8
    assert fee_calc.internal_notes == "Invoice fee calculation"


def test_fee_calculation_requires_billing_country(db_session, checkout_session):
    checkout_session.billing_address = {"address": {"line1": "nowhere"}}
    checkout_session.payment_method_type = PaymentMethodType.card
    db_session.flush()
    with pytest.raises(ValidationError, match="missing a country"):
        fee_calculations.create_fee_calculation_for_checkout_session(
            db_session, checkout_session
        )


def test_select_latest_fee_calculation(db_session, fee_ready_checkout_session):
    first = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    second = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    latest = fee_calculations.select_latest_fee_calculation(
        db_session, checkout_session_id=fee_ready_checkout_session.id
    )
    assert latest.id == second.id
    assert latest.id != first.id


def test_format_percentage():
    assert fee_calculations.format_percentage(1.5) == "1.5"
    assert fee_calculations.format_percentage(0.0) == "0"
    assert fee_calculations.format_percentage("0.650") == "0.65"


# ── Finalization ─────────────────────────────────────────


def test_finalize_within_free_tier_charges_nothing(
    db_session, organization, fee_ready_checkout_session
):
    organization.monthly_billing_volume_free_tier = 100000
    db_session.flush()
    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    fee_calculations.finalize_fee_calculation(db_session, fee_calc)
    assert fee_calc.platform_fee_percentage == "0"
    assert fee_calc.internal_notes.startswith("No fee applied.")
    assert "Calculated time:" in fee_calc.internal_notes


def test_finalize_straddling_free_tier_charges_overage_only(
    db_session, organization, fee_ready_checkout_session
):
    organization.monthly_billing_volume_free_tier = 500
    db_session.flush()
    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    fee_calculations.finalize_fee_calculation(db_session, fee_calc)
    # 0.65% of the 500 overage rounds to 3, i.e. 0.3% of the 1000 charge
    assert fee_calc.platform_fee_percentage == "0.3"
    assert "Partial fee applied. Overage: 500." in fee_calc.internal_notes


def test_finalize_past_free_tier_charges_full_fee(
    db_session, fee_ready_checkout_session
):
    fee_calc = fee_calculations.create_fee_calculation_for_checkout_session(
        db_session, fee_ready_checkout_session
    )
    fee_calculations.finalize_fee_calculation(db_session, fee_calc)
    assert fee_calc.platform_fee_percentage == "0.65"
    assert fee_calc.internal_notes.startswith("Full fee applied.")


# ── Subscription fee calculations ────────────────────────


def test_build_subscription_fee_calculation():
    organization = SimpleNamespace(
        id=uuid.uuid4(),
        fee_percentage="1",
        stripe_connect_contract_type=StripeConnectContractType.platform,
    )
    items = [
        SimpleNamespace(type=SubscriptionItemType.static, unit_price=3000, quantity=1)
    ]
    redemption = SimpleNamespace(
        discount_amount_type=DiscountAmountType.fixed, discount_amount=500
    )
    params = fee_calculations.SubscriptionFeeCalculationParams(
        organization=organization,
        organization_country=SimpleNamespace(code="US"),
        billing_period=SimpleNamespace(id=uuid.uuid4()),
        billing_period_items=items,
        payment_method_type=PaymentMethodType.card,
        billing_address={"address": {"country": "CA"}},
        currency="usd",
        livemode=False,
        discount_redemption=redemption,
    )
    fee_calc = fee_calculations.build_subscription_fee_calculation(params)
    assert fee_calc.type == FeeCalculationType.subscription_payment
    assert fee_calc.base_amount == 3000
    assert fee_calc.discount_amount_fixed == 500
    assert fee_calc.pretax_total == 2500
    assert fee_calc.platform_fee_percentage == "1"
    assert fee_calc.international_fee_percentage == "1.5"
    assert fee_calc.tax_amount_fixed == 0
    assert fee_calc.mor_surcharge_percentage == "0"


def test_build_subscription_fee_calculation_adds_mor_surcharge():
    organization = SimpleNamespace(
        id=uuid.uuid4(),
        fee_percentage="0.65",
        stripe_connect_contract_type=StripeConnectContractType.merchant_of_record,
    )
    params = fee_calculations.SubscriptionFeeCalculationParams(
        organization=organization,
        organization_country=SimpleNamespace(code="US"),
        billing_period=SimpleNamespace(id=uuid.uuid4()),
        billing_period_items=[
            SimpleNamespace(type=SubscriptionItemType.static, unit_price=2000, quantity=1)
        ],
        payment_method_type=PaymentMethodType.card,
        billing_address={"address": {"country": "US"}},
        currency="usd",
        livemode=False,
    )
    fee_calc = fee_calculations.build_subscription_fee_calculation(params)
    assert fee_calc.mor_surcharge_percentage == "1.1"


@pytest.fixture()
def billing_period(db_session, organization, customer, subscription_price):
    subscription = Subscription(
        organization_id=organization.id,
        customer_id=customer.id,
        price_id=subscription_price.id,
        status=SubscriptionStatus.active,
        start_date=datetime(2026, 1, 1, tzinfo=UTC),
        interval=IntervalUnit.month,
        interval_count=1,
    )
    db_session.add(subscription)
    db_session.flush()
    period = BillingPeriod(
        subscription_id=subscription.id,
        start_date=datetime(2026, 1, 1, tzinfo=UTC),
        end_date=datetime(2026, 1, 31, tzinfo=UTC),
    )
    period.items.append(BillingPeriodItem(name="Seat", unit_price=3000, quantity=1))
    db_session.add(period)
    db_session.flush()
    return period


def _redemption(db_session, discount, subscription_id, amount, fully_redeemed):
    redemption = DiscountRedemption(
        discount_id=discount.id,
        subscription_id=subscription_id,
        discount_name=discount.name,
        discount_code=discount.code,
        discount_amount=amount,
        discount_amount_type=DiscountAmountType.fixed,
        fully_redeemed=fully_redeemed,
    )
    db_session.add(redemption)
    db_session.flush()
    return redemption


def test_create_and_finalize_subscription_fee_calculation_uses_open_redemption(
    db_session, organization, country, billing_period, us_billing_address
):
    discount = Discount(
        organization_id=organization.id,
        name="Loyalty",
        code="LOYAL",
        amount=500,
        amount_type=DiscountAmountType.fixed,
    )
    db_session.add(discount)
    db_session.flush()
    _redemption(db_session, discount, billing_period.subscription_id, 900, True)
    open_redemption = _redemption(
        db_session, discount, billing_period.subscription_id, 500, False
    )

    params = fee_calculations.SubscriptionFeeCalculationParams(
        organization=organization,
        organization_country=country,
        billing_period=billing_period,
        billing_period_items=list(billing_period.items),
        payment_method_type=PaymentMethodType.card,
        billing_address=us_billing_address,
        currency="usd",
        livemode=False,
    )
    fee_calc = fee_calculations.create_and_finalize_subscription_fee_calculation(
        db_session, params
    )

    assert params.discount_redemption is open_redemption
    assert fee_calc.base_amount == 3000
    assert fee_calc.discount_amount_fixed == 500
    assert fee_calc.pretax_total == 2500
    assert fee_calc.platform_fee_percentage == "0.65"
    assert fee_calc.internal_notes.startswith("Full fee applied.")
    assert "Calculated time:" in fee_calc.internal_notes
    assert (
        fee_calculations.select_latest_fee_calculation(
            db_session, billing_period_id=billing_period.id
        ).id
        == fee_calc.id
    )
