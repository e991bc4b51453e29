"""Builds and finalizes persisted FeeCalculation snapshots.

A fee calculation is never edited once its pre-tax numbers are fixed;
anything that changes the inputs produces a new row. The only update is
``finalize_fee_calculation``, which settles the platform fee percentage
against the organization's monthly free tier.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from bookkeeper.errors import ValidationError
from bookkeeper.models.billing import (
    CheckoutSession,
    Discount,
    DiscountRedemption,
    FeeCalculation,
    FeeCalculationType,
    Invoice,
    InvoiceCheckoutSession,
    Payment,
    PaymentMethodType,
    PaymentStatus,
    Price,
    Product,
    Purchase,
)
from bookkeeper.models.organization import (
    Country,
    Organization,
    StripeConnectContractType,
)
from bookkeeper.services.bookkeeping.fees import (
    calculate_billing_item_base_amount,
    calculate_discount_amount,
    calculate_discount_amount_from_redemption,
    calculate_international_fee_percentage,
    calculate_invoice_base_amount,
    calculate_mor_surcharge_percentage,
    calculate_payment_method_fee_amount,
    calculate_percentage_fee,
    calculate_platform_fee_percentage,
    calculate_price_base_amount,
)
from bookkeeper.services.common import get_or_404, start_of_month, utcnow
from bookkeeper.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)

TAX_OVERRIDE_PREFIX = "notaxoverride_"
RESOLVED_PAYMENT_STATUSES = (PaymentStatus.succeeded, PaymentStatus.refunded)


def format_percentage(value: Any) -> str:
    """Render a percentage without float noise: 1.5 -> "1.5", 0.0 -> "0"."""
    return format(Decimal(str(value)).normalize(), "f")


def is_tax_override_calculation_id(calculation_id: str | None) -> bool:
    """True for the placeholder id recorded when tax was skipped on a zero amount."""
    return bool(calculation_id) and calculation_id.startswith(TAX_OVERRIDE_PREFIX)


def billing_address_country(billing_address: dict[str, Any] | None) -> str:
    address = (billing_address or {}).get("address") or {}
    country = address.get("country")
    if not country:
        raise ValidationError("Billing address is missing a country")
    return country


def calculate_taxes(
    *,
    discount_inclusive_amount: int,
    price: Price,
    purchase: Purchase | None,
    billing_address: dict[str, Any],
    livemode: bool,
) -> tuple[int, str]:
    """Return ``(tax_amount_fixed, stripe_tax_calculation_id)``.

    A zero amount never reaches the processor.
    """
    if discount_inclusive_amount == 0:
        return 0, f"{TAX_OVERRIDE_PREFIX}{secrets.token_urlsafe(16)}"
    reference = str(purchase.id) if purchase else str(price.id)
    calculation = stripe_gateway.create_tax_calculation(
        amount=discount_inclusive_amount,
        currency=price.currency,
        billing_address=billing_address,
        reference=reference,
        livemode=livemode,
    )
    return calculation["tax_amount_exclusive"], calculation["id"]


def _checkout_fee_calculation(
    *,
    organization: Organization,
    organization_country: Country,
    billing_address: dict[str, Any],
    payment_method_type: PaymentMethodType,
    base_amount: int,
    discount_amount: int,
    currency: str,
    livemode: bool,
    checkout_session_id: uuid.UUID,
) -> FeeCalculation:
    international_fee_percentage = calculate_international_fee_percentage(
        payment_method_type,
        billing_address_country(billing_address),
        organization,
        organization_country,
    )
    discount_inclusive_amount = max(base_amount - (discount_amount or 0), 0)
    return FeeCalculation(
        type=FeeCalculationType.checkout_session_payment,
        checkout_session_id=checkout_session_id,
        organization_id=organization.id,
        currency=currency,
        livemode=livemode,
        payment_method_type=payment_method_type,
        billing_address=billing_address,
        base_amount=base_amount,
        discount_amount_fixed=discount_amount,
        pretax_total=discount_inclusive_amount,
        platform_fee_percentage=format_percentage(
            calculate_platform_fee_percentage(organization)
        ),
        mor_surcharge_percentage=format_percentage(
            calculate_mor_surcharge_percentage(organization)
        ),
        international_fee_percentage=format_percentage(international_fee_percentage),
        payment_method_fee_fixed=calculate_payment_method_fee_amount(
            discount_inclusive_amount, payment_method_type
        ),
        tax_amount_fixed=0,
    )


def create_checkout_session_fee_calculation(
    db: Session,
    *,
    organization: Organization,
    organization_country: Country,
    product: Product | None,
    price: Price,
    billing_address: dict[str, Any],
    payment_method_type: PaymentMethodType,
    checkout_session_id: uuid.UUID,
    purchase: Purchase | None = None,
    discount: Discount | None = None,
) -> FeeCalculation:
    base_amount = calculate_price_base_amount(price, purchase)
    discount_amount = calculate_discount_amount(base_amount, discount)
    fee_calculation = _checkout_fee_calculation(
        organization=organization,
        organization_country=organization_country,
        billing_address=billing_address,
        payment_method_type=payment_method_type,
        base_amount=base_amount,
        discount_amount=discount_amount,
        currency=price.currency,
        livemode=price.livemode,
        checkout_session_id=checkout_session_id,
    )
    if (
        organization.stripe_connect_contract_type
        == StripeConnectContractType.merchant_of_record
    ):
        tax_amount, calculation_id = calculate_taxes(
            discount_inclusive_amount=fee_calculation.pretax_total,
            price=price,
            purchase=purchase,
            billing_address=billing_address,
            livemode=price.livemode,
        )
        fee_calculation.tax_amount_fixed = tax_amount
        fee_calculation.stripe_tax_calculation_id = calculation_id
    fee_calculation.price_id = price.id
    fee_calculation.purchase_id = purchase.id if purchase else None
    fee_calculation.discount_id = discount.id if discount else None
    db.add(fee_calculation)
    db.flush()
    logger.info(
        "Created FeeCalculation: %s",
        fee_calculation.id,
        extra={
            "fee_calculation_id": fee_calculation.id,
            "checkout_session_id": checkout_session_id,
            "livemode": price.livemode,
        },
    )
    return fee_calculation


def create_invoice_fee_calculation_for_checkout_session(
    db: Session,
    *,
    organization: Organization,
    organization_country: Country,
    invoice: Invoice,
    billing_address: dict[str, Any],
    payment_method_type: PaymentMethodType,
    checkout_session_id: uuid.UUID,
) -> FeeCalculation:
    fee_calculation = _checkout_fee_calculation(
        organization=organization,
        organization_country=organization_country,
        billing_address=billing_address,
        payment_method_type=payment_method_type,
        base_amount=calculate_invoice_base_amount(invoice.line_items),
        discount_amount=0,
        currency=invoice.currency,
        livemode=invoice.livemode,
        checkout_session_id=checkout_session_id,
    )
    fee_calculation.internal_notes = "Invoice fee calculation"
    db.add(fee_calculation)
    db.flush()
    logger.info(
        "Created invoice FeeCalculation: %s",
        fee_calculation.id,
        extra={"fee_calculation_id": fee_calculation.id, "invoice_id": invoice.id},
    )
    return fee_calculation


def create_fee_calculation_for_checkout_session(
    db: Session, checkout_session: CheckoutSession
) -> FeeCalculation:
    """Load everything the session's variant needs and build a new snapshot."""
    organization = get_or_404(db, Organization, checkout_session.organization_id)
    organization_country = get_or_404(db, Country, organization.country_id)
    if isinstance(checkout_session, InvoiceCheckoutSession):
        invoice = get_or_404(db, Invoice, checkout_session.invoice_id)
        return create_invoice_fee_calculation_for_checkout_session(
            db,
            organization=organization,
            organization_country=organization_country,
            invoice=invoice,
            billing_address=checkout_session.billing_address,
            payment_method_type=checkout_session.payment_method_type,
            checkout_session_id=checkout_session.id,
        )
    price = get_or_404(db, Price, checkout_session.price_id)
    product = db.get(Product, price.product_id) if price.product_id else None
    purchase = (
        db.get(Purchase, checkout_session.purchase_id)
        if checkout_session.purchase_id
        else None
    )
    discount = (
        db.get(Discount, checkout_session.discount_id)
        if checkout_session.discount_id
        else None
    )
    return create_checkout_session_fee_calculation(
        db,
        organization=organization,
        organization_country=organization_country,
        product=product,
        price=price,
        purchase=purchase,
        discount=discount,
        billing_address=checkout_session.billing_address,
        payment_method_type=checkout_session.payment_method_type,
        checkout_session_id=checkout_session.id,
    )


def select_latest_fee_calculation(
    db: Session,
    *,
    checkout_session_id: uuid.UUID | None = None,
    billing_period_id: uuid.UUID | None = None,
) -> FeeCalculation | None:
    query = select(FeeCalculation)
    if checkout_session_id is not None:
        query = query.where(FeeCalculation.checkout_session_id == checkout_session_id)
    if billing_period_id is not None:
        query = query.where(FeeCalculation.billing_period_id == billing_period_id)
    query = query.order_by(FeeCalculation.created_at.desc()).limit(1)
    return db.scalars(query).first()


# ── Finalization ─────────────────────────────────────────


def select_resolved_payments_month_to_date(
    db: Session, organization_id: uuid.UUID
) -> list[Payment]:
    return list(
        db.scalars(
            select(Payment).where(
                Payment.organization_id == organization_id,
                Payment.charge_date >= start_of_month(utcnow()),
                Payment.status.in_(RESOLVED_PAYMENT_STATUSES),
            )
        )
    )


def _fee_notes(
    processed_month_to_date: int,
    current_amount: int,
    free_tier: int,
    final_percentage: float,
) -> str:
    new_total = processed_month_to_date + current_amount
    if free_tier <= processed_month_to_date:
        return (
            "Full fee applied. Processed this month before transaction: "
            f"{processed_month_to_date}. Free tier: {free_tier}."
        )
    if new_total <= free_tier:
        return (
            "No fee applied. Processed this month after transaction: "
            f"{new_total}. Free tier: {free_tier}."
        )
    return (
        f"Partial fee applied. Overage: {new_total - free_tier}. "
        f"Processed this month before transaction: {processed_month_to_date}. "
        f"Free tier: {free_tier}. Effective percentage: {final_percentage:#.6g}%."
    )


def finalize_fee_calculation(db: Session, fee_calculation: FeeCalculation) -> FeeCalculation:
    """Charge the platform fee only on volume above the monthly free tier."""
    organization = get_or_404(db, Organization, fee_calculation.organization_id)
    processed = sum(
        payment.amount
        for payment in select_resolved_payments_month_to_date(db, organization.id)
    )
    organization_percentage = calculate_platform_fee_percentage(organization)
    free_tier = organization.monthly_billing_volume_free_tier or 0
    current_amount = fee_calculation.pretax_total or 0
    new_total = processed + current_amount

    if free_tier <= processed:
        final_percentage = organization_percentage
    elif new_total <= free_tier:
        final_percentage = 0.0
    else:
        fee_amount = calculate_percentage_fee(
            new_total - free_tier, organization.fee_percentage
        )
        final_percentage = (
            fee_amount / current_amount * 100 if current_amount > 0 else 0.0
        )

    notes = _fee_notes(processed, current_amount, free_tier, final_percentage)
    stamped = f"{notes} Calculated time: {utcnow().isoformat()}"
    fee_calculation.platform_fee_percentage = format_percentage(final_percentage)
    fee_calculation.internal_notes = (
        f"{fee_calculation.internal_notes} {stamped}"
        if fee_calculation.internal_notes
        else stamped
    )
    db.flush()
    logger.info(
        "Finalized FeeCalculation %s at %s%%",
        fee_calculation.id,
        fee_calculation.platform_fee_percentage,
        extra={
            "fee_calculation_id": fee_calculation.id,
            "organization_id": organization.id,
        },
    )
    return fee_calculation


# ── Subscriptions ────────────────────────────────────────


@dataclass
class SubscriptionFeeCalculationParams:
    organization: Organization
    organization_country: Country
    billing_period: Any
    billing_period_items: list[Any]
    payment_method_type: PaymentMethodType
    billing_address: dict[str, Any]
    currency: str
    livemode: bool
    usage_overages: list[dict[str, Any]] = field(default_factory=list)
    discount_redemption: DiscountRedemption | None = None


def build_subscription_fee_calculation(
    params: SubscriptionFeeCalculationParams,
) -> FeeCalculation:
    organization = params.organization
    base_amount = calculate_billing_item_base_amount(
        params.billing_period_items, params.usage_overages
    )
    discount_amount = calculate_discount_amount_from_redemption(
        base_amount, params.discount_redemption
    )
    discount_inclusive_amount = max(base_amount - discount_amount, 0)
    international_fee_percentage = calculate_international_fee_percentage(
        params.payment_method_type,
        billing_address_country(params.billing_address),
        organization,
        params.organization_country,
    )
    # Subscription renewals are not taxed here yet; tax stays at zero even
    # for merchant-of-record organizations.
    return FeeCalculation(
        type=FeeCalculationType.subscription_payment,
        organization_id=organization.id,
        billing_period_id=params.billing_period.id,
        billing_address=params.billing_address,
        payment_method_type=params.payment_method_type,
        base_amount=base_amount,
        discount_amount_fixed=discount_amount,
        pretax_total=discount_inclusive_amount,
        currency=params.currency,
        platform_fee_percentage=format_percentage(
            calculate_platform_fee_percentage(organization)
        ),
        mor_surcharge_percentage=format_percentage(
            calculate_mor_surcharge_percentage(organization)
        ),
        international_fee_percentage=format_percentage(international_fee_percentage),
        payment_method_fee_fixed=calculate_payment_method_fee_amount(
            discount_inclusive_amount, params.payment_method_type
        ),
        tax_amount_fixed=0,
        livemode=params.livemode,
    )


def create_and_finalize_subscription_fee_calculation(
    db: Session, params: SubscriptionFeeCalculationParams
) -> FeeCalculation:
    redemption = db.scalars(
        select(DiscountRedemption)
        .where(
            DiscountRedemption.subscription_id
            == params.billing_period.subscription_id,
            DiscountRedemption.fully_redeemed.is_(False),
        )
        .order_by(DiscountRedemption.created_at)
        .limit(1)
    ).first()
    params.discount_redemption = redemption
    fee_calculation = build_subscription_fee_calculation(params)
    db.add(fee_calculation)
    db.flush()
    return finalize_fee_calculation(db, fee_calculation)
