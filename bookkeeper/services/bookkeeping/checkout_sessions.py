"""Checkout-session state machine driven by processor callbacks.

A session starts Open and moves once to Pending, Succeeded or Failed;
retries get a new session. The reconciler dispatches on the session
variant (product, purchase or invoice) exactly once, at the entry points.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from bookkeeper.errors import ValidationError
from bookkeeper.models.billing import (
    CheckoutSession,
    CheckoutSessionStatus,
    Customer,
    Discount,
    DiscountRedemption,
    FeeCalculation,
    Invoice,
    InvoiceCheckoutSession,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Price,
    PriceType,
    Product,
    Purchase,
    PurchaseStatus,
)
from bookkeeper.models.organization import Organization, StripeConnectContractType
from bookkeeper.schemas.billing import (
    BillingAddress,
    CheckoutSessionUpdate,
    CustomerCreate,
    StripeCharge,
    StripeSetupIntent,
)
from bookkeeper.services.bookkeeping.customers import (
    create_customer_bookkeeping,
    select_customer_by_stripe_customer_id,
)
from bookkeeper.services.bookkeeping.events import (
    payment_succeeded_event,
    purchase_completed_event,
)
from bookkeeper.services.bookkeeping.fee_calculations import (
    create_fee_calculation_for_checkout_session,
    select_latest_fee_calculation,
)
from bookkeeper.services.bookkeeping.fees import (
    calculate_invoice_base_amount,
    calculate_total_due_amount,
    calculate_total_fee_amount,
)
from bookkeeper.services.bookkeeping.invoices import (
    create_initial_invoice_for_purchase,
    effective_payment_amount,
    safely_update_invoice_status,
    update_invoice_status_to_reflect_latest_payment,
)
from bookkeeper.services.bookkeeping.purchases import (
    update_purchase_status_to_reflect_latest_payment,
    upsert_discount_redemption_for_purchase_and_discount,
)
from bookkeeper.services.common import (
    check_expected_version,
    ensure_utc,
    flush,
    get_or_404,
)
from bookkeeper.services.payment_gateway import stripe_gateway
from bookkeeper.services.transaction import TransactionOutcome

logger = logging.getLogger(__name__)


@dataclass
class EditCheckoutSessionResult:
    checkout_session: CheckoutSession
    fee_calculation: FeeCalculation | None = None


@dataclass
class PurchaseBookkeepingResult:
    purchase: Purchase
    customer: Customer
    fee_calculation: FeeCalculation
    discount: Discount | None = None
    discount_redemption: DiscountRedemption | None = None


@dataclass
class ChargeProcessingResult:
    checkout_session: CheckoutSession
    purchase: Purchase | None = None
    invoice: Invoice | None = None
    payment: Payment | None = None


@dataclass
class SetupIntentProcessingResult:
    checkout_session: CheckoutSession
    purchase: Purchase | None = None
    customer: Customer | None = None


# ── Status mapping ───────────────────────────────────────


def checkout_session_status_from_charge(charge: StripeCharge) -> CheckoutSessionStatus:
    if charge.status == "succeeded":
        return CheckoutSessionStatus.succeeded
    if charge.status == "pending":
        return CheckoutSessionStatus.pending
    return CheckoutSessionStatus.failed


def setup_intent_status_to_checkout_session_status(status: str) -> CheckoutSessionStatus:
    if status == "succeeded":
        return CheckoutSessionStatus.succeeded
    if status == "canceled":
        return CheckoutSessionStatus.failed
    # processing, requires_action, requires_payment_method...
    return CheckoutSessionStatus.pending


def charge_status_to_payment_status(status: str) -> PaymentStatus:
    if status == "succeeded":
        return PaymentStatus.succeeded
    if status == "pending":
        return PaymentStatus.processing
    return PaymentStatus.failed


# ── Lookups & helpers ────────────────────────────────────


def select_checkout_session(db: Session, checkout_session_id: Any) -> CheckoutSession:
    return get_or_404(db, CheckoutSession, checkout_session_id, "Checkout session")


def _require_open(checkout_session: CheckoutSession) -> None:
    if checkout_session.status != CheckoutSessionStatus.open:
        raise ValidationError("Checkout session is not open")


def fee_parameters(checkout_session: CheckoutSession) -> dict[str, Any]:
    """Every session input a fee calculation depends on."""
    address = (checkout_session.billing_address or {}).get("address") or {}
    return {
        "price_id": checkout_session.price_id,
        "invoice_id": getattr(checkout_session, "invoice_id", None),
        "discount_id": checkout_session.discount_id,
        "purchase_id": checkout_session.purchase_id,
        "payment_method_type": checkout_session.payment_method_type,
        "country": address.get("country"),
        # Tax jurisdiction can change with the state even when amounts don't.
        "state": address.get("state"),
    }


def checkout_session_fee_parameters_changed(
    previous: dict[str, Any], current: dict[str, Any]
) -> bool:
    return previous != current


def _fee_calculation_for_session(
    db: Session, checkout_session: CheckoutSession, parameters_changed: bool
) -> FeeCalculation | None:
    if not checkout_session.is_fee_ready():
        return None
    latest = select_latest_fee_calculation(db, checkout_session_id=checkout_session.id)
    if parameters_changed or latest is None:
        return create_fee_calculation_for_checkout_session(db, checkout_session)
    return latest


def _sync_payment_intent(
    checkout_session: CheckoutSession, fee_calculation: FeeCalculation | None
) -> None:
    """Keep the processor's payment intent in line with the latest fee snapshot."""
    if not checkout_session.stripe_payment_intent_id or fee_calculation is None:
        return
    total_due = calculate_total_due_amount(fee_calculation)
    if total_due <= 0:
        return
    stripe_gateway.update_payment_intent(
        checkout_session.stripe_payment_intent_id,
        amount=total_due,
        application_fee_amount=(
            calculate_total_fee_amount(fee_calculation)
            if fee_calculation.livemode
            else None
        ),
        livemode=fee_calculation.livemode,
    )


# ── Editing an open session ──────────────────────────────


def edit_checkout_session(
    db: Session,
    checkout_session_id: Any,
    payload: CheckoutSessionUpdate,
    *,
    purchase_id: Any = None,
    expected_version: int | None = None,
) -> EditCheckoutSessionResult:
    checkout_session = select_checkout_session(db, checkout_session_id)
    _require_open(checkout_session)
    check_expected_version(checkout_session, expected_version)

    purchase = None
    if purchase_id is not None:
        purchase = get_or_404(db, Purchase, purchase_id, "Purchase")
        if purchase.status != PurchaseStatus.pending:
            raise ValidationError("Purchase is not pending")

    previous = fee_parameters(checkout_session)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(checkout_session, key, value)
    flush(db)

    fee_calculation = _fee_calculation_for_session(
        db,
        checkout_session,
        checkout_session_fee_parameters_changed(previous, fee_parameters(checkout_session)),
    )

    if purchase is not None:
        purchase.billing_address = checkout_session.billing_address
        flush(db)

    _sync_payment_intent(checkout_session, fee_calculation)
    logger.info(
        "Edited CheckoutSession: %s",
        checkout_session.id,
        extra={"checkout_session_id": checkout_session.id},
    )
    return EditCheckoutSessionResult(checkout_session, fee_calculation)


def edit_checkout_session_billing_address(
    db: Session,
    checkout_session_id: Any,
    billing_address: BillingAddress,
    *,
    expected_version: int | None = None,
) -> EditCheckoutSessionResult:
    """Store the address; merchant-of-record sessions get fresh tax numbers."""
    checkout_session = select_checkout_session(db, checkout_session_id)
    _require_open(checkout_session)
    check_expected_version(checkout_session, expected_version)

    previous = fee_parameters(checkout_session)
    checkout_session.billing_address = billing_address.model_dump()
    flush(db)

    organization = get_or_404(db, Organization, checkout_session.organization_id)
    fee_calculation = None
    if (
        organization.stripe_connect_contract_type
        == StripeConnectContractType.merchant_of_record
    ):
        fee_calculation = _fee_calculation_for_session(
            db,
            checkout_session,
            checkout_session_fee_parameters_changed(
                previous, fee_parameters(checkout_session)
            ),
        )
        _sync_payment_intent(checkout_session, fee_calculation)
    return EditCheckoutSessionResult(checkout_session, fee_calculation)


# ── Purchase bookkeeping ─────────────────────────────────


def _resolve_customer(
    db: Session,
    checkout_session: CheckoutSession,
    purchase: Purchase | None,
    product: Product,
    stripe_customer_id: str | None,
) -> TransactionOutcome[Customer]:
    customer = None
    if purchase is not None:
        customer = get_or_404(db, Customer, purchase.customer_id, "Customer")
    elif checkout_session.customer_id is not None:
        customer = get_or_404(db, Customer, checkout_session.customer_id, "Customer")

    if (
        customer is not None
        and stripe_customer_id
        and stripe_customer_id != customer.stripe_customer_id
    ):
        raise ValidationError(
            f"Attempting to process checkout session {checkout_session.id} with a "
            f"different stripe customer {stripe_customer_id} than the checkout "
            f"session customer {customer.stripe_customer_id} already linked to "
            "the purchase"
        )
    if customer is None and stripe_customer_id:
        customer = select_customer_by_stripe_customer_id(db, stripe_customer_id)
    if customer is not None:
        return TransactionOutcome(customer)

    if not checkout_session.customer_email:
        raise ValidationError(
            f"Checkout session {checkout_session.id} has no customer email"
        )
    # Anonymous checkout always gets a fresh customer, even for a known email.
    outcome = create_customer_bookkeeping(
        db,
        CustomerCreate(
            email=checkout_session.customer_email,
            name=checkout_session.customer_name or checkout_session.customer_email,
            external_id=secrets.token_urlsafe(16),
            organization_id=product.organization_id,
            pricing_model_id=product.pricing_model_id,
            stripe_customer_id=stripe_customer_id,
        ),
        organization_id=product.organization_id,
        livemode=checkout_session.livemode,
    )
    return TransactionOutcome(
        outcome.value.customer,
        events=outcome.events,
        ledger_commands=outcome.ledger_commands,
        post_commit=outcome.post_commit,
    )


def _purchase_for_price(
    checkout_session: CheckoutSession, customer: Customer, price: Price, product: Product
) -> Purchase:
    purchase = Purchase(
        name=product.name,
        organization_id=product.organization_id,
        customer_id=customer.id,
        price_id=price.id,
        quantity=1,
        billing_address=checkout_session.billing_address,
        livemode=checkout_session.livemode,
        status=PurchaseStatus.open,
    )
    if price.type == PriceType.subscription:
        purchase.interval_unit = price.interval_unit
        purchase.interval_count = price.interval_count
        purchase.first_invoice_value = 0
        purchase.total_purchase_value = None
        purchase.trial_period_days = price.trial_period_days or 0
        purchase.price_per_billing_cycle = price.unit_price
    elif price.type == PriceType.single_payment:
        purchase.first_invoice_value = price.unit_price
        purchase.total_purchase_value = price.unit_price
    else:
        raise ValidationError(
            f"Unsupported price type for checkout session {checkout_session.id}"
        )
    return purchase


def process_purchase_bookkeeping_for_checkout_session(
    db: Session,
    checkout_session: CheckoutSession,
    stripe_customer_id: str | None,
) -> TransactionOutcome[PurchaseBookkeepingResult]:
    """Resolve the paying customer and the session's one purchase.

    Customer precedence: the session purchase's customer, the session's own
    customer, a customer already carrying ``stripe_customer_id``, and
    finally a brand-new customer built from the captured email and name.
    """
    if isinstance(checkout_session, InvoiceCheckoutSession):
        raise ValidationError(
            f"Checkout session {checkout_session.id} pays an invoice and has no purchase"
        )
    price = get_or_404(db, Price, checkout_session.price_id, "Price")
    if price.product_id is None:
        raise ValidationError(
            "Purchase bookkeeping is only supported for product prices "
            "(subscription/single payment), not usage prices"
        )
    product = get_or_404(db, Product, price.product_id, "Product")

    purchase = (
        get_or_404(db, Purchase, checkout_session.purchase_id, "Purchase")
        if checkout_session.purchase_id
        else None
    )
    outcome: TransactionOutcome[Any] = TransactionOutcome(None)
    customer = outcome.absorb(
        _resolve_customer(db, checkout_session, purchase, product, stripe_customer_id)
    )

    if purchase is None:
        purchase = _purchase_for_price(checkout_session, customer, price, product)
        db.add(purchase)
        flush(db)
        checkout_session.purchase_id = purchase.id
        flush(db)
        logger.info(
            "Created Purchase: %s",
            purchase.id,
            extra={
                "purchase_id": purchase.id,
                "checkout_session_id": checkout_session.id,
            },
        )

    fee_calculation = select_latest_fee_calculation(
        db, checkout_session_id=checkout_session.id
    )
    if fee_calculation is None:
        raise ValidationError(
            f"No fee calculation found for purchase session {checkout_session.id}"
        )
    fee_calculation.purchase_id = purchase.id
    fee_calculation.price_id = price.id
    fee_calculation.discount_id = checkout_session.discount_id
    flush(db)

    discount = redemption = None
    if fee_calculation.discount_id is not None:
        discount = get_or_404(db, Discount, fee_calculation.discount_id, "Discount")
        redemption = upsert_discount_redemption_for_purchase_and_discount(
            db, purchase, discount
        )

    outcome.value = PurchaseBookkeepingResult(
        purchase=purchase,
        customer=customer,
        fee_calculation=fee_calculation,
        discount=discount,
        discount_redemption=redemption,
    )
    return outcome


# ── Processor callbacks ──────────────────────────────────


def _terminal_guarded_status(
    current: CheckoutSessionStatus, new: CheckoutSessionStatus
) -> CheckoutSessionStatus:
    # A late failure replay must not undo a succeeded checkout.
    if current == CheckoutSessionStatus.succeeded:
        return current
    return new


def _capture_billing_details(checkout_session: CheckoutSession, charge: StripeCharge) -> None:
    details = charge.billing_details
    checkout_session.customer_name = details.name or checkout_session.customer_name
    checkout_session.customer_email = details.email or checkout_session.customer_email


def upsert_payment_for_charge(
    db: Session,
    charge: StripeCharge,
    *,
    organization_id: uuid.UUID,
    customer_id: uuid.UUID,
    invoice_id: uuid.UUID,
    purchase_id: uuid.UUID | None = None,
) -> Payment:
    """One payment per processor charge; replays update it in place."""
    payment = db.scalars(
        select(Payment).where(Payment.stripe_charge_id == charge.id)
    ).first()
    status = charge_status_to_payment_status(charge.status)
    if charge.refunded:
        status = PaymentStatus.refunded
    if payment is None:
        payment = Payment(
            stripe_charge_id=charge.id,
            organization_id=organization_id,
            customer_id=customer_id,
            invoice_id=invoice_id,
            purchase_id=purchase_id,
            currency=charge.currency,
            payment_method=charge.payment_method_type,
            charge_date=ensure_utc(charge.created),
            livemode=charge.livemode,
        )
        db.add(payment)
    payment.stripe_payment_intent_id = charge.payment_intent
    payment.amount = charge.amount
    payment.status = status
    payment.refunded = charge.refunded
    payment.refunded_amount = charge.amount_refunded
    flush(db)
    logger.info(
        "Upserted Payment %s for charge %s (%s)",
        payment.id,
        charge.id,
        status.value,
        extra={
            "payment_id": payment.id,
            "invoice_id": invoice_id,
            "amount": payment.amount,
            "livemode": payment.livemode,
        },
    )
    return payment


def process_stripe_charge_for_invoice_checkout_session(
    db: Session, checkout_session: InvoiceCheckoutSession, charge: StripeCharge
) -> TransactionOutcome[ChargeProcessingResult]:
    if not isinstance(checkout_session, InvoiceCheckoutSession):
        raise ValidationError(
            f"Checkout session {checkout_session.id} is not an invoice checkout session"
        )
    invoice = get_or_404(db, Invoice, checkout_session.invoice_id, "Invoice")
    checkout_session.status = _terminal_guarded_status(
        checkout_session.status, checkout_session_status_from_charge(charge)
    )
    _capture_billing_details(checkout_session, charge)
    payment = upsert_payment_for_charge(
        db,
        charge,
        organization_id=invoice.organization_id,
        customer_id=invoice.customer_id,
        invoice_id=invoice.id,
    )

    if charge.status == "pending":
        safely_update_invoice_status(db, invoice, InvoiceStatus.awaiting_payment_confirmation)
    else:
        succeeded = db.scalars(
            select(Payment).where(
                Payment.invoice_id == invoice.id,
                Payment.status == PaymentStatus.succeeded,
            )
        ).all()
        paid = sum(effective_payment_amount(p) for p in succeeded)
        if paid >= calculate_invoice_base_amount(invoice.line_items):
            safely_update_invoice_status(db, invoice, InvoiceStatus.paid)
    flush(db)

    outcome = TransactionOutcome(
        ChargeProcessingResult(
            checkout_session=checkout_session, invoice=invoice, payment=payment
        )
    )
    if payment.status == PaymentStatus.succeeded:
        outcome.events.append(payment_succeeded_event(payment))
    return outcome


def process_stripe_charge_for_checkout_session(
    db: Session, checkout_session_id: Any, charge: StripeCharge
) -> TransactionOutcome[ChargeProcessingResult]:
    """Record a charge against its session: customer, purchase and invoice.

    Failed charges only move the session to Failed; nothing else is written.
    """
    checkout_session = select_checkout_session(db, checkout_session_id)
    if isinstance(checkout_session, InvoiceCheckoutSession):
        return process_stripe_charge_for_invoice_checkout_session(
            db, checkout_session, charge
        )

    outcome = TransactionOutcome(ChargeProcessingResult(checkout_session=checkout_session))
    status = checkout_session_status_from_charge(charge)
    if status in (CheckoutSessionStatus.succeeded, CheckoutSessionStatus.pending):
        bookkeeping = outcome.absorb(
            process_purchase_bookkeeping_for_checkout_session(
                db, checkout_session, charge.customer
            )
        )
        outcome.value.purchase = bookkeeping.purchase
        outcome.value.invoice = create_initial_invoice_for_purchase(
            db, bookkeeping.purchase
        )
        checkout_session.customer_id = bookkeeping.customer.id
        checkout_session.purchase_id = bookkeeping.purchase.id

    checkout_session.status = _terminal_guarded_status(checkout_session.status, status)
    _capture_billing_details(checkout_session, charge)
    flush(db)
    logger.info(
        "Processed charge %s for CheckoutSession %s: %s",
        charge.id,
        checkout_session.id,
        checkout_session.status.value,
        extra={"checkout_session_id": checkout_session.id},
    )
    return outcome


def reconcile_charge_for_checkout_session(
    db: Session, checkout_session_id: Any, charge: StripeCharge
) -> TransactionOutcome[ChargeProcessingResult]:
    """Full charge webhook handling: session bookkeeping, payment, statuses."""
    outcome = TransactionOutcome(None)
    result = outcome.absorb(
        process_stripe_charge_for_checkout_session(db, checkout_session_id, charge)
    )
    outcome.value = result
    if result.payment is not None or result.invoice is None:
        # Invoice sessions record their payment themselves; failed product
        # charges have nothing to attach a payment to.
        return outcome

    purchase = result.purchase
    result.payment = upsert_payment_for_charge(
        db,
        charge,
        organization_id=purchase.organization_id,
        customer_id=purchase.customer_id,
        invoice_id=result.invoice.id,
        purchase_id=purchase.id,
    )
    was_paid = purchase.status == PurchaseStatus.paid
    update_purchase_status_to_reflect_latest_payment(db, result.payment)
    if charge.status == "pending":
        safely_update_invoice_status(
            db, result.invoice, InvoiceStatus.awaiting_payment_confirmation
        )
    outcome.absorb(update_invoice_status_to_reflect_latest_payment(db, result.payment))
    if result.payment.status == PaymentStatus.succeeded:
        outcome.events.append(payment_succeeded_event(result.payment))
    if purchase.status == PurchaseStatus.paid and not was_paid:
        outcome.events.append(purchase_completed_event(purchase))
    return outcome


def process_setup_intent_for_checkout_session(
    db: Session, setup_intent: StripeSetupIntent
) -> TransactionOutcome[SetupIntentProcessingResult]:
    checkout_session = select_checkout_session(db, setup_intent.checkout_session_id)
    if isinstance(checkout_session, InvoiceCheckoutSession):
        raise ValidationError("Invoice checkout sessions cannot be paid with a setup intent")
    outcome = TransactionOutcome(SetupIntentProcessingResult(checkout_session))
    if checkout_session.status != CheckoutSessionStatus.open:
        # Already settled by an earlier delivery of this event.
        return outcome

    status = setup_intent_status_to_checkout_session_status(setup_intent.status)
    checkout_session.stripe_setup_intent_id = setup_intent.id
    if status == CheckoutSessionStatus.succeeded:
        if (
            select_latest_fee_calculation(db, checkout_session_id=checkout_session.id)
            is None
            and checkout_session.is_fee_ready()
        ):
            create_fee_calculation_for_checkout_session(db, checkout_session)
        bookkeeping = outcome.absorb(
            process_purchase_bookkeeping_for_checkout_session(
                db, checkout_session, setup_intent.customer
            )
        )
        checkout_session.customer_id = bookkeeping.customer.id
        outcome.value.customer = bookkeeping.customer
        outcome.value.purchase = bookkeeping.purchase
    checkout_session.status = status
    flush(db)
    return outcome
