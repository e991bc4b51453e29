"""Tests for checkout-session editing and processor callback reconciliation."""

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select

from bookkeeper.errors import ConcurrentModificationError, NotFoundError, ValidationError
from bookkeeper.models.billing import (
    CheckoutSessionStatus,
    Customer,
    InvoiceStatus,
    Payment,
    PaymentMethodType,
    PaymentStatus,
    PriceType,
    ProductCheckoutSession,
    Purchase,
    PurchaseStatus,
)
from bookkeeper.models.events import Event, EventType
from bookkeeper.models.organization import StripeConnectContractType
from bookkeeper.schemas.billing import (
    Address,
    BillingAddress,
    CheckoutSessionUpdate,
    StripeCharge,
    StripeSetupIntent,
)
from bookkeeper.services.bookkeeping import checkout_sessions as checkout_service
from bookkeeper.services.bookkeeping.fee_calculations import (
    create_fee_calculation_for_checkout_session,
    select_latest_fee_calculation,
)
from bookkeeper.services.transaction import comprehensive_transaction


def _charge(**overrides):
    values = {
        "id": f"ch_{uuid.uuid4().hex[:16]}",
        "status": "succeeded",
        "amount": 1000,
        "created": datetime.now(UTC),
        "billing_details": {"name": "Buyer Name", "email": "buyer@example.com"},
    }
    values.update(overrides)
    return StripeCharge(**values)


@pytest.fixture()
def priced_session(db_session, fee_ready_checkout_session):
    """A fee-ready session that already has its fee snapshot."""
    create_fee_calculation_for_checkout_session(db_session, fee_ready_checkout_session)
    return fee_ready_checkout_session


# ── Status mapping ───────────────────────────────────────


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("succeeded", CheckoutSessionStatus.succeeded),
        ("canceled", CheckoutSessionStatus.failed),
        ("processing", CheckoutSessionStatus.pending),
        ("requires_payment_method", CheckoutSessionStatus.pending),
    ],
)
def test_setup_intent_status_mapping(status, expected):
    assert checkout_service.setup_intent_status_to_checkout_session_status(status) == expected


def test_charge_status_mappings():
    assert checkout_service.charge_status_to_payment_status("pending") == PaymentStatus.processing
    assert checkout_service.charge_status_to_payment_status("failed") == PaymentStatus.failed
    assert (
        checkout_service.checkout_session_status_from_charge(_charge(status="failed"))
        == CheckoutSessionStatus.failed
    )


def test_fee_parameters_track_state(fee_ready_checkout_session):
    before = checkout_service.fee_parameters(fee_ready_checkout_session)
    fee_ready_checkout_session.billing_address = {
        "address": {"country": "US", "state": "CA"}
    }
    after = checkout_service.fee_parameters(fee_ready_checkout_session)
    assert before["state"] == "TX"
    assert checkout_service.checkout_session_fee_parameters_changed(before, after)
    assert not checkout_service.checkout_session_fee_parameters_changed(before, dict(before))


# ── Editing ──────────────────────────────────────────────


def test_edit_requires_open_session(db_session, checkout_session):
    checkout_session.status = CheckoutSessionStatus.succeeded
    db_session.flush()
    with pytest.raises(ValidationError, match="not open"):
        checkout_service.edit_checkout_session(
            db_session, checkout_session.id, CheckoutSessionUpdate(customer_name="x")
        )


def test_edit_missing_session(db_session):
    with pytest.raises(NotFoundError, match="Checkout session not found"):
        checkout_service.edit_checkout_session(
            db_session, uuid.uuid4(), CheckoutSessionUpdate()
        )


def test_edit_rejects_non_pending_purchase_without_writing(
    db_session, organization, customer, price, checkout_session
):
    purchase = Purchase(
        organization_id=organization.id,
        customer_id=customer.id,
        price_id=price.id,
        name="Done",
        status=PurchaseStatus.paid,
    )
    db_session.add(purchase)
    db_session.flush()
    with pytest.raises(ValidationError, match="Purchase is not pending"):
        checkout_service.edit_checkout_session(
            db_session,
            checkout_session.id,
            CheckoutSessionUpdate(customer_name="Changed"),
            purchase_id=purchase.id,
        )
    assert checkout_session.customer_name == "Buyer"


def test_edit_with_stale_version(db_session, checkout_session):
    with pytest.raises(ConcurrentModificationError):
        checkout_service.edit_checkout_session(
            db_session,
            checkout_session.id,
            CheckoutSessionUpdate(customer_name="x"),
            expected_version=checkout_session.version + 1,
        )


def test_edit_without_fee_inputs_has_no_fee_calculation(db_session, checkout_session):
    result = checkout_service.edit_checkout_session(
        db_session, checkout_session.id, CheckoutSessionUpdate(customer_name="Lin")
    )
    assert result.checkout_session.customer_name == "Lin"
    assert result.fee_calculation is None


def test_edit_recalculates_fees_only_when_inputs_change(
    db_session, fee_ready_checkout_session
):
    session_id = fee_ready_checkout_session.id
    first = checkout_service.edit_checkout_session(
        db_session, session_id, CheckoutSessionUpdate(customer_name="Lin")
    ).fee_calculation
    assert first is not None

    unchanged = checkout_service.edit_checkout_session(
        db_session, session_id, CheckoutSessionUpdate(customer_name="Lin Again")
    ).fee_calculation
    assert unchanged.id == first.id

    moved = checkout_service.edit_checkout_session(
        db_session,
        session_id,
        CheckoutSessionUpdate(
            billing_address=BillingAddress(address=Address(country="US", state="CA"))
        ),
    ).fee_calculation
    assert moved.id != first.id
    assert moved.billing_address["address"]["state"] == "CA"


def test_edit_copies_billing_address_to_pending_purchase(
    db_session, organization, customer, price, fee_ready_checkout_session
):
    purchase = Purchase(
        organization_id=organization.id,
        customer_id=customer.id,
        price_id=price.id,
        name="Pending",
        status=PurchaseStatus.pending,
    )
    db_session.add(purchase)
    db_session.flush()
    checkout_service.edit_checkout_session(
        db_session,
        fee_ready_checkout_session.id,
        CheckoutSessionUpdate(
            billing_address=BillingAddress(address=Address(country="US", state="NY"))
        ),
        purchase_id=purchase.id,
    )
    assert purchase.billing_address["address"]["state"] == "NY"


def test_edit_updates_payment_intent_amount(
    db_session, fee_ready_checkout_session, fake_gateway
):
    fee_ready_checkout_session.stripe_payment_intent_id = "pi_test_123"
    db_session.flush()
    checkout_service.edit_checkout_session(
        db_session,
        fee_ready_checkout_session.id,
        CheckoutSessionUpdate(payment_method_type=PaymentMethodType.us_bank_account),
    )
    assert fake_gateway.payment_intent_updates == [
        {
            "id": "pi_test_123",
            "amount": 1000,
            "application_fee_amount": None,
            "livemode": False,
        }
    ]


def test_billing_address_edit_skips_fees_for_platform(db_session, checkout_session):
    checkout_session.payment_method_type = PaymentMethodType.card
    db_session.flush()
    result = checkout_service.edit_checkout_session_billing_address(
        db_session,
        checkout_session.id,
        BillingAddress(address=Address(country="US", state="TX")),
    )
    assert result.checkout_session.billing_address["address"]["country"] == "US"
    assert result.fee_calculation is None


def test_billing_address_edit_recomputes_tax_for_merchant_of_record(
    db_session, organization, checkout_session, fake_gateway
):
    organization.stripe_connect_contract_type = (
        StripeConnectContractType.merchant_of_record
    )
    checkout_session.payment_method_type = PaymentMethodType.card
    fake_gateway.tax_amount = 50
    db_session.flush()
    result = checkout_service.edit_checkout_session_billing_address(
        db_session,
        checkout_session.id,
        BillingAddress(address=Address(country="US", state="NY")),
    )
    assert result.fee_calculation.tax_amount_fixed == 50
    assert len(fake_gateway.tax_calculations) == 1


def test_billing_address_jurisdiction_change_forces_new_fee_calculation(
    db_session, organization, checkout_session, fake_gateway
):
    organization.stripe_connect_contract_type = (
        StripeConnectContractType.merchant_of_record
    )
    checkout_session.payment_method_type = PaymentMethodType.card
    db_session.flush()

    def _edit(state):
        return checkout_service.edit_checkout_session_billing_address(
            db_session,
            checkout_session.id,
            BillingAddress(address=Address(country="US", state=state)),
        ).fee_calculation

    new_york = _edit("NY")
    california = _edit("CA")
    california_again = _edit("CA")

    assert california.id != new_york.id
    assert california_again.id == california.id
    assert len(fake_gateway.tax_calculations) == 2
    assert [c["billing_address"]["address"]["state"] for c in fake_gateway.tax_calculations] == [
        "NY",
        "CA",
    ]


# ── Charges on product sessions ──────────────────────────


def test_succeeded_charge_creates_purchase_invoice_and_payment(
    db_session, priced_session, fake_gateway
):
    outcome = checkout_service.reconcile_charge_for_checkout_session(
        db_session, priced_session.id, _charge()
    )
    result = outcome.value
    assert priced_session.status == CheckoutSessionStatus.succeeded
    assert priced_session.customer_name == "Buyer Name"
    assert result.purchase.status == PurchaseStatus.paid
    assert result.invoice.status == InvoiceStatus.paid
    assert result.payment.status == PaymentStatus.succeeded
    assert result.payment.purchase_id == result.purchase.id
    assert priced_session.purchase_id == result.purchase.id
    assert priced_session.customer_id is not None
    assert len(fake_gateway.customers) == 1

    fee_calc = select_latest_fee_calculation(db_session, checkout_session_id=priced_session.id)
    assert fee_calc.purchase_id == result.purchase.id

    event_types = [event.type for event in outcome.events]
    assert EventType.customer_created in event_types
    assert event_types.count(EventType.payment_succeeded) == 1
    assert event_types.count(EventType.purchase_completed) == 1
    assert len(outcome.post_commit) == 1


def test_replayed_charge_is_idempotent(db_session, priced_session):
    charge = _charge()
    first = comprehensive_transaction(
        lambda db: checkout_service.reconcile_charge_for_checkout_session(
            db, priced_session.id, charge
        ),
        db=db_session,
    )
    second = comprehensive_transaction(
        lambda db: checkout_service.reconcile_charge_for_checkout_session(
            db, priced_session.id, charge
        ),
        db=db_session,
    )
    assert second.payment.id == first.payment.id
    assert second.purchase.id == first.purchase.id
    payments = db_session.scalar(
        select(func.count()).select_from(Payment).where(Payment.stripe_charge_id == charge.id)
    )
    assert payments == 1
    events = db_session.scalar(
        select(func.count())
        .select_from(Event)
        .where(
            Event.object_id == first.payment.id,
            Event.type == EventType.payment_succeeded,
        )
    )
    assert events == 1


def test_failed_charge_only_fails_session(db_session, priced_session):
    outcome = checkout_service.reconcile_charge_for_checkout_session(
        db_session, priced_session.id, _charge(status="failed")
    )
    assert priced_session.status == CheckoutSessionStatus.failed
    assert outcome.value.purchase is None
    assert outcome.value.payment is None
    assert priced_session.purchase_id is None


def test_late_failure_does_not_undo_success(db_session, priced_session):
    checkout_service.reconcile_charge_for_checkout_session(
        db_session, priced_session.id, _charge()
    )
    checkout_service.process_stripe_charge_for_checkout_session(
        db_session, priced_session.id, _charge(status="failed")
    )
    assert priced_session.status == CheckoutSessionStatus.succeeded


def test_pending_charge_awaits_confirmation(db_session, priced_session):
    outcome = checkout_service.reconcile_charge_for_checkout_session(
        db_session, priced_session.id, _charge(status="pending")
    )
    result = outcome.value
    assert priced_session.status == CheckoutSessionStatus.pending
    assert result.payment.status == PaymentStatus.processing
    assert result.purchase.status == PurchaseStatus.pending
    assert result.invoice.status == InvoiceStatus.awaiting_payment_confirmation
    assert EventType.payment_succeeded not in [event.type for event in outcome.events]


def test_charge_reuses_customer_with_matching_processor_id(
    db_session, customer, priced_session, fake_gateway
):
    outcome = checkout_service.reconcile_charge_for_checkout_session(
        db_session,
        priced_session.id,
        _charge(customer=customer.stripe_customer_id),
    )
    assert outcome.value.purchase.customer_id == customer.id
    assert fake_gateway.customers == []


def test_charge_with_conflicting_processor_customer(db_session, customer, priced_session):
    priced_session.customer_id = customer.id
    db_session.flush()
    with pytest.raises(ValidationError, match="different stripe customer cus_other"):
        checkout_service.process_stripe_charge_for_checkout_session(
            db_session, priced_session.id, _charge(customer="cus_other")
        )


def test_charge_without_fee_calculation(db_session, fee_ready_checkout_session):
    with pytest.raises(ValidationError, match="No fee calculation found"):
        checkout_service.process_stripe_charge_for_checkout_session(
            db_session, fee_ready_checkout_session.id, _charge()
        )


def test_charge_without_email_cannot_create_customer(db_session, priced_session):
    priced_session.customer_email = None
    db_session.flush()
    with pytest.raises(ValidationError, match="has no customer email"):
        checkout_service.process_stripe_charge_for_checkout_session(
            db_session,
            priced_session.id,
            _charge(billing_details={"name": None, "email": None}),
        )


def test_usage_price_session_is_rejected(
    db_session, organization, pricing_model, price_factory
):
    usage_price = price_factory(
        product_id=None, type=PriceType.usage, unit_price=1, slug="calls"
    )
    session = ProductCheckoutSession(
        organization_id=organization.id,
        price_id=usage_price.id,
        customer_email="buyer@example.com",
    )
    db_session.add(session)
    db_session.flush()
    with pytest.raises(ValidationError, match="not usage prices"):
        checkout_service.process_purchase_bookkeeping_for_checkout_session(
            db_session, session, None
        )


# ── Charges on invoice sessions ──────────────────────────


def test_invoice_session_charge_pays_invoice(
    db_session, invoice, invoice_checkout_session
):
    outcome = checkout_service.reconcile_charge_for_checkout_session(
        db_session, invoice_checkout_session.id, _charge()
    )
    assert invoice_checkout_session.status == CheckoutSessionStatus.succeeded
    assert invoice.status == InvoiceStatus.paid
    assert outcome.value.payment.invoice_id == invoice.id
    assert outcome.value.purchase is None
    assert [event.type for event in outcome.events] == [EventType.payment_succeeded]


def test_invoice_session_pending_charge(db_session, invoice, invoice_checkout_session):
    checkout_service.process_stripe_charge_for_checkout_session(
        db_session, invoice_checkout_session.id, _charge(status="pending")
    )
    assert invoice_checkout_session.status == CheckoutSessionStatus.pending
    assert invoice.status == InvoiceStatus.awaiting_payment_confirmation


def test_invoice_session_counts_refunds_against_total(
    db_session, invoice, invoice_checkout_session
):
    checkout_service.process_stripe_charge_for_checkout_session(
        db_session, invoice_checkout_session.id, _charge(amount_refunded=400)
    )
    assert invoice.status == InvoiceStatus.open


def test_invoice_session_cannot_run_purchase_bookkeeping(
    db_session, invoice_checkout_session
):
    with pytest.raises(ValidationError, match="pays an invoice"):
        checkout_service.process_purchase_bookkeeping_for_checkout_session(
            db_session, invoice_checkout_session, None
        )


# ── Setup intents ────────────────────────────────────────


def test_succeeded_setup_intent_runs_bookkeeping(
    db_session, fee_ready_checkout_session
):
    outcome = checkout_service.process_setup_intent_for_checkout_session(
        db_session,
        StripeSetupIntent(
            id="seti_123",
            status="succeeded",
            checkout_session_id=fee_ready_checkout_session.id,
        ),
    )
    session = fee_ready_checkout_session
    assert session.status == CheckoutSessionStatus.succeeded
    assert session.stripe_setup_intent_id == "seti_123"
    assert outcome.value.purchase is not None
    assert session.customer_id == outcome.value.customer.id
    assert db_session.get(Customer, session.customer_id).email == "buyer@example.com"
    assert select_latest_fee_calculation(db_session, checkout_session_id=session.id)


def test_canceled_setup_intent_fails_session(db_session, fee_ready_checkout_session):
    outcome = checkout_service.process_setup_intent_for_checkout_session(
        db_session,
        StripeSetupIntent(
            id="seti_456",
            status="canceled",
            checkout_session_id=fee_ready_checkout_session.id,
        ),
    )
    assert fee_ready_checkout_session.status == CheckoutSessionStatus.failed
    assert outcome.value.purchase is None


def test_setup_intent_on_settled_session_is_ignored(db_session, checkout_session):
    checkout_session.status = CheckoutSessionStatus.failed
    db_session.flush()
    checkout_service.process_setup_intent_for_checkout_session(
        db_session,
        StripeSetupIntent(
            id="seti_789", status="succeeded", checkout_session_id=checkout_session.id
        ),
    )
    assert checkout_session.status == CheckoutSessionStatus.failed
    assert checkout_session.stripe_setup_intent_id is None


def test_setup_intent_on_invoice_session_is_rejected(db_session, invoice_checkout_session):
    with pytest.raises(ValidationError):
        checkout_service.process_setup_intent_for_checkout_session(
            db_session,
            StripeSetupIntent(
                id="seti_000",
                status="succeeded",
                checkout_session_id=invoice_checkout_session.id,
            ),
        )
