"""Invoice creation, payment-driven status changes and line-item edits."""
from __future__ import annotations

import functools
import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from bookkeeper.errors import ValidationError
from bookkeeper.models.billing import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Price,
    PriceType,
    Purchase,
)
from bookkeeper.schemas.billing import InvoiceUpdate
from bookkeeper.services.bookkeeping.fees import calculate_invoice_base_amount
from bookkeeper.services.common import (
    check_expected_version,
    flush,
    get_or_404,
    require_uuid,
    utcnow,
)
from bookkeeper.services.transaction import TransactionOutcome

logger = logging.getLogger(__name__)

_LOCKED_STATUSES = (InvoiceStatus.paid, InvoiceStatus.void)


def queue_invoice_receipt(invoice_id: uuid.UUID, payment_id: uuid.UUID) -> None:
    """Hand the receipt off to the document pipeline (runs after commit)."""
    logger.info(
        "Queued receipt for invoice %s (payment %s)",
        invoice_id,
        payment_id,
        extra={"invoice_id": invoice_id, "payment_id": payment_id},
    )


def generate_invoice_number() -> str:
    return f"INV-{uuid.uuid4().hex[:12].upper()}"


def effective_payment_amount(payment: Payment) -> int:
    """What a payment still contributes after refunds; never negative."""
    return max(payment.amount - (payment.refunded_amount or 0), 0)


def safely_update_invoice_status(
    db: Session, invoice: Invoice, status: InvoiceStatus
) -> Invoice:
    """Set ``status`` unless the invoice is already paid; paid is terminal."""
    if invoice.status == InvoiceStatus.paid and status != InvoiceStatus.paid:
        logger.warning(
            "Refusing to move paid invoice %s to %s",
            invoice.id,
            status.value,
            extra={"invoice_id": invoice.id},
        )
        return invoice
    if invoice.status != status:
        invoice.status = status
        flush(db)
        logger.info(
            "Invoice %s is now %s",
            invoice.id,
            status.value,
            extra={"invoice_id": invoice.id},
        )
    return invoice


def update_invoice_status_to_reflect_latest_payment(
    db: Session, payment: Payment
) -> TransactionOutcome[Invoice | None]:
    """Mark the invoice paid once succeeded payments cover its total.

    Idempotent. ``payment`` itself always counts, even if the stored row has
    not caught up with its succeeded status yet.
    """
    if payment.status != PaymentStatus.succeeded:
        return TransactionOutcome(None)
    invoice = get_or_404(db, Invoice, payment.invoice_id, "Invoice")
    if invoice.status == InvoiceStatus.paid:
        return TransactionOutcome(invoice)

    succeeded = db.scalars(
        select(Payment).where(
            Payment.invoice_id == invoice.id,
            Payment.status == PaymentStatus.succeeded,
        )
    ).all()
    payments_by_id = {p.id: p for p in succeeded}
    payments_by_id[payment.id] = payment
    paid_so_far = sum(effective_payment_amount(p) for p in payments_by_id.values())
    total = calculate_invoice_base_amount(invoice.line_items)

    outcome = TransactionOutcome(invoice)
    if paid_so_far >= total:
        safely_update_invoice_status(db, invoice, InvoiceStatus.paid)
        outcome.post_commit.append(
            functools.partial(queue_invoice_receipt, invoice.id, payment.id)
        )
    return outcome


def create_initial_invoice_for_purchase(db: Session, purchase: Purchase) -> Invoice:
    """Return the purchase's invoice, creating an open one on first call."""
    existing = db.scalars(
        select(Invoice).where(Invoice.purchase_id == purchase.id).limit(1)
    ).first()
    if existing is not None:
        return existing
    price = get_or_404(db, Price, purchase.price_id, "Price")
    if price.type == PriceType.subscription:
        amount = purchase.price_per_billing_cycle or price.unit_price
    else:
        amount = (
            purchase.first_invoice_value
            if purchase.first_invoice_value is not None
            else price.unit_price
        )
    invoice = Invoice(
        organization_id=purchase.organization_id,
        customer_id=purchase.customer_id,
        purchase_id=purchase.id,
        invoice_number=generate_invoice_number(),
        invoice_date=utcnow(),
        status=InvoiceStatus.open,
        currency=price.currency,
        livemode=purchase.livemode,
    )
    invoice.line_items.append(
        InvoiceLineItem(
            price_id=price.id,
            description=purchase.name,
            quantity=purchase.quantity or 1,
            price=amount,
            livemode=purchase.livemode,
        )
    )
    db.add(invoice)
    flush(db)
    logger.info(
        "Created Invoice: %s",
        invoice.id,
        extra={"invoice_id": invoice.id, "purchase_id": purchase.id},
    )
    return invoice


def update_invoice_transaction(
    db: Session,
    invoice_id: Any,
    payload: InvoiceUpdate,
    *,
    expected_version: int | None = None,
) -> Invoice:
    """Apply ``payload`` to the invoice and reconcile its line items.

    Line items carrying an id are updated, new ones inserted, and stored
    items missing from the payload deleted, all or nothing.
    """
    if require_uuid(invoice_id) != payload.id:
        raise ValidationError(
            f"ID mismatch: cannot apply invoice {payload.id} to invoice {invoice_id}"
        )
    invoice = get_or_404(db, Invoice, invoice_id, "Invoice")
    check_expected_version(invoice, expected_version)
    if invoice.status in _LOCKED_STATUSES:
        raise ValidationError(
            f"Invoice {invoice.id} is {invoice.status.value} and cannot be edited"
        )

    existing = {item.id: item for item in invoice.line_items}
    incoming_ids = {item.id for item in payload.line_items if item.id is not None}
    unknown = incoming_ids - existing.keys()
    if unknown:
        raise ValidationError(
            f"Line items {sorted(str(i) for i in unknown)} do not belong to "
            f"invoice {invoice.id}"
        )

    with db.begin_nested():
        for field_name in ("memo", "due_date"):
            if field_name in payload.model_fields_set:
                setattr(invoice, field_name, getattr(payload, field_name))
        for item_id, item in existing.items():
            if item_id not in incoming_ids:
                invoice.line_items.remove(item)
        for line in payload.line_items:
            values = line.model_dump(exclude={"id"})
            if line.id is None:
                invoice.line_items.append(
                    InvoiceLineItem(livemode=invoice.livemode, **values)
                )
            else:
                for key, value in values.items():
                    setattr(existing[line.id], key, value)
        # Touch the parent row so its version moves with its line items.
        invoice.updated_at = utcnow()
        flush(db)
    logger.info(
        "Updated Invoice %s: %d line items",
        invoice.id,
        len(invoice.line_items),
        extra={"invoice_id": invoice.id},
    )
    return invoice
