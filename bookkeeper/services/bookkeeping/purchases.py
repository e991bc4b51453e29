import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from bookkeeper.models.billing import (
    Discount,
    DiscountRedemption,
    Payment,
    PaymentStatus,
    Purchase,
    PurchaseStatus,
)
from bookkeeper.services.common import flush, get_or_404

logger = logging.getLogger(__name__)

_PURCHASE_STATUS_BY_PAYMENT_STATUS = {
    PaymentStatus.succeeded: PurchaseStatus.paid,
    PaymentStatus.canceled: PurchaseStatus.failed,
    PaymentStatus.processing: PurchaseStatus.pending,
}


def purchase_status_from_payment_status(status: PaymentStatus) -> PurchaseStatus:
    return _PURCHASE_STATUS_BY_PAYMENT_STATUS.get(status, PurchaseStatus.pending)


def update_purchase_status_to_reflect_latest_payment(
    db: Session, payment: Payment
) -> Purchase | None:
    """Mirror the payment's outcome onto its purchase; no-op without one."""
    if payment.purchase_id is None:
        return None
    purchase = get_or_404(db, Purchase, payment.purchase_id, "Purchase")
    purchase.status = purchase_status_from_payment_status(payment.status)
    purchase.purchase_date = payment.charge_date
    flush(db)
    logger.info(
        "Purchase %s is now %s",
        purchase.id,
        purchase.status.value,
        extra={"purchase_id": purchase.id, "payment_id": payment.id},
    )
    return purchase


def upsert_discount_redemption_for_purchase_and_discount(
    db: Session, purchase: Purchase, discount: Discount
) -> DiscountRedemption:
    """Snapshot the discount's current terms against the purchase, once."""
    redemption = db.scalars(
        select(DiscountRedemption).where(
            DiscountRedemption.purchase_id == purchase.id,
            DiscountRedemption.discount_id == discount.id,
        )
    ).first()
    if redemption is None:
        redemption = DiscountRedemption(
            purchase_id=purchase.id,
            discount_id=discount.id,
            livemode=purchase.livemode,
        )
        db.add(redemption)
    redemption.discount_name = discount.name
    redemption.discount_code = discount.code
    redemption.discount_amount = discount.amount
    redemption.discount_amount_type = discount.amount_type
    db.flush()
    return redemption
