"""Customer creation, including the default-plan subscription."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from bookkeeper.errors import NotFoundError, ValidationError
from bookkeeper.models.billing import (
    Customer,
    Price,
    PricingModel,
    Product,
    Subscription,
    SubscriptionItem,
)
from bookkeeper.models.organization import Organization
from bookkeeper.schemas.billing import CustomerCreate
from bookkeeper.services.bookkeeping.events import customer_created_event
from bookkeeper.services.bookkeeping.pricing_models import select_default_pricing_model
from bookkeeper.services.bookkeeping.subscriptions import (
    CreateSubscriptionParams,
    create_subscription_workflow,
)
from bookkeeper.services.common import get_or_404, utcnow
from bookkeeper.services.payment_gateway import stripe_gateway
from bookkeeper.services.transaction import TransactionOutcome

logger = logging.getLogger(__name__)


@dataclass
class CustomerBookkeepingResult:
    customer: Customer
    subscription: Subscription | None = None
    subscription_items: list[SubscriptionItem] = field(default_factory=list)


def select_customer_by_stripe_customer_id(
    db: Session, stripe_customer_id: str
) -> Customer | None:
    return db.scalars(
        select(Customer).where(Customer.stripe_customer_id == stripe_customer_id)
    ).first()


def _resolve_pricing_model_id(
    db: Session, payload: CustomerCreate, organization_id: uuid.UUID, livemode: bool
) -> uuid.UUID:
    if payload.pricing_model_id is not None:
        pricing_model = db.get(PricingModel, payload.pricing_model_id)
        if (
            not pricing_model
            or pricing_model.organization_id != organization_id
            or pricing_model.livemode != livemode
        ):
            raise NotFoundError(f"Pricing model {payload.pricing_model_id} not found")
        return pricing_model.id
    default_pricing_model = select_default_pricing_model(db, organization_id, livemode)
    if default_pricing_model is None:
        raise NotFoundError(
            f"No pricing model found for customer {payload.external_id}"
        )
    return default_pricing_model.id


def _select_default_plan(
    db: Session, pricing_model_id: uuid.UUID
) -> tuple[Product | None, Price | None]:
    product = db.scalars(
        select(Product).where(
            Product.pricing_model_id == pricing_model_id,
            Product.default.is_(True),
            Product.active.is_(True),
        )
    ).first()
    if product is None:
        return None, None
    price = db.scalars(
        select(Price).where(
            Price.product_id == product.id,
            Price.is_default.is_(True),
            Price.active.is_(True),
        )
    ).first()
    return product, price


def create_customer_bookkeeping(
    db: Session,
    payload: CustomerCreate,
    *,
    organization_id: uuid.UUID,
    livemode: bool,
) -> TransactionOutcome[CustomerBookkeepingResult]:
    """Create a customer and, when the pricing model has one, its default plan.

    The default-plan subscription is best effort: if provisioning fails the
    customer is still created and the failure is logged.
    """
    if payload.organization_id is not None and payload.organization_id != organization_id:
        raise ValidationError(
            "Customer organizationId must match authenticated organizationId"
        )
    organization = get_or_404(db, Organization, organization_id, "Organization")
    pricing_model_id = _resolve_pricing_model_id(db, payload, organization.id, livemode)

    customer = Customer(
        organization_id=organization.id,
        pricing_model_id=pricing_model_id,
        email=payload.email,
        name=payload.name,
        external_id=payload.external_id,
        stripe_customer_id=payload.stripe_customer_id,
        livemode=livemode,
    )
    db.add(customer)
    db.flush()
    if not customer.stripe_customer_id:
        customer.stripe_customer_id = stripe_gateway.create_customer(
            customer.email, customer.name, livemode
        )
        db.flush()
    logger.info(
        "Created Customer: %s",
        customer.id,
        extra={"organization_id": organization.id, "customer_id": customer.id},
    )

    outcome = TransactionOutcome(
        CustomerBookkeepingResult(customer=customer),
        events=[customer_created_event(customer)],
    )

    try:
        with db.begin_nested():
            product, price = _select_default_plan(db, pricing_model_id)
            subscription_outcome = None
            if product is not None and price is not None:
                trial_end = (
                    utcnow() + timedelta(days=price.trial_period_days)
                    if price.trial_period_days
                    else None
                )
                subscription_outcome = create_subscription_workflow(
                    db,
                    CreateSubscriptionParams(
                        organization=organization,
                        customer=customer,
                        product=product,
                        price=price,
                        quantity=1,
                        start_date=utcnow(),
                        interval=price.interval_unit,
                        interval_count=price.interval_count,
                        trial_end=trial_end,
                        name=f"{product.name} Subscription",
                        auto_start=True,
                    ),
                )
    except Exception:
        logger.exception(
            "Failed to create default subscription for customer %s",
            customer.id,
            extra={"organization_id": organization.id, "customer_id": customer.id},
        )
    else:
        if subscription_outcome is not None:
            workflow_result = outcome.absorb(subscription_outcome)
            outcome.value.subscription = workflow_result.subscription
            outcome.value.subscription_items = workflow_result.subscription_items
    return outcome
