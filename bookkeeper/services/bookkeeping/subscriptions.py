"""Subscription provisioning used by customer creation and checkout."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from bookkeeper.models.billing import (
    BillingPeriod,
    BillingPeriodItem,
    BillingPeriodStatus,
    Customer,
    IntervalUnit,
    Price,
    PriceType,
    Product,
    Subscription,
    SubscriptionItem,
    SubscriptionItemType,
    SubscriptionStatus,
)
from bookkeeper.models.events import LedgerCommandType
from bookkeeper.models.organization import Organization
from bookkeeper.services.bookkeeping.events import subscription_created_event
from bookkeeper.services.transaction import LedgerCommandInsert, TransactionOutcome

logger = logging.getLogger(__name__)


@dataclass
class CreateSubscriptionParams:
    organization: Organization
    customer: Customer
    product: Product
    price: Price
    start_date: datetime
    quantity: int = 1
    interval: IntervalUnit | None = None
    interval_count: int | None = None
    trial_end: datetime | None = None
    name: str | None = None
    auto_start: bool = True


@dataclass
class SubscriptionWorkflowResult:
    subscription: Subscription
    subscription_items: list[SubscriptionItem]
    billing_period: BillingPeriod | None = None
    billing_period_items: list[BillingPeriodItem] = field(default_factory=list)


def add_interval(start: datetime, unit: IntervalUnit, count: int) -> datetime:
    return start + relativedelta(**{f"{IntervalUnit(unit).value}s": count})


def create_subscription_workflow(
    db: Session, params: CreateSubscriptionParams
) -> TransactionOutcome[SubscriptionWorkflowResult]:
    price = params.price
    renews = price.type != PriceType.single_payment
    interval = params.interval or price.interval_unit
    interval_count = params.interval_count or price.interval_count or 1
    if renews and interval is None:
        interval = IntervalUnit.month

    if params.trial_end is not None:
        status = SubscriptionStatus.trialing
    elif params.auto_start:
        status = SubscriptionStatus.active
    else:
        status = SubscriptionStatus.incomplete

    period_start = period_end = None
    if renews:
        period_start = params.start_date
        period_end = params.trial_end or add_interval(
            params.start_date, interval, interval_count
        )

    subscription = Subscription(
        organization_id=params.organization.id,
        customer_id=params.customer.id,
        price_id=price.id,
        name=params.name,
        status=status,
        renews=renews,
        start_date=params.start_date,
        trial_end=params.trial_end,
        current_billing_period_start=period_start,
        current_billing_period_end=period_end,
        billing_cycle_anchor_date=params.start_date if renews else None,
        interval=interval if renews else None,
        interval_count=interval_count if renews else None,
        livemode=params.customer.livemode,
    )
    db.add(subscription)
    db.flush()

    is_usage = price.type == PriceType.usage
    item = SubscriptionItem(
        subscription_id=subscription.id,
        price_id=price.id,
        name=price.name or params.product.name,
        quantity=params.quantity,
        unit_price=price.unit_price,
        type=SubscriptionItemType.usage if is_usage else SubscriptionItemType.static,
        usage_meter_id=price.usage_meter_id,
        usage_events_per_unit=price.usage_events_per_unit,
        added_date=params.start_date,
        livemode=subscription.livemode,
    )
    db.add(item)
    db.flush()

    outcome = TransactionOutcome(
        SubscriptionWorkflowResult(subscription=subscription, subscription_items=[item]),
        events=[subscription_created_event(subscription)],
    )

    if renews:
        in_trial = params.trial_end is not None
        billing_period = BillingPeriod(
            subscription_id=subscription.id,
            start_date=period_start,
            end_date=period_end,
            status=BillingPeriodStatus.active,
            trial_period=in_trial,
            livemode=subscription.livemode,
        )
        db.add(billing_period)
        db.flush()
        # Trial periods bill nothing.
        if not in_trial:
            period_item = BillingPeriodItem(
                billing_period_id=billing_period.id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                type=item.type,
                usage_meter_id=item.usage_meter_id,
                usage_events_per_unit=item.usage_events_per_unit,
                livemode=subscription.livemode,
            )
            db.add(period_item)
            db.flush()
            outcome.value.billing_period_items.append(period_item)
        outcome.value.billing_period = billing_period
        outcome.ledger_commands.append(
            LedgerCommandInsert(
                type=LedgerCommandType.billing_period_transition,
                organization_id=subscription.organization_id,
                subscription_id=subscription.id,
                payload={
                    "subscription_id": str(subscription.id),
                    "billing_period_id": str(billing_period.id),
                },
                livemode=subscription.livemode,
            )
        )

    logger.info(
        "Created Subscription: %s",
        subscription.id,
        extra={
            "organization_id": subscription.organization_id,
            "customer_id": subscription.customer_id,
        },
    )
    return outcome
