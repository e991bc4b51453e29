"""Recurring-revenue reporting over billing periods."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from bookkeeper.models.billing import BillingPeriod, BillingPeriodItem, Price, Subscription
from bookkeeper.schemas.billing import MonthlyRevenue, RevenueCalculationOptions
from bookkeeper.services.bookkeeping.fees import normalize_to_monthly_value
from bookkeeper.services.common import (
    end_of_month,
    ensure_utc,
    month_starts,
    start_of_month,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class MRRBreakdown:
    new_mrr: float = 0
    expansion_mrr: float = 0
    contraction_mrr: float = 0
    churn_mrr: float = 0

    @property
    def net_mrr(self) -> float:
        return self.new_mrr + self.expansion_mrr - self.contraction_mrr - self.churn_mrr


def _as_date(value: datetime | date) -> date:
    if isinstance(value, datetime):
        return ensure_utc(value).date()
    return value


def calculate_overlap_percentage(
    billing_period: BillingPeriod, range_start: datetime, range_end: datetime
) -> float:
    """Share of the billing period's days that fall inside the range.

    Day counts include both boundary days, so a one-day period inside the
    range overlaps fully.
    """
    period_start = _as_date(billing_period.start_date)
    period_end = _as_date(billing_period.end_date)
    start = _as_date(range_start)
    end = _as_date(range_end)
    if period_end < start or period_start > end:
        return 0.0
    overlap_days = (min(period_end, end) - max(period_start, start)).days + 1
    period_days = (period_end - period_start).days + 1
    return overlap_days / period_days


def calculate_billing_period_items_value(items: list[BillingPeriodItem]) -> int:
    return sum(item.unit_price * item.quantity for item in items)


def select_billing_periods_for_date_range(
    db: Session,
    organization_id: uuid.UUID,
    start_date: datetime,
    end_date: datetime,
    product_id: uuid.UUID | None = None,
) -> list[BillingPeriod]:
    query = (
        select(BillingPeriod)
        .join(Subscription, BillingPeriod.subscription_id == Subscription.id)
        .where(
            Subscription.organization_id == organization_id,
            BillingPeriod.start_date <= end_date,
            BillingPeriod.end_date >= start_date,
        )
        .options(
            selectinload(BillingPeriod.items),
            selectinload(BillingPeriod.subscription),
        )
        .order_by(BillingPeriod.start_date)
    )
    if product_id is not None:
        query = query.join(Price, Subscription.price_id == Price.id).where(
            Price.product_id == product_id
        )
    return list(db.scalars(query).all())


def _period_contribution(
    billing_period: BillingPeriod, month_start: datetime, month_end: datetime
) -> float:
    overlap = calculate_overlap_percentage(billing_period, month_start, month_end)
    if overlap <= 0:
        return 0.0
    subscription = billing_period.subscription
    monthly_value = normalize_to_monthly_value(
        calculate_billing_period_items_value(billing_period.items),
        subscription.interval,
        subscription.interval_count,
    )
    covers_month = (
        ensure_utc(billing_period.start_date) <= month_start
        and ensure_utc(billing_period.end_date) >= month_end
    )
    return monthly_value if covers_month else monthly_value * overlap


def calculate_mrr_by_month(
    db: Session, organization_id: uuid.UUID, options: RevenueCalculationOptions
) -> list[MonthlyRevenue]:
    """MRR for every calendar month in the range, zero-filled."""
    start_date = start_of_month(options.start_date)
    end_date = end_of_month(options.end_date)
    billing_periods = select_billing_periods_for_date_range(
        db, organization_id, start_date, end_date, options.product_id
    )
    results = []
    for month in month_starts(start_date, end_date):
        month_end = end_of_month(month)
        amount = sum(
            _period_contribution(bp, month, month_end) for bp in billing_periods
        )
        results.append(MonthlyRevenue(month=month, amount=amount))
    logger.debug(
        "Calculated MRR for %d months from %d billing periods",
        len(results),
        len(billing_periods),
        extra={"organization_id": organization_id},
    )
    return results


def _mrr_for_month(db: Session, organization_id: uuid.UUID, month: datetime) -> float:
    result = calculate_mrr_by_month(
        db,
        organization_id,
        RevenueCalculationOptions(start_date=month, end_date=end_of_month(month)),
    )
    return result[0].amount if result else 0.0


def calculate_projected_mrr(
    db: Session, organization_id: uuid.UUID, months: int
) -> list[MonthlyRevenue]:
    """MRR for the current month and the ``months - 1`` that follow."""
    start_date = start_of_month(utcnow())
    end_date = end_of_month(start_date + relativedelta(months=months - 1))
    return calculate_mrr_by_month(
        db,
        organization_id,
        RevenueCalculationOptions(start_date=start_date, end_date=end_date),
    )


def calculate_arr(db: Session, organization_id: uuid.UUID) -> float:
    return _mrr_for_month(db, organization_id, start_of_month(utcnow())) * 12


def calculate_mrr_change(
    db: Session,
    organization_id: uuid.UUID,
    current_month: datetime,
    previous_month: datetime,
) -> float:
    return _mrr_for_month(db, organization_id, start_of_month(current_month)) - (
        _mrr_for_month(db, organization_id, start_of_month(previous_month))
    )


def _mrr_by_subscription(
    billing_periods: list[BillingPeriod], month_start: datetime, month_end: datetime
) -> dict[uuid.UUID, float]:
    totals: dict[uuid.UUID, float] = {}
    for billing_period in billing_periods:
        totals[billing_period.subscription_id] = totals.get(
            billing_period.subscription_id, 0.0
        ) + _period_contribution(billing_period, month_start, month_end)
    return totals


def calculate_mrr_breakdown(
    db: Session,
    organization_id: uuid.UUID,
    current_month: datetime,
    previous_month: datetime,
) -> MRRBreakdown:
    """Split the MRR movement between two months by subscription.

    Subscriptions only billed in the current month count as new, those only
    billed in the previous month as churn, and the rest as expansion or
    contraction by the sign of their change.
    """
    current_start = start_of_month(current_month)
    current_end = end_of_month(current_month)
    previous_start = start_of_month(previous_month)
    previous_end = end_of_month(previous_month)
    current = _mrr_by_subscription(
        select_billing_periods_for_date_range(
            db, organization_id, current_start, current_end
        ),
        current_start,
        current_end,
    )
    previous = _mrr_by_subscription(
        select_billing_periods_for_date_range(
            db, organization_id, previous_start, previous_end
        ),
        previous_start,
        previous_end,
    )

    breakdown = MRRBreakdown()
    for subscription_id, amount in current.items():
        if subscription_id not in previous:
            breakdown.new_mrr += amount
            continue
        difference = amount - previous[subscription_id]
        if difference > 0:
            breakdown.expansion_mrr += difference
        elif difference < 0:
            breakdown.contraction_mrr += -difference
    for subscription_id, amount in previous.items():
        if subscription_id not in current:
            breakdown.churn_mrr += amount
    return breakdown
