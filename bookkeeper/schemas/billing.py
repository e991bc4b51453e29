from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bookkeeper.models.billing import (
    IntervalUnit,
    PaymentMethodType,
    PriceType,
    UsageMeterAggregationType,
)

# ── Addresses ────────────────────────────────────────────


class Address(BaseModel):
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str = Field(min_length=2, max_length=2)


class BillingAddress(BaseModel):
    name: str | None = None
    email: str | None = None
    address: Address


# ── Customers ────────────────────────────────────────────


class CustomerCreate(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    external_id: str = Field(min_length=1, max_length=255)
    organization_id: UUID | None = None
    pricing_model_id: UUID | None = None
    stripe_customer_id: str | None = None


# ── Pricing models, products & prices ────────────────────


class PricingModelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    is_default: bool = False
    default_plan_interval_unit: IntervalUnit | None = None


class ProductCreate(BaseModel):
    pricing_model_id: UUID
    name: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(default=None, max_length=120)
    description: str | None = None
    default: bool = False
    active: bool = True


class PriceCreate(BaseModel):
    pricing_model_id: UUID
    product_id: UUID | None = None
    usage_meter_id: UUID | None = None
    name: str | None = Field(default=None, max_length=255)
    slug: str | None = Field(default=None, max_length=120)
    type: PriceType
    unit_price: int = Field(ge=0)
    interval_unit: IntervalUnit | None = None
    interval_count: int | None = Field(default=None, ge=1)
    trial_period_days: int | None = Field(default=None, ge=0)
    usage_events_per_unit: int | None = Field(default=None, ge=1)
    is_default: bool = False
    active: bool = True


# ── Usage meters ─────────────────────────────────────────


class UsageMeterPriceFields(BaseModel):
    unit_price: int = Field(ge=0)
    usage_events_per_unit: int = Field(default=1, ge=1)
    name: str | None = None


class UsageMeterCreate(BaseModel):
    pricing_model_id: UUID
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=120)
    aggregation_type: UsageMeterAggregationType = UsageMeterAggregationType.sum
    price: UsageMeterPriceFields | None = None


# ── Checkout sessions ────────────────────────────────────


class CheckoutSessionUpdate(BaseModel):
    """Partial update; only fields explicitly set are merged."""

    price_id: UUID | None = None
    discount_id: UUID | None = None
    quantity: int | None = Field(default=None, ge=1)
    billing_address: BillingAddress | None = None
    payment_method_type: PaymentMethodType | None = None
    customer_email: str | None = None
    customer_name: str | None = None


# ── Invoices ─────────────────────────────────────────────


class InvoiceLineItemPayload(BaseModel):
    id: UUID | None = None
    price_id: UUID | None = None
    description: str | None = None
    quantity: int = Field(default=1, ge=1)
    price: int


class InvoiceUpdate(BaseModel):
    id: UUID
    memo: str | None = None
    due_date: datetime | None = None
    line_items: list[InvoiceLineItemPayload] = Field(default_factory=list)


# ── Processor callbacks ──────────────────────────────────


class ChargeBillingDetails(BaseModel):
    name: str | None = None
    email: str | None = None
    address: Address | None = None


class StripeCharge(BaseModel):
    """The subset of a processor charge object the reconciler consumes."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: Literal["succeeded", "pending", "failed"]
    amount: int
    currency: str = "usd"
    customer: str | None = None
    payment_intent: str | None = None
    payment_method_type: PaymentMethodType = PaymentMethodType.card
    billing_details: ChargeBillingDetails = Field(
        default_factory=ChargeBillingDetails
    )
    created: datetime
    refunded: bool = False
    amount_refunded: int = 0
    livemode: bool = False


class StripeSetupIntent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    customer: str | None = None
    checkout_session_id: UUID


# ── Revenue ──────────────────────────────────────────────


class RevenueCalculationOptions(BaseModel):
    start_date: datetime
    end_date: datetime
    granularity: Literal["month"] = "month"
    product_id: UUID | None = None


class MonthlyRevenue(BaseModel):
    month: datetime
    amount: float
