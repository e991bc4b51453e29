import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookkeeper.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class PriceType(str, enum.Enum):
    single_payment = "single_payment"
    subscription = "subscription"
    usage = "usage"


class IntervalUnit(str, enum.Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class PurchaseStatus(str, enum.Enum):
    open = "open"
    pending = "pending"
    paid = "paid"
    failed = "failed"


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    open = "open"
    awaiting_payment_confirmation = "awaiting_payment_confirmation"
    paid = "paid"
    void = "void"
    uncollectible = "uncollectible"


class PaymentStatus(str, enum.Enum):
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"
    refunded = "refunded"


class PaymentMethodType(str, enum.Enum):
    card = "card"
    link = "link"
    us_bank_account = "us_bank_account"
    sepa_debit = "sepa_debit"


class CheckoutSessionStatus(str, enum.Enum):
    open = "open"
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class CheckoutSessionType(str, enum.Enum):
    product = "product"
    purchase = "purchase"
    invoice = "invoice"


class FeeCalculationType(str, enum.Enum):
    checkout_session_payment = "checkout_session_payment"
    subscription_payment = "subscription_payment"


class DiscountAmountType(str, enum.Enum):
    fixed = "fixed"
    percent = "percent"


class SubscriptionStatus(str, enum.Enum):
    incomplete = "incomplete"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    canceled = "canceled"


class SubscriptionItemType(str, enum.Enum):
    static = "static"
    usage = "usage"


class BillingPeriodStatus(str, enum.Enum):
    upcoming = "upcoming"
    active = "active"
    completed = "completed"
    canceled = "canceled"


class UsageMeterAggregationType(str, enum.Enum):
    sum = "sum"
    count_distinct_properties = "count_distinct_properties"


# ── Catalog ──────────────────────────────────────────────


class PricingModel(TimestampMixin, Base):
    __tablename__ = "pricing_models"
    __table_args__ = (
        # One default pricing model per organization and livemode.
        Index(
            "uq_pricing_models_default_per_livemode",
            "organization_id",
            "livemode",
            unique=True,
            sqlite_where=text("is_default"),
            postgresql_where=text("is_default"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    products = relationship("Product", back_populates="pricing_model")


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    pricing_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_models.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(120))
    description: Mapped[str | None] = mapped_column(Text)
    default: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    pricing_model = relationship("PricingModel", back_populates="products")
    prices = relationship("Price", back_populates="product")


class UsageMeter(TimestampMixin, Base):
    __tablename__ = "usage_meters"
    __table_args__ = (
        UniqueConstraint(
            "pricing_model_id", "slug", name="uq_usage_meters_pricing_model_slug"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    pricing_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_models.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), nullable=False)
    aggregation_type: Mapped[UsageMeterAggregationType] = mapped_column(
        Enum(UsageMeterAggregationType), default=UsageMeterAggregationType.sum
    )
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


class Price(TimestampMixin, Base):
    __tablename__ = "prices"
    __table_args__ = (
        # Product prices and usage prices are separate slug namespaces.
        Index(
            "uq_prices_product_slug",
            "pricing_model_id",
            "slug",
            unique=True,
            sqlite_where=text("usage_meter_id IS NULL AND slug IS NOT NULL"),
            postgresql_where=text("usage_meter_id IS NULL AND slug IS NOT NULL"),
        ),
        Index(
            "uq_prices_usage_slug",
            "pricing_model_id",
            "slug",
            unique=True,
            sqlite_where=text("usage_meter_id IS NOT NULL AND slug IS NOT NULL"),
            postgresql_where=text("usage_meter_id IS NOT NULL AND slug IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    product_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), index=True
    )
    pricing_model_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_models.id"), nullable=False, index=True
    )
    usage_meter_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("usage_meters.id")
    )
    name: Mapped[str | None] = mapped_column(String(255))
    slug: Mapped[str | None] = mapped_column(String(120))
    type: Mapped[PriceType] = mapped_column(Enum(PriceType), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    interval_unit: Mapped[IntervalUnit | None] = mapped_column(Enum(IntervalUnit))
    interval_count: Mapped[int | None] = mapped_column(Integer)
    trial_period_days: Mapped[int | None] = mapped_column(Integer)
    usage_events_per_unit: Mapped[int | None] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    product = relationship("Product", back_populates="prices")


# ── Customers & Purchases ────────────────────────────────


class Customer(TimestampMixin, Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    pricing_model_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_models.id")
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(120), index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


class Purchase(TimestampMixin, Base):
    __tablename__ = "purchases"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    price_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PurchaseStatus] = mapped_column(
        Enum(PurchaseStatus), default=PurchaseStatus.open
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    first_invoice_value: Mapped[int | None] = mapped_column(Integer)
    total_purchase_value: Mapped[int | None] = mapped_column(Integer)
    price_per_billing_cycle: Mapped[int | None] = mapped_column(Integer)
    interval_unit: Mapped[IntervalUnit | None] = mapped_column(Enum(IntervalUnit))
    interval_count: Mapped[int | None] = mapped_column(Integer)
    trial_period_days: Mapped[int | None] = mapped_column(Integer)
    billing_address: Mapped[dict | None] = mapped_column(JSON)
    purchase_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# ── Invoicing & Payments ─────────────────────────────────


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("purchases.id"), index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    billing_period_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_periods.id")
    )
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.draft
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    receipt_pdf_url: Mapped[str | None] = mapped_column(String(500))
    memo: Mapped[str | None] = mapped_column(Text)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.created_at",
    )

    __mapper_args__ = {"version_id_col": version}


class InvoiceLineItem(TimestampMixin, Base):
    __tablename__ = "invoice_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    price_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id")
    )
    description: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    invoice = relationship("Invoice", back_populates="line_items")


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("stripe_charge_id", name="uq_payments_stripe_charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("purchases.id")
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    billing_period_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_periods.id")
    )
    stripe_charge_id: Mapped[str] = mapped_column(String(120), nullable=False)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(120))
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), nullable=False)
    payment_method: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), default=PaymentMethodType.card
    )
    charge_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    refunded_amount: Mapped[int] = mapped_column(Integer, default=0)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


# ── Discounts ────────────────────────────────────────────


class Discount(TimestampMixin, Base):
    __tablename__ = "discounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_type: Mapped[DiscountAmountType] = mapped_column(
        Enum(DiscountAmountType), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


class DiscountRedemption(TimestampMixin, Base):
    __tablename__ = "discount_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    discount_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discounts.id"), nullable=False
    )
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("purchases.id"), index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    discount_name: Mapped[str] = mapped_column(String(255), nullable=False)
    discount_code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount_type: Mapped[DiscountAmountType] = mapped_column(
        Enum(DiscountAmountType), nullable=False
    )
    fully_redeemed: Mapped[bool] = mapped_column(Boolean, default=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


# ── Checkout ─────────────────────────────────────────────


class FeeCalculation(TimestampMixin, Base):
    __tablename__ = "fee_calculations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[FeeCalculationType] = mapped_column(
        Enum(FeeCalculationType), nullable=False
    )
    checkout_session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("checkout_sessions.id"), index=True
    )
    billing_period_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_periods.id"), index=True
    )
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("purchases.id")
    )
    price_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id")
    )
    discount_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discounts.id")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method_type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), nullable=False
    )
    billing_address: Mapped[dict | None] = mapped_column(JSON)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount_fixed: Mapped[int] = mapped_column(Integer, default=0)
    pretax_total: Mapped[int | None] = mapped_column(Integer)
    platform_fee_percentage: Mapped[str] = mapped_column(String(32), nullable=False)
    international_fee_percentage: Mapped[str] = mapped_column(
        String(32), nullable=False, default="0"
    )
    mor_surcharge_percentage: Mapped[str] = mapped_column(
        String(32), nullable=False, default="0"
    )
    payment_method_fee_fixed: Mapped[int] = mapped_column(Integer, default=0)
    tax_amount_fixed: Mapped[int] = mapped_column(Integer, default=0)
    stripe_tax_calculation_id: Mapped[str | None] = mapped_column(String(120))
    internal_notes: Mapped[str | None] = mapped_column(Text)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


class CheckoutSession(TimestampMixin, Base):
    """Base row for the three checkout-session variants.

    Never instantiated directly: use ``ProductCheckoutSession``,
    ``PurchaseCheckoutSession`` or ``InvoiceCheckoutSession``.
    """

    __tablename__ = "checkout_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[CheckoutSessionType] = mapped_column(
        Enum(CheckoutSessionType), nullable=False
    )
    status: Mapped[CheckoutSessionStatus] = mapped_column(
        Enum(CheckoutSessionStatus), default=CheckoutSessionStatus.open
    )
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id")
    )
    price_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id")
    )
    purchase_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("purchases.id"), unique=True
    )
    discount_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("discounts.id")
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    billing_address: Mapped[dict | None] = mapped_column(JSON)
    payment_method_type: Mapped[PaymentMethodType | None] = mapped_column(
        Enum(PaymentMethodType)
    )
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_name: Mapped[str | None] = mapped_column(String(255))
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(120))
    stripe_setup_intent_id: Mapped[str | None] = mapped_column(String(120))
    expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {
        "polymorphic_on": type,
        "version_id_col": version,
    }

    def is_fee_ready(self) -> bool:
        return bool(
            self.billing_address and self.payment_method_type and self.price_id
        )


class ProductCheckoutSession(CheckoutSession):
    __mapper_args__ = {"polymorphic_identity": CheckoutSessionType.product}


class PurchaseCheckoutSession(CheckoutSession):
    __mapper_args__ = {"polymorphic_identity": CheckoutSessionType.purchase}


class InvoiceCheckoutSession(CheckoutSession):
    __mapper_args__ = {"polymorphic_identity": CheckoutSessionType.invoice}

    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id")
    )

    def is_fee_ready(self) -> bool:
        return bool(
            self.billing_address and self.payment_method_type and self.invoice_id
        )


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    price_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.incomplete
    )
    renews: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_billing_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    current_billing_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    billing_cycle_anchor_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    interval: Mapped[IntervalUnit | None] = mapped_column(Enum(IntervalUnit))
    interval_count: Mapped[int | None] = mapped_column(Integer)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    items = relationship("SubscriptionItem", back_populates="subscription")
    billing_periods = relationship("BillingPeriod", back_populates="subscription")


class SubscriptionItem(TimestampMixin, Base):
    __tablename__ = "subscription_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    price_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prices.id"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[SubscriptionItemType] = mapped_column(
        Enum(SubscriptionItemType), default=SubscriptionItemType.static
    )
    usage_meter_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("usage_meters.id")
    )
    usage_events_per_unit: Mapped[int | None] = mapped_column(Integer)
    added_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    subscription = relationship("Subscription", back_populates="items")


class BillingPeriod(TimestampMixin, Base):
    __tablename__ = "billing_periods"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[BillingPeriodStatus] = mapped_column(
        Enum(BillingPeriodStatus), default=BillingPeriodStatus.active
    )
    trial_period: Mapped[bool] = mapped_column(Boolean, default=False)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    subscription = relationship("Subscription", back_populates="billing_periods")
    items = relationship("BillingPeriodItem", back_populates="billing_period")


class BillingPeriodItem(TimestampMixin, Base):
    __tablename__ = "billing_period_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    billing_period_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("billing_periods.id"), nullable=False, index=True
    )
    name: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[SubscriptionItemType] = mapped_column(
        Enum(SubscriptionItemType), default=SubscriptionItemType.static
    )
    usage_meter_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("usage_meters.id")
    )
    usage_events_per_unit: Mapped[int | None] = mapped_column(Integer)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)

    billing_period = relationship("BillingPeriod", back_populates="items")
