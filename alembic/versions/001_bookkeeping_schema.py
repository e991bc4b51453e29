"""001 – bookkeeping schema

Revision ID: 001_bookkeeping_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_bookkeeping_schema"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "stripeconnectcontracttype": ("platform", "merchant_of_record"),
    "pricetype": ("single_payment", "subscription", "usage"),
    "intervalunit": ("day", "week", "month", "year"),
    "purchasestatus": ("open", "pending", "paid", "failed"),
    "invoicestatus": (
        "draft",
        "open",
        "awaiting_payment_confirmation",
        "paid",
        "void",
        "uncollectible",
    ),
    "paymentstatus": ("processing", "succeeded", "failed", "canceled", "refunded"),
    "paymentmethodtype": ("card", "link", "us_bank_account", "sepa_debit"),
    "checkoutsessionstatus": ("open", "pending", "succeeded", "failed"),
    "checkoutsessiontype": ("product", "purchase", "invoice"),
    "feecalculationtype": ("checkout_session_payment", "subscription_payment"),
    "discountamounttype": ("fixed", "percent"),
    "subscriptionstatus": ("incomplete", "trialing", "active", "past_due", "canceled"),
    "subscriptionitemtype": ("static", "usage"),
    "billingperiodstatus": ("upcoming", "active", "completed", "canceled"),
    "usagemeteraggregationtype": ("sum", "count_distinct_properties"),
    "eventtype": (
        "customer_created",
        "subscription_created",
        "payment_succeeded",
        "purchase_completed",
    ),
    "eventnoun": ("customer", "subscription", "payment", "purchase"),
    "ledgercommandtype": ("billing_period_transition", "settle_invoice_payment"),
}


def _enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _id():
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(column, target, nullable=True):
    return sa.Column(
        column,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(f"{target}.id"),
        nullable=nullable,
    )


def _livemode():
    return sa.Column("livemode", sa.Boolean(), server_default=sa.text("false"))


def _version():
    return sa.Column("version", sa.Integer(), nullable=False)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    for name in ENUMS:
        _enum(name).create(conn, checkfirst=True)

    op.create_table(
        "countries",
        _id(),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("code", sa.String(2), nullable=False, unique=True),
        *_timestamps(),
    )
    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        _fk("country_id", "countries", nullable=False),
        sa.Column("default_currency", sa.String(3), server_default="usd"),
        sa.Column("fee_percentage", sa.String(16), server_default="0.65"),
        sa.Column(
            "monthly_billing_volume_free_tier", sa.Integer(), server_default="100000"
        ),
        sa.Column("stripe_account_id", sa.String(120), nullable=True),
        sa.Column(
            "stripe_connect_contract_type",
            _enum("stripeconnectcontracttype"),
            server_default="platform",
        ),
        *_timestamps(),
    )
    op.create_index("ix_organizations_country_id", "organizations", ["country_id"])

    # ── Catalog ──
    op.create_table(
        "pricing_models",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false")),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_pricing_models_organization_id", "pricing_models", ["organization_id"]
    )
    op.create_index(
        "uq_pricing_models_default_per_livemode",
        "pricing_models",
        ["organization_id", "livemode"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )
    op.create_table(
        "products",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("pricing_model_id", "pricing_models", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(120), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("default", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true")),
        _livemode(),
        *_timestamps(),
    )
    op.create_index("ix_products_organization_id", "products", ["organization_id"])
    op.create_index("ix_products_pricing_model_id", "products", ["pricing_model_id"])
    op.create_table(
        "usage_meters",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("pricing_model_id", "pricing_models", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False),
        sa.Column(
            "aggregation_type", _enum("usagemeteraggregationtype"), server_default="sum"
        ),
        _livemode(),
        *_timestamps(),
        sa.UniqueConstraint(
            "pricing_model_id", "slug", name="uq_usage_meters_pricing_model_slug"
        ),
    )
    op.create_index(
        "ix_usage_meters_organization_id", "usage_meters", ["organization_id"]
    )
    op.create_table(
        "prices",
        _id(),
        _fk("product_id", "products"),
        _fk("pricing_model_id", "pricing_models", nullable=False),
        _fk("usage_meter_id", "usage_meters"),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("slug", sa.String(120), nullable=True),
        sa.Column("type", _enum("pricetype"), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("interval_unit", _enum("intervalunit"), nullable=True),
        sa.Column("interval_count", sa.Integer(), nullable=True),
        sa.Column("trial_period_days", sa.Integer(), nullable=True),
        sa.Column("usage_events_per_unit", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False, server_default="0"),
        _livemode(),
        *_timestamps(),
    )
    op.create_index("ix_prices_product_id", "prices", ["product_id"])
    op.create_index("ix_prices_pricing_model_id", "prices", ["pricing_model_id"])
    op.create_index(
        "uq_prices_product_slug",
        "prices",
        ["pricing_model_id", "slug"],
        unique=True,
        postgresql_where=sa.text("usage_meter_id IS NULL AND slug IS NOT NULL"),
    )
    op.create_index(
        "uq_prices_usage_slug",
        "prices",
        ["pricing_model_id", "slug"],
        unique=True,
        postgresql_where=sa.text("usage_meter_id IS NOT NULL AND slug IS NOT NULL"),
    )

    # ── Customers & Purchases ──
    op.create_table(
        "customers",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("pricing_model_id", "pricing_models"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(120), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index("ix_customers_organization_id", "customers", ["organization_id"])
    op.create_index(
        "ix_customers_stripe_customer_id", "customers", ["stripe_customer_id"]
    )
    op.create_table(
        "purchases",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("customer_id", "customers", nullable=False),
        _fk("price_id", "prices", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", _enum("purchasestatus"), server_default="open"),
        sa.Column("quantity", sa.Integer(), server_default="1"),
        sa.Column("first_invoice_value", sa.Integer(), nullable=True),
        sa.Column("total_purchase_value", sa.Integer(), nullable=True),
        sa.Column("price_per_billing_cycle", sa.Integer(), nullable=True),
        sa.Column("interval_unit", _enum("intervalunit"), nullable=True),
        sa.Column("interval_count", sa.Integer(), nullable=True),
        sa.Column("trial_period_days", sa.Integer(), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        _version(),
        *_timestamps(),
    )
    op.create_index("ix_purchases_organization_id", "purchases", ["organization_id"])
    op.create_index("ix_purchases_customer_id", "purchases", ["customer_id"])

    # ── Subscriptions ──
    op.create_table(
        "subscriptions",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("customer_id", "customers", nullable=False),
        _fk("price_id", "prices", nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("status", _enum("subscriptionstatus"), server_default="incomplete"),
        sa.Column("renews", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "current_billing_period_start", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column(
            "current_billing_period_end", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column(
            "billing_cycle_anchor_date", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("interval", _enum("intervalunit"), nullable=True),
        sa.Column("interval_count", sa.Integer(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_subscriptions_organization_id", "subscriptions", ["organization_id"]
    )
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_table(
        "subscription_items",
        _id(),
        _fk("subscription_id", "subscriptions", nullable=False),
        _fk("price_id", "prices", nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("quantity", sa.Integer(), server_default="1"),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("type", _enum("subscriptionitemtype"), server_default="static"),
        _fk("usage_meter_id", "usage_meters"),
        sa.Column("usage_events_per_unit", sa.Integer(), nullable=True),
        sa.Column("added_date", sa.DateTime(timezone=True), nullable=False),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_subscription_items_subscription_id",
        "subscription_items",
        ["subscription_id"],
    )
    op.create_table(
        "billing_periods",
        _id(),
        _fk("subscription_id", "subscriptions", nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", _enum("billingperiodstatus"), server_default="active"),
        sa.Column("trial_period", sa.Boolean(), server_default=sa.text("false")),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_periods_subscription_id", "billing_periods", ["subscription_id"]
    )
    op.create_table(
        "billing_period_items",
        _id(),
        _fk("billing_period_id", "billing_periods", nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), server_default="1"),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("type", _enum("subscriptionitemtype"), server_default="static"),
        _fk("usage_meter_id", "usage_meters"),
        sa.Column("usage_events_per_unit", sa.Integer(), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_period_items_billing_period_id",
        "billing_period_items",
        ["billing_period_id"],
    )

    # ── Invoicing & Payments ──
    op.create_table(
        "invoices",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("customer_id", "customers", nullable=False),
        _fk("purchase_id", "purchases"),
        _fk("subscription_id", "subscriptions"),
        _fk("billing_period_id", "billing_periods"),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", _enum("invoicestatus"), server_default="draft"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("receipt_pdf_url", sa.String(500), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        _livemode(),
        _version(),
        *_timestamps(),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
    )
    op.create_index("ix_invoices_organization_id", "invoices", ["organization_id"])
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
    op.create_index("ix_invoices_purchase_id", "invoices", ["purchase_id"])
    op.create_table(
        "invoice_line_items",
        _id(),
        _fk("invoice_id", "invoices", nullable=False),
        _fk("price_id", "prices"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), server_default="1"),
        sa.Column("price", sa.Integer(), nullable=False),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_invoice_line_items_invoice_id", "invoice_line_items", ["invoice_id"]
    )
    op.create_table(
        "payments",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        _fk("customer_id", "customers", nullable=False),
        _fk("invoice_id", "invoices", nullable=False),
        _fk("purchase_id", "purchases"),
        _fk("subscription_id", "subscriptions"),
        _fk("billing_period_id", "billing_periods"),
        sa.Column("stripe_charge_id", sa.String(120), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(120), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", _enum("paymentstatus"), nullable=False),
        sa.Column("payment_method", _enum("paymentmethodtype"), server_default="card"),
        sa.Column("charge_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settlement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("refunded_amount", sa.Integer(), server_default="0"),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        *_timestamps(),
        sa.UniqueConstraint("stripe_charge_id", name="uq_payments_stripe_charge_id"),
    )
    op.create_index("ix_payments_organization_id", "payments", ["organization_id"])
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"])

    # ── Discounts ──
    op.create_table(
        "discounts",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("amount_type", _enum("discountamounttype"), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true")),
        _livemode(),
        *_timestamps(),
    )
    op.create_index("ix_discounts_organization_id", "discounts", ["organization_id"])
    op.create_table(
        "discount_redemptions",
        _id(),
        _fk("discount_id", "discounts", nullable=False),
        _fk("purchase_id", "purchases"),
        _fk("subscription_id", "subscriptions"),
        sa.Column("discount_name", sa.String(255), nullable=False),
        sa.Column("discount_code", sa.String(64), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount_type", _enum("discountamounttype"), nullable=False),
        sa.Column("fully_redeemed", sa.Boolean(), server_default=sa.text("false")),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_discount_redemptions_purchase_id", "discount_redemptions", ["purchase_id"]
    )
    op.create_index(
        "ix_discount_redemptions_subscription_id",
        "discount_redemptions",
        ["subscription_id"],
    )

    # ── Checkout ──
    op.create_table(
        "checkout_sessions",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("type", _enum("checkoutsessiontype"), nullable=False),
        sa.Column("status", _enum("checkoutsessionstatus"), server_default="open"),
        _fk("customer_id", "customers"),
        _fk("price_id", "prices"),
        _fk("purchase_id", "purchases"),
        _fk("invoice_id", "invoices"),
        _fk("discount_id", "discounts"),
        sa.Column("quantity", sa.Integer(), server_default="1"),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("payment_method_type", _enum("paymentmethodtype"), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(120), nullable=True),
        sa.Column("stripe_setup_intent_id", sa.String(120), nullable=True),
        sa.Column("expires", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        _version(),
        *_timestamps(),
        # One purchase per checkout session.
        sa.UniqueConstraint("purchase_id", name="uq_checkout_sessions_purchase_id"),
    )
    op.create_index(
        "ix_checkout_sessions_organization_id", "checkout_sessions", ["organization_id"]
    )
    op.create_table(
        "fee_calculations",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("type", _enum("feecalculationtype"), nullable=False),
        _fk("checkout_session_id", "checkout_sessions"),
        _fk("billing_period_id", "billing_periods"),
        _fk("purchase_id", "purchases"),
        _fk("price_id", "prices"),
        _fk("discount_id", "discounts"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method_type", _enum("paymentmethodtype"), nullable=False),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("base_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount_fixed", sa.Integer(), server_default="0"),
        sa.Column("pretax_total", sa.Integer(), nullable=True),
        sa.Column("platform_fee_percentage", sa.String(32), nullable=False),
        sa.Column(
            "international_fee_percentage",
            sa.String(32),
            nullable=False,
            server_default="0",
        ),
        sa.Column("payment_method_fee_fixed", sa.Integer(), server_default="0"),
        sa.Column("tax_amount_fixed", sa.Integer(), server_default="0"),
        sa.Column("stripe_tax_calculation_id", sa.String(120), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_fee_calculations_organization_id", "fee_calculations", ["organization_id"]
    )
    op.create_index(
        "ix_fee_calculations_checkout_session_id",
        "fee_calculations",
        ["checkout_session_id"],
    )
    op.create_index(
        "ix_fee_calculations_billing_period_id",
        "fee_calculations",
        ["billing_period_id"],
    )

    # ── Events & ledger ──
    op.create_table(
        "events",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("type", _enum("eventtype"), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False, unique=True),
        sa.Column("object_entity", _enum("eventnoun"), nullable=False),
        sa.Column("object_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index("ix_events_organization_id", "events", ["organization_id"])
    op.create_table(
        "ledger_commands",
        _id(),
        _fk("organization_id", "organizations", nullable=False),
        sa.Column("type", _enum("ledgercommandtype"), nullable=False),
        _fk("subscription_id", "subscriptions"),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _livemode(),
        *_timestamps(),
    )
    op.create_index(
        "ix_ledger_commands_organization_id", "ledger_commands", ["organization_id"]
    )


def downgrade() -> None:
    for table in [
        "ledger_commands",
        "events",
        "fee_calculations",
        "checkout_sessions",
        "discount_redemptions",
        "discounts",
        "payments",
        "invoice_line_items",
        "invoices",
        "billing_period_items",
        "billing_periods",
        "subscription_items",
        "subscriptions",
        "purchases",
        "customers",
        "prices",
        "usage_meters",
        "products",
        "pricing_models",
        "organizations",
        "countries",
    ]:
        op.drop_table(table)

    for enum_name in reversed(list(ENUMS)):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
