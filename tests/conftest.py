import sys
import uuid
from datetime import UTC, datetime
from types import ModuleType

import pytest
from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any bookkeeper imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy
# emit it so begin_nested() behaves as it does on PostgreSQL.
@event.listens_for(_test_engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_test_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


# Stand-in for bookkeeper.db bound to the in-memory engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


def _utcnow():
    return datetime.now(UTC)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


mock_db_module = ModuleType("bookkeeper.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda database_url=None: _test_engine

# Also mock bookkeeper.config to prevent .env loading
mock_config_module = ModuleType("bookkeeper.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    stripe_secret_key_live = ""
    stripe_secret_key_test = "sk_test_bookkeeper"
    stripe_api_base = "https://api.stripe.test/v1"
    stripe_timeout_seconds = 5
    default_platform_fee_percentage = "0.65"
    default_monthly_free_tier = 100000
    log_level = "INFO"


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any bookkeeper imports
sys.modules["bookkeeper.config"] = mock_config_module
sys.modules["bookkeeper.db"] = mock_db_module

# Now import the models - they'll use our mocked db module
from bookkeeper.models.billing import (  # noqa: E402
    CheckoutSessionStatus,
    Customer,
    IntervalUnit,
    Invoice,
    InvoiceCheckoutSession,
    InvoiceLineItem,
    InvoiceStatus,
    PaymentMethodType,
    Price,
    PriceType,
    PricingModel,
    Product,
    ProductCheckoutSession,
)
from bookkeeper.models.organization import (  # noqa: E402
    Country,
    Organization,
    StripeConnectContractType,
)
from bookkeeper.services import payment_gateway  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============ Processor fake ============


class FakeStripeGateway:
    """Records processor calls instead of talking to Stripe."""

    def __init__(self) -> None:
        self.customers: list[dict] = []
        self.tax_calculations: list[dict] = []
        self.payment_intent_updates: list[dict] = []
        self.tax_amount = 0

    def create_customer(self, email: str, name: str, livemode: bool) -> str:
        self.customers.append({"email": email, "name": name, "livemode": livemode})
        return f"cus_{uuid.uuid4().hex[:14]}"

    def create_tax_calculation(self, **kwargs) -> dict:
        self.tax_calculations.append(kwargs)
        return {
            "id": f"taxcalc_{uuid.uuid4().hex[:12]}",
            "tax_amount_exclusive": self.tax_amount,
        }

    def update_payment_intent(self, payment_intent_id: str, **kwargs) -> dict:
        self.payment_intent_updates.append({"id": payment_intent_id, **kwargs})
        return {"id": payment_intent_id}


@pytest.fixture(autouse=True)
def fake_gateway(monkeypatch):
    fake = FakeStripeGateway()
    for name in ("create_customer", "create_tax_calculation", "update_payment_intent"):
        monkeypatch.setattr(payment_gateway.stripe_gateway, name, getattr(fake, name))
    return fake


# ============ Data fixtures ============


def _country(db, code: str, name: str) -> Country:
    country = db.query(Country).filter(Country.code == code).first()
    if not country:
        country = Country(code=code, name=name)
        db.add(country)
        db.flush()
    return country


@pytest.fixture()
def country(db_session):
    return _country(db_session, "US", "United States")


@pytest.fixture()
def organization_factory(db_session, country):
    def _create(**overrides) -> Organization:
        values = {
            "name": f"Org {uuid.uuid4().hex[:8]}",
            "country_id": country.id,
            "default_currency": "usd",
            "fee_percentage": "0.65",
            "monthly_billing_volume_free_tier": 0,
            "stripe_connect_contract_type": StripeConnectContractType.platform,
        }
        values.update(overrides)
        organization = Organization(**values)
        db_session.add(organization)
        db_session.flush()
        return organization

    return _create


@pytest.fixture()
def organization(organization_factory):
    return organization_factory()


@pytest.fixture()
def mor_organization(organization_factory):
    return organization_factory(
        stripe_connect_contract_type=StripeConnectContractType.merchant_of_record
    )


@pytest.fixture()
def pricing_model(db_session, organization):
    pricing_model = PricingModel(
        organization_id=organization.id,
        name="Default",
        is_default=True,
        livemode=False,
    )
    db_session.add(pricing_model)
    db_session.flush()
    return pricing_model


@pytest.fixture()
def product(db_session, organization, pricing_model):
    product = Product(
        organization_id=organization.id,
        pricing_model_id=pricing_model.id,
        name="Pro Plan",
        slug="pro",
        default=False,
        active=True,
        livemode=False,
    )
    db_session.add(product)
    db_session.flush()
    return product


@pytest.fixture()
def price_factory(db_session, product):
    def _create(**overrides) -> Price:
        values = {
            "product_id": product.id,
            "pricing_model_id": product.pricing_model_id,
            "name": "Pro Monthly",
            "type": PriceType.single_payment,
            "unit_price": 1000,
            "currency": "usd",
            "is_default": False,
            "active": True,
            "livemode": False,
        }
        values.update(overrides)
        price = Price(**values)
        db_session.add(price)
        db_session.flush()
        return price

    return _create


@pytest.fixture()
def price(price_factory):
    return price_factory()


@pytest.fixture()
def subscription_price(price_factory):
    return price_factory(
        name="Pro Subscription",
        type=PriceType.subscription,
        unit_price=2500,
        interval_unit=IntervalUnit.month,
        interval_count=1,
    )


@pytest.fixture()
def customer(db_session, organization, pricing_model):
    customer = Customer(
        organization_id=organization.id,
        pricing_model_id=pricing_model.id,
        email="ada@example.com",
        name="Ada",
        external_id=f"ext_{uuid.uuid4().hex[:8]}",
        stripe_customer_id=f"cus_{uuid.uuid4().hex[:14]}",
        livemode=False,
    )
    db_session.add(customer)
    db_session.flush()
    return customer


@pytest.fixture()
def us_billing_address():
    return {
        "name": "Ada",
        "email": "ada@example.com",
        "address": {"line1": "1 Main St", "city": "Austin", "state": "TX", "country": "US"},
    }


@pytest.fixture()
def checkout_session(db_session, organization, price):
    session = ProductCheckoutSession(
        organization_id=organization.id,
        price_id=price.id,
        status=CheckoutSessionStatus.open,
        customer_email="buyer@example.com",
        customer_name="Buyer",
        livemode=False,
    )
    db_session.add(session)
    db_session.flush()
    return session


@pytest.fixture()
def fee_ready_checkout_session(db_session, checkout_session, us_billing_address):
    checkout_session.billing_address = us_billing_address
    checkout_session.payment_method_type = PaymentMethodType.card
    db_session.flush()
    return checkout_session


@pytest.fixture()
def invoice_factory(db_session, organization, customer):
    def _create(amounts=(1000,), status=InvoiceStatus.open) -> Invoice:
        invoice = Invoice(
            organization_id=organization.id,
            customer_id=customer.id,
            invoice_number=f"INV-{uuid.uuid4().hex[:10]}",
            status=status,
            currency="usd",
            livemode=False,
        )
        for amount in amounts:
            invoice.line_items.append(
                InvoiceLineItem(description="Service", quantity=1, price=amount)
            )
        db_session.add(invoice)
        db_session.flush()
        return invoice

    return _create


@pytest.fixture()
def invoice(invoice_factory):
    return invoice_factory()


@pytest.fixture()
def invoice_checkout_session(db_session, organization, invoice, us_billing_address):
    session = InvoiceCheckoutSession(
        organization_id=organization.id,
        invoice_id=invoice.id,
        status=CheckoutSessionStatus.open,
        billing_address=us_billing_address,
        payment_method_type=PaymentMethodType.card,
        livemode=False,
    )
    db_session.add(session)
    db_session.flush()
    return session
