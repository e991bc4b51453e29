import enum
import uuid

from sqlalchemy import Enum, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookkeeper.db import Base, TimestampMixin


class StripeConnectContractType(str, enum.Enum):
    platform = "platform"
    merchant_of_record = "merchant_of_record"


class Country(TimestampMixin, Base):
    __tablename__ = "countries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    # ISO 3166-1 alpha-2
    code: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)


class Organization(TimestampMixin, Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=False, index=True
    )
    default_currency: Mapped[str] = mapped_column(String(3), default="usd")
    # Decimal percentage kept as text, e.g. "0.65"
    fee_percentage: Mapped[str] = mapped_column(String(16), default="0.65")
    monthly_billing_volume_free_tier: Mapped[int] = mapped_column(
        Integer, default=100000
    )
    stripe_account_id: Mapped[str | None] = mapped_column(String(120))
    stripe_connect_contract_type: Mapped[StripeConnectContractType] = mapped_column(
        Enum(StripeConnectContractType), default=StripeConnectContractType.platform
    )

    country = relationship("Country")
