import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from bookkeeper.db import Base, TimestampMixin


class EventType(str, enum.Enum):
    customer_created = "customer_created"
    subscription_created = "subscription_created"
    payment_succeeded = "payment_succeeded"
    purchase_completed = "purchase_completed"


class EventNoun(str, enum.Enum):
    customer = "customer"
    subscription = "subscription"
    payment = "payment"
    purchase = "purchase"


class LedgerCommandType(str, enum.Enum):
    billing_period_transition = "billing_period_transition"
    settle_invoice_payment = "settle_invoice_payment"


class Event(TimestampMixin, Base):
    """Append-only record of a business event, written on commit."""

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[EventType] = mapped_column(Enum(EventType), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    object_entity: Mapped[EventNoun] = mapped_column(Enum(EventNoun), nullable=False)
    object_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)


class LedgerCommand(TimestampMixin, Base):
    __tablename__ = "ledger_commands"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: Mapped[LedgerCommandType] = mapped_column(
        Enum(LedgerCommandType), nullable=False
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    livemode: Mapped[bool] = mapped_column(Boolean, default=False)
