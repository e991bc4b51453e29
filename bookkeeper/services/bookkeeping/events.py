"""Event builders. Each event carries a stable hash so replays dedupe."""
import hashlib
import json
from typing import Any

from bookkeeper.models.billing import Customer, Payment, Purchase, Subscription
from bookkeeper.models.events import EventNoun, EventType
from bookkeeper.services.transaction import EventInsert


def _event_hash(*parts: Any) -> str:
    encoded = json.dumps([str(part) for part in parts], separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def construct_customer_created_event_hash(customer: Customer) -> str:
    return _event_hash(
        EventType.customer_created.value,
        customer.id,
        customer.organization_id,
        customer.livemode,
    )


def construct_subscription_created_event_hash(subscription: Subscription) -> str:
    return _event_hash(
        EventType.subscription_created.value,
        subscription.id,
        subscription.customer_id,
        subscription.livemode,
    )


def construct_payment_succeeded_event_hash(payment: Payment) -> str:
    return _event_hash(EventType.payment_succeeded.value, payment.id)


def construct_purchase_completed_event_hash(purchase: Purchase) -> str:
    return _event_hash(EventType.purchase_completed.value, purchase.id)


def customer_created_event(customer: Customer) -> EventInsert:
    return EventInsert(
        type=EventType.customer_created,
        organization_id=customer.organization_id,
        object_entity=EventNoun.customer,
        object_id=customer.id,
        hash=construct_customer_created_event_hash(customer),
        payload={
            "id": str(customer.id),
            "external_id": customer.external_id,
            "email": customer.email,
        },
        livemode=customer.livemode,
    )


def subscription_created_event(subscription: Subscription) -> EventInsert:
    return EventInsert(
        type=EventType.subscription_created,
        organization_id=subscription.organization_id,
        object_entity=EventNoun.subscription,
        object_id=subscription.id,
        hash=construct_subscription_created_event_hash(subscription),
        payload={
            "id": str(subscription.id),
            "customer_id": str(subscription.customer_id),
            "status": subscription.status.value,
        },
        livemode=subscription.livemode,
    )


def payment_succeeded_event(payment: Payment) -> EventInsert:
    return EventInsert(
        type=EventType.payment_succeeded,
        organization_id=payment.organization_id,
        object_entity=EventNoun.payment,
        object_id=payment.id,
        hash=construct_payment_succeeded_event_hash(payment),
        payload={
            "id": str(payment.id),
            "customer_id": str(payment.customer_id),
            "amount": payment.amount,
            "currency": payment.currency,
        },
        livemode=payment.livemode,
    )


def purchase_completed_event(purchase: Purchase) -> EventInsert:
    return EventInsert(
        type=EventType.purchase_completed,
        organization_id=purchase.organization_id,
        object_entity=EventNoun.purchase,
        object_id=purchase.id,
        hash=construct_purchase_completed_event_hash(purchase),
        payload={
            "id": str(purchase.id),
            "customer_id": str(purchase.customer_id),
        },
        livemode=purchase.livemode,
    )
