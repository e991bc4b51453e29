"""Pricing models and the catalog rows hanging off them."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bookkeeper.errors import NotFoundError, ValidationError
from bookkeeper.models.billing import (
    IntervalUnit,
    Price,
    PriceType,
    PricingModel,
    Product,
)
from bookkeeper.models.organization import Organization
from bookkeeper.schemas.billing import PriceCreate, PricingModelCreate, ProductCreate
from bookkeeper.services.common import get_or_404
from bookkeeper.services.transaction import TransactionOutcome

logger = logging.getLogger(__name__)


@dataclass
class PricingModelBookkeepingResult:
    pricing_model: PricingModel
    default_product: Product
    default_price: Price


def safely_insert_pricing_model(
    db: Session,
    *,
    organization_id: uuid.UUID,
    name: str,
    is_default: bool,
    livemode: bool,
) -> PricingModel:
    """Insert a pricing model, demoting the previous default in the same livemode."""
    if is_default:
        # Serialise concurrent default swaps for this organization.
        db.execute(
            select(Organization.id)
            .where(Organization.id == organization_id)
            .with_for_update()
        )
        db.execute(
            update(PricingModel)
            .where(
                PricingModel.organization_id == organization_id,
                PricingModel.livemode == livemode,
                PricingModel.is_default.is_(True),
            )
            .values(is_default=False)
        )
    pricing_model = PricingModel(
        organization_id=organization_id,
        name=name,
        is_default=is_default,
        livemode=livemode,
    )
    db.add(pricing_model)
    db.flush()
    logger.info(
        "Created PricingModel: %s", pricing_model.id, extra={"organization_id": organization_id}
    )
    return pricing_model


def select_default_pricing_model(
    db: Session, organization_id: uuid.UUID, livemode: bool
) -> PricingModel | None:
    return db.scalars(
        select(PricingModel).where(
            PricingModel.organization_id == organization_id,
            PricingModel.livemode == livemode,
            PricingModel.is_default.is_(True),
        )
    ).first()


def create_product(
    db: Session, payload: ProductCreate, *, organization_id: uuid.UUID
) -> Product:
    pricing_model = get_or_404(db, PricingModel, payload.pricing_model_id, "Pricing model")
    if pricing_model.organization_id != organization_id:
        raise NotFoundError("Pricing model not found")
    product = Product(
        organization_id=organization_id,
        livemode=pricing_model.livemode,
        **payload.model_dump(),
    )
    db.add(product)
    db.flush()
    logger.info("Created Product: %s", product.id)
    return product


def _price_slug_taken(db: Session, payload: PriceCreate) -> bool:
    query = select(Price.id).where(
        Price.pricing_model_id == payload.pricing_model_id,
        Price.slug == payload.slug,
    )
    if payload.usage_meter_id is not None:
        query = query.where(Price.usage_meter_id.is_not(None))
    else:
        query = query.where(Price.usage_meter_id.is_(None))
    return db.scalars(query.limit(1)).first() is not None


def create_price(
    db: Session, payload: PriceCreate, *, organization: Organization
) -> Price:
    """Insert a price; slugs are unique per pricing model within each namespace.

    Usage prices (tied to a meter) and product prices are separate namespaces.
    """
    pricing_model = get_or_404(db, PricingModel, payload.pricing_model_id, "Pricing model")
    if payload.slug and _price_slug_taken(db, payload):
        raise ValidationError(
            f"Price with slug {payload.slug} already exists in pricing model "
            f"{payload.pricing_model_id}"
        )
    if payload.type == PriceType.subscription and payload.interval_unit is None:
        raise ValidationError("Subscription prices require an interval unit")
    if payload.is_default and payload.product_id is not None:
        db.execute(
            update(Price)
            .where(Price.product_id == payload.product_id, Price.is_default.is_(True))
            .values(is_default=False)
        )
    price = Price(
        currency=organization.default_currency,
        livemode=pricing_model.livemode,
        **payload.model_dump(),
    )
    db.add(price)
    db.flush()
    logger.info("Created Price: %s", price.id)
    return price


# ── Default plan ─────────────────────────────────────────


def create_free_plan_product_insert(pricing_model: PricingModel) -> Product:
    return Product(
        organization_id=pricing_model.organization_id,
        pricing_model_id=pricing_model.id,
        name="Free Plan",
        slug="free",
        description="Default plan",
        default=True,
        active=True,
        livemode=pricing_model.livemode,
    )


def create_free_plan_price_insert(
    default_product: Product,
    currency: str,
    default_plan_interval_unit: IntervalUnit | None = None,
) -> Price:
    recurring = default_plan_interval_unit is not None
    return Price(
        product_id=default_product.id,
        pricing_model_id=default_product.pricing_model_id,
        name="Free Plan",
        slug="free",
        type=PriceType.subscription if recurring else PriceType.single_payment,
        interval_unit=default_plan_interval_unit,
        interval_count=1 if recurring else None,
        unit_price=0,
        is_default=True,
        active=True,
        currency=currency,
        livemode=default_product.livemode,
    )


def create_pricing_model_bookkeeping(
    db: Session,
    payload: PricingModelCreate,
    *,
    organization_id: uuid.UUID,
    livemode: bool,
) -> TransactionOutcome[PricingModelBookkeepingResult]:
    organization = get_or_404(db, Organization, organization_id, "Organization")
    pricing_model = safely_insert_pricing_model(
        db,
        organization_id=organization.id,
        name=payload.name,
        is_default=payload.is_default,
        livemode=livemode,
    )
    default_product = create_free_plan_product_insert(pricing_model)
    db.add(default_product)
    db.flush()
    default_price = create_free_plan_price_insert(
        default_product,
        organization.default_currency,
        payload.default_plan_interval_unit,
    )
    db.add(default_price)
    db.flush()
    logger.info(
        "Created default plan %s for PricingModel %s",
        default_price.id,
        pricing_model.id,
        extra={"organization_id": organization.id},
    )
    return TransactionOutcome(
        PricingModelBookkeepingResult(
            pricing_model=pricing_model,
            default_product=default_product,
            default_price=default_price,
        )
    )
