import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookkeeper.errors import NotFoundError, ValidationError
from bookkeeper.models.billing import (
    IntervalUnit,
    Price,
    PriceType,
    PricingModel,
    UsageMeter,
)
from bookkeeper.models.organization import Organization
from bookkeeper.schemas.billing import PriceCreate, UsageMeterCreate
from bookkeeper.services.bookkeeping.pricing_models import create_price
from bookkeeper.services.common import flush, get_or_404
from bookkeeper.services.transaction import TransactionOutcome

logger = logging.getLogger(__name__)


@dataclass
class UsageMeterBookkeepingResult:
    usage_meter: UsageMeter
    price: Price
    no_charge_price: Price


def _usage_price(
    db: Session,
    organization: Organization,
    usage_meter: UsageMeter,
    *,
    name: str,
    slug: str,
    unit_price: int,
    usage_events_per_unit: int,
) -> Price:
    return create_price(
        db,
        PriceCreate(
            pricing_model_id=usage_meter.pricing_model_id,
            usage_meter_id=usage_meter.id,
            name=name,
            slug=slug,
            type=PriceType.usage,
            unit_price=unit_price,
            usage_events_per_unit=usage_events_per_unit,
            interval_unit=IntervalUnit.month,
            interval_count=1,
            is_default=True,
        ),
        organization=organization,
    )


def create_usage_meter_transaction(
    db: Session,
    payload: UsageMeterCreate,
    *,
    organization_id: uuid.UUID,
    livemode: bool,
) -> TransactionOutcome[UsageMeterBookkeepingResult]:
    """Create a meter with its free default price and an optional paid price.

    Every meter gets a ``<slug>_no_charge`` price so usage can be recorded
    before anything is billed. When ``payload.price`` is given, a second
    price slugged like the meter becomes the default instead.
    """
    organization = get_or_404(db, Organization, organization_id, "Organization")
    pricing_model = get_or_404(db, PricingModel, payload.pricing_model_id, "Pricing model")
    if pricing_model.organization_id != organization.id:
        raise NotFoundError("Pricing model not found")
    if pricing_model.livemode != livemode:
        raise ValidationError("Pricing model livemode does not match the request")

    existing = db.scalars(
        select(UsageMeter.id).where(
            UsageMeter.pricing_model_id == pricing_model.id,
            UsageMeter.slug == payload.slug,
        )
    ).first()
    if existing is not None:
        raise ValidationError(
            f"Usage meter with slug {payload.slug} already exists in pricing model "
            f"{pricing_model.id}"
        )

    usage_meter = UsageMeter(
        organization_id=organization.id,
        pricing_model_id=pricing_model.id,
        name=payload.name,
        slug=payload.slug,
        aggregation_type=payload.aggregation_type,
        livemode=livemode,
    )
    db.add(usage_meter)
    try:
        flush(db)
    except IntegrityError as exc:
        # Lost a race against a concurrent insert of the same slug.
        raise ValidationError(
            f"Usage meter with slug {payload.slug} already exists in pricing model "
            f"{pricing_model.id}"
        ) from exc

    no_charge_price = _usage_price(
        db,
        organization,
        usage_meter,
        name=f"{usage_meter.name} - No Charge",
        slug=f"{usage_meter.slug}_no_charge",
        unit_price=0,
        usage_events_per_unit=1,
    )
    price = no_charge_price
    if payload.price is not None:
        price = _usage_price(
            db,
            organization,
            usage_meter,
            name=payload.price.name or usage_meter.name,
            slug=usage_meter.slug,
            unit_price=payload.price.unit_price,
            usage_events_per_unit=payload.price.usage_events_per_unit,
        )
        no_charge_price.is_default = False
        flush(db)

    logger.info(
        "Created UsageMeter: %s",
        usage_meter.id,
        extra={"organization_id": organization.id},
    )
    return TransactionOutcome(
        UsageMeterBookkeepingResult(
            usage_meter=usage_meter, price=price, no_charge_price=no_charge_price
        )
    )
