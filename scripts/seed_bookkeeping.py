"""Seed a demo organization with default pricing models for both livemodes."""

import argparse

import pycountry
from dotenv import load_dotenv
from sqlalchemy import select

from bookkeeper.config import settings
from bookkeeper.db import SessionLocal
from bookkeeper.models.billing import IntervalUnit
from bookkeeper.models.organization import (
    Country,
    Organization,
    StripeConnectContractType,
)
from bookkeeper.schemas.billing import PricingModelCreate
from bookkeeper.services.bookkeeping.pricing_models import (
    create_pricing_model_bookkeeping,
    select_default_pricing_model,
)
from bookkeeper.services.transaction import comprehensive_transaction


def parse_args():
    parser = argparse.ArgumentParser(description="Seed a demo bookkeeping organization.")
    parser.add_argument("--name", default="Demo Organization")
    parser.add_argument("--country", default="US", help="ISO 3166-1 alpha-2 code.")
    parser.add_argument(
        "--merchant-of-record",
        action="store_true",
        help="Contract as merchant of record (enables tax calculation).",
    )
    return parser.parse_args()


def _ensure_country(db, code):
    country = db.scalars(select(Country).where(Country.code == code)).first()
    if not country:
        record = pycountry.countries.get(alpha_2=code)
        if record is None:
            raise SystemExit(f"Unknown country code: {code}")
        country = Country(code=code, name=record.name)
        db.add(country)
        db.flush()
    return country


def _ensure_organization(db, name, country, merchant_of_record):
    organization = db.scalars(
        select(Organization).where(Organization.name == name)
    ).first()
    if not organization:
        organization = Organization(
            name=name,
            country_id=country.id,
            fee_percentage=settings.default_platform_fee_percentage,
            monthly_billing_volume_free_tier=settings.default_monthly_free_tier,
            stripe_connect_contract_type=(
                StripeConnectContractType.merchant_of_record
                if merchant_of_record
                else StripeConnectContractType.platform
            ),
        )
        db.add(organization)
        db.flush()
    return organization


def main() -> None:
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        country = _ensure_country(db, args.country.upper())
        organization = _ensure_organization(
            db, args.name, country, args.merchant_of_record
        )
        db.commit()
        for livemode in (False, True):
            if select_default_pricing_model(db, organization.id, livemode):
                continue
            comprehensive_transaction(
                lambda session, livemode=livemode: create_pricing_model_bookkeeping(
                    session,
                    PricingModelCreate(
                        name="Default Pricing Model",
                        is_default=True,
                        default_plan_interval_unit=IntervalUnit.month,
                    ),
                    organization_id=organization.id,
                    livemode=livemode,
                ),
                db=db,
            )
        print(f"Bookkeeping seed complete for organization {organization.id}.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
