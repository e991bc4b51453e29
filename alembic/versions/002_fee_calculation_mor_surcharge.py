"""002 – merchant-of-record surcharge on fee calculations

Revision ID: 002_fee_calculation_mor_surcharge
Revises: 001_bookkeeping_schema
Create Date: 2026-10-20
"""
from alembic import op
import sqlalchemy as sa

revision = "002_fee_calculation_mor_surcharge"
down_revision = "001_bookkeeping_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "fee_calculations",
        sa.Column(
            "mor_surcharge_percentage",
            sa.String(32),
            nullable=False,
            server_default="0",
        ),
    )


def downgrade() -> None:
    op.drop_column("fee_calculations", "mor_surcharge_percentage")
