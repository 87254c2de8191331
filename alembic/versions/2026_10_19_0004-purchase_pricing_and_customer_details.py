"""Affiliate purchase price and per-order customer details.

products.affiliate_price is what logged-in buyers pay; products.price stays
the list price. products.extra_required_fields declares what the buyer must
fill in at checkout, and orders keep what was entered so the provider can
deliver on-demand products.

Revision ID: 2026_10_19_0004
Revises: 2026_10_19_0003
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0004"
down_revision: str | None = "2026_10_19_0003"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    op.add_column("products", sa.Column("affiliate_price", MONEY, nullable=True))
    op.add_column("products", sa.Column("extra_required_fields", JSONB, nullable=True))
    op.create_check_constraint(
        "ck_products_affiliate_price_non_negative",
        "products",
        "affiliate_price IS NULL OR affiliate_price >= 0",
    )

    op.add_column("orders", sa.Column("customer_name", sa.String(120), nullable=True))
    op.add_column("orders", sa.Column("customer_phone", sa.String(40), nullable=True))
    op.add_column("orders", sa.Column("customer_extra", JSONB, nullable=True))


def downgrade() -> None:
    op.drop_column("orders", "customer_extra")
    op.drop_column("orders", "customer_phone")
    op.drop_column("orders", "customer_name")

    op.drop_constraint("ck_products_affiliate_price_non_negative", "products", type_="check")
    op.drop_column("products", "extra_required_fields")
    op.drop_column("products", "affiliate_price")
