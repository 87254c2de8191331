"""Initial slot ledger schema.

Creates profiles, products, inventory_accounts, inventory_slots, orders,
support_tickets and the balance_movements audit ledger.

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(12, 2)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    """Create all ledger tables."""
    op.create_table(
        "profiles",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="buyer"),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column("provider_balance", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("balance >= 0", name="ck_profiles_balance_non_negative"),
        sa.CheckConstraint(
            "provider_balance >= 0", name="ck_profiles_provider_balance_non_negative"
        ),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "provider_id", UUID(as_uuid=True), sa.ForeignKey("profiles.id"), nullable=False
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("account_type", sa.String(30), nullable=False, server_default="profile_slots"),
        sa.Column("delivery_mode", sa.String(30), nullable=False, server_default="instant"),
        sa.Column("duration_days", sa.Integer, nullable=True),
        sa.Column("renewable", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("price", MONEY, nullable=False, server_default="0"),
        sa.Column("renewal_price", MONEY, nullable=True),
        sa.Column("stock_available", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("stock_available >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint(
            "duration_days IS NULL OR duration_days > 0", name="ck_products_duration_positive"
        ),
    )
    op.create_index("ix_products_provider_id", "products", ["provider_id"])

    op.create_table(
        "inventory_accounts",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "product_id",
            sa.BigInteger,
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("login_user", sa.String(320), nullable=False),
        sa.Column("login_password", sa.String(255), nullable=True),
        sa.Column("profile_label", sa.String(100), nullable=True),
        sa.Column("slot_capacity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("slot_capacity >= 1", name="ck_inventory_accounts_capacity_positive"),
        sa.UniqueConstraint(
            "product_id", "login_user", name="uq_inventory_accounts_product_login"
        ),
    )
    op.create_index(
        "idx_inventory_accounts_product_active", "inventory_accounts", ["product_id", "is_active"]
    )

    op.create_table(
        "inventory_slots",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "inventory_account_id",
            sa.BigInteger,
            sa.ForeignKey("inventory_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_id",
            sa.BigInteger,
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("slot_index", sa.Integer, nullable=False, server_default="1"),
        sa.Column("slot_label", sa.String(100), nullable=True),
        sa.Column("profile_pin", sa.String(20), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="free"),
        sa.Column("buyer_id", UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("slot_index >= 1", name="ck_inventory_slots_index_positive"),
        sa.CheckConstraint(
            "lower(status) <> 'free' OR buyer_id IS NULL", name="ck_inventory_slots_free_no_buyer"
        ),
    )
    op.create_index(
        "idx_inventory_slots_product_status", "inventory_slots", ["product_id", "status"]
    )
    op.create_index("idx_inventory_slots_account", "inventory_slots", ["inventory_account_id"])
    op.create_index(
        "idx_inventory_slots_buyer",
        "inventory_slots",
        ["buyer_id"],
        postgresql_where=sa.text("buyer_id IS NOT NULL"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("buyer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_id", UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id"), nullable=False),
        sa.Column(
            "inventory_slot_id",
            sa.BigInteger,
            sa.ForeignKey("inventory_slots.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "inventory_account_id",
            sa.BigInteger,
            sa.ForeignKey("inventory_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("credentials", JSONB, nullable=True),
        sa.Column("duration_days", sa.Integer, nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_paid", MONEY, nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("price_paid >= 0", name="ck_orders_price_non_negative"),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_provider_id", "orders", ["provider_id"])
    op.create_index("ix_orders_product_id", "orders", ["product_id"])
    op.create_index("idx_orders_expires_at", "orders", ["expires_at"])
    op.create_index(
        "idx_orders_inventory_slot",
        "orders",
        ["inventory_slot_id"],
        postgresql_where=sa.text("inventory_slot_id IS NOT NULL"),
    )
    op.create_index(
        "idx_orders_inventory_account",
        "orders",
        ["inventory_account_id"],
        postgresql_where=sa.text("inventory_account_id IS NOT NULL"),
    )

    op.create_table(
        "support_tickets",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.BigInteger,
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("resolution", sa.Text, nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("ix_support_tickets_order_id", "support_tickets", ["order_id"])

    # Append-only: rows are never updated or deleted.
    op.create_table(
        "balance_movements",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("profile_id", UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.BigInteger, nullable=True),
        sa.Column("balance_column", sa.String(30), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_before", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("description", sa.String, nullable=False),
        sa.Column("saga_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount <> 0", name="ck_balance_movements_amount_non_zero"),
        sa.CheckConstraint("balance_after >= 0", name="ck_balance_movements_after_non_negative"),
    )
    op.create_index("ix_balance_movements_profile_id", "balance_movements", ["profile_id"])
    op.create_index("ix_balance_movements_order_id", "balance_movements", ["order_id"])
    op.create_index("idx_balance_movements_created_at", "balance_movements", ["created_at"])


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table("balance_movements")
    op.drop_table("support_tickets")
    op.drop_table("orders")
    op.drop_table("inventory_slots")
    op.drop_table("inventory_accounts")
    op.drop_table("products")
    op.drop_table("profiles")
