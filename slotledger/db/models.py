"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Money columns are NUMERIC(12, 2)
and surface as Decimal.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MONEY = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Profile(Base):
    """
    ORM model for profiles table.

    One row per dashboard user. Buyers spend ``balance``; providers are paid
    into ``provider_balance``.
    """

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="buyer")

    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    provider_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_profiles_balance_non_negative"),
        CheckConstraint(
            "provider_balance >= 0", name="ck_profiles_provider_balance_non_negative"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Profile(id={self.id}, balance={self.balance}, "
            f"provider_balance={self.provider_balance})>"
        )


class Product(Base):
    """
    ORM model for products table.

    ``stock_available`` is a cache of slot/account availability; it is never
    read as the source of truth for allocation.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    provider_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[str] = mapped_column(String(30), nullable=False, default="profile_slots")
    delivery_mode: Mapped[str] = mapped_column(String(30), nullable=False, default="instant")
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    renewable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    renewal_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    affiliate_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    # Fields the buyer must fill in at purchase: [{"key", "label", "required"}]
    extra_required_fields: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    stock_available: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("stock_available >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint(
            "affiliate_price IS NULL OR affiliate_price >= 0",
            name="ck_products_affiliate_price_non_negative",
        ),
        CheckConstraint(
            "duration_days IS NULL OR duration_days > 0", name="ck_products_duration_positive"
        ),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, type={self.account_type}, stock={self.stock_available})>"


class InventoryAccount(Base):
    """
    ORM model for inventory_accounts table.

    Profile products get one row per profile (capacity 1). ``profile_label``
    names that profile; older rows only carry it inside ``login_user``
    (``base::slot_<label>::<suffix>``).
    """

    __tablename__ = "inventory_accounts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    login_user: Mapped[str] = mapped_column(String(320), nullable=False)
    login_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    slot_capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("slot_capacity >= 1", name="ck_inventory_accounts_capacity_positive"),
        UniqueConstraint("product_id", "login_user", name="uq_inventory_accounts_product_login"),
        Index("idx_inventory_accounts_product_active", "product_id", "is_active"),
    )


class InventorySlot(Base):
    """
    ORM model for inventory_slots table.

    A ``free`` slot never carries a buyer; any other status means taken.
    """

    __tablename__ = "inventory_slots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    inventory_account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("inventory_accounts.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    slot_label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    profile_pin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="free")
    buyer_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("slot_index >= 1", name="ck_inventory_slots_index_positive"),
        CheckConstraint(
            "lower(status) <> 'free' OR buyer_id IS NULL", name="ck_inventory_slots_free_no_buyer"
        ),
        Index("idx_inventory_slots_product_status", "product_id", "status"),
        Index("idx_inventory_slots_account", "inventory_account_id"),
        Index(
            "idx_inventory_slots_buyer",
            "buyer_id",
            postgresql_where=(buyer_id.isnot(None)),
        ),
    )


class Order(Base):
    """
    ORM model for orders table.

    ``credentials`` is the snapshot handed to the buyer at delivery time and
    stays untouched when inventory rows are edited later.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    provider_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id"), nullable=False, index=True
    )
    inventory_slot_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("inventory_slots.id", ondelete="SET NULL"), nullable=True
    )
    inventory_account_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("inventory_accounts.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    credentials: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    price_paid: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    customer_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    customer_extra: Mapped[dict[str, str] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_paid >= 0", name="ck_orders_price_non_negative"),
        Index(
            "idx_orders_inventory_slot",
            "inventory_slot_id",
            postgresql_where=(inventory_slot_id.isnot(None)),
        ),
        Index("idx_orders_expires_at", "expires_at"),
        Index(
            "idx_orders_inventory_account",
            "inventory_account_id",
            postgresql_where=(inventory_account_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, status={self.status}, expires_at={self.expires_at})>"


class SupportTicket(Base):
    """ORM model for support_tickets table (auxiliary, linked to orders)."""

    __tablename__ = "support_tickets"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class BalanceMovement(Base):
    """
    ORM model for balance_movements table.

    Immutable ledger of every balance delta, including compensations.
    """

    __tablename__ = "balance_movements"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    profile_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    order_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    balance_column: Mapped[str] = mapped_column(String(30), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    saga_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_balance_movements_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_balance_movements_after_non_negative"),
        Index("idx_balance_movements_created_at", "created_at"),
    )
