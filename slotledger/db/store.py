"""
Ledger Store - typed access to products, inventory, orders and balances.

Every balance change is a single conditional UPDATE ... RETURNING, so two
sessions touching the same profile can never compute a delta from a stale
read. Rows that a settlement mutates are locked with SELECT ... FOR UPDATE;
free inventory is claimed with SKIP LOCKED so concurrent buyers never receive
the same slot.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import NoSuchTableError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from structlog import get_logger

from slotledger.db.models import (
    BalanceMovement,
    InventoryAccount,
    InventorySlot,
    Order,
    Product,
    Profile,
    SupportTicket,
)
from slotledger.exceptions import InsufficientFundsError, ProfileNotFoundError, SchemaError
from slotledger.models.api import (
    OCCUPIED_SLOT_STATUSES,
    TERMINAL_STATUSES,
    BalanceColumn,
    MovementKind,
    spellings_of,
)
from slotledger.models.domain import BalanceChange

logger = get_logger(__name__)

_SCHEMA_ERROR_MARKERS = (
    "does not exist",
    "does not have",
    "schema cache",
    "could not find",
    "unknown relation",
    "undefinedtable",
    "undefinedcolumn",
    "no such table",
    "no such column",
)

_TERMINAL_STATUS_VALUES = tuple(sorted(spellings_of(TERMINAL_STATUSES)))


def is_schema_error_message(message: str) -> bool:
    """True when a driver error message says a relation or column is missing."""
    lowered = message.lower()
    return any(marker in lowered for marker in _SCHEMA_ERROR_MARKERS)


def _free_slot_clause() -> Any:
    return (
        func.lower(func.coalesce(InventorySlot.status, "")).not_in(sorted(OCCUPIED_SLOT_STATUSES))
    ) & InventorySlot.buyer_id.is_(None)


def _live_order_clause(order: Any = Order) -> Any:
    # Folded the same way as OrderStatus.parse, so legacy spellings match.
    return func.lower(func.btrim(order.status)).not_in(_TERMINAL_STATUS_VALUES)


def _still_held_clause() -> Any:
    """
    The order still holds what it was bound to, and no later live order took
    it over. Releasing an order clears exactly this, so a lapsed order is
    scanned once.
    """
    later = aliased(Order)
    slot_held = (
        select(InventorySlot.id)
        .where(
            InventorySlot.id == Order.inventory_slot_id,
            or_(
                InventorySlot.buyer_id == Order.buyer_id,
                InventorySlot.buyer_id.is_(None) & ~_free_slot_clause(),
            ),
        )
        .exists()
    )
    # Full-account orders without a slot row are held through the account.
    account_held = Order.inventory_slot_id.is_(None) & (
        select(InventoryAccount.id)
        .where(
            InventoryAccount.id == Order.inventory_account_id,
            InventoryAccount.is_active.is_(False),
        )
        .exists()
    )
    taken_over = (
        select(later.id)
        .where(
            later.id > Order.id,
            or_(
                and_(
                    Order.inventory_slot_id.is_not(None),
                    later.inventory_slot_id == Order.inventory_slot_id,
                ),
                and_(
                    Order.inventory_slot_id.is_(None),
                    later.inventory_account_id == Order.inventory_account_id,
                ),
            ),
            _live_order_clause(later),
        )
        .exists()
    )
    return or_(slot_held, account_held) & ~taken_over


class LedgerStore:
    """Typed queries over the ledger tables, bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _execute(self, stmt: Any, table: str) -> Any:
        try:
            return await self.session.execute(stmt)
        except (ProgrammingError, NoSuchTableError) as exc:
            detail = str(getattr(exc, "orig", None) or exc)
            if is_schema_error_message(detail):
                raise SchemaError(table, detail) from exc
            raise

    # ========================================================================
    # Products
    # ========================================================================

    async def get_product(self, product_id: int, *, lock: bool = False) -> Product | None:
        stmt = select(Product).where(Product.id == product_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "products")
        return result.scalar_one_or_none()

    async def read_cached_stock(self, product_id: int) -> int:
        """Re-read the cached stock column, bypassing any identity-map copy."""
        stmt = select(Product.stock_available).where(Product.id == product_id)
        result = await self._execute(stmt, "products")
        return int(result.scalar_one_or_none() or 0)

    async def count_free_slots(self, product_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(InventorySlot)
            .where(InventorySlot.product_id == product_id, _free_slot_clause())
        )
        result = await self._execute(stmt, "inventory_slots")
        return int(result.scalar_one())

    async def count_active_accounts(self, product_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(InventoryAccount)
            .where(InventoryAccount.product_id == product_id, InventoryAccount.is_active.is_(True))
        )
        result = await self._execute(stmt, "inventory_accounts")
        return int(result.scalar_one())

    async def set_product_stock(self, product_id: int, stock: int) -> None:
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock_available=stock)
            .execution_options(synchronize_session="fetch")
        )
        await self._execute(stmt, "products")

    # ========================================================================
    # Orders
    # ========================================================================

    async def get_order(self, order_id: int, *, lock: bool = False) -> Order | None:
        stmt = select(Order).where(Order.id == order_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "orders")
        return result.scalar_one_or_none()

    async def get_orders(self, order_ids: Iterable[int]) -> list[Order]:
        ids = sorted(set(order_ids))
        if not ids:
            return []
        stmt = select(Order).where(Order.id.in_(ids)).order_by(Order.id)
        result = await self._execute(stmt, "orders")
        return list(result.scalars().all())

    async def find_live_order_for_slot(self, slot_id: int, *, lock: bool = False) -> Order | None:
        """Most recent non-terminal order pointing at a slot."""
        stmt = (
            select(Order)
            .where(Order.inventory_slot_id == slot_id, _live_order_clause())
            .order_by(Order.id.desc())
            .limit(1)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "orders")
        return result.scalar_one_or_none()

    async def live_orders_for_slots(self, slot_ids: Sequence[int]) -> list[Order]:
        if not slot_ids:
            return []
        stmt = (
            select(Order)
            .where(Order.inventory_slot_id.in_(list(slot_ids)), _live_order_clause())
            .order_by(Order.id)
        )
        result = await self._execute(stmt, "orders")
        return list(result.scalars().all())

    async def live_orders_for_account(self, account_id: int) -> list[Order]:
        """Live orders bound to an account directly or through one of its slots."""
        slot_ids = select(InventorySlot.id).where(
            InventorySlot.inventory_account_id == account_id
        )
        stmt = (
            select(Order)
            .where(
                or_(
                    Order.inventory_account_id == account_id,
                    Order.inventory_slot_id.in_(slot_ids),
                ),
                _live_order_clause(),
            )
            .order_by(Order.id)
        )
        result = await self._execute(stmt, "orders")
        return list(result.scalars().all())

    async def lapsed_orders(self, now: datetime) -> list[Order]:
        """Live orders whose paid period has ended and that still hold inventory."""
        stmt = (
            select(Order)
            .where(
                Order.expires_at.is_not(None),
                Order.expires_at <= now,
                _live_order_clause(),
                _still_held_clause(),
            )
            .order_by(Order.id)
        )
        result = await self._execute(stmt, "orders")
        return list(result.scalars().all())

    async def create_order(self, **values: Any) -> Order:
        order = Order(**values)
        self.session.add(order)
        await self.session.flush()
        return order

    # ========================================================================
    # Inventory
    # ========================================================================

    async def get_slot(self, slot_id: int, *, lock: bool = False) -> InventorySlot | None:
        stmt = select(InventorySlot).where(InventorySlot.id == slot_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "inventory_slots")
        return result.scalar_one_or_none()

    async def get_account(self, account_id: int, *, lock: bool = False) -> InventoryAccount | None:
        stmt = select(InventoryAccount).where(InventoryAccount.id == account_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "inventory_accounts")
        return result.scalar_one_or_none()

    async def slots_for_account(
        self, account_id: int, *, lock: bool = False
    ) -> list[InventorySlot]:
        stmt = (
            select(InventorySlot)
            .where(InventorySlot.inventory_account_id == account_id)
            .order_by(InventorySlot.slot_index, InventorySlot.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self._execute(stmt, "inventory_slots")
        return list(result.scalars().all())

    async def claim_free_slot(self, product_id: int) -> InventorySlot | None:
        """Lock the first free slot of a product; concurrent claimers skip it."""
        stmt = (
            select(InventorySlot)
            .where(InventorySlot.product_id == product_id, _free_slot_clause())
            .order_by(InventorySlot.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await self._execute(stmt, "inventory_slots")
        return result.scalar_one_or_none()

    async def claim_active_account(self, product_id: int) -> InventoryAccount | None:
        """Lock the first active account of a full-account product."""
        stmt = (
            select(InventoryAccount)
            .where(
                InventoryAccount.product_id == product_id,
                InventoryAccount.is_active.is_(True),
            )
            .order_by(InventoryAccount.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await self._execute(stmt, "inventory_accounts")
        return result.scalar_one_or_none()

    async def accounts_for_products(self, product_ids: Iterable[int]) -> list[InventoryAccount]:
        ids = sorted(set(product_ids))
        if not ids:
            return []
        stmt = (
            select(InventoryAccount)
            .where(InventoryAccount.product_id.in_(ids))
            .order_by(InventoryAccount.id)
        )
        result = await self._execute(stmt, "inventory_accounts")
        return list(result.scalars().all())

    async def slots_for_products(self, product_ids: Iterable[int]) -> list[InventorySlot]:
        ids = sorted(set(product_ids))
        if not ids:
            return []
        stmt = (
            select(InventorySlot)
            .where(InventorySlot.product_id.in_(ids))
            .order_by(InventorySlot.id)
        )
        result = await self._execute(stmt, "inventory_slots")
        return list(result.scalars().all())

    async def slots_owned_by(self, buyer_id: UUID, product_id: int) -> list[InventorySlot]:
        stmt = (
            select(InventorySlot)
            .where(InventorySlot.buyer_id == buyer_id, InventorySlot.product_id == product_id)
            .order_by(InventorySlot.id)
        )
        result = await self._execute(stmt, "inventory_slots")
        return list(result.scalars().all())

    # ========================================================================
    # Balances
    # ========================================================================

    async def get_balance(self, profile_id: UUID, column: BalanceColumn) -> Decimal:
        stmt = select(getattr(Profile, column.value)).where(Profile.id == profile_id)
        result = await self._execute(stmt, "profiles")
        value = result.scalar_one_or_none()
        if value is None:
            raise ProfileNotFoundError(profile_id)
        return Decimal(value)

    async def apply_balance_delta(
        self,
        profile_id: UUID,
        column: BalanceColumn,
        delta: Decimal,
        *,
        kind: MovementKind,
        description: str,
        order_id: int | None = None,
        saga_id: UUID | None = None,
    ) -> BalanceChange:
        """
        Atomically add ``delta`` to one balance column.

        The UPDATE only matches when the result stays non-negative, so a debit
        that raced with another spend fails here instead of overdrawing.

        Raises:
            InsufficientFundsError: The balance cannot absorb a negative delta
            ProfileNotFoundError: No such profile
        """
        target = getattr(Profile, column.value)
        stmt = (
            update(Profile)
            .where(Profile.id == profile_id, target + delta >= 0)
            .values({target: target + delta})
            .returning(target)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._execute(stmt, "profiles")
        after = result.scalar_one_or_none()

        if after is None:
            current = await self.get_balance(profile_id, column)
            raise InsufficientFundsError(current, -delta)

        after = Decimal(after)
        before = after - delta
        self.session.add(
            BalanceMovement(
                profile_id=profile_id,
                order_id=order_id,
                balance_column=column.value,
                kind=kind.value,
                amount=delta,
                balance_before=before,
                balance_after=after,
                description=description,
                saga_id=saga_id,
            )
        )
        await self.session.flush()

        logger.info(
            "balance_delta_applied",
            profile_id=str(profile_id),
            column=column.value,
            kind=kind.value,
            delta=str(delta),
            balance_before=str(before),
            balance_after=str(after),
            order_id=order_id,
        )
        return BalanceChange(
            profile_id=profile_id, column=column, balance_before=before, balance_after=after
        )

    # ========================================================================
    # Support tickets
    # ========================================================================

    async def resolve_tickets_for_order(
        self, order_id: int, resolution: str, now: datetime
    ) -> int:
        """Close open tickets linked to an order. Returns how many were closed."""
        stmt = (
            update(SupportTicket)
            .where(SupportTicket.order_id == order_id, SupportTicket.status != "resolved")
            .values(status="resolved", resolution=resolution, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt, "support_tickets")
        return int(result.rowcount or 0)
