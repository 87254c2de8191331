"""
Allocation & Release Engine - bind inventory to buyers and take it back.

Profile products hand out one free slot per order. Full-account products hand
out a whole account and mark it inactive, which removes it from the free pool.

Releasing is refused while any live order bound to the target still has paid
days left. Orders without an expiry never lapse, so they block release too.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.db.models import InventoryAccount, InventorySlot, Order, Product
from slotledger.db.store import LedgerStore
from slotledger.exceptions import (
    InventoryNotFoundError,
    NoStockAvailableError,
    ReleaseRefusedError,
)
from slotledger.models.api import AccountType, SlotStatus, is_occupied_status
from slotledger.models.domain import CredentialSnapshot, ReleaseResult, SlotBinding
from slotledger.observability.metrics import metrics
from slotledger.services.credentials import decode_login
from slotledger.services.pricing import days_left
from slotledger.services.stock import StockSynchronizer

logger = get_logger(__name__)


def slot_is_free(slot: InventorySlot) -> bool:
    return slot.buyer_id is None and not is_occupied_status(slot.status)


def snapshot_for(account: InventoryAccount | None, slot: InventorySlot | None) -> CredentialSnapshot:
    """Credentials as the buyer will see them, captured at allocation time."""
    login, embedded_label = decode_login(account.login_user if account else None)
    profile = ""
    if slot is not None:
        profile = (slot.slot_label or "").strip()
    if not profile and account is not None:
        profile = (account.profile_label or embedded_label or "").strip()
    if not profile and slot is not None:
        profile = f"Perfil {slot.slot_index}"
    return CredentialSnapshot(
        login=login,
        password=((account.login_password if account else None) or "").strip(),
        profile=profile,
        pin=((slot.profile_pin if slot else None) or "").strip(),
    )


def _is_lapsed(order: Order, now: datetime) -> bool:
    return days_left(order.expires_at, now) == 0


class AllocationEngine:
    """Claims and frees slots/accounts. Release operations commit; allocation does not."""

    def __init__(
        self,
        session: AsyncSession,
        store: LedgerStore | None = None,
        stock: StockSynchronizer | None = None,
    ) -> None:
        self.session = session
        self.store = store or LedgerStore(session)
        self.stock = stock or StockSynchronizer(session, self.store)

    @staticmethod
    def _occupy(slot: InventorySlot, buyer_id: UUID) -> None:
        slot.status = SlotStatus.OCCUPIED.value
        slot.buyer_id = buyer_id

    @staticmethod
    def _free(slot: InventorySlot) -> None:
        slot.status = SlotStatus.FREE.value
        slot.buyer_id = None

    # ========================================================================
    # Allocation
    # ========================================================================

    async def allocate(self, order: Order, product: Product) -> SlotBinding:
        """
        Claim one free slot (or one active account) for ``order``'s buyer.

        The cached stock is re-read first; when it says zero, stock is
        recomputed once in case a bulk insert was never synced.

        Raises:
            NoStockAvailableError: Nothing free for this product
        """
        account_type = AccountType.parse(product.account_type)

        if await self.store.read_cached_stock(product.id) <= 0:
            level = await self.stock.sync(product.id)
            if level.stock <= 0:
                metrics.allocations_total.labels(
                    account_type=account_type.value, outcome="no_stock"
                ).inc()
                raise NoStockAvailableError(product.id)

        if account_type is AccountType.FULL_ACCOUNT:
            binding = await self._claim_account(order, product)
        else:
            binding = await self._claim_slot(order, product)

        if binding is None:
            # Cache said yes but every free row was taken or locked by a concurrent claimer.
            metrics.allocations_total.labels(
                account_type=account_type.value, outcome="no_stock"
            ).inc()
            raise NoStockAvailableError(product.id)

        await self.session.flush()
        metrics.allocations_total.labels(account_type=account_type.value, outcome="success").inc()
        logger.info(
            "inventory_allocated",
            order_id=order.id,
            product_id=product.id,
            account_type=account_type.value,
            account_id=binding.account_id,
            slot_id=binding.slot_id,
            buyer_id=str(order.buyer_id),
        )
        return binding

    async def _claim_slot(self, order: Order, product: Product) -> SlotBinding | None:
        slot = await self.store.claim_free_slot(product.id)
        if slot is None:
            return None
        account = await self.store.get_account(slot.inventory_account_id)
        self._occupy(slot, order.buyer_id)
        return SlotBinding(
            product_id=product.id,
            account_id=slot.inventory_account_id,
            slot_id=slot.id,
            credentials=snapshot_for(account, slot),
        )

    async def _claim_account(self, order: Order, product: Product) -> SlotBinding | None:
        account = await self.store.claim_active_account(product.id)
        if account is None:
            return None
        account.is_active = False

        # Legacy full-account rows may still carry slot rows; link the first free one.
        slots = await self.store.slots_for_account(account.id, lock=True)
        slot = next((s for s in slots if slot_is_free(s)), None)
        if slot is not None:
            self._occupy(slot, order.buyer_id)
        return SlotBinding(
            product_id=product.id,
            account_id=account.id,
            slot_id=slot.id if slot else None,
            credentials=snapshot_for(account, slot),
        )

    async def undo_allocation(self, binding: SlotBinding, product: Product) -> None:
        """Put a just-allocated slot/account back in the free pool."""
        if binding.slot_id is not None:
            slot = await self.store.get_slot(binding.slot_id, lock=True)
            if slot is not None:
                self._free(slot)
        if AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT:
            account = await self.store.get_account(binding.account_id, lock=True)
            if account is not None:
                account.is_active = True
        await self.session.flush()
        logger.info(
            "allocation_undone",
            product_id=product.id,
            account_id=binding.account_id,
            slot_id=binding.slot_id,
        )

    # ========================================================================
    # Renewal after lapse
    # ========================================================================

    async def ensure_reclaimable(self, order: Order, product: Product) -> None:
        """
        Refuse a renewal whose released inventory went to someone else.

        Raises:
            NoStockAvailableError: Another buyer holds the order's slot/account
        """
        if order.inventory_slot_id is not None:
            slot = await self.store.get_slot(order.inventory_slot_id, lock=True)
            if slot is not None and slot.buyer_id not in (None, order.buyer_id):
                raise NoStockAvailableError(product.id)

        if (
            order.inventory_account_id is not None
            and AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT
        ):
            account = await self.store.get_account(order.inventory_account_id, lock=True)
            if account is not None and not account.is_active:
                others = await self.store.live_orders_for_account(account.id)
                if any(other.id != order.id for other in others):
                    raise NoStockAvailableError(product.id)

    async def reclaim(self, order: Order, product: Product) -> SlotBinding | None:
        """Re-occupy inventory freed after the order lapsed. None when nothing changed."""
        slot_id = None
        account_id = order.inventory_account_id
        if order.inventory_slot_id is not None:
            slot = await self.store.get_slot(order.inventory_slot_id, lock=True)
            if slot is not None and slot_is_free(slot):
                self._occupy(slot, order.buyer_id)
                slot_id = slot.id
                account_id = slot.inventory_account_id

        reactivated = False
        if (
            order.inventory_account_id is not None
            and AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT
        ):
            account = await self.store.get_account(order.inventory_account_id, lock=True)
            if account is not None and account.is_active:
                account.is_active = False
                reactivated = True

        if slot_id is None and not reactivated:
            return None
        await self.session.flush()
        logger.info("inventory_reclaimed", order_id=order.id, slot_id=slot_id, account_id=account_id)
        return SlotBinding(
            product_id=product.id,
            account_id=account_id,
            slot_id=slot_id,
            credentials=CredentialSnapshot(),
        )

    # ========================================================================
    # Release
    # ========================================================================

    def _guard(self, target: str, orders: Iterable[Order], now: datetime) -> None:
        for order in orders:
            remaining = days_left(order.expires_at, now)
            if remaining is None or remaining > 0:
                metrics.releases_total.labels(outcome="refused").inc()
                logger.warning(
                    "release_refused", target=target, order_id=order.id, days_left=remaining
                )
                raise ReleaseRefusedError(target, order.id, remaining)

    async def free_order_binding(
        self, order: Order, product: Product, now: datetime
    ) -> tuple[tuple[int, ...], bool]:
        """
        Free whatever ``order`` holds, without the paid-period guard.

        Used when the order itself is ending (rejection, cancellation, lapse).
        A slot already handed to another buyer (or re-bought by the same buyer
        in a later order) is left alone, and a full account is only
        reactivated when no other live order still needs it.
        Returns (released slot ids, account reactivated).
        """
        released: list[int] = []
        account_id = order.inventory_account_id

        if order.inventory_slot_id is not None:
            slot = await self.store.get_slot(order.inventory_slot_id, lock=True)
            if slot is not None:
                account_id = account_id or slot.inventory_account_id
                if slot.buyer_id in (None, order.buyer_id) and not slot_is_free(slot):
                    later = await self.store.live_orders_for_slots([slot.id])
                    if not any(o.id > order.id for o in later):
                        self._free(slot)
                        released.append(slot.id)

        reactivated = False
        if account_id is not None and AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT:
            account = await self.store.get_account(account_id, lock=True)
            if account is not None and not account.is_active:
                others = await self.store.live_orders_for_account(account_id)
                if not any(o.id != order.id and not _is_lapsed(o, now) for o in others):
                    account.is_active = True
                    reactivated = True

        await self.session.flush()
        return tuple(released), reactivated

    async def _finish_release(
        self, product_id: int, released: list[int], reactivated: bool, target: str
    ) -> ReleaseResult:
        await self.session.flush()
        level = await self.stock.sync(product_id)
        await self.session.commit()

        outcome = "released" if released or reactivated else "noop"
        metrics.releases_total.labels(outcome=outcome).inc()
        logger.info(
            "inventory_released",
            target=target,
            product_id=product_id,
            released_slot_ids=released,
            account_reactivated=reactivated,
            stock=level.stock,
        )
        return ReleaseResult(
            product_id=product_id,
            released_slot_ids=tuple(released),
            account_reactivated=reactivated,
            stock=level.stock,
        )

    async def release_slot(self, slot_id: int, now: datetime) -> ReleaseResult:
        """
        Free one slot (and its full account, if deactivated).

        Raises:
            InventoryNotFoundError: No such slot
            ReleaseRefusedError: A bound order still has paid days left
        """
        target = f"slot {slot_id}"
        slot = await self.store.get_slot(slot_id, lock=True)
        if slot is None:
            raise InventoryNotFoundError(target)

        self._guard(target, await self.store.live_orders_for_slots([slot_id]), now)

        product = await self.store.get_product(slot.product_id)
        released = []
        if not slot_is_free(slot):
            self._free(slot)
            released.append(slot.id)

        reactivated = False
        if product is not None and AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT:
            account = await self.store.get_account(slot.inventory_account_id, lock=True)
            if account is not None and not account.is_active:
                account.is_active = True
                reactivated = True

        return await self._finish_release(slot.product_id, released, reactivated, target)

    async def release_account(self, account_id: int, now: datetime) -> ReleaseResult:
        """
        Free every slot of an account and reactivate it.

        Raises:
            InventoryNotFoundError: No such account
            ReleaseRefusedError: A bound order still has paid days left
        """
        target = f"account {account_id}"
        account = await self.store.get_account(account_id, lock=True)
        if account is None:
            raise InventoryNotFoundError(target)

        self._guard(target, await self.store.live_orders_for_account(account_id), now)

        released = []
        for slot in await self.store.slots_for_account(account_id, lock=True):
            if not slot_is_free(slot):
                self._free(slot)
                released.append(slot.id)

        product = await self.store.get_product(account.product_id)
        reactivated = False
        if (
            product is not None
            and AccountType.parse(product.account_type) is AccountType.FULL_ACCOUNT
            and not account.is_active
        ):
            account.is_active = True
            reactivated = True

        return await self._finish_release(account.product_id, released, reactivated, target)

    async def release_lapsed(self, now: datetime) -> list[ReleaseResult]:
        """Free inventory held by every live order whose expiry has passed."""
        products: dict[int, Product | None] = {}
        released: dict[int, list[int]] = {}
        reactivated: dict[int, bool] = {}

        for order in await self.store.lapsed_orders(now):
            if order.product_id not in products:
                products[order.product_id] = await self.store.get_product(order.product_id)
            product = products[order.product_id]
            if product is None:
                continue
            slot_ids, account_back = await self.free_order_binding(order, product, now)
            if slot_ids or account_back:
                released.setdefault(product.id, []).extend(slot_ids)
                reactivated[product.id] = reactivated.get(product.id, False) or account_back
                logger.info(
                    "lapsed_order_released",
                    order_id=order.id,
                    product_id=product.id,
                    released_slot_ids=list(slot_ids),
                    account_reactivated=account_back,
                )

        levels = {level.product_id: level for level in await self.stock.sync_many(released)}
        await self.session.commit()

        results = []
        for product_id, slot_ids in sorted(released.items()):
            metrics.releases_total.labels(outcome="lapsed").inc()
            level = levels.get(product_id)
            results.append(
                ReleaseResult(
                    product_id=product_id,
                    released_slot_ids=tuple(slot_ids),
                    account_reactivated=reactivated.get(product_id, False),
                    stock=level.stock if level else 0,
                )
            )
        return results
