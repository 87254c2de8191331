"""
Settlement Service - purchases, renewals, on-demand fulfillment and voids.

Every money-moving operation follows the same shape:

1. Lock and validate (order row FOR UPDATE, product, buyer funds). Business
   rule violations are raised here, before anything is written.
2. Run the steps as a Saga inside one transaction. Each step runs in its own
   savepoint, and each balance delta is a single conditional UPDATE that
   also writes a balance_movements row.
3. Commit once. A compensated failure is committed too, so the reversal
   stays in the audit ledger. A failed compensation rolls everything back
   and is flagged for manual reconciliation.
4. Re-sync stock. A failure there is only a warning.
"""

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.db.models import Order, Product, utc_now
from slotledger.db.store import LedgerStore
from slotledger.exceptions import (
    InsufficientFundsError,
    LedgerError,
    MissingCustomerFieldError,
    NoLinkedOrderError,
    NoStockAvailableError,
    NotRenewableError,
    OrderNotFoundError,
    OrderStateError,
    PartialSettlementFailureError,
    ProductNotFoundError,
    ProductUnavailableError,
    SchemaError,
)
from slotledger.models.api import (
    BalanceColumn,
    DeliveryMode,
    MovementKind,
    OrderStatus,
)
from slotledger.models.domain import (
    BalanceChange,
    CommissionSplit,
    CustomerDetails,
    CustomerField,
    SettlementResult,
    SlotBinding,
    VoidResult,
)
from slotledger.observability.metrics import metrics
from slotledger.services.allocation import AllocationEngine
from slotledger.services.pricing import (
    ZERO,
    next_expiry,
    purchase_amount,
    renewal_amount,
    split_amount,
    to_money,
)
from slotledger.services.saga import Saga, SagaStep
from slotledger.services.stock import StockSynchronizer

logger = get_logger(__name__)


def _parse_status(order: Order, operation: str) -> OrderStatus:
    try:
        return OrderStatus.parse(order.status)
    except ValueError:
        raise OrderStateError(order.id, order.status, operation) from None


class SettlementService:
    """
    Money-moving operations over one database session.

    The service owns the transaction: each public method commits on success
    and rolls back on failure.
    """

    def __init__(
        self,
        session: AsyncSession,
        store: LedgerStore | None = None,
        stock: StockSynchronizer | None = None,
        allocation: AllocationEngine | None = None,
    ) -> None:
        self.session = session
        self.store = store or LedgerStore(session)
        self.stock = stock or StockSynchronizer(session, self.store)
        self.allocation = allocation or AllocationEngine(session, self.store, self.stock)

    # ========================================================================
    # Transaction and step helpers
    # ========================================================================

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except PartialSettlementFailureError as exc:
            if exc.compensated:
                await self._commit_compensation(operation)
                metrics.record_settlement(operation, "compensated")
                logger.error(
                    "settlement_compensated",
                    operation=operation,
                    failed_step=exc.step,
                    error=str(exc.original),
                )
            else:
                await self.session.rollback()
                metrics.record_settlement(operation, "inconsistent")
                logger.critical(
                    "settlement_reconciliation_required",
                    operation=operation,
                    failed_step=exc.step,
                    error=str(exc.original),
                    compensation_errors=[f"{name}: {err}" for name, err in exc.compensation_errors],
                )
            raise
        except LedgerError as exc:
            await self.session.rollback()
            metrics.record_settlement(operation, "rejected")
            logger.info("settlement_rejected", operation=operation, reason=str(exc))
            raise
        except Exception as exc:
            await self.session.rollback()
            metrics.record_error(type(exc).__name__, operation)
            logger.error("settlement_error", operation=operation, error=str(exc), exc_info=True)
            raise

    async def _commit_compensation(self, operation: str) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("compensation_commit_failed", operation=operation, error=str(exc))

    def _new_saga(self, operation: str, **context: object) -> Saga:
        return Saga(operation, savepoint=self.session.begin_nested, **context)

    def _balance_step(
        self,
        saga: Saga,
        name: str,
        profile_id: UUID,
        column: BalanceColumn,
        delta: Decimal,
        *,
        kind: MovementKind,
        description: str,
        order_id: int | None = None,
    ) -> SagaStep:
        """A balance delta whose compensation is the opposite delta."""

        async def action() -> BalanceChange:
            return await self.store.apply_balance_delta(
                profile_id,
                column,
                delta,
                kind=kind,
                description=description,
                order_id=order_id,
                saga_id=saga.saga_id,
            )

        async def compensate(_: BalanceChange) -> None:
            await self.store.apply_balance_delta(
                profile_id,
                column,
                -delta,
                kind=MovementKind.COMPENSATION,
                description=f"Reversal of {name}: {description}",
                order_id=order_id,
                saga_id=saga.saga_id,
            )

        return SagaStep(name, action, compensate)

    def _debit_step(
        self, saga: Saga, buyer_id: UUID, amount: Decimal, description: str, order_id: int | None
    ) -> SagaStep:
        return self._balance_step(
            saga,
            "debit_buyer",
            buyer_id,
            BalanceColumn.BUYER,
            -amount,
            kind=MovementKind.DEBIT,
            description=description,
            order_id=order_id,
        )

    def _credit_step(
        self, saga: Saga, provider_id: UUID, credit: Decimal, description: str, order_id: int | None
    ) -> SagaStep:
        return self._balance_step(
            saga,
            "credit_provider",
            provider_id,
            BalanceColumn.PROVIDER,
            credit,
            kind=MovementKind.CREDIT,
            description=description,
            order_id=order_id,
        )

    def _allocate_step(self, saga: Saga, order: Order | str, product: Product) -> SagaStep:
        """Allocate for ``order``, or for the saga result named by ``order``."""

        async def action() -> SlotBinding:
            target = saga.results[order] if isinstance(order, str) else order
            return await self.allocation.allocate(target, product)

        async def compensate(binding: SlotBinding) -> None:
            await self.allocation.undo_allocation(binding, product)

        return SagaStep("allocate", action, compensate)

    async def _require_funds(self, buyer_id: UUID, amount: Decimal) -> Decimal:
        balance = await self.store.get_balance(buyer_id, BalanceColumn.BUYER)
        if balance < amount:
            raise InsufficientFundsError(balance, amount)
        return balance

    async def _load_product(self, product_id: int) -> Product:
        product = await self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def _sync_stock(self, product_ids: Iterable[int]) -> None:
        """Post-settlement stock refresh; never fails the settlement."""
        ids = sorted(set(product_ids))
        try:
            await self.stock.sync_many(ids)
            await self.session.commit()
        except (SQLAlchemyError, LedgerError) as exc:
            await self.session.rollback()
            logger.warning("post_settlement_stock_sync_failed", product_ids=ids, error=str(exc))

    @staticmethod
    def _deliver(order: Order, binding: SlotBinding, duration_days: int | None, now: datetime) -> None:
        order.inventory_slot_id = binding.slot_id
        order.inventory_account_id = binding.account_id
        order.credentials = binding.credentials.to_payload()
        order.status = OrderStatus.DELIVERED.value
        order.duration_days = duration_days
        order.starts_at = now
        order.expires_at = now + timedelta(days=duration_days) if duration_days else None

    def _completed(
        self,
        operation: str,
        order: Order,
        split: CommissionSplit,
        results: dict[str, object],
    ) -> SettlementResult:
        debit = results.get("debit_buyer")
        credit = results.get("credit_provider")
        metrics.record_settlement(operation, "success", float(split.amount))
        logger.info(
            "settlement_completed",
            operation=operation,
            order_id=order.id,
            status=order.status,
            amount=str(split.amount),
            commission=str(split.commission),
            provider_credit=str(split.provider_credit),
            expires_at=order.expires_at.isoformat() if order.expires_at else None,
        )
        return SettlementResult(
            order_id=order.id,
            status=OrderStatus.parse(order.status),
            split=split,
            buyer_balance=debit.balance_after if isinstance(debit, BalanceChange) else None,
            provider_balance=credit.balance_after if isinstance(credit, BalanceChange) else None,
            inventory_slot_id=order.inventory_slot_id,
            starts_at=order.starts_at,
            expires_at=order.expires_at,
        )

    # ========================================================================
    # Purchase
    # ========================================================================

    async def purchase(
        self,
        product_id: int,
        buyer_id: UUID,
        now: datetime | None = None,
        customer: CustomerDetails | None = None,
    ) -> SettlementResult:
        """
        Buy one unit of a product.

        Instant products (and on-demand products that have stock on hand) are
        delivered immediately: debit -> create order -> allocate -> credit
        provider -> deliver. On-demand products without stock debit the buyer
        and leave a ``pending`` order for the provider to fulfill.

        The buyer pays the affiliate price when the product has one. What
        the buyer entered at checkout is stored on the order; fields the
        product marks as required must be filled in.

        Raises:
            ProductNotFoundError: No such product
            ProductUnavailableError: Product inactive, or the buyer owns it
            MissingCustomerFieldError: A required checkout field is empty
            InsufficientFundsError: Buyer balance below the price
            NoStockAvailableError: Instant product with nothing free
            PartialSettlementFailureError: A step failed after the debit
        """
        now = now or utc_now()
        operation = "purchase"
        async with self._transaction(operation):
            product = await self._load_product(product_id)
            if not product.is_active:
                raise ProductUnavailableError(product_id, "product is inactive")
            if product.provider_id == buyer_id:
                raise ProductUnavailableError(product_id, "cannot buy your own product")

            details = self._checkout_details(product, customer or CustomerDetails())
            amount = purchase_amount(product)
            await self._require_funds(buyer_id, amount)
            split = split_amount(amount, product.account_type)

            instant = await self._has_stock(product)
            if not instant and DeliveryMode.parse(product.delivery_mode) is DeliveryMode.INSTANT:
                raise NoStockAvailableError(product_id)

            saga = self._new_saga(operation, product_id=product_id, buyer_id=str(buyer_id))
            steps = []
            if amount > ZERO:
                steps.append(
                    self._debit_step(saga, buyer_id, amount, f"Purchase of product {product_id}", None)
                )
            steps.append(self._create_order_step(saga, product, buyer_id, amount, details))
            if instant:
                steps.append(self._allocate_step(saga, "create_order", product))
                if split.provider_credit > ZERO:
                    steps.append(
                        self._credit_step(
                            saga,
                            product.provider_id,
                            split.provider_credit,
                            f"Sale of product {product_id}",
                            None,
                        )
                    )
                steps.append(self._deliver_step(saga, product, now))

            results = await saga.run(steps)
            order = results["create_order"]
            if not instant:
                # Provider is credited at fulfillment.
                logger.info(
                    "on_demand_order_created",
                    order_id=order.id,
                    product_id=product_id,
                    amount=str(amount),
                )

        if instant:
            await self._sync_stock([product_id])
        return self._completed(operation, order, split, results)

    async def _has_stock(self, product: Product) -> bool:
        if await self.store.read_cached_stock(product.id) > 0:
            return True
        level = await self.stock.sync(product.id)
        return level.stock > 0

    def _checkout_details(self, product: Product, customer: CustomerDetails) -> dict[str, Any]:
        fields = CustomerField.parse_all(product.extra_required_fields)
        extra = customer.extra_for(fields)
        for checkout_field in fields:
            if checkout_field.required and checkout_field.key not in extra:
                raise MissingCustomerFieldError(product.id, checkout_field.key, checkout_field.label)
        return {
            "customer_name": (customer.name or "").strip() or None,
            "customer_phone": (customer.phone or "").strip() or None,
            "customer_extra": extra or None,
        }

    def _create_order_step(
        self,
        saga: Saga,
        product: Product,
        buyer_id: UUID,
        amount: Decimal,
        details: dict[str, Any],
    ) -> SagaStep:
        async def action() -> Order:
            order = await self.store.create_order(
                buyer_id=buyer_id,
                provider_id=product.provider_id,
                product_id=product.id,
                status=OrderStatus.PENDING.value,
                price_paid=amount,
                duration_days=product.duration_days,
                **details,
            )
            logger.info("order_created", order_id=order.id, saga_id=str(saga.saga_id))
            return order

        async def compensate(order: Order) -> None:
            order.status = OrderStatus.FAILED.value
            await self.session.flush()

        return SagaStep("create_order", action, compensate)

    def _deliver_step(self, saga: Saga, product: Product, now: datetime) -> SagaStep:
        async def action() -> Order:
            order: Order = saga.results["create_order"]
            self._deliver(order, saga.results["allocate"], product.duration_days, now)
            await self.session.flush()
            return order

        return SagaStep("deliver", action)

    # ========================================================================
    # Renewal
    # ========================================================================

    async def renew(
        self, order_id: int, buyer_id: UUID, now: datetime | None = None
    ) -> SettlementResult:
        """
        Renew an order for another ``duration_days``.

        Steps: debit buyer -> credit provider (when the net credit is
        positive) -> extend order. Renewing early extends from the current
        expiry; renewing a lapsed order starts from now.

        Raises:
            OrderNotFoundError: No such order for this buyer
            OrderStateError: Order not yet delivered, or already voided
            NotRenewableError: Product not renewable or has no price/duration
            InsufficientFundsError: Buyer balance below the renewal amount
            NoStockAvailableError: The lapsed slot went to another buyer
            PartialSettlementFailureError: A step failed after the debit
        """
        now = now or utc_now()
        operation = "renew"
        async with self._transaction(operation):
            order = await self.store.get_order(order_id, lock=True)
            if order is None or order.buyer_id != buyer_id:
                raise OrderNotFoundError(order_id)
            # Undelivered on-demand orders go through fulfill_on_demand first.
            if not _parse_status(order, operation).is_paid_like:
                raise OrderStateError(order_id, order.status, operation)

            product = await self._load_product(order.product_id)
            if not product.renewable:
                raise NotRenewableError(product.id)
            duration_days = product.duration_days or order.duration_days
            if not duration_days:
                raise NotRenewableError(product.id, "product has no duration")
            amount = renewal_amount(product, order.price_paid)
            if amount is None:
                raise NotRenewableError(product.id, "no positive renewal price")

            await self._require_funds(buyer_id, amount)
            await self.allocation.ensure_reclaimable(order, product)
            split = split_amount(amount, product.account_type)

            saga = self._new_saga(operation, order_id=order_id)
            steps = [
                self._debit_step(saga, buyer_id, amount, f"Renewal of order {order_id}", order_id)
            ]
            if split.provider_credit > ZERO:
                steps.append(
                    self._credit_step(
                        saga,
                        order.provider_id or product.provider_id,
                        split.provider_credit,
                        f"Renewal of order {order_id}",
                        order_id,
                    )
                )
            steps.append(self._extend_step(order, product, duration_days, now))
            results = await saga.run(steps)

        await self._sync_stock([product.id])
        return self._completed(operation, order, split, results)

    def _extend_step(
        self, order: Order, product: Product, duration_days: int, now: datetime
    ) -> SagaStep:
        previous = (order.starts_at, order.expires_at, order.duration_days, order.status)

        async def action() -> SlotBinding | None:
            reclaimed = await self.allocation.reclaim(order, product)
            current = order.expires_at
            order.starts_at = current if current is not None and current > now else now
            order.expires_at = next_expiry(current, duration_days, now)
            order.duration_days = duration_days
            order.status = OrderStatus.PAID.value
            await self.session.flush()
            return reclaimed

        async def compensate(reclaimed: SlotBinding | None) -> None:
            order.starts_at, order.expires_at, order.duration_days, order.status = previous
            if reclaimed is not None:
                await self.allocation.undo_allocation(reclaimed, product)
            await self.session.flush()

        return SagaStep("extend_order", action, compensate)

    async def renew_slot(
        self, slot_id: int, buyer_id: UUID, now: datetime | None = None
    ) -> SettlementResult:
        """
        Renew whatever order is bound to a slot.

        Raises:
            NoLinkedOrderError: No live order points at the slot
        """
        order = await self.store.find_live_order_for_slot(slot_id)
        if order is None:
            metrics.record_settlement("renew", "rejected")
            raise NoLinkedOrderError(f"slot {slot_id}")
        return await self.renew(order.id, buyer_id, now)

    # ========================================================================
    # On-demand fulfillment
    # ========================================================================

    async def fulfill_on_demand(self, order_id: int, now: datetime | None = None) -> SettlementResult:
        """
        Deliver a pending on-demand order from stock the provider has loaded.

        The buyer paid at purchase, so the steps are: allocate -> credit
        provider -> deliver.

        Raises:
            OrderNotFoundError: No such order
            OrderStateError: Order is not pending/in progress
            NoStockAvailableError: Nothing free to deliver
            PartialSettlementFailureError: A step failed after allocation
        """
        now = now or utc_now()
        operation = "fulfill"
        async with self._transaction(operation):
            order = await self.store.get_order(order_id, lock=True)
            if order is None:
                raise OrderNotFoundError(order_id)
            status = _parse_status(order, operation)
            if status not in (OrderStatus.PENDING, OrderStatus.IN_PROGRESS):
                raise OrderStateError(order_id, order.status, operation)

            product = await self._load_product(order.product_id)
            split = split_amount(to_money(order.price_paid), product.account_type)
            duration_days = order.duration_days or product.duration_days

            saga = self._new_saga(operation, order_id=order_id)
            steps = [self._allocate_step(saga, order, product)]
            if split.provider_credit > ZERO:
                steps.append(
                    self._credit_step(
                        saga,
                        order.provider_id or product.provider_id,
                        split.provider_credit,
                        f"Fulfillment of order {order_id}",
                        order_id,
                    )
                )

            async def deliver() -> Order:
                self._deliver(order, saga.results["allocate"], duration_days, now)
                await self.session.flush()
                return order

            steps.append(SagaStep("deliver", deliver))
            results = await saga.run(steps)

        await self._sync_stock([product.id])
        return self._completed(operation, order, split, results)

    # ========================================================================
    # Rejection / cancellation
    # ========================================================================

    async def reject(
        self, order_id: int, reason: str | None = None, now: datetime | None = None
    ) -> VoidResult:
        """Reject an order: full refund, release its inventory, resolve its ticket."""
        return await self._void(order_id, OrderStatus.REJECTED, reason, now or utc_now())

    async def cancel(
        self, order_id: int, reason: str | None = None, now: datetime | None = None
    ) -> VoidResult:
        """Cancel an order: full refund and release its inventory."""
        return await self._void(order_id, OrderStatus.CANCELLED, reason, now or utc_now())

    async def _void(
        self, order_id: int, target: OrderStatus, reason: str | None, now: datetime
    ) -> VoidResult:
        """
        Single-step reversal; nothing else was committed, so no saga is needed.

        The provider keeps any credit already paid out for this order.
        """
        operation = target.value
        product: Product | None = None
        async with self._transaction(operation):
            order = await self.store.get_order(order_id, lock=True)
            if order is None:
                raise OrderNotFoundError(order_id)
            if _parse_status(order, operation).is_terminal:
                raise OrderStateError(order_id, order.status, operation)

            order.status = target.value
            refund = to_money(order.price_paid)
            if refund > ZERO:
                change = await self.store.apply_balance_delta(
                    order.buyer_id,
                    BalanceColumn.BUYER,
                    refund,
                    kind=MovementKind.REFUND,
                    description=f"Refund of order {order_id} ({target.value})",
                    order_id=order_id,
                )
                buyer_balance = change.balance_after
            else:
                buyer_balance = await self.store.get_balance(order.buyer_id, BalanceColumn.BUYER)

            released: tuple[int, ...] = ()
            product = await self.store.get_product(order.product_id)
            if product is not None:
                released, _ = await self.allocation.free_order_binding(order, product, now)

            resolution = reason or f"Order {target.value}"
            ticket_resolved = await self._resolve_ticket(order_id, resolution, now)

        metrics.record_settlement(operation, "success", float(refund))
        logger.info(
            "order_voided",
            order_id=order_id,
            status=target.value,
            refunded=str(refund),
            released_slot_ids=list(released),
            ticket_resolved=ticket_resolved,
        )
        if product is not None:
            await self._sync_stock([product.id])
        return VoidResult(
            order_id=order_id,
            status=target,
            refunded=refund,
            buyer_balance=buyer_balance,
            released_slot_ids=released,
            ticket_resolved=ticket_resolved,
        )

    async def _resolve_ticket(self, order_id: int, resolution: str, now: datetime) -> bool:
        """Support tickets are auxiliary; a missing table is only a warning."""
        try:
            async with self.session.begin_nested():
                return await self.store.resolve_tickets_for_order(order_id, resolution, now) > 0
        except SchemaError as exc:
            logger.warning("support_ticket_resolution_skipped", order_id=order_id, error=str(exc))
            return False
