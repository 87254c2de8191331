"""
Exception Classes - Strongly typed exception hierarchy.

Business-rule violations are surfaced to the caller verbatim and never retried.
"""

from decimal import Decimal
from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class SchemaError(LedgerError):
    """Raised when a table or column the query needs is absent from the store."""

    def __init__(self, table: str, detail: str) -> None:
        self.table = table
        self.detail = detail
        super().__init__(f"Schema mismatch on {table}: {detail}")


class InsufficientFundsError(LedgerError):
    """Raised when a buyer balance cannot cover the amount."""

    def __init__(self, balance: Decimal, required: Decimal) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient funds. Balance: {balance}, Required: {required}")


class NoStockAvailableError(LedgerError):
    """Raised when no free slot or active account exists for a product."""

    def __init__(self, product_id: int) -> None:
        self.product_id = product_id
        super().__init__(f"No stock available for product {product_id}")


class NotRenewableError(LedgerError):
    """Raised when an order's product cannot be renewed."""

    def __init__(self, product_id: int, reason: str = "product is not renewable") -> None:
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} cannot be renewed: {reason}")


class NoLinkedOrderError(LedgerError):
    """Raised when a slot/account has no order bound to it."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"No linked order for {target}")


class ReleaseRefusedError(LedgerError):
    """Raised when releasing would evict a customer still inside the paid period."""

    def __init__(self, target: str, order_id: int, days_left: int | None) -> None:
        self.target = target
        self.order_id = order_id
        self.days_left = days_left
        remaining = "unlimited" if days_left is None else f"{days_left} day(s)"
        super().__init__(
            f"Refusing to release {target}: order {order_id} still has {remaining} left"
        )


class OrderNotFoundError(LedgerError):
    """Raised when an order doesn't exist (or belongs to someone else)."""

    def __init__(self, order_id: int) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(LedgerError):
    """Raised when a product doesn't exist."""

    def __init__(self, product_id: int) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InventoryNotFoundError(LedgerError):
    """Raised when a slot or account id doesn't exist."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"Inventory not found: {target}")


class ProfileNotFoundError(LedgerError):
    """Raised when a buyer/provider profile row doesn't exist."""

    def __init__(self, profile_id: UUID) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile not found: {profile_id}")


class ProductUnavailableError(LedgerError):
    """Raised when a product cannot be purchased (inactive, own product)."""

    def __init__(self, product_id: int, reason: str) -> None:
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} unavailable: {reason}")


class MissingCustomerFieldError(LedgerError):
    """Raised when a purchase leaves a required checkout field empty."""

    def __init__(self, product_id: int, field: str, label: str) -> None:
        self.product_id = product_id
        self.field = field
        self.label = label
        super().__init__(f"Product {product_id} requires: {label}")


class OrderStateError(LedgerError):
    """Raised when an operation is not valid for the order's current status."""

    def __init__(self, order_id: int, status: str, operation: str) -> None:
        self.order_id = order_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} order {order_id} in status {status}")


class PartialSettlementFailureError(LedgerError):
    """
    Raised when a settlement step failed after earlier steps committed.

    ``compensated`` is True when every committed step was reversed. When it is
    False the balances involved need manual reconciliation and
    ``compensation_errors`` holds what went wrong while reversing.
    """

    def __init__(
        self,
        step: str,
        original: BaseException,
        compensation_errors: list[tuple[str, BaseException]] | None = None,
    ) -> None:
        self.step = step
        self.original = original
        self.compensation_errors = compensation_errors or []
        self.compensated = not self.compensation_errors
        message = f"Settlement failed at step '{step}': {original}"
        if self.compensation_errors:
            failed = ", ".join(
                f"{name} ({error})" for name, error in self.compensation_errors
            )
            message += f"; compensation failed for: {failed}; manual reconciliation required"
        super().__init__(message)
