"""
API Models - Enumerations and Pydantic models for request/response validation.

Stored rows carry free-text statuses written by several generations of the
dashboard (Spanish and English). Every enum here exposes ``parse`` which folds
those aliases into one canonical value.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


def _fold(raw: str | None) -> str:
    return (raw or "").strip().lower()


class AccountType(str, Enum):
    """How a product's inventory is sold."""

    PROFILE_SLOTS = "profile_slots"
    FULL_ACCOUNT = "full_account"

    @classmethod
    def parse(cls, raw: str | None) -> "AccountType":
        """Map stored aliases; unknown values fall back to profile slots."""
        value = _fold(raw)
        if value in ("full_account", "cuenta_completa"):
            return cls.FULL_ACCOUNT
        return cls.PROFILE_SLOTS


class DeliveryMode(str, Enum):
    """Whether credentials come from pre-loaded stock or from the provider later."""

    INSTANT = "instant"
    ON_DEMAND = "on_demand"

    @classmethod
    def parse(cls, raw: str | None) -> "DeliveryMode":
        value = _fold(raw)
        if value in ("on_demand", "a_pedido", "a pedido"):
            return cls.ON_DEMAND
        return cls.INSTANT


class OrderStatus(str, Enum):
    """Order status enumeration."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAID = "paid"
    DELIVERED = "delivered"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: str | None) -> "OrderStatus":
        """Fold legacy spellings; raises ValueError for unknown statuses."""
        value = _fold(raw)
        if value in ORDER_STATUS_ALIASES:
            return cls(ORDER_STATUS_ALIASES[value])
        return cls(value)

    @property
    def is_paid_like(self) -> bool:
        return self in PAID_LIKE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Legacy spelling -> canonical value
ORDER_STATUS_ALIASES = {
    "": "pending",
    "pendiente": "pending",
    "en_proceso": "in_progress",
    "in process": "in_progress",
    "pagado": "paid",
    "entregado": "delivered",
    "resuelto": "resolved",
    "cancelado": "cancelled",
    "canceled": "cancelled",
    "rechazado": "rejected",
    "reembolsado": "refunded",
}

PAID_LIKE_STATUSES = frozenset(
    {OrderStatus.PAID, OrderStatus.DELIVERED, OrderStatus.RESOLVED, OrderStatus.CLOSED}
)
TERMINAL_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.REFUNDED, OrderStatus.FAILED}
)


def spellings_of(statuses: frozenset[OrderStatus]) -> frozenset[str]:
    """Every folded spelling that parses to one of ``statuses``, for SQL filters."""
    values = {status.value for status in statuses}
    aliases = {alias for alias, value in ORDER_STATUS_ALIASES.items() if value in values}
    return frozenset(values | aliases)


class SlotStatus(str, Enum):
    """Canonical slot statuses written by this service."""

    FREE = "free"
    OCCUPIED = "occupied"


# Any of these (case-insensitive) means the slot is taken, whoever wrote it.
OCCUPIED_SLOT_STATUSES = frozenset(
    {"occupied", "ocupado", "used", "taken", "asignado", "delivered", "entregado"}
)


def is_occupied_status(raw: str | None) -> bool:
    return _fold(raw) in OCCUPIED_SLOT_STATUSES


class BalanceColumn(str, Enum):
    """Which balance on a profile row a movement touches."""

    BUYER = "balance"
    PROVIDER = "provider_balance"


class MovementKind(str, Enum):
    """Balance movement kind for the audit ledger."""

    DEBIT = "debit"
    CREDIT = "credit"
    REFUND = "refund"
    COMPENSATION = "compensation"


# ============================================================================
# Request Models
# ============================================================================


class PurchaseRequest(BaseModel):
    """POST /v1/products/{product_id}/purchase request body."""

    buyer_id: UUID
    customer_name: str | None = Field(None, max_length=120)
    customer_phone: str | None = Field(None, max_length=40)
    customer_extra: dict[str, str] = Field(default_factory=dict)


class RenewRequest(BaseModel):
    """POST /v1/orders/{order_id}/renew and /v1/slots/{slot_id}/renew body."""

    buyer_id: UUID


class VoidOrderRequest(BaseModel):
    """POST /v1/orders/{order_id}/reject and /cancel request body."""

    reason: str | None = Field(None, max_length=500)


class CredentialLookupRequest(BaseModel):
    """POST /v1/orders/credentials request body."""

    order_ids: list[int] = Field(..., min_length=1, max_length=500)


# ============================================================================
# Response Models
# ============================================================================


class SettlementResponse(BaseModel):
    """Outcome of a renewal or on-demand fulfillment."""

    order_id: int
    status: OrderStatus
    amount: Decimal
    commission: Decimal
    provider_credit: Decimal
    buyer_balance: Decimal | None = None
    provider_balance: Decimal | None = None
    inventory_slot_id: int | None = None
    starts_at: datetime | None = None
    expires_at: datetime | None = None


class VoidOrderResponse(BaseModel):
    """Outcome of a rejection or cancellation."""

    order_id: int
    status: OrderStatus
    refunded: Decimal
    buyer_balance: Decimal
    released_slot_ids: list[int] = Field(default_factory=list)
    ticket_resolved: bool = False


class ReleaseResponse(BaseModel):
    """Outcome of a slot/account release."""

    product_id: int
    released_slot_ids: list[int] = Field(default_factory=list)
    account_reactivated: bool = False
    stock: int


class StockResponse(BaseModel):
    """Recomputed stock for one product."""

    product_id: int
    account_type: AccountType
    stock: int


class CredentialItem(BaseModel):
    """Credentials to display for one order; '-' where unresolved."""

    order_id: int
    login: str
    password: str
    profile: str
    pin: str
    strategy: str | None = None


class CredentialLookupResponse(BaseModel):
    """Batch credential lookup result."""

    items: list[CredentialItem]


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
