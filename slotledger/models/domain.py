"""
Domain Models - Internal business logic models using dataclasses.

All data structures passed between services are immutable dataclasses.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from slotledger.models.api import AccountType, BalanceColumn, OrderStatus

_LOGIN_KEYS = ("login", "login_user", "user", "username", "email", "usuario", "correo")
_PASSWORD_KEYS = ("password", "login_password", "pass", "contrasena", "clave")
_PROFILE_KEYS = ("profile", "profile_label", "slot_label", "perfil", "profile_name")
_PIN_KEYS = ("pin", "profile_pin")


def _first_text(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


@dataclass(frozen=True)
class CredentialSnapshot:
    """Login/password/profile/pin handed to a buyer, frozen at delivery time."""

    login: str = ""
    password: str = ""
    profile: str = ""
    pin: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "CredentialSnapshot":
        """Parse the opaque ``orders.credentials`` value; tolerant of key aliases."""
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            login=_first_text(payload, _LOGIN_KEYS),
            password=_first_text(payload, _PASSWORD_KEYS),
            profile=_first_text(payload, _PROFILE_KEYS),
            pin=_first_text(payload, _PIN_KEYS),
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "login": self.login,
            "password": self.password,
            "profile": self.profile,
            "pin": self.pin,
        }

    @property
    def is_empty(self) -> bool:
        return not (self.login or self.password or self.profile or self.pin)


# Keys that older product forms stored next to the checkout fields.
_NOT_CUSTOMER_FIELDS = frozenset(
    {"profiles_per_account", "perfiles_por_cuenta", "profiles", "perfiles", "slot_capacity", "slots"}
)
_NESTED_FIELD_KEYS = ("fields", "extra_fields", "extra_required_fields", "campos", "campos_extra")


@dataclass(frozen=True)
class CustomerField:
    """One checkout field a product asks the buyer to fill in."""

    key: str
    label: str
    required: bool = False

    @classmethod
    def parse_all(cls, raw: Any) -> list["CustomerField"]:
        """
        Read ``products.extra_required_fields``.

        Accepts a list (of names or ``{"key", "label", "required"}`` objects),
        a mapping of key to label or object, or either of those nested under
        ``fields``/``campos``. Anything else declares no fields.
        """
        if isinstance(raw, Mapping):
            for nested_key in _NESTED_FIELD_KEYS:
                if nested_key in raw:
                    nested = cls.parse_all(raw[nested_key])
                    if nested:
                        return nested
            items: list[tuple[str, Any]] = list(raw.items())
        elif isinstance(raw, list):
            items = [("", item) for item in raw]
        else:
            return []

        fields: list[CustomerField] = []
        for default_key, item in items:
            if isinstance(item, Mapping):
                key = _first_text(item, ("key", "name", "field", "id")) or default_key
                label = _first_text(item, ("label",)) or key
                required = bool(item.get("required"))
            else:
                key = default_key or str(item or "").strip()
                label = str(item or "").strip() or key
                required = False
            key = key.strip().lower().replace(" ", "_")
            if key and key not in _NOT_CUSTOMER_FIELDS and key not in _NESTED_FIELD_KEYS:
                fields.append(cls(key=key, label=label, required=required))
        return fields


@dataclass(frozen=True)
class CustomerDetails:
    """What the buyer entered at checkout; stored on the order."""

    name: str | None = None
    phone: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def extra_for(self, fields: list[CustomerField]) -> dict[str, str]:
        """Trimmed, non-empty values for the declared fields only."""
        values = {key: str(value).strip() for key, value in self.extra.items()}
        return {f.key: values[f.key] for f in fields if values.get(f.key)}


@dataclass(frozen=True)
class AccountRecord:
    """Inventory account as seen by the credential resolver."""

    id: int
    product_id: int
    provider_id: UUID | None
    login_user: str
    login_password: str | None = None
    profile_label: str | None = None


@dataclass(frozen=True)
class SlotRecord:
    """Inventory slot as seen by the credential resolver."""

    id: int
    account_id: int
    product_id: int
    slot_index: int
    slot_label: str | None = None
    profile_pin: str | None = None
    status: str = "free"
    buyer_id: UUID | None = None

    @property
    def has_pin(self) -> bool:
        return bool((self.profile_pin or "").strip())


@dataclass(frozen=True)
class OrderRecord:
    """The parts of an order the credential resolver looks at."""

    id: int
    buyer_id: UUID
    provider_id: UUID | None
    product_id: int
    inventory_slot_id: int | None
    credentials: CredentialSnapshot = field(default_factory=CredentialSnapshot)


@dataclass(frozen=True)
class ResolvedCredential:
    """Best-matching slot for an order and how it was found."""

    slot_id: int
    account_id: int
    slot_label: str
    profile_pin: str
    strategy: str


@dataclass(frozen=True)
class SlotBinding:
    """Result of an allocation: what the order now points at."""

    product_id: int
    account_id: int
    slot_id: int | None
    credentials: CredentialSnapshot


@dataclass(frozen=True)
class CommissionSplit:
    """How one settled amount divides between platform and provider."""

    amount: Decimal
    commission: Decimal
    provider_credit: Decimal


@dataclass(frozen=True)
class BalanceChange:
    """Before/after of one atomic balance delta."""

    profile_id: UUID
    column: BalanceColumn
    balance_before: Decimal
    balance_after: Decimal

    @property
    def delta(self) -> Decimal:
        return self.balance_after - self.balance_before


@dataclass(frozen=True)
class StockLevel:
    """Freshly computed stock for a product."""

    product_id: int
    account_type: AccountType
    stock: int


@dataclass(frozen=True)
class ReleaseResult:
    """What a release freed."""

    product_id: int
    released_slot_ids: tuple[int, ...] = ()
    account_reactivated: bool = False
    stock: int = 0


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a renewal, fulfillment or purchase."""

    order_id: int
    status: OrderStatus
    split: CommissionSplit
    buyer_balance: Decimal | None
    provider_balance: Decimal | None
    inventory_slot_id: int | None
    starts_at: datetime | None
    expires_at: datetime | None


@dataclass(frozen=True)
class VoidResult:
    """Outcome of a rejection or cancellation."""

    order_id: int
    status: OrderStatus
    refunded: Decimal
    buyer_balance: Decimal
    released_slot_ids: tuple[int, ...] = ()
    ticket_resolved: bool = False
