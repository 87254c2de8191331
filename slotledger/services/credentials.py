"""
Credential Resolver - find the slot an order's credentials belong to.

Older orders were delivered without ``inventory_slot_id``; all they carry is
the credential snapshot the buyer was shown. Resolution walks from strict to
loose matches and stops at the first hit:

1. direct link (the order already points at a slot)
2. accounts matching provider/product/login/password, narrowing to login-only
3. a (product, profile label) index across all accounts of the product
4. slots the buyer already owns for that product

Resolution is read-only and deterministic: inputs are sorted by id before
indexing, and every tie-break picks the lowest (slot_index, id).
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.db.models import InventoryAccount, InventorySlot, Order
from slotledger.db.store import LedgerStore
from slotledger.exceptions import SchemaError
from slotledger.models.domain import (
    AccountRecord,
    CredentialSnapshot,
    OrderRecord,
    ResolvedCredential,
    SlotRecord,
)
from slotledger.observability.metrics import metrics

logger = get_logger(__name__)

SLOT_MARKER = "::slot_"
LABEL_PREFIXES = ("perfil ", "profile ")
UNRESOLVED = "-"


# ============================================================================
# Login / label normalization
# ============================================================================


def encode_login(base: str, label: str, suffix: str = "") -> str:
    """Build a composite login ``base::slot_<label>::<suffix>`` for legacy rows."""
    login = f"{base.strip()}{SLOT_MARKER}{label.strip()}"
    return f"{login}::{suffix}" if suffix else login


def decode_login(login_user: str | None) -> tuple[str, str | None]:
    """Split a stored login into its base login and embedded profile label."""
    text = (login_user or "").strip()
    head, marker, tail = text.partition(SLOT_MARKER)
    if not marker:
        return text, None
    label, _, _ = tail.partition("::")
    return head.strip(), (label.strip() or None)


def normalize_login(login: str | None) -> str:
    return decode_login(login)[0].lower()


def normalize_label(label: str | None) -> str:
    return " ".join((label or "").lower().split())


def label_keys(label: str | None) -> frozenset[str]:
    """
    Every spelling a profile label may be matched by.

    "Perfil 02" yields {"perfil 02", "02", "2"}.
    """
    norm = normalize_label(label)
    if not norm:
        return frozenset()
    keys = {norm}
    for prefix in LABEL_PREFIXES:
        if norm.startswith(prefix):
            stripped = norm[len(prefix):].strip()
            if stripped:
                keys.add(stripped)
    for key in list(keys):
        if key.isdigit():
            keys.add(str(int(key)))
    return frozenset(keys)


def _label_lookup_keys(label: str | None) -> list[str]:
    """Label as given first, then without its prefix."""
    norm = normalize_label(label)
    if not norm:
        return []
    ordered = [norm]
    for prefix in LABEL_PREFIXES:
        if norm.startswith(prefix):
            stripped = norm[len(prefix):].strip()
            if stripped and stripped not in ordered:
                ordered.append(stripped)
    return ordered


# ============================================================================
# ORM -> record conversion
# ============================================================================


def account_record(row: InventoryAccount) -> AccountRecord:
    return AccountRecord(
        id=row.id,
        product_id=row.product_id,
        provider_id=row.provider_id,
        login_user=row.login_user,
        login_password=row.login_password,
        profile_label=row.profile_label,
    )


def slot_record(row: InventorySlot) -> SlotRecord:
    return SlotRecord(
        id=row.id,
        account_id=row.inventory_account_id,
        product_id=row.product_id,
        slot_index=row.slot_index,
        slot_label=row.slot_label,
        profile_pin=row.profile_pin,
        status=row.status,
        buyer_id=row.buyer_id,
    )


def order_record(row: Order) -> OrderRecord:
    return OrderRecord(
        id=row.id,
        buyer_id=row.buyer_id,
        provider_id=row.provider_id,
        product_id=row.product_id,
        inventory_slot_id=row.inventory_slot_id,
        credentials=CredentialSnapshot.from_payload(row.credentials),
    )


# ============================================================================
# Index + resolution
# ============================================================================


def _slot_order(slot: SlotRecord) -> tuple[int, int]:
    return (slot.slot_index, slot.id)


class CredentialIndex:
    """Lookup tables over one batch of accounts and slots."""

    def __init__(self, accounts: Iterable[AccountRecord], slots: Iterable[SlotRecord]) -> None:
        self.accounts: dict[int, AccountRecord] = {}
        self._logins: dict[int, str] = {}
        self._account_labels: dict[int, str | None] = {}
        for account in sorted(accounts, key=lambda a: a.id):
            base, embedded = decode_login(account.login_user)
            self.accounts[account.id] = account
            self._logins[account.id] = base.lower()
            self._account_labels[account.id] = account.profile_label or embedded

        self.slots: dict[int, SlotRecord] = {}
        self.slots_by_account: dict[int, list[SlotRecord]] = defaultdict(list)
        self.label_index: dict[tuple[int, str], list[SlotRecord]] = defaultdict(list)
        for slot in sorted(slots, key=lambda s: s.id):
            self.slots[slot.id] = slot
            self.slots_by_account[slot.account_id].append(slot)
            for key in self._own_label_keys(slot):
                self.label_index[(slot.product_id, key)].append(slot)
        for bucket in self.slots_by_account.values():
            bucket.sort(key=_slot_order)

    def _own_label_keys(self, slot: SlotRecord) -> frozenset[str]:
        keys = label_keys(slot.slot_label)
        if not keys:
            keys = label_keys(self._account_labels.get(slot.account_id))
        return keys

    def slot_label(self, slot: SlotRecord) -> str:
        """Label to display: slot label, account label, else 'Perfil <n>'."""
        label = (slot.slot_label or "").strip() or (
            self._account_labels.get(slot.account_id) or ""
        ).strip()
        return label or f"Perfil {slot.slot_index}"

    def account_login(self, account_id: int) -> str:
        account = self.accounts.get(account_id)
        return decode_login(account.login_user)[0] if account else ""

    # ------------------------------------------------------------------
    # Matching primitives
    # ------------------------------------------------------------------

    def match_accounts(self, order: OrderRecord, snapshot: CredentialSnapshot) -> list[int]:
        """Account ids for the strictest tier that matches anything."""
        login = normalize_login(snapshot.login)
        if not login:
            return []
        password = snapshot.password.strip()

        def same_login(account: AccountRecord) -> bool:
            return account.product_id == order.product_id and self._logins[account.id] == login

        def same_password(account: AccountRecord) -> bool:
            return (account.login_password or "").strip() == password

        tiers = []
        if password and order.provider_id is not None:
            tiers.append(
                lambda a: same_login(a) and same_password(a) and a.provider_id == order.provider_id
            )
        if password:
            tiers.append(lambda a: same_login(a) and same_password(a))
        tiers.append(same_login)

        for tier in tiers:
            matched = [account.id for account in self.accounts.values() if tier(account)]
            if matched:
                return matched
        return []

    def pick_slot(self, slots: Sequence[SlotRecord], wanted_label: str) -> SlotRecord | None:
        """Label match, then index match, then first slot with a PIN, then a lone slot."""
        wanted = label_keys(wanted_label)
        if wanted:
            for slot in slots:
                if wanted & self._own_label_keys(slot):
                    return slot
            for slot in slots:
                if str(slot.slot_index) in wanted:
                    return slot
        for slot in slots:
            if slot.has_pin:
                return slot
        if len(slots) == 1:
            return slots[0]
        return None

    def lookup_label(self, product_id: int, wanted_label: str) -> SlotRecord | None:
        for key in _label_lookup_keys(wanted_label):
            candidates = self.label_index.get((product_id, key))
            if not candidates:
                continue
            for slot in candidates:
                if slot.has_pin:
                    return slot
            return candidates[0]
        return None

    def pick_buyer_slot(
        self, buyer_slots: Iterable[SlotRecord], snapshot: CredentialSnapshot
    ) -> SlotRecord | None:
        owned = sorted(buyer_slots, key=lambda s: s.id)
        if not owned:
            return None
        login = normalize_login(snapshot.login)
        password = snapshot.password.strip()

        def login_of(slot: SlotRecord) -> str:
            return self._logins.get(slot.account_id, normalize_login(None))

        def password_of(slot: SlotRecord) -> str:
            account = self.accounts.get(slot.account_id)
            return (account.login_password or "").strip() if account else ""

        tiers: list[list[SlotRecord]] = []
        if login and password:
            tiers.append([s for s in owned if login_of(s) == login and password_of(s) == password])
        if login:
            tiers.append([s for s in owned if login_of(s) == login])
        tiers.append(owned)

        for tier in tiers:
            if not tier:
                continue
            slot = self.pick_slot(tier, snapshot.profile)
            if slot is not None:
                return slot
        return next((s for s in owned if s.has_pin), None)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolved(self, slot: SlotRecord, strategy: str) -> ResolvedCredential:
        return ResolvedCredential(
            slot_id=slot.id,
            account_id=slot.account_id,
            slot_label=self.slot_label(slot),
            profile_pin=(slot.profile_pin or "").strip(),
            strategy=strategy,
        )

    def resolve(
        self, order: OrderRecord, buyer_slots: Iterable[SlotRecord] = ()
    ) -> ResolvedCredential | None:
        """Best-matching slot for ``order``; None when nothing matches."""
        if order.inventory_slot_id is not None and order.inventory_slot_id in self.slots:
            return self._resolved(self.slots[order.inventory_slot_id], "direct")

        snapshot = order.credentials
        account_ids = self.match_accounts(order, snapshot)
        if account_ids:
            candidates = [s for aid in account_ids for s in self.slots_by_account.get(aid, [])]
            slot = self.pick_slot(candidates, snapshot.profile)
            if slot is not None:
                return self._resolved(slot, "account_match")

        slot = self.lookup_label(order.product_id, snapshot.profile)
        if slot is not None:
            return self._resolved(slot, "label_index")

        owned = [s for s in buyer_slots if s.product_id == order.product_id]
        slot = self.pick_buyer_slot(owned, snapshot)
        if slot is not None:
            return self._resolved(slot, "buyer_slots")
        return None


@dataclass(frozen=True)
class DisplayCredentials:
    """What a consumer shows for an order; '-' for anything unknown."""

    order_id: int
    login: str
    password: str
    profile: str
    pin: str
    strategy: str | None


def display_credentials(
    order: OrderRecord, resolved: ResolvedCredential | None, index: CredentialIndex
) -> DisplayCredentials:
    snapshot = order.credentials
    login = snapshot.login
    password = snapshot.password
    if resolved is not None:
        account = index.accounts.get(resolved.account_id)
        if not login:
            login = index.account_login(resolved.account_id)
        if not password and account is not None:
            password = (account.login_password or "").strip()
    profile = resolved.slot_label if resolved else snapshot.profile
    pin = (resolved.profile_pin if resolved else "") or snapshot.pin
    return DisplayCredentials(
        order_id=order.id,
        login=login or UNRESOLVED,
        password=password or UNRESOLVED,
        profile=profile or UNRESOLVED,
        pin=pin or UNRESOLVED,
        strategy=resolved.strategy if resolved else None,
    )


class CredentialService:
    """Loads one batch of inventory and resolves credentials for many orders."""

    def __init__(self, session: AsyncSession, store: LedgerStore | None = None) -> None:
        self.session = session
        self.store = store or LedgerStore(session)

    async def build_index(self, product_ids: Iterable[int]) -> CredentialIndex:
        ids = sorted(set(product_ids))
        accounts = await self.store.accounts_for_products(ids)
        slots = await self.store.slots_for_products(ids)
        return CredentialIndex(
            (account_record(row) for row in accounts), (slot_record(row) for row in slots)
        )

    async def _buyer_slots(self, buyer_id: UUID, product_id: int) -> list[SlotRecord]:
        try:
            rows = await self.store.slots_owned_by(buyer_id, product_id)
        except SchemaError as exc:
            logger.warning(
                "buyer_slot_lookup_unavailable",
                buyer_id=str(buyer_id),
                product_id=product_id,
                error=str(exc),
            )
            return []
        return [slot_record(row) for row in rows]

    async def resolve_for_orders(
        self, orders: Sequence[OrderRecord], index: CredentialIndex | None = None
    ) -> dict[int, ResolvedCredential | None]:
        """Resolve a batch; index is built once for all products involved unless passed in."""
        if index is None:
            index = await self.build_index(order.product_id for order in orders)
        buyer_cache: dict[tuple[UUID, int], list[SlotRecord]] = {}
        results: dict[int, ResolvedCredential | None] = {}

        for order in sorted(orders, key=lambda o: o.id):
            resolved = index.resolve(order)
            if resolved is None:
                key = (order.buyer_id, order.product_id)
                if key not in buyer_cache:
                    buyer_cache[key] = await self._buyer_slots(*key)
                resolved = index.resolve(order, buyer_cache[key])

            metrics.resolutions_total.labels(
                strategy=resolved.strategy if resolved else "miss"
            ).inc()
            if resolved is None:
                logger.debug("credential_resolution_miss", order_id=order.id)
            results[order.id] = resolved
        return results

    async def display_for_order_ids(self, order_ids: Iterable[int]) -> list[DisplayCredentials]:
        rows = await self.store.get_orders(order_ids)
        orders = [order_record(row) for row in rows]
        index = await self.build_index(order.product_id for order in orders)
        resolved = await self.resolve_for_orders(orders, index)
        return [display_credentials(order, resolved[order.id], index) for order in orders]
