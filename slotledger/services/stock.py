"""
Stock Synchronizer - recompute a product's cached stock from live inventory.

Profile products count free slots; full-account products count active
accounts. The result is written back in one UPDATE. Running it again over an
unchanged inventory writes the same value, so callers may sync redundantly.
"""

from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.db.store import LedgerStore
from slotledger.exceptions import ProductNotFoundError
from slotledger.models.api import AccountType
from slotledger.models.domain import StockLevel
from slotledger.observability.metrics import metrics

logger = get_logger(__name__)


class StockSynchronizer:
    """Writes ``products.stock_available`` from the slot/account tables."""

    def __init__(self, session: AsyncSession, store: LedgerStore | None = None) -> None:
        self.session = session
        self.store = store or LedgerStore(session)

    async def count(self, product_id: int, account_type: AccountType) -> int:
        if account_type is AccountType.FULL_ACCOUNT:
            return await self.store.count_active_accounts(product_id)
        return await self.store.count_free_slots(product_id)

    async def sync(self, product_id: int) -> StockLevel:
        """
        Recompute and persist stock for one product.

        Raises:
            ProductNotFoundError: Product doesn't exist
        """
        product = await self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        account_type = AccountType.parse(product.account_type)
        stock = await self.count(product_id, account_type)
        await self.store.set_product_stock(product_id, stock)

        metrics.stock_syncs_total.labels(account_type=account_type.value).inc()
        logger.info(
            "stock_synced",
            product_id=product_id,
            account_type=account_type.value,
            previous=product.stock_available,
            stock=stock,
        )
        return StockLevel(product_id=product_id, account_type=account_type, stock=stock)

    async def sync_many(self, product_ids: Iterable[int]) -> list[StockLevel]:
        """Sync several products; unknown ids are skipped with a warning."""
        levels = []
        for product_id in sorted(set(product_ids)):
            try:
                levels.append(await self.sync(product_id))
            except ProductNotFoundError:
                logger.warning("stock_sync_product_missing", product_id=product_id)
        return levels
