"""
Change-feed re-sync - turn table change notifications into stock refreshes.

Notifications only ever trigger a recount; they never mutate ledger state.
Bursts (a provider bulk-loading fifty slots) are coalesced within a short
debounce window into one sync per product.
"""

import asyncio
from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from slotledger.config import settings
from slotledger.db.session import get_write_session
from slotledger.exceptions import LedgerError
from slotledger.models.domain import StockLevel
from slotledger.services.stock import StockSynchronizer

logger = get_logger(__name__)

# table -> column holding the product id
WATCHED_TABLES = {
    "products": "id",
    "inventory_accounts": "product_id",
    "inventory_slots": "product_id",
    "orders": "product_id",
}


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change notification."""

    table: str
    record: Mapping[str, Any] = field(default_factory=dict)
    old_record: Mapping[str, Any] = field(default_factory=dict)


def product_ids_for(event: ChangeEvent) -> set[int]:
    """Products whose stock may have changed; empty for unwatched tables."""
    column = WATCHED_TABLES.get(event.table)
    if column is None:
        return set()
    ids = set()
    for row in (event.record, event.old_record):
        value = row.get(column) if row else None
        if value is None:
            continue
        try:
            ids.add(int(value))
        except (TypeError, ValueError):
            logger.debug("change_event_bad_product_id", table=event.table, value=str(value))
    return ids


class ResyncScheduler:
    """Debounced stock re-sync driven by change events."""

    def __init__(
        self,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_write_session,
        debounce_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.debounce_seconds = (
            settings.resync_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.pending: set[int] = set()
        self._task: asyncio.Task[list[StockLevel]] | None = None

    def submit(self, event: ChangeEvent) -> set[int]:
        """Queue the products an event touches. Must be called inside a running loop."""
        ids = product_ids_for(event)
        if not ids:
            return ids
        self.pending |= ids
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._flush_later())
        return ids

    async def _flush_later(self) -> list[StockLevel]:
        # Events submitted while a flush runs land in pending; keep going
        # until a window closes with nothing new.
        synced: list[StockLevel] = []
        while self.pending:
            await asyncio.sleep(self.debounce_seconds)
            try:
                synced.extend(await self.flush())
            except (SQLAlchemyError, LedgerError) as exc:
                # Stock sync is idempotent; the next change event retries it.
                logger.warning("change_feed_resync_failed", error=str(exc))
        return synced

    async def flush(self) -> list[StockLevel]:
        """Sync everything queued so far, now."""
        ids, self.pending = self.pending, set()
        if not ids:
            return []
        async with self.session_factory() as session:
            levels = await StockSynchronizer(session).sync_many(ids)
            await session.commit()
        logger.info("change_feed_resynced", product_ids=sorted(ids), synced=len(levels))
        return levels

    async def drain(self) -> None:
        """Wait for a scheduled flush to finish (shutdown, tests)."""
        if self._task is not None:
            await self._task
            self._task = None
