"""
Tests for the change-feed re-sync scheduler.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

from sqlalchemy.exc import OperationalError

from slotledger.models.api import AccountType
from slotledger.models.domain import StockLevel
from slotledger.services.resync import ChangeEvent, ResyncScheduler, product_ids_for


class TestProductIds:
    def test_slot_change_maps_to_product(self):
        event = ChangeEvent("inventory_slots", {"id": 9, "product_id": 3})
        assert product_ids_for(event) == {3}

    def test_product_row_uses_its_own_id(self):
        assert product_ids_for(ChangeEvent("products", {"id": "4"})) == {4}

    def test_moved_row_touches_old_and_new_product(self):
        event = ChangeEvent("inventory_accounts", {"product_id": 2}, {"product_id": 5})
        assert product_ids_for(event) == {2, 5}

    def test_delete_has_only_old_record(self):
        event = ChangeEvent("orders", {}, {"product_id": 8})
        assert product_ids_for(event) == {8}

    def test_unwatched_table(self):
        assert product_ids_for(ChangeEvent("support_tickets", {"order_id": 1})) == set()

    def test_garbage_id_is_ignored(self):
        assert product_ids_for(ChangeEvent("inventory_slots", {"product_id": "abc"})) == set()


def _factory(db_session):
    @asynccontextmanager
    async def session_factory():
        yield db_session

    return session_factory


def _levels(ids):
    return [StockLevel(product_id=i, account_type=AccountType.PROFILE_SLOTS, stock=1) for i in ids]


class TestScheduler:
    async def test_burst_is_coalesced_into_one_sync(self, db_session):
        scheduler = ResyncScheduler(_factory(db_session), debounce_seconds=0.01)

        with patch(
            "slotledger.services.resync.StockSynchronizer.sync_many",
            AsyncMock(side_effect=lambda ids: _levels(sorted(ids))),
        ) as sync_many:
            for _ in range(50):
                scheduler.submit(ChangeEvent("inventory_slots", {"product_id": 3}))
            scheduler.submit(ChangeEvent("inventory_slots", {"product_id": 4}))
            await scheduler.drain()

        sync_many.assert_awaited_once()
        assert set(sync_many.call_args.args[0]) == {3, 4}
        db_session.commit.assert_awaited_once()
        assert scheduler.pending == set()

    async def test_unwatched_event_schedules_nothing(self, db_session):
        scheduler = ResyncScheduler(_factory(db_session), debounce_seconds=0.01)

        assert scheduler.submit(ChangeEvent("profiles", {"id": 1})) == set()
        assert scheduler._task is None

    async def test_flush_with_nothing_pending(self, db_session):
        scheduler = ResyncScheduler(_factory(db_session), debounce_seconds=0.01)

        assert await scheduler.flush() == []
        db_session.commit.assert_not_awaited()

    async def test_database_failure_is_only_a_warning(self, db_session):
        scheduler = ResyncScheduler(_factory(db_session), debounce_seconds=0.01)

        with patch(
            "slotledger.services.resync.StockSynchronizer.sync_many",
            AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("server closed"))),
        ):
            scheduler.submit(ChangeEvent("orders", {"product_id": 1}))
            await scheduler.drain()

        db_session.commit.assert_not_awaited()

    async def test_event_during_flush_gets_its_own_sync(self, db_session):
        scheduler = ResyncScheduler(_factory(db_session), debounce_seconds=0.01)
        batches: list[list[int]] = []

        async def sync_many(ids):
            batches.append(sorted(ids))
            if len(batches) == 1:
                scheduler.submit(ChangeEvent("inventory_slots", {"product_id": 9}))
            return _levels(sorted(ids))

        with patch(
            "slotledger.services.resync.StockSynchronizer.sync_many",
            AsyncMock(side_effect=sync_many),
        ):
            scheduler.submit(ChangeEvent("inventory_slots", {"product_id": 3}))
            await scheduler.drain()

        assert batches == [[3], [9]]
        assert scheduler.pending == set()
        assert db_session.commit.await_count == 2
