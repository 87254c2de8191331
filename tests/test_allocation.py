"""
Tests for the allocation and release engine.
"""

from datetime import timedelta

import pytest

from slotledger.exceptions import (
    InventoryNotFoundError,
    NoStockAvailableError,
    ReleaseRefusedError,
)
from slotledger.services.allocation import AllocationEngine, slot_is_free, snapshot_for


@pytest.fixture
def engine(db_session, store) -> AllocationEngine:
    return AllocationEngine(db_session, store)


# ============================================================================
# Allocation
# ============================================================================


class TestAllocate:
    async def test_claims_first_free_slot(
        self, engine, store, profile_product, family_account, buyer
    ):
        order = store.add_order(profile_product, buyer.id, status="pending")

        binding = await engine.allocate(order, profile_product)

        slot = store.slots[binding.slot_id]
        assert slot.slot_index == 1
        assert slot.status == "occupied"
        assert slot.buyer_id == buyer.id
        assert binding.account_id == family_account.id
        assert binding.credentials.login == "family@example.com"
        assert binding.credentials.profile == "Perfil 1"
        assert binding.credentials.pin == "1111"

    async def test_never_hands_out_an_occupied_slot(
        self, engine, store, profile_product, family_account, buyer, provider
    ):
        holders = []
        for _ in range(4):
            order = store.add_order(profile_product, buyer.id, status="pending")
            holders.append(await engine.allocate(order, profile_product))
            await engine.stock.sync(profile_product.id)

        assert len({binding.slot_id for binding in holders}) == 4
        late = store.add_order(profile_product, provider.id, status="pending")
        with pytest.raises(NoStockAvailableError):
            await engine.allocate(late, profile_product)

    async def test_stale_zero_cache_is_resynced(
        self, engine, store, profile_product, family_account, buyer
    ):
        profile_product.stock_available = 0
        order = store.add_order(profile_product, buyer.id, status="pending")

        binding = await engine.allocate(order, profile_product)

        assert binding.slot_id is not None
        assert (profile_product.id, 4) in store.stock_writes

    async def test_no_stock(self, engine, store, profile_product, buyer):
        order = store.add_order(profile_product, buyer.id, status="pending")

        with pytest.raises(NoStockAvailableError):
            await engine.allocate(order, profile_product)

    async def test_full_account_is_deactivated(self, engine, store, full_product, buyer):
        account = store.add_account(full_product, login_user="solo@x.com", login_password="pw")
        order = store.add_order(full_product, buyer.id, status="pending")

        binding = await engine.allocate(order, full_product)

        assert binding.account_id == account.id
        assert binding.slot_id is None
        assert account.is_active is False
        assert binding.credentials.login == "solo@x.com"
        assert binding.credentials.password == "pw"

    async def test_undo_allocation_frees_slot(
        self, engine, store, profile_product, family_account, buyer
    ):
        order = store.add_order(profile_product, buyer.id, status="pending")
        binding = await engine.allocate(order, profile_product)

        await engine.undo_allocation(binding, profile_product)

        assert slot_is_free(store.slots[binding.slot_id])


class TestSnapshot:
    def test_composite_login_is_decoded(self, store, profile_product):
        account = store.add_account(
            profile_product, login_user="fam@x.com::slot_Kids::9f", login_password=" pw "
        )
        slot = store.add_slot(account, slot_index=2)

        snapshot = snapshot_for(account, slot)

        assert snapshot.login == "fam@x.com"
        assert snapshot.password == "pw"
        assert snapshot.profile == "Kids"

    def test_falls_back_to_perfil_index(self, store, profile_product):
        account = store.add_account(profile_product, login_user="fam@x.com")
        slot = store.add_slot(account, slot_index=3)

        assert snapshot_for(account, slot).profile == "Perfil 3"


# ============================================================================
# Release
# ============================================================================


class TestReleaseSlot:
    async def test_refused_while_paid_days_remain(
        self, engine, store, delivered_order, now, db_session
    ):
        with pytest.raises(ReleaseRefusedError) as exc_info:
            await engine.release_slot(delivered_order.inventory_slot_id, now)

        assert exc_info.value.days_left == 5
        assert store.slots[delivered_order.inventory_slot_id].buyer_id is not None
        db_session.commit.assert_not_awaited()

    async def test_refused_for_unlimited_order(self, engine, store, delivered_order, now):
        delivered_order.expires_at = None

        with pytest.raises(ReleaseRefusedError) as exc_info:
            await engine.release_slot(delivered_order.inventory_slot_id, now)

        assert exc_info.value.days_left is None

    async def test_released_once_expired(self, engine, store, delivered_order, now, db_session):
        delivered_order.expires_at = now - timedelta(hours=1)
        slot_id = delivered_order.inventory_slot_id

        result = await engine.release_slot(slot_id, now)

        assert result.released_slot_ids == (slot_id,)
        assert result.stock == 4
        assert slot_is_free(store.slots[slot_id])
        db_session.commit.assert_awaited()

    async def test_releasing_a_free_slot_is_a_noop(
        self, engine, store, family_account, profile_product, now
    ):
        slot = store.account_slots(family_account.id)[2]

        result = await engine.release_slot(slot.id, now)

        assert result.released_slot_ids == ()
        assert result.stock == 4

    async def test_terminal_orders_do_not_block(self, engine, store, delivered_order, now):
        delivered_order.status = "cancelado"

        result = await engine.release_slot(delivered_order.inventory_slot_id, now)

        assert result.released_slot_ids == (delivered_order.inventory_slot_id,)

    async def test_unknown_slot(self, engine, now):
        with pytest.raises(InventoryNotFoundError):
            await engine.release_slot(404, now)


class TestReleaseAccount:
    async def test_reactivates_full_account(self, engine, store, full_product, buyer, now):
        account = store.add_account(full_product, login_user="solo@x.com", is_active=False)
        store.add_order(
            full_product, buyer.id, account=account, expires_at=now - timedelta(days=1)
        )

        result = await engine.release_account(account.id, now)

        assert result.account_reactivated is True
        assert account.is_active is True
        assert result.stock == 1

    async def test_refused_while_any_slot_order_is_paid(
        self, engine, store, delivered_order, family_account, now
    ):
        with pytest.raises(ReleaseRefusedError):
            await engine.release_account(family_account.id, now)

    async def test_unknown_account(self, engine, now):
        with pytest.raises(InventoryNotFoundError):
            await engine.release_account(404, now)


class TestReleaseLapsed:
    async def test_frees_only_expired_orders(
        self, engine, store, delivered_order, family_account, profile_product, buyer, now
    ):
        expired_slot = store.account_slots(family_account.id)[1]
        expired_slot.status = "occupied"
        expired_slot.buyer_id = buyer.id
        store.add_order(
            profile_product,
            buyer.id,
            slot=expired_slot,
            expires_at=now - timedelta(days=2),
        )

        results = await engine.release_lapsed(now)

        assert len(results) == 1
        assert results[0].released_slot_ids == (expired_slot.id,)
        assert results[0].stock == 3
        assert slot_is_free(expired_slot)
        assert not slot_is_free(store.slots[delivered_order.inventory_slot_id])

    async def test_nothing_lapsed(self, engine, delivered_order, now):
        assert await engine.release_lapsed(now) == []

    async def test_released_order_is_not_scanned_again(
        self, engine, store, delivered_order, buyer, now
    ):
        later = now + timedelta(days=6)
        assert len(await engine.release_lapsed(later)) == 1

        assert await store.lapsed_orders(later) == []
        assert await engine.release_lapsed(later) == []

    async def test_slot_held_by_another_buyer_is_skipped(
        self, engine, store, delivered_order, provider, now
    ):
        slot = store.slots[delivered_order.inventory_slot_id]
        slot.buyer_id = provider.id
        later = now + timedelta(days=6)

        assert await store.lapsed_orders(later) == []
        assert await engine.release_lapsed(later) == []
        assert slot.buyer_id == provider.id

    async def test_slot_rebought_in_later_order_stays_occupied(
        self, engine, store, delivered_order, profile_product, buyer, now
    ):
        slot = store.slots[delivered_order.inventory_slot_id]
        delivered_order.expires_at = now - timedelta(days=1)
        rebought = store.add_order(
            profile_product, buyer.id, slot=slot, expires_at=now + timedelta(days=30)
        )

        assert await engine.release_lapsed(now) == []
        assert not slot_is_free(slot)
        assert rebought.inventory_slot_id == slot.id

    async def test_full_account_released_once(self, engine, store, full_product, buyer, now):
        account = store.add_account(full_product, login_user="solo@x.com", is_active=False)
        store.add_order(
            full_product, buyer.id, account=account, expires_at=now - timedelta(days=1)
        )

        results = await engine.release_lapsed(now)

        assert results[0].account_reactivated is True
        assert account.is_active is True
        assert await engine.release_lapsed(now) == []


class TestReclaim:
    async def test_renewal_refused_when_slot_was_resold(
        self, engine, store, delivered_order, profile_product, provider
    ):
        store.slots[delivered_order.inventory_slot_id].buyer_id = provider.id

        with pytest.raises(NoStockAvailableError):
            await engine.ensure_reclaimable(delivered_order, profile_product)

    async def test_reclaims_freed_slot(self, engine, store, delivered_order, profile_product, buyer):
        slot = store.slots[delivered_order.inventory_slot_id]
        slot.status = "free"
        slot.buyer_id = None

        await engine.ensure_reclaimable(delivered_order, profile_product)
        binding = await engine.reclaim(delivered_order, profile_product)

        assert binding.slot_id == slot.id
        assert slot.buyer_id == buyer.id

    async def test_reclaim_noop_when_still_held(self, engine, delivered_order, profile_product):
        assert await engine.reclaim(delivered_order, profile_product) is None
