"""Unit tests for the Indexer (polling, projection, sweeps, ledger sync)."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import LedgerUnavailable
from factories import T0, bought, cancelled, created, ended, view, winner
from indexer import Indexer
from models import UnknownEvent


def make_indexer(store, gateway, **kwargs) -> Indexer:
    kwargs.setdefault("clock", lambda: T0 + timedelta(hours=2))
    return Indexer(store, gateway, **kwargs)


class TestPollOnce:
    async def test_no_new_heights_is_noop(self, store, gateway) -> None:
        gateway.current_height.return_value = 0
        idx = make_indexer(store, gateway, start_height=1)
        assert await idx.poll_once() == 0
        gateway.events_in_range.assert_not_awaited()
        assert await store.get_cursor() == 0

    async def test_batch_is_bounded(self, store, gateway) -> None:
        gateway.current_height.return_value = 1000
        idx = make_indexer(store, gateway, batch_size=100, start_height=1)
        await idx.poll_once()
        gateway.events_in_range.assert_awaited_once_with(1, 100)
        assert await store.get_cursor() == 100
        assert idx.lag() == 900

    async def test_resumes_from_persisted_cursor(self, store, gateway) -> None:
        await store.init_cursor(1)
        await store.advance_cursor(500)
        gateway.current_height.return_value = 520
        idx = make_indexer(store, gateway, batch_size=100, start_height=1)
        await idx.poll_once()
        gateway.events_in_range.assert_awaited_once_with(501, 520)
        assert await store.get_cursor() == 520

    async def test_projects_full_lifecycle(self, store, gateway) -> None:
        gateway.current_height.return_value = 300
        gateway.events_in_range.return_value = [
            created("1"),
            bought("1", quantity=2, tx_hash="A"),
            bought("1", quantity=1, tx_hash="B", buyer="testcore1bob"),
            ended("1"),
            winner("1", address="testcore1bob", ticket_index=2),
        ]
        idx = make_indexer(store, gateway, batch_size=1000)
        assert await idx.poll_once() == 5

        r = await store.get_raffle("1")
        assert (r.status, r.tickets_sold, r.winner, r.winner_ticket_index) == ("completed", 3, "testcore1bob", 2)
        assert len(await store.list_participants("1")) == 2

    async def test_reapplying_a_batch_is_idempotent(self, store, gateway) -> None:
        batch = [created("1"), bought("1", quantity=2, tx_hash="A"), cancelled("1")]
        gateway.current_height.return_value = 10
        gateway.events_in_range.return_value = batch
        idx = make_indexer(store, gateway)
        await idx.poll_once()
        first = await store.get_raffle("1")

        # crash before the cursor moved: the same batch comes round again
        await store.reset_cursor(0)
        await idx.poll_once()
        again = await store.get_raffle("1")

        assert again.tickets_sold == first.tickets_sold == 2
        assert again.status == "cancelled"
        [p] = await store.list_participants("1")
        assert p.ticket_count == 2

    async def test_catching_up_after_reconcile_keeps_ledger_count(self, store, gateway) -> None:
        await store.insert_raffle(created("1", max_tickets=10))
        await store.record_purchase(bought("1", quantity=8, tx_hash="A"))
        # settlement wrote the contract's total before the indexer saw the last buy
        await store.set_tickets_sold("1", 10)

        await store.advance_cursor(200)
        gateway.current_height.return_value = 210
        gateway.events_in_range.return_value = [bought("1", quantity=2, tx_hash="B", height=205)]
        assert await make_indexer(store, gateway).poll_once() == 1

        r = await store.get_raffle("1")
        assert r.tickets_sold == 10 == r.max_tickets
        assert sum(p.ticket_count for p in await store.list_participants("1")) == 10

    async def test_failing_event_does_not_stop_siblings(self, store, gateway, monkeypatch) -> None:
        gateway.current_height.return_value = 10
        gateway.events_in_range.return_value = [bought("1", tx_hash="A"), created("2")]
        monkeypatch.setattr(store, "record_purchase", AsyncMock(side_effect=RuntimeError("disk full")))
        idx = make_indexer(store, gateway)
        assert await idx.poll_once() == 1
        assert await store.get_raffle("2") is not None
        assert await store.get_cursor() == 10

    async def test_height_failure_leaves_cursor(self, store, gateway) -> None:
        await store.advance_cursor(50)
        gateway.current_height.side_effect = LedgerUnavailable("rpc down")
        idx = make_indexer(store, gateway)
        with pytest.raises(LedgerUnavailable):
            await idx.poll_once()
        assert await store.get_cursor() == 50
        assert "rpc down" in idx.last_error

    async def test_events_failure_leaves_cursor(self, store, gateway) -> None:
        await store.advance_cursor(50)
        gateway.current_height.return_value = 60
        gateway.events_in_range.side_effect = LedgerUnavailable("tx_search failed")
        idx = make_indexer(store, gateway)
        with pytest.raises(LedgerUnavailable):
            await idx.poll_once()
        assert await store.get_cursor() == 50

    async def test_cursor_never_decreases_across_polls(self, store, gateway) -> None:
        idx = make_indexer(store, gateway, batch_size=7)
        seen = []
        for height in (3, 20, 20, 25, 40):
            gateway.current_height.return_value = height
            await idx.poll_once()
            seen.append(await store.get_cursor())
        assert seen == sorted(seen)
        assert seen[-1] <= 40


class TestApplyEvent:
    async def test_unknown_event_is_ignored(self, store, gateway) -> None:
        ev = UnknownEvent(kind="update_config", height=1, tx_hash="T", timestamp=T0, attributes={"a": "b"})
        assert await make_indexer(store, gateway).apply_event(ev) is False

    async def test_duplicate_create_is_swallowed(self, store, gateway) -> None:
        idx = make_indexer(store, gateway)
        assert await idx.apply_event(created("1")) is True
        assert await idx.apply_event(created("1")) is False


class TestProcessRange:
    @pytest.mark.parametrize("bounds", [(0, 5), (10, 9), (-3, 1)])
    async def test_rejects_bad_range(self, store, gateway, bounds) -> None:
        with pytest.raises(ValueError):
            await make_indexer(store, gateway).process_range(*bounds)
        gateway.events_in_range.assert_not_awaited()

    async def test_reprocess_does_not_move_cursor(self, store, gateway) -> None:
        await store.advance_cursor(100)
        gateway.events_in_range.return_value = [created("1")]
        result = await make_indexer(store, gateway).process_range(10, 20)
        assert result == {"from_height": 10, "to_height": 20, "events": 1, "applied": 1}
        assert await store.get_cursor() == 100


class TestSettlementHandOff:
    async def test_sweep_hands_expired_raffles_to_controller(self, store, gateway) -> None:
        await store.insert_raffle(created("1", end_time=T0))
        await store.record_purchase(bought("1"))
        await store.insert_raffle(created("2", end_time=T0))                     # no sales
        await store.insert_raffle(created("3", end_time=T0 + timedelta(days=1)))
        await store.record_purchase(bought("3", tx_hash="B3"))

        controller = MagicMock()
        controller.settle_many = AsyncMock(return_value=1)
        assert await make_indexer(store, gateway).sweep_expired(controller) == 1
        [raffles] = controller.settle_many.await_args.args
        assert [r.raffle_id for r in raffles] == ["1"]

    async def test_sweep_without_expired_raffles(self, store, gateway) -> None:
        controller = MagicMock()
        controller.settle_many = AsyncMock()
        assert await make_indexer(store, gateway).sweep_expired(controller) == 0
        controller.settle_many.assert_not_awaited()

    async def test_sold_out_batch_does_not_wait_on_settlement(self, store, gateway) -> None:
        never = asyncio.Event()

        async def blocked(raffles):
            await never.wait()

        controller = MagicMock()
        controller.settle_many = AsyncMock(side_effect=blocked)
        await store.advance_cursor(99)
        gateway.current_height.return_value = 100
        gateway.events_in_range.return_value = [created("1", max_tickets=2), bought("1", quantity=2)]

        idx = make_indexer(store, gateway, controller=controller)
        assert await asyncio.wait_for(idx.poll_once(), timeout=5) == 2
        assert await store.get_cursor() == 100
        controller.settle_many.assert_not_awaited()
        # the settlement loop's own scan picks it up
        assert (await store.get_raffle("1")).is_sold_out is True


class TestLedgerSync:
    async def test_pages_through_contract(self, store, gateway) -> None:
        gateway.query_raffles.side_effect = [
            [view("1", total_sold=2), view("2", status="completed", winner_address="testcore1x")],
            [view("3")],
        ]
        synced = await make_indexer(store, gateway).sync_from_ledger(limit=2)
        assert synced == 3
        assert gateway.query_raffles.await_args_list[1].kwargs == {"start_after": "2", "limit": 2}
        assert (await store.get_raffle("2")).winner == "testcore1x"
        assert await store.count_raffles() == 3
