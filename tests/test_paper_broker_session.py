from __future__ import annotations

import asyncio

import pytest

from folio.execution.paper_broker import PaperBrokerConnection
from folio.live.contracts import BrokerErrorEvent, ExecutionEndEvent, ExecutionEvent, OrderStatusEvent, WarningKind
from folio.live.history import TradeLedger
from folio.live.jsonl_store import read_jsonl
from folio.orchestration.session import EXECUTIONS_REQ_ID, BrokerSession


@pytest.mark.asyncio
async def test_paper_fill_lands_in_ledgers(fast_config, tmp_path) -> None:
    broker = PaperBrokerConnection(prices={"AAPL": 200.0}, cash=10_000.0, audit_path=tmp_path / "audit.jsonl")
    async with BrokerSession(broker, fast_config) as session:
        assert session.account_id == "DU0000000"
        assert len(session.portfolio) == 0  # connect-time account value predates the subscription

        outcome = await session.buy("AAPL", 10, wait_for_fill=True)

        assert outcome.status == "Filled"
        assert outcome.avg_fill_price == 200.0
        trades = session.trades.trades
        assert len(trades) == 1
        assert trades[0].id.startswith("paper-fill-")
        assert trades[0].side == "BOT" and trades[0].order_id == outcome.order_id
        assert len(session.portfolio) == 2
        assert broker.account.cash == 8_000.0
        assert broker.account.positions == {"AAPL": 10.0}

    assert read_jsonl(session.trades.path)[0]["orderId"] == outcome.order_id
    assert [row["type"] for row in read_jsonl(tmp_path / "audit.jsonl")] == ["place", "fill"]
    assert broker.events.subscriber_count == 0


@pytest.mark.asyncio
async def test_paper_insufficient_funds_is_rejected(fast_config) -> None:
    broker = PaperBrokerConnection(prices={"TSLA": 500.0}, cash=1_000.0)
    async with BrokerSession(broker, fast_config) as session:
        outcome = await session.buy("TSLA", 5)
    assert outcome.status == "Inactive"
    assert outcome.rejection_reason.startswith("Insufficient funds")
    assert not outcome.timed_out
    assert session.trades.trades == []


@pytest.mark.asyncio
async def test_market_closed_order_is_queued_then_cancelled(fast_config) -> None:
    broker = PaperBrokerConnection(prices={"AAPL": 100.0}, market_open=False)
    async with BrokerSession(broker, fast_config) as session:
        outcome = await session.buy("AAPL", 3)

        assert outcome.status == "PreSubmitted"
        assert outcome.warning.kind == WarningKind.MARKET_CLOSED
        assert outcome.warning.until is not None
        assert [o.order_id for o in session.pending_orders()] == [outcome.order_id]

        result = await session.cancel_order(outcome.order_id)
        assert result.status == "Cancelled"
        assert session.pending_orders() == []
        assert broker.open_orders == {}


@pytest.mark.asyncio
async def test_market_open_fills_queued_orders(fast_config) -> None:
    broker = PaperBrokerConnection(prices={"MSFT": 300.0}, market_open=False)
    async with BrokerSession(broker, fast_config) as session:
        queued = await session.buy("MSFT", 2)
        assert session.registry.pending_count == 1

        broker.open_market()
        batch = await session.fetch_executions()

        assert batch.complete
        assert [t.order_id for t in batch.records] == [queued.order_id]
        assert session.registry.pending_count == 0
        assert len(session.trades) == 1


@pytest.mark.asyncio
async def test_fetch_executions_orders_most_recent_first(fast_config) -> None:
    broker = PaperBrokerConnection()
    async with BrokerSession(broker, fast_config) as session:
        broker.executions = [
            ExecutionEvent(-1, "e1", 1, "AAPL", "BOT", 1, 10.0, "20261016 09:31:00"),
            ExecutionEvent(-1, "e2", 2, "AAPL", "SLD", 1, 11.0, "20261016 15:00:00"),
        ]
        batch = await session.fetch_executions()
        assert batch.req_id == EXECUTIONS_REQ_ID
        assert [t.id for t in batch.records] == ["e2", "e1"]
        assert [t.id for t in session.trades.trades] == ["e1", "e2"]


@pytest.mark.asyncio
async def test_fetch_executions_error_and_timeout(broker, fast_config) -> None:
    session = BrokerSession(broker, fast_config)
    await session.start()

    broker.on_executions = lambda req_id: [
        ExecutionEvent(req_id, "x1", 1, "AAPL", "BOT", 1, 10.0, "20261016 09:31:00"),
        BrokerErrorEvent("Market data farm connection is OK", code=2104, order_id=-1),
        BrokerErrorEvent("Other request failed", code=321, order_id=123),
        BrokerErrorEvent("Request failed", code=321, order_id=req_id),
    ]
    failed = await session.fetch_executions()
    assert failed.error == "Request failed"
    assert not failed.complete
    assert len(session.trades) == 0

    broker.on_executions = lambda req_id: [
        ExecutionEvent(req_id, "x2", 2, "AAPL", "BOT", 1, 10.0, "20261016 09:32:00"),
    ]
    partial = await session.fetch_executions()
    assert not partial.complete and partial.error is None
    assert [t.id for t in partial.records] == ["x2"]
    assert "x2" in session.trades

    broker.on_executions = lambda req_id: [ExecutionEndEvent(req_id)]
    assert (await session.fetch_executions()).complete
    await session.close()
    assert broker.events.subscriber_count == 0


@pytest.mark.asyncio
async def test_paper_ids_are_unique() -> None:
    broker = PaperBrokerConnection(first_order_id=500)
    await broker.connect()
    ids = [await broker.next_order_id() for _ in range(3)]
    assert ids == [500, 501, 502]


@pytest.mark.asyncio
async def test_concurrent_paper_orders_are_tracked_separately(fast_config) -> None:
    broker = PaperBrokerConnection(prices={"AAPL": 10.0})
    async with BrokerSession(broker, fast_config) as session:
        first, second = await asyncio.gather(
            session.buy("AAPL", 1, wait_for_fill=True),
            session.buy("AAPL", 1, wait_for_fill=True),
        )
        assert first.order_id != second.order_id
        assert first.status == second.status == "Filled"
        assert sorted(t.order_id for t in session.trades.trades) == sorted([first.order_id, second.order_id])


@pytest.mark.asyncio
async def test_late_execution_report_replaces_recorded_fill(broker, fast_config) -> None:
    broker.on_place = lambda oid, contract, order: [OrderStatusEvent(oid, "Filled", 2, 0, 50.0)]
    async with BrokerSession(broker, fast_config) as session:
        outcome = await session.buy("AAPL", 2, wait_for_fill=True)
        assert session.trades.trades[0].id.startswith(f"order:{outcome.order_id}:")

        broker.emit(ExecutionEvent(-1, "exec-1", outcome.order_id, "AAPL", "BOT", 2, 50.0, "20261016 10:00:00"))
        assert [t.id for t in session.trades.trades] == ["exec-1"]

    reloaded = TradeLedger(session.account_id, fast_config.history.resolved_base_dir)
    assert [t.id for t in reloaded.load()] == ["exec-1"]
