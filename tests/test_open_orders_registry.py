from __future__ import annotations

import asyncio
from itertools import count

import pytest

from folio.live.contracts import (
    BrokerErrorEvent,
    Contract,
    OpenOrderEndEvent,
    OpenOrderEvent,
    OrderAction,
    OrderSpec,
    OrderState,
    OrderStatusEvent,
)
from folio.live.errors import BrokerOrderError, CancelTimeoutError, NotConnectedError
from folio.live.registry import OpenOrdersRegistry


def _open(order_id: int, symbol: str, status: str = "Submitted", quantity: int = 10) -> OpenOrderEvent:
    return OpenOrderEvent(
        order_id=order_id,
        contract=Contract(symbol=symbol),
        order=OrderSpec(action=OrderAction.BUY, total_quantity=quantity),
        state=OrderState(status=status, filled=0.0, remaining=float(quantity), avg_fill_price=0.0),
    )


def _registry(broker, fast_registry) -> OpenOrdersRegistry:
    ticks = count(1)
    return OpenOrdersRegistry(broker, fast_registry, clock=lambda: float(next(ticks)))


@pytest.mark.asyncio
async def test_snapshot_builds_pending_view_most_recent_first(broker, fast_registry) -> None:
    broker.on_open_orders = lambda: [
        _open(41, "AAPL"),
        _open(42, "TSLA", status="PreSubmitted"),
        _open(43, "MSFT", status="Filled"),
        OpenOrderEndEvent(),
    ]
    registry = _registry(broker, fast_registry)
    registry.start()
    assert registry.loading

    assert await registry.wait_until_loaded()
    assert not registry.loading
    assert [o.order_id for o in registry.pending_orders()] == [42, 41]
    assert registry.get(43) is None

    broker.emit(OrderStatusEvent(41, "Submitted", 4, 6, 99.0))
    pending = registry.pending_orders()
    assert [o.order_id for o in pending] == [41, 42]
    assert pending[0].filled == 4 and pending[0].avg_fill_price == 99.0
    assert pending[0].symbol == "AAPL"


@pytest.mark.asyncio
async def test_status_for_unknown_order_is_ignored_and_terminal_removes(broker, fast_registry) -> None:
    broker.on_open_orders = lambda: [_open(1, "AAPL"), OpenOrderEndEvent()]
    registry = _registry(broker, fast_registry)
    registry.start()
    await registry.wait_until_loaded()

    broker.emit(OrderStatusEvent(99, "Submitted", 0, 5, 0))
    assert registry.get(99) is None

    broker.emit(OrderStatusEvent(1, "Filled", 10, 0, 12.0))
    assert registry.pending_count == 0


@pytest.mark.asyncio
async def test_status_delta_keeps_order_quantity(broker, fast_registry) -> None:
    broker.on_open_orders = lambda: [_open(5, "AAPL", quantity=10), OpenOrderEndEvent()]
    registry = _registry(broker, fast_registry)
    registry.start()
    await registry.wait_until_loaded()

    broker.emit(OrderStatusEvent(5, "Submitted", 2, 3, 101.5))

    order = registry.get(5)
    assert order.quantity == 10
    assert (order.filled, order.remaining, order.avg_fill_price) == (2, 3, 101.5)
    assert order.symbol == "AAPL" and order.order_type == "MKT"


@pytest.mark.asyncio
async def test_cancel_confirmed_removes_order(broker, fast_registry) -> None:
    broker.on_open_orders = lambda: [_open(42, "AAPL"), OpenOrderEndEvent()]
    broker.on_cancel = lambda oid: [OrderStatusEvent(oid, "Cancelled", 0, 10, 0)]
    registry = _registry(broker, fast_registry)
    registry.start()
    await registry.wait_until_loaded()

    result = await registry.cancel_order(42)

    assert result.order_id == 42
    assert result.status == "Cancelled"
    assert registry.get(42) is None
    assert registry.pending_orders() == []
    assert broker.cancelled == [42]


@pytest.mark.asyncio
async def test_cancel_confirmed_by_code_202(broker, fast_registry) -> None:
    broker.on_cancel = lambda oid: [BrokerErrorEvent("Order Canceled - reason:", code=202, order_id=oid)]
    registry = _registry(broker, fast_registry)
    result = await registry.cancel_order(7)
    assert result.status == "Cancelled"


@pytest.mark.asyncio
async def test_cancel_error_and_timeout(broker, fast_registry) -> None:
    registry = _registry(broker, fast_registry)
    broker.on_cancel = lambda oid: [
        BrokerErrorEvent("Market data farm connection is OK", code=2104, order_id=oid),
        BrokerErrorEvent("OrderId 5 that needs to be cancelled is not found.", code=10147, order_id=oid),
    ]
    with pytest.raises(BrokerOrderError, match="not found"):
        await registry.cancel_order(5)

    broker.on_cancel = None
    with pytest.raises(CancelTimeoutError):
        await registry.cancel_order(6)
    assert broker.events.subscriber_count == 0
    assert registry._cancel_locks == {}

    broker.connected = False
    with pytest.raises(NotConnectedError):
        await registry.cancel_order(6)


@pytest.mark.asyncio
async def test_concurrent_cancels_for_same_id_are_serialized(broker, fast_registry) -> None:
    broker.on_cancel = lambda oid: [OrderStatusEvent(oid, "Cancelled", 0, 1, 0)]
    registry = _registry(broker, fast_registry)
    first, second = await asyncio.gather(registry.cancel_order(8), registry.cancel_order(8))
    assert first.order_id == second.order_id == 8
    assert broker.cancelled == [8, 8]
    assert registry._cancel_locks == {} and registry._cancel_callers == {}


@pytest.mark.asyncio
async def test_missing_end_marker_clears_loading_after_timeout(broker, fast_registry) -> None:
    broker.on_open_orders = lambda: [_open(3, "AAPL")]
    registry = _registry(broker, fast_registry)
    registry.start()

    assert await registry.wait_until_loaded() is False
    assert not registry.loading
    assert registry.pending_count == 1


@pytest.mark.asyncio
async def test_refresh_clears_and_requests_again(broker, fast_registry) -> None:
    snapshots = [[_open(1, "AAPL"), OpenOrderEndEvent()], [_open(2, "TSLA"), OpenOrderEndEvent()]]
    broker.on_open_orders = lambda: snapshots.pop(0)
    registry = _registry(broker, fast_registry)
    registry.refresh()
    await registry.wait_until_loaded()
    assert [o.order_id for o in registry.pending_orders()] == [1]

    registry.refresh()
    assert registry.pending_orders() == []
    await registry.wait_until_loaded()
    assert [o.order_id for o in registry.pending_orders()] == [2]
    assert broker.open_order_requests == 2

    registry.stop()
    assert broker.events.subscriber_count == 0


def test_start_requires_connection(broker, fast_registry) -> None:
    broker.connected = False
    with pytest.raises(NotConnectedError):
        OpenOrdersRegistry(broker, fast_registry).start()
