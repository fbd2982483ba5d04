"""Live view of pending orders, fed by open-order snapshots and status deltas."""

from __future__ import annotations

import asyncio
from itertools import count
from typing import TYPE_CHECKING, Callable
import time

from loguru import logger

from folio.config import RegistryConfig
from folio.logging_utils import log_order_event

from .classifier import is_informational_code
from .contracts import (
    TERMINAL_STATUSES,
    BrokerErrorEvent,
    CancelResult,
    OpenOrderEndEvent,
    OpenOrderEvent,
    OrderStatus,
    OrderStatusEvent,
    TrackedOrder,
)
from .errors import BrokerOrderError, CancelTimeoutError, NotConnectedError

if TYPE_CHECKING:
    from folio.execution.broker_gateway import BrokerConnection, Subscription

# "Order Canceled - reason:" is delivered as an error but confirms the cancel.
CANCEL_CONFIRM_CODES = frozenset({202})


class OpenOrdersRegistry:
    """
    Deduplicated map of every open order on the account.

    Covers orders placed from other sessions as well as this one. Orders
    leave the map when they reach a terminal status or are cancelled here.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        config: RegistryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.broker = broker
        self.config = config or RegistryConfig()
        self.clock = clock
        self._orders: dict[int, TrackedOrder] = {}
        self._subscriptions: list[Subscription] = []
        self._sequence = count(1)
        self._cancel_locks: dict[int, asyncio.Lock] = {}
        self._cancel_callers: dict[int, int] = {}
        self._loaded: asyncio.Event | None = None
        self._load_timer: asyncio.TimerHandle | None = None
        self.loading = False
        self.end_marker_received = False

    # Subscription lifecycle -------------------------------------------------

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        if self.started:
            return
        if not self.broker.is_connected():
            raise NotConnectedError("Not connected")
        events = self.broker.events
        logger.debug("Subscribing to order events")
        self._subscriptions = [
            events.on(OpenOrderEvent, self._on_open_order),
            events.on(OrderStatusEvent, self._on_order_status),
            events.on(OpenOrderEndEvent, self._on_open_order_end),
        ]
        self._request_snapshot()

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self._cancel_load_timer()
        logger.debug("Unsubscribed from order events")

    def refresh(self) -> None:
        """Drop the local view and request a fresh snapshot."""
        if not self.broker.is_connected():
            return
        if not self.started:
            self.start()
            return
        logger.debug("Refreshing open orders")
        self._orders.clear()
        self._request_snapshot()

    def _request_snapshot(self) -> None:
        self.loading = True
        self.end_marker_received = False
        self._arm_load_timer()
        self.broker.request_open_orders()

    def _arm_load_timer(self) -> None:
        self._cancel_load_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loaded = None
            return
        if self._loaded is None or self._loaded.is_set():
            self._loaded = asyncio.Event()
        self._load_timer = loop.call_later(self.config.open_orders_timeout_seconds, self._on_load_timeout)

    def _cancel_load_timer(self) -> None:
        if self._load_timer is not None:
            self._load_timer.cancel()
            self._load_timer = None

    def _on_load_timeout(self) -> None:
        self._load_timer = None
        if not self.loading:
            return
        logger.warning(
            f"Open orders end marker not received within {self.config.open_orders_timeout_seconds}s; "
            f"showing {len(self._orders)} orders"
        )
        self._finish_loading()

    def _finish_loading(self) -> None:
        self.loading = False
        if self._loaded is not None:
            self._loaded.set()

    async def wait_until_loaded(self) -> bool:
        """Wait for the current snapshot; True if the end marker arrived."""
        if self.loading and self._loaded is not None:
            await self._loaded.wait()
        return self.end_marker_received

    # Event handlers ----------------------------------------------------------

    def _on_open_order(self, event: OpenOrderEvent) -> None:
        state = event.state
        quantity = event.order.total_quantity
        order = TrackedOrder(
            order_id=event.order_id,
            symbol=event.contract.symbol,
            action=str(event.order.action),
            quantity=quantity,
            order_type=event.order.order_type,
            status=state.status,
            filled=state.filled or 0.0,
            remaining=state.remaining if state.remaining is not None else quantity,
            avg_fill_price=state.avg_fill_price or 0.0,
            last_update=self.clock(),
            sequence=next(self._sequence),
        )
        logger.debug(f"openOrder {order.order_id} {order.action} {order.quantity} {order.symbol} {order.status}")
        if order.status in TERMINAL_STATUSES:
            self._orders.pop(order.order_id, None)
            return
        self._orders[order.order_id] = order

    def _on_order_status(self, event: OrderStatusEvent) -> None:
        existing = self._orders.get(event.order_id)
        if existing is None:
            return
        existing.status = event.status
        existing.filled = event.filled
        existing.remaining = event.remaining
        existing.avg_fill_price = event.avg_fill_price
        existing.last_update = self.clock()
        existing.sequence = next(self._sequence)
        if event.filled < 0:
            logger.warning(f"Order {event.order_id} reported negative filled quantity {event.filled}")
        if event.filled + event.remaining != existing.quantity:
            logger.warning(
                f"Order {event.order_id} filled+remaining={event.filled + event.remaining} "
                f"differs from quantity {existing.quantity}"
            )
        if event.status in TERMINAL_STATUSES:
            del self._orders[event.order_id]
            log_order_event("CLOSED", event.order_id, status=event.status)

    def _on_open_order_end(self, event: OpenOrderEndEvent) -> None:
        self._cancel_load_timer()
        self.end_marker_received = True
        logger.debug(f"openOrderEnd - {len(self._orders)} orders received")
        self._finish_loading()

    # Views -------------------------------------------------------------------

    def get(self, order_id: int) -> TrackedOrder | None:
        return self._orders.get(order_id)

    def pending_orders(self) -> list[TrackedOrder]:
        """Pending orders, most recently updated first."""
        rows = [order for order in self._orders.values() if order.is_pending]
        return sorted(rows, key=lambda o: (o.last_update, o.sequence), reverse=True)

    @property
    def pending_count(self) -> int:
        return len(self.pending_orders())

    # Commands ----------------------------------------------------------------

    async def cancel_order(self, order_id: int) -> CancelResult:
        """Cancel one order and wait for the broker to confirm it."""
        lock = self._cancel_locks.setdefault(order_id, asyncio.Lock())
        self._cancel_callers[order_id] = self._cancel_callers.get(order_id, 0) + 1
        try:
            async with lock:
                return await self._cancel(order_id)
        finally:
            self._cancel_callers[order_id] -= 1
            if not self._cancel_callers[order_id]:
                del self._cancel_callers[order_id]
                del self._cancel_locks[order_id]

    async def _cancel(self, order_id: int) -> CancelResult:
        if not self.broker.is_connected():
            raise NotConnectedError("Not connected")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[CancelResult] = loop.create_future()

        def on_status(event: OrderStatusEvent) -> None:
            if event.status == OrderStatus.CANCELLED and not future.done():
                future.set_result(CancelResult(order_id=order_id))

        def on_error(event: BrokerErrorEvent) -> None:
            if future.done() or is_informational_code(event.code):
                return
            if event.code in CANCEL_CONFIRM_CODES:
                future.set_result(CancelResult(order_id=order_id))
                return
            future.set_exception(BrokerOrderError(event.message or "Error cancelling order", order_id, event.code))

        events = self.broker.events
        subs = [
            events.on(OrderStatusEvent, on_status, where=lambda e: e.order_id == order_id),
            events.on(BrokerErrorEvent, on_error, where=lambda e: e.order_id == order_id),
        ]
        try:
            log_order_event("CANCEL", order_id)
            self.broker.cancel_order(order_id)
            try:
                result = await asyncio.wait_for(future, self.config.cancel_timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise CancelTimeoutError(f"Timeout cancelling order {order_id}") from exc
        finally:
            for sub in subs:
                sub.unsubscribe()
        self._orders.pop(order_id, None)
        log_order_event("CANCELLED", order_id)
        return result
