"""Broker collaborator interface and the subscription-based event bus."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from typing import Any, Callable

from loguru import logger

from folio.live.contracts import Contract, NextValidIdEvent, OrderSpec
from folio.live.errors import NotConnectedError, OrderIdTimeoutError

Predicate = Callable[[Any], bool]
Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by `BrokerEventBus.subscribe`; detaches exactly once."""

    __slots__ = ("_bus", "predicate", "handler", "_active")

    def __init__(self, bus: "BrokerEventBus", predicate: Predicate, handler: Handler) -> None:
        self._bus = bus
        self.predicate = predicate
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._detach(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()


class BrokerEventBus:
    """
    Ordered, synchronous fan-out of broker events.

    Events are delivered in emission order to every active subscription
    whose predicate accepts them. A subscription detached while an event is
    being delivered does not receive that event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, predicate: Predicate, handler: Handler) -> Subscription:
        sub = Subscription(self, predicate, handler)
        self._subscriptions.append(sub)
        return sub

    def on(self, event_type: type, handler: Handler, where: Predicate | None = None) -> Subscription:
        """Subscribe to one event type, optionally narrowed by `where`."""

        def predicate(event: Any) -> bool:
            return isinstance(event, event_type) and (where is None or where(event))

        return self.subscribe(predicate, handler)

    def emit(self, event: Any) -> None:
        for sub in list(self._subscriptions):
            if not sub.active:
                continue
            try:
                if sub.predicate(event):
                    sub.handler(event)
            except Exception:
                logger.exception(f"Broker event handler failed for {type(event).__name__}")

    def _detach(self, sub: Subscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


class BrokerConnection(ABC):
    """
    Broker session collaborator.

    Implementations push every broker callback into `events` and expose the
    fire-and-forget commands below; none of the commands wait for an answer.
    """

    def __init__(self, events: BrokerEventBus | None = None) -> None:
        self.events = events or BrokerEventBus()
        self.account_id: str | None = None
        self.next_valid_id: int | None = None
        self._id_lock = asyncio.Lock()

    @abstractmethod
    def is_connected(self) -> bool:
        """Return True while the session is usable."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the session; completes once the first valid order id arrives."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the session."""

    @abstractmethod
    def place_order(self, order_id: int, contract: Contract, order: OrderSpec) -> None:
        """Send one order."""

    @abstractmethod
    def cancel_order(self, order_id: int) -> None:
        """Request cancellation of one order."""

    @abstractmethod
    def request_open_orders(self) -> None:
        """Request a snapshot of all open orders followed by an end marker."""

    @abstractmethod
    def request_executions(self, req_id: int) -> None:
        """Request today's executions followed by an end marker."""

    @abstractmethod
    def request_ids(self) -> None:
        """Ask the broker for the next valid order id."""

    async def next_order_id(self, timeout: float = 5.0) -> int:
        """
        Allocate one order id, raising `OrderIdTimeoutError` after `timeout` seconds.

        Allocations are serialized, and `next_valid_id` is advanced past every
        id handed out, so a broker that answers two requests with the same
        next valid id still yields distinct ids.
        """
        if not self.is_connected():
            raise NotConnectedError("Not connected")
        async with self._id_lock:
            loop = asyncio.get_running_loop()
            future: asyncio.Future[int] = loop.create_future()

            def on_next_valid_id(event: NextValidIdEvent) -> None:
                if not future.done():
                    future.set_result(event.order_id)

            sub = self.events.on(NextValidIdEvent, on_next_valid_id)
            try:
                self.request_ids()
                broker_id = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as exc:
                raise OrderIdTimeoutError("Timeout getting order ID") from exc
            finally:
                sub.unsubscribe()
            order_id = max(broker_id, self.next_valid_id or broker_id)
            self.next_valid_id = order_id + 1
        logger.debug(f"Allocated order id {order_id}")
        return order_id
