"""Order submission and lifecycle tracking over the broker event stream."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger

from folio.config import OrderConfig
from folio.live.classifier import MessageCategory, MessageClassifier
from folio.live.contracts import (
    ACCEPTED_STATUSES,
    TERMINAL_STATUSES,
    BrokerErrorEvent,
    Contract,
    OrderAction,
    OrderOutcome,
    OrderSpec,
    OrderStatus,
    OrderStatusEvent,
    OrderWarning,
    OrderRejection,
)
from folio.live.errors import BrokerOrderError, NotConnectedError
from folio.logging_utils import log_order_event

from .broker_gateway import BrokerConnection


class TrackerState(StrEnum):
    SUBMITTING = "submitting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(slots=True)
class OrderTicket:
    """Mutable per-submission state; owned by one `submit_order` call."""

    order_id: int
    symbol: str
    action: OrderAction
    quantity: int
    wait_for_fill: bool = False
    state: TrackerState = TrackerState.SUBMITTING
    last_status: str = OrderStatus.SUBMITTING.value
    filled: float | None = None
    remaining: float | None = None
    avg_fill_price: float | None = None
    warning: OrderWarning | None = None
    rejection: OrderRejection | None = None
    future: asyncio.Future | None = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.future is not None and self.future.done()

    def outcome(self, status: str, timed_out: bool = False) -> OrderOutcome:
        reason = None
        if self.rejection is not None and status == OrderStatus.INACTIVE:
            reason = self.rejection.reason
        return OrderOutcome(
            order_id=self.order_id,
            status=status,
            filled=self.filled,
            avg_fill_price=self.avg_fill_price,
            warning=self.warning,
            rejection_reason=reason,
            symbol=self.symbol,
            action=str(self.action),
            quantity=self.quantity,
            timed_out=timed_out,
        )

    def resolve_on_timeout(self) -> OrderOutcome:
        """Stored rejection beats stored warning beats last observed status."""
        if self.rejection is not None:
            self.state = TrackerState.REJECTED
            status = OrderStatus.INACTIVE.value
        elif self.warning is not None:
            self.state = TrackerState.TIMED_OUT
            status = OrderStatus.SUBMITTED.value
        else:
            self.state = TrackerState.TIMED_OUT
            status = self.last_status
        return self.outcome(status, timed_out=True)


class OrderTracker:
    """
    Drive one market order from submission to exactly one `OrderOutcome`.

    Accepted statuses (Submitted/PreSubmitted) resolve immediately so that an
    order queued for the next session does not block the caller; pass
    `wait_for_fill=True` to hold out for a terminal status instead.
    """

    def __init__(
        self,
        broker: BrokerConnection,
        config: OrderConfig | None = None,
        classifier: MessageClassifier | None = None,
    ) -> None:
        self.broker = broker
        self.config = config or OrderConfig()
        self.classifier = classifier or MessageClassifier()
        self._last_status: dict[int, str] = {}

    def last_status(self, order_id: int) -> str | None:
        return self._last_status.get(order_id)

    async def buy(self, symbol: str, quantity: int, **kwargs) -> OrderOutcome:
        return await self.submit_order(symbol, OrderAction.BUY, quantity, **kwargs)

    async def sell(self, symbol: str, quantity: int, **kwargs) -> OrderOutcome:
        return await self.submit_order(symbol, OrderAction.SELL, quantity, **kwargs)

    async def submit_order(
        self,
        symbol: str,
        action: OrderAction | str,
        quantity: int,
        *,
        order_type: str = "MKT",
        exchange: str | None = None,
        currency: str | None = None,
        wait_for_fill: bool = False,
    ) -> OrderOutcome:
        action = self._validate(symbol, action, quantity, order_type)
        if not self.broker.is_connected():
            raise NotConnectedError("Not connected")

        log_order_event("SUBMIT", None, action=action, quantity=quantity, symbol=symbol)
        order_id = await self.broker.next_order_id(timeout=self.config.order_id_timeout_seconds)
        contract = Contract(
            symbol=symbol.upper(),
            exchange=exchange or self.config.exchange,
            currency=currency or self.config.currency,
        )
        spec = OrderSpec(action=action, total_quantity=quantity, order_type=order_type, tif=self.config.tif)
        ticket = OrderTicket(
            order_id=order_id,
            symbol=contract.symbol,
            action=action,
            quantity=quantity,
            wait_for_fill=wait_for_fill,
            future=asyncio.get_running_loop().create_future(),
        )
        return await self._track(ticket, contract, spec)

    @staticmethod
    def _validate(symbol: str, action: OrderAction | str, quantity: int, order_type: str) -> OrderAction:
        if not symbol or not symbol.strip():
            raise ValueError("symbol must be non-empty")
        try:
            parsed = OrderAction(str(action).upper())
        except ValueError as exc:
            raise ValueError(f"Unsupported action: {action}") from exc
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
        if order_type != "MKT":
            raise ValueError(f"Only market orders are supported, got {order_type}")
        return parsed

    async def _track(self, ticket: OrderTicket, contract: Contract, spec: OrderSpec) -> OrderOutcome:
        order_id = ticket.order_id
        events = self.broker.events
        subs = [
            events.on(OrderStatusEvent, lambda e: self._on_status(ticket, e), where=lambda e: e.order_id == order_id),
            events.on(BrokerErrorEvent, lambda e: self._on_error(ticket, e), where=lambda e: self._in_scope(e, order_id)),
        ]
        try:
            self.broker.place_order(order_id, contract, spec)
            log_order_event("PLACED", order_id, action=spec.action, quantity=spec.total_quantity, symbol=contract.symbol)
            try:
                outcome = await asyncio.wait_for(asyncio.shield(ticket.future), self.config.submit_timeout_seconds)
            except asyncio.TimeoutError:
                if ticket.future.done():
                    outcome = ticket.future.result()
                else:
                    outcome = ticket.resolve_on_timeout()
                    ticket.future.set_result(outcome)
                    log_order_event("TIMEOUT", order_id, status=outcome.status, state=ticket.state)
        finally:
            for sub in subs:
                sub.unsubscribe()
            if not ticket.future.done():
                ticket.future.cancel()
        return outcome

    @staticmethod
    def _in_scope(event: BrokerErrorEvent, order_id: int) -> bool:
        return not event.scoped or event.order_id == order_id

    def _on_status(self, ticket: OrderTicket, event: OrderStatusEvent) -> None:
        self._last_status[ticket.order_id] = event.status
        if ticket.resolved:
            return
        ticket.last_status = event.status
        ticket.filled = event.filled
        ticket.remaining = event.remaining
        ticket.avg_fill_price = event.avg_fill_price
        logger.debug(
            f"Order {ticket.order_id} status {event.status} "
            f"(filled={event.filled}, remaining={event.remaining}, avg={event.avg_fill_price})"
        )

        resolves = event.status in TERMINAL_STATUSES
        if not ticket.wait_for_fill:
            resolves = resolves or event.status in ACCEPTED_STATUSES
        if not resolves:
            return
        if event.status == OrderStatus.INACTIVE:
            ticket.state = TrackerState.REJECTED
        else:
            ticket.state = TrackerState.ACCEPTED
        outcome = ticket.outcome(event.status)
        ticket.future.set_result(outcome)
        log_order_event("RESOLVED", ticket.order_id, status=event.status, filled=event.filled)

    def _on_error(self, ticket: OrderTicket, event: BrokerErrorEvent) -> None:
        if ticket.resolved:
            return
        message = event.message or "Error submitting order"
        result = self.classifier.classify(message, event.code)
        if result.category == MessageCategory.IGNORABLE:
            return
        if result.category == MessageCategory.REJECTION:
            ticket.rejection = result.rejection
            log_order_event("REJECTION", ticket.order_id, kind=result.rejection.kind, reason=result.rejection.reason)
            return
        if result.category == MessageCategory.WARNING:
            ticket.warning = result.warning
            log_order_event("WARNING", ticket.order_id, kind=result.warning.kind, until=result.warning.until)
            return
        logger.error(f"Order {ticket.order_id} failed: {message} (code={event.code})")
        ticket.state = TrackerState.REJECTED
        ticket.future.set_exception(BrokerOrderError(message, order_id=ticket.order_id, code=event.code))
