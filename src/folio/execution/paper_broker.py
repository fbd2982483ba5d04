"""In-process paper broker that speaks the same event stream as a live session."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from folio.live.contracts import (
    AccountValueEvent,
    BrokerErrorEvent,
    Contract,
    ExecutionEndEvent,
    ExecutionEvent,
    NextValidIdEvent,
    OpenOrderEndEvent,
    OpenOrderEvent,
    OrderAction,
    OrderSpec,
    OrderState,
    OrderStatus,
    OrderStatusEvent,
    now_utc,
)
from folio.live.jsonl_store import append_jsonl

from .broker_gateway import BrokerConnection, BrokerEventBus

REJECTED_CODE = 201
CANCELLED_CODE = 202
MARKET_CLOSED_CODE = 399
CANCEL_UNKNOWN_CODE = 10147


@dataclass(slots=True)
class PaperOrder:
    order_id: int
    contract: Contract
    order: OrderSpec
    status: str = OrderStatus.PRE_SUBMITTED.value


@dataclass(slots=True)
class PaperAccount:
    account_id: str = "DU0000000"
    cash: float = 100_000.0
    positions: dict[str, float] = field(default_factory=dict)

    def net_liquidation(self, prices: dict[str, float]) -> float:
        held = sum(qty * prices.get(sym, 0.0) for sym, qty in self.positions.items())
        return self.cash + held


class PaperBrokerConnection(BrokerConnection):
    """
    Paper-trading broker with deterministic order ids.

    Market orders fill at the configured symbol price while the market is
    open. With the market closed they are queued as PreSubmitted with a
    routing warning and stay open until cancelled. Buys that exceed the
    available cash are rejected and go Inactive. Command callbacks are
    delivered through the event loop after `latency` seconds, never inline.
    """

    def __init__(
        self,
        events: BrokerEventBus | None = None,
        account_id: str = "DU0000000",
        cash: float = 100_000.0,
        prices: dict[str, float] | None = None,
        market_open: bool = True,
        latency: float = 0.0,
        first_order_id: int = 1,
        audit_path: str | Path | None = None,
    ) -> None:
        super().__init__(events)
        self.account = PaperAccount(account_id=account_id, cash=cash)
        self.prices = {k.upper(): float(v) for k, v in (prices or {}).items()}
        self.default_price = 100.0
        self.market_open = market_open
        self.latency = latency
        self.audit_path = Path(audit_path) if audit_path else None
        self.open_orders: dict[int, PaperOrder] = {}
        self.executions: list[ExecutionEvent] = []
        self._next_id = first_order_id
        self._connected = False

    def _audit(self, payload: dict[str, Any]) -> None:
        if not self.audit_path:
            return
        append_jsonl(self.audit_path, {"timestamp": now_utc().isoformat(), **payload})

    def _schedule(self, *events: object) -> None:
        """Deliver a batch of events in order on a later loop iteration."""
        loop = asyncio.get_running_loop()

        def deliver() -> None:
            for event in events:
                self.events.emit(event)

        if self.latency > 0:
            loop.call_later(self.latency, deliver)
        else:
            loop.call_soon(deliver)

    def price_of(self, symbol: str) -> float:
        return self.prices.get(symbol.upper(), self.default_price)

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol.upper()] = float(price)

    # Session -----------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        self.account_id = self.account.account_id
        self.next_valid_id = self._next_id
        logger.info(f"Paper broker connected as {self.account_id}")
        self.events.emit(NextValidIdEvent(self._next_id))
        self.events.emit(self._account_value_event())

    def disconnect(self) -> None:
        if self._connected:
            logger.info("Paper broker disconnected")
        self._connected = False

    def _account_value_event(self) -> AccountValueEvent:
        return AccountValueEvent(
            account_id=self.account.account_id,
            net_liquidation=self.account.net_liquidation(self.prices),
            cash=self.account.cash,
        )

    # Commands ----------------------------------------------------------------

    def request_ids(self) -> None:
        order_id = self._next_id
        self._next_id += 1
        self._schedule(NextValidIdEvent(order_id))

    def place_order(self, order_id: int, contract: Contract, order: OrderSpec) -> None:
        price = self.price_of(contract.symbol)
        quantity = float(order.total_quantity)
        self._audit({"type": "place", "order_id": order_id, "symbol": contract.symbol, "action": str(order.action), "quantity": quantity})

        if order.action == OrderAction.BUY and quantity * price > self.account.cash:
            logger.info(f"Paper order {order_id} rejected: insufficient funds")
            self._schedule(
                BrokerErrorEvent(
                    f"Insufficient funds to buy {quantity:g} {contract.symbol} (cash {self.account.cash:.2f})",
                    code=REJECTED_CODE,
                    order_id=order_id,
                ),
                OrderStatusEvent(order_id, OrderStatus.INACTIVE.value, 0.0, quantity, 0.0),
            )
            return

        if not self.market_open:
            paper = PaperOrder(order_id=order_id, contract=contract, order=order)
            self.open_orders[order_id] = paper
            until = self._next_session_open().strftime("%Y-%m-%d %H:%M:%S")
            self._schedule(
                BrokerErrorEvent(
                    f"Order Message:\n{order.action} {quantity:g} {contract.symbol}\nWarning: your order "
                    f"will not be sent to the market until {until} US/Eastern",
                    code=MARKET_CLOSED_CODE,
                    order_id=order_id,
                ),
                self._open_order_event(paper),
                OrderStatusEvent(order_id, OrderStatus.PRE_SUBMITTED.value, 0.0, quantity, 0.0),
            )
            return

        execution = self._fill(order_id, contract, order, price)
        self._schedule(
            OrderStatusEvent(order_id, OrderStatus.SUBMITTED.value, 0.0, quantity, 0.0),
            OrderStatusEvent(order_id, OrderStatus.FILLED.value, quantity, 0.0, price),
            execution,
            self._account_value_event(),
        )

    def _fill(self, order_id: int, contract: Contract, order: OrderSpec, price: float) -> ExecutionEvent:
        quantity = float(order.total_quantity)
        signed = quantity if order.action == OrderAction.BUY else -quantity
        symbol = contract.symbol
        self.account.cash -= signed * price
        self.account.positions[symbol] = self.account.positions.get(symbol, 0.0) + signed
        if abs(self.account.positions[symbol]) < 1e-12:
            del self.account.positions[symbol]
        execution = ExecutionEvent(
            req_id=-1,
            execution_id=f"paper-fill-{uuid4().hex}",
            order_id=order_id,
            symbol=symbol,
            side="BOT" if order.action == OrderAction.BUY else "SLD",
            quantity=quantity,
            price=price,
            time=now_utc().strftime("%Y%m%d %H:%M:%S"),
            avg_price=price,
        )
        self.executions.append(execution)
        self._audit({"type": "fill", "order_id": order_id, "execution_id": execution.execution_id, "price": price})
        return execution

    def cancel_order(self, order_id: int) -> None:
        paper = self.open_orders.pop(order_id, None)
        if paper is None:
            self._schedule(
                BrokerErrorEvent(
                    f"OrderId {order_id} that needs to be cancelled is not found.",
                    code=CANCEL_UNKNOWN_CODE,
                    order_id=order_id,
                )
            )
            return
        self._audit({"type": "cancel", "order_id": order_id})
        remaining = float(paper.order.total_quantity)
        self._schedule(
            OrderStatusEvent(order_id, OrderStatus.CANCELLED.value, 0.0, remaining, 0.0),
            BrokerErrorEvent("Order Canceled - reason:", code=CANCELLED_CODE, order_id=order_id),
        )

    def request_open_orders(self) -> None:
        snapshot = [self._open_order_event(paper) for paper in self.open_orders.values()]
        self._schedule(*snapshot, OpenOrderEndEvent())

    def request_executions(self, req_id: int) -> None:
        replay = [
            ExecutionEvent(
                req_id=req_id,
                execution_id=e.execution_id,
                order_id=e.order_id,
                symbol=e.symbol,
                side=e.side,
                quantity=e.quantity,
                price=e.price,
                time=e.time,
                avg_price=e.avg_price,
            )
            for e in self.executions
        ]
        self._schedule(*replay, ExecutionEndEvent(req_id))

    # Market simulation -------------------------------------------------------

    def open_market(self) -> None:
        """Open the market and fill every queued order at current prices."""
        self.market_open = True
        queued = list(self.open_orders.values())
        self.open_orders.clear()
        for paper in queued:
            price = self.price_of(paper.contract.symbol)
            quantity = float(paper.order.total_quantity)
            execution = self._fill(paper.order_id, paper.contract, paper.order, price)
            self._schedule(
                OrderStatusEvent(paper.order_id, OrderStatus.SUBMITTED.value, 0.0, quantity, 0.0),
                OrderStatusEvent(paper.order_id, OrderStatus.FILLED.value, quantity, 0.0, price),
                execution,
            )
        if queued:
            self._schedule(self._account_value_event())

    def close_market(self) -> None:
        self.market_open = False

    def publish_account_value(self) -> None:
        self._schedule(self._account_value_event())

    @staticmethod
    def _open_order_event(paper: PaperOrder) -> OpenOrderEvent:
        quantity = float(paper.order.total_quantity)
        return OpenOrderEvent(
            order_id=paper.order_id,
            contract=paper.contract,
            order=paper.order,
            state=OrderState(status=paper.status, filled=0.0, remaining=quantity, avg_fill_price=0.0),
        )

    @staticmethod
    def _next_session_open(now: datetime | None = None) -> datetime:
        """Next weekday 09:30, in the broker's local clock."""
        now = now or datetime.now()
        candidate = now.replace(hour=9, minute=30, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        while candidate.weekday() >= 5:
            candidate += timedelta(days=1)
        return candidate
