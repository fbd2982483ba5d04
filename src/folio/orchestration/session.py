"""Broker session wiring: tracker, registry and ledgers over one connection."""

from __future__ import annotations

import asyncio

from loguru import logger

from folio.config import FolioConfig
from folio.execution.broker_gateway import BrokerConnection, Subscription
from folio.execution.tracker import OrderTracker
from folio.live.classifier import is_informational_code
from folio.live.contracts import (
    AccountValueEvent,
    BrokerErrorEvent,
    CancelResult,
    ExecutionBatch,
    ExecutionEndEvent,
    ExecutionEvent,
    OrderAction,
    OrderOutcome,
    OrderStatus,
    TrackedOrder,
)
from folio.live.errors import NotConnectedError
from folio.live.history import PortfolioLedger, TradeLedger, normalize_trade
from folio.live.registry import OpenOrdersRegistry

EXECUTIONS_REQ_ID = 8001


class BrokerSession:
    """Production session orchestrator for one broker account."""

    def __init__(
        self,
        broker: BrokerConnection,
        config: FolioConfig | None = None,
        account_id: str | None = None,
    ) -> None:
        self.broker = broker
        self.config = config or FolioConfig()
        self.account_id = account_id or self.config.account_id
        self.tracker = OrderTracker(broker, self.config.orders)
        self.registry = OpenOrdersRegistry(broker, self.config.registry)
        self.trades: TradeLedger | None = None
        self.portfolio: PortfolioLedger | None = None
        self._subscriptions: list[Subscription] = []
        self._executed_orders: set[int] = set()

    async def __aenter__(self) -> "BrokerSession":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    async def start(self) -> "BrokerSession":
        if self.started:
            return self
        if not self.broker.is_connected():
            await asyncio.wait_for(self.broker.connect(), self.config.broker.connect_timeout_seconds)
        self.account_id = self.account_id or self.broker.account_id
        base_dir = self.config.history.resolved_base_dir
        self.trades = TradeLedger(self.account_id, base_dir)
        self.portfolio = PortfolioLedger(self.account_id, base_dir, config=self.config.history)
        self.trades.load()
        self.portfolio.load()
        self._executed_orders = {t.order_id for t in self.trades.trades if t.order_id is not None}

        events = self.broker.events
        self._subscriptions = [
            events.on(ExecutionEvent, self._on_execution, where=lambda e: e.req_id != EXECUTIONS_REQ_ID),
            events.on(AccountValueEvent, self._on_account_value),
        ]
        self.registry.start()
        logger.info(
            f"Session started for {self.account_id}: {len(self.trades)} trades, "
            f"{len(self.portfolio)} portfolio points"
        )
        return self

    async def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self.registry.stop()
        for ledger in (self.trades, self.portfolio):
            if ledger is not None:
                await ledger.writer.close()
        logger.info(f"Session closed for {self.account_id}")

    # Event handlers ----------------------------------------------------------

    def _on_execution(self, event: ExecutionEvent) -> None:
        self._executed_orders.add(event.order_id)
        if self.trades is not None and self.trades.append(event.to_trade_payload()):
            logger.info(f"Execution {event.execution_id}: {event.side} {event.quantity:g} {event.symbol} @ {event.price}")

    def _on_account_value(self, event: AccountValueEvent) -> None:
        if self.portfolio is None:
            return
        if self.account_id and event.account_id and event.account_id != self.account_id:
            return
        if len(self.portfolio) < 2:
            self.portfolio.seed_if_sparse(event.net_liquidation, event.cash)
        else:
            self.portfolio.record(event.net_liquidation, event.cash)

    # Commands ----------------------------------------------------------------

    async def fetch_executions(self, timeout: float | None = None) -> ExecutionBatch:
        """Request today's executions; partial results survive a timeout."""
        if not self.broker.is_connected():
            raise NotConnectedError("Not connected")
        timeout = self.config.registry.executions_timeout_seconds if timeout is None else timeout
        batch = ExecutionBatch(req_id=EXECUTIONS_REQ_ID)
        done = asyncio.get_running_loop().create_future()

        def on_execution(event: ExecutionEvent) -> None:
            trade = normalize_trade(event.to_trade_payload())
            if trade is not None:
                batch.records.append(trade)

        def on_end(event: ExecutionEndEvent) -> None:
            batch.complete = True
            if not done.done():
                done.set_result(None)

        def on_error(event: BrokerErrorEvent) -> None:
            if is_informational_code(event.code):
                return
            if event.scoped and event.order_id != EXECUTIONS_REQ_ID:
                return
            logger.warning(f"Error fetching executions: {event.message} (code={event.code})")
            batch.error = event.message or "Error fetching activity"
            if not done.done():
                done.set_result(None)

        events = self.broker.events
        subs = [
            events.on(ExecutionEvent, on_execution, where=lambda e: e.req_id == EXECUTIONS_REQ_ID),
            events.on(ExecutionEndEvent, on_end, where=lambda e: e.req_id == EXECUTIONS_REQ_ID),
            events.on(BrokerErrorEvent, on_error),
        ]
        try:
            self.broker.request_executions(EXECUTIONS_REQ_ID)
            await asyncio.wait_for(done, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout fetching executions; keeping {len(batch.records)} received")
        finally:
            for sub in subs:
                sub.unsubscribe()

        batch.records.sort(key=lambda t: t.time or "", reverse=True)
        if self.trades is not None and batch.error is None:
            self.trades.merge(batch.records)
        return batch

    async def submit_order(self, symbol: str, action: OrderAction | str, quantity: int, **kwargs) -> OrderOutcome:
        outcome = await self.tracker.submit_order(symbol, action, quantity, **kwargs)
        self._record_fill(outcome)
        return outcome

    async def buy(self, symbol: str, quantity: int, **kwargs) -> OrderOutcome:
        return await self.submit_order(symbol, OrderAction.BUY, quantity, **kwargs)

    async def sell(self, symbol: str, quantity: int, **kwargs) -> OrderOutcome:
        return await self.submit_order(symbol, OrderAction.SELL, quantity, **kwargs)

    def _record_fill(self, outcome: OrderOutcome) -> None:
        # Fills already reported as executions are in the ledger under their broker id.
        if self.trades is None or outcome.status != OrderStatus.FILLED:
            return
        if outcome.order_id in self._executed_orders:
            return
        self.trades.record_outcome(outcome)

    async def cancel_order(self, order_id: int) -> CancelResult:
        return await self.registry.cancel_order(order_id)

    def pending_orders(self) -> list[TrackedOrder]:
        return self.registry.pending_orders()
