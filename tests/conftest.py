from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from folio.config import FolioConfig, HistoryConfig, OrderConfig, RegistryConfig
from folio.execution.broker_gateway import BrokerConnection
from folio.live.contracts import Contract, NextValidIdEvent, OrderSpec


class ScriptedBroker(BrokerConnection):
    """Fake broker that records commands and replays scripted events on the loop."""

    def __init__(self, connected: bool = True, next_id: int = 100, answer_ids: bool = True) -> None:
        super().__init__()
        self.connected = connected
        self.account_id = "DU123"
        self.next_id = next_id
        self.answer_ids = answer_ids
        self.placed: list[tuple[int, Contract, OrderSpec]] = []
        self.cancelled: list[int] = []
        self.open_order_requests = 0
        self.execution_requests: list[int] = []
        self.on_place: Callable[[int, Contract, OrderSpec], list] | None = None
        self.on_cancel: Callable[[int], list] | None = None
        self.on_open_orders: Callable[[], list] | None = None
        self.on_executions: Callable[[int], list] | None = None

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def emit(self, *events: object) -> None:
        for event in events:
            self.events.emit(event)

    def emit_soon(self, *events: object) -> None:
        if events:
            asyncio.get_running_loop().call_soon(self.emit, *events)

    def emit_later(self, delay: float, *events: object) -> None:
        asyncio.get_running_loop().call_later(delay, self.emit, *events)

    def request_ids(self) -> None:
        if not self.answer_ids:
            return
        order_id = self.next_id
        self.next_id += 1
        self.emit_soon(NextValidIdEvent(order_id))

    def place_order(self, order_id: int, contract: Contract, order: OrderSpec) -> None:
        self.placed.append((order_id, contract, order))
        if self.on_place is not None:
            self.emit_soon(*self.on_place(order_id, contract, order))

    def cancel_order(self, order_id: int) -> None:
        self.cancelled.append(order_id)
        if self.on_cancel is not None:
            self.emit_soon(*self.on_cancel(order_id))

    def request_open_orders(self) -> None:
        self.open_order_requests += 1
        if self.on_open_orders is not None:
            self.emit_soon(*self.on_open_orders())

    def request_executions(self, req_id: int) -> None:
        self.execution_requests.append(req_id)
        if self.on_executions is not None:
            self.emit_soon(*self.on_executions(req_id))


@pytest.fixture
def broker() -> ScriptedBroker:
    return ScriptedBroker()


@pytest.fixture
def fast_orders() -> OrderConfig:
    return OrderConfig(submit_timeout_seconds=0.2, order_id_timeout_seconds=0.1)


@pytest.fixture
def fast_registry() -> RegistryConfig:
    return RegistryConfig(cancel_timeout_seconds=0.2, open_orders_timeout_seconds=0.2, executions_timeout_seconds=0.2)


@pytest.fixture
def fast_config(tmp_path, fast_orders, fast_registry) -> FolioConfig:
    return FolioConfig(
        orders=fast_orders,
        registry=fast_registry,
        history=HistoryConfig(base_dir=str(tmp_path / "folio")),
    )
