"""Contracts for broker events, tracked orders and ledger records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
import time


def now_utc() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return current epoch time in milliseconds."""
    return int(time.time() * 1000)


class OrderAction(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(StrEnum):
    """Broker status strings plus the local pre-ack placeholder."""

    SUBMITTING = "Submitting"
    PENDING_SUBMIT = "PendingSubmit"
    PENDING_CANCEL = "PendingCancel"
    PRE_SUBMITTED = "PreSubmitted"
    SUBMITTED = "Submitted"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    INACTIVE = "Inactive"


TERMINAL_STATUSES = frozenset(s.value for s in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.INACTIVE))
ACCEPTED_STATUSES = frozenset(s.value for s in (OrderStatus.SUBMITTED, OrderStatus.PRE_SUBMITTED, OrderStatus.FILLED))
PENDING_STATUSES = frozenset(s.value for s in (OrderStatus.PENDING_SUBMIT, OrderStatus.PRE_SUBMITTED, OrderStatus.SUBMITTED))


class WarningKind(StrEnum):
    MARKET_CLOSED = "market_closed"
    ORDER_HELD = "order_held"


class RejectionKind(StrEnum):
    REJECTED = "rejected"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass(frozen=True, slots=True)
class OrderWarning:
    """Non-fatal broker note attached to an in-flight order."""

    kind: WarningKind
    message: str
    until: str | None = None  # "YYYY-MM-DD HH:MM:SS" as sent by the broker

    def to_dict(self) -> dict[str, Any]:
        return {"kind": str(self.kind), "message": self.message, "until": self.until}


@dataclass(frozen=True, slots=True)
class OrderRejection:
    """Fatal broker refusal for an order."""

    kind: RejectionKind
    reason: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": str(self.kind), "reason": self.reason, "message": self.message}


@dataclass(frozen=True, slots=True)
class Contract:
    symbol: str
    sec_type: str = "STK"
    exchange: str = "SMART"
    currency: str = "USD"


@dataclass(frozen=True, slots=True)
class OrderSpec:
    """Order instruction handed to the broker placement call."""

    action: OrderAction
    total_quantity: int
    order_type: str = "MKT"
    tif: str = "DAY"


@dataclass(frozen=True, slots=True)
class OrderState:
    status: str
    filled: float | None = None
    remaining: float | None = None
    avg_fill_price: float | None = None


# Broker event stream ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OrderStatusEvent:
    """Incremental order status delta."""

    order_id: int
    status: str
    filled: float = 0.0
    remaining: float = 0.0
    avg_fill_price: float = 0.0


@dataclass(frozen=True, slots=True)
class OpenOrderEvent:
    """One open-order snapshot row."""

    order_id: int
    contract: Contract
    order: OrderSpec
    state: OrderState


@dataclass(frozen=True, slots=True)
class OpenOrderEndEvent:
    """End of the open-orders snapshot."""


@dataclass(frozen=True, slots=True)
class ExecutionEvent:
    req_id: int
    execution_id: str
    order_id: int
    symbol: str
    side: str  # BOT / SLD
    quantity: float
    price: float
    time: str  # "YYYYMMDD HH:MM:SS"
    avg_price: float | None = None

    def to_trade_payload(self) -> dict[str, Any]:
        return {
            "id": self.execution_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": self.price,
            "time": self.time,
            "orderId": self.order_id,
        }


@dataclass(frozen=True, slots=True)
class ExecutionEndEvent:
    req_id: int


@dataclass(frozen=True, slots=True)
class BrokerErrorEvent:
    """Error or informational message; `order_id` None or -1 means unscoped."""

    message: str
    code: int | None = None
    order_id: int | None = None

    @property
    def scoped(self) -> bool:
        return self.order_id is not None and self.order_id != -1


@dataclass(frozen=True, slots=True)
class NextValidIdEvent:
    order_id: int


@dataclass(frozen=True, slots=True)
class AccountValueEvent:
    account_id: str
    net_liquidation: float
    cash: float | None = None


# Order tracking --------------------------------------------------------------


@dataclass(slots=True)
class TrackedOrder:
    """Latest known state of one live order."""

    order_id: int
    symbol: str
    action: str
    quantity: float
    order_type: str
    status: str
    filled: float = 0.0
    remaining: float = 0.0
    avg_fill_price: float = 0.0
    last_update: float = 0.0
    sequence: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OrderOutcome:
    """Single resolved result of one order submission."""

    order_id: int
    status: str
    filled: float | None = None
    avg_fill_price: float | None = None
    warning: OrderWarning | None = None
    rejection_reason: str | None = None
    symbol: str | None = None
    action: str | None = None
    quantity: int | None = None
    timed_out: bool = False

    @property
    def accepted(self) -> bool:
        return self.status in ACCEPTED_STATUSES

    @property
    def rejected(self) -> bool:
        return self.status == OrderStatus.INACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "filled": self.filled,
            "avg_fill_price": self.avg_fill_price,
            "warning": self.warning.to_dict() if self.warning else None,
            "rejection_reason": self.rejection_reason,
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True, slots=True)
class CancelResult:
    order_id: int
    status: str = OrderStatus.CANCELLED


# Ledger records --------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TradeRecord:
    """One executed fill as persisted in the trade ledger."""

    id: str
    symbol: str | None = None
    side: str | None = None
    quantity: float | None = None
    price: float | None = None
    time: str | None = None
    order_id: int | None = None

    def sort_key(self) -> tuple[str, str]:
        return (str(self.time or ""), self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": self.price,
            "time": self.time,
            "orderId": self.order_id,
        }


@dataclass(frozen=True, slots=True)
class PortfolioPoint:
    """One (timestamp, net liquidation, cash) sample."""

    ts: int
    net_liquidation: float
    cash: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.ts, "netLiquidation": self.net_liquidation, "cash": self.cash}


@dataclass(slots=True)
class ExecutionBatch:
    """Executions collected for one request id."""

    req_id: int
    records: list[TradeRecord] = field(default_factory=list)
    complete: bool = False
    error: str | None = None
