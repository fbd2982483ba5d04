"""Broker message handling, live order views and account ledgers."""

from .classifier import (
    Classification,
    MessageCategory,
    MessageClassifier,
    PatternTable,
    classify_message,
    humanize_warning,
    is_informational_code,
)
from .contracts import (
    AccountValueEvent,
    BrokerErrorEvent,
    CancelResult,
    Contract,
    ExecutionBatch,
    ExecutionEndEvent,
    ExecutionEvent,
    NextValidIdEvent,
    OpenOrderEndEvent,
    OpenOrderEvent,
    OrderAction,
    OrderOutcome,
    OrderRejection,
    OrderSpec,
    OrderState,
    OrderStatus,
    OrderStatusEvent,
    OrderWarning,
    PortfolioPoint,
    TrackedOrder,
    TradeRecord,
    now_utc,
)
from .errors import BrokerOrderError, CancelTimeoutError, FolioError, NotConnectedError, OrderIdTimeoutError
from .history import PortfolioLedger, TradeLedger, merge_unique_by_id, synthetic_trade_id
from .jsonl_store import SerialAppendWriter, read_jsonl
from .registry import OpenOrdersRegistry

__all__ = [
    "AccountValueEvent",
    "BrokerErrorEvent",
    "BrokerOrderError",
    "CancelResult",
    "CancelTimeoutError",
    "Classification",
    "Contract",
    "ExecutionBatch",
    "ExecutionEndEvent",
    "ExecutionEvent",
    "FolioError",
    "MessageCategory",
    "MessageClassifier",
    "NextValidIdEvent",
    "NotConnectedError",
    "OpenOrderEndEvent",
    "OpenOrderEvent",
    "OpenOrdersRegistry",
    "OrderAction",
    "OrderIdTimeoutError",
    "OrderOutcome",
    "OrderRejection",
    "OrderSpec",
    "OrderState",
    "OrderStatus",
    "OrderStatusEvent",
    "OrderWarning",
    "PatternTable",
    "PortfolioLedger",
    "PortfolioPoint",
    "SerialAppendWriter",
    "TrackedOrder",
    "TradeLedger",
    "TradeRecord",
    "classify_message",
    "humanize_warning",
    "is_informational_code",
    "merge_unique_by_id",
    "now_utc",
    "read_jsonl",
    "synthetic_trade_id",
]
