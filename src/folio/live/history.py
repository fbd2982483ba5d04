"""Durable, deduplicated trade and portfolio-value ledgers."""

from __future__ import annotations

from bisect import bisect_left
from pathlib import Path
from typing import Any, Callable, Iterable
import hashlib
import json
import math

import pandas as pd
from loguru import logger

from folio.config import HistoryConfig

from .contracts import OrderOutcome, PortfolioPoint, TradeRecord, now_ms
from .jsonl_store import (
    DEFAULT_BASE_DIR,
    SerialAppendWriter,
    executions_history_path,
    portfolio_history_path,
    read_jsonl,
)

_ID_FIELDS = ("id", "execId", "execution_id")
_SYNTHETIC_PREFIX = "order:"


def synthetic_trade_id(payload: dict[str, Any]) -> str:
    """Deterministic id for fills that carry no broker execution id."""
    order_id = payload.get("orderId", payload.get("order_id"))
    raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    digest = hashlib.sha256(raw).hexdigest()[:16]
    if order_id not in (None, ""):
        return f"{_SYNTHETIC_PREFIX}{order_id}:{digest}"
    return f"hash:{digest}"


def is_synthetic(trade: TradeRecord) -> bool:
    """True for a fill recorded from an order outcome rather than an execution report."""
    return trade.id.startswith(_SYNTHETIC_PREFIX)


def normalize_trade(raw: dict[str, Any] | TradeRecord | None) -> TradeRecord | None:
    """Return a `TradeRecord`, or None when the row has no stable identity."""
    if raw is None:
        return None
    if isinstance(raw, TradeRecord):
        return raw
    trade_id = next((raw.get(k) for k in _ID_FIELDS if raw.get(k) not in (None, "")), None)
    if trade_id is None:
        return None
    time = raw.get("time")
    return TradeRecord(
        id=str(trade_id),
        symbol=raw.get("symbol"),
        side=raw.get("side"),
        quantity=raw.get("quantity"),
        price=raw.get("price"),
        time=None if time in (None, "") else str(time),
        order_id=raw.get("orderId", raw.get("order_id")),
    )


def _drop_superseded(by_id: dict[str, TradeRecord]) -> list[TradeRecord]:
    """Remove synthetic fills for orders that also have a broker execution."""
    executed = {t.order_id for t in by_id.values() if t.order_id is not None and not is_synthetic(t)}
    dropped = [t for t in by_id.values() if is_synthetic(t) and t.order_id in executed]
    for trade in dropped:
        del by_id[trade.id]
    return dropped


def merge_unique_by_id(
    existing: Iterable[dict[str, Any] | TradeRecord],
    incoming: Iterable[dict[str, Any] | TradeRecord],
) -> list[TradeRecord]:
    """
    Merge two trade lists; later rows win per id; sorted by (time, id).

    A synthetic fill is dropped once an execution report for the same order
    is present, so one fill never appears under two ids.
    """
    merged: dict[str, TradeRecord] = {}
    for row in [*existing, *incoming]:
        trade = normalize_trade(row)
        if trade is not None:
            merged[trade.id] = trade
    _drop_superseded(merged)
    return sorted(merged.values(), key=TradeRecord.sort_key)


class TradeLedger:
    """Append-only per-account log of executed fills."""

    def __init__(
        self,
        account_id: str | None,
        base_dir: str | Path = DEFAULT_BASE_DIR,
        writer: SerialAppendWriter | None = None,
    ) -> None:
        self.account_id = account_id
        self.path = executions_history_path(account_id, base_dir)
        self.writer = writer or SerialAppendWriter(self.path)
        self._by_id: dict[str, TradeRecord] = {}
        self._sorted: list[TradeRecord] = []
        self.loaded = False

    def load(self) -> list[TradeRecord]:
        try:
            rows = read_jsonl(self.path)
        except OSError as exc:
            logger.warning(f"Failed to load trades from {self.path}: {exc}")
            rows = []
        self._sorted = merge_unique_by_id([], rows)
        self._by_id = {t.id: t for t in self._sorted}
        self.loaded = True
        logger.debug(f"Loaded {len(self._sorted)} trades for {self.account_id}")
        return self.trades

    @property
    def trades(self) -> list[TradeRecord]:
        return list(self._sorted)

    def __len__(self) -> int:
        return len(self._sorted)

    def __contains__(self, trade_id: object) -> bool:
        return trade_id in self._by_id

    def append(self, record: dict[str, Any] | TradeRecord) -> bool:
        """
        Add or replace one trade; returns False for a bad row or an exact repeat.

        An execution report replaces any synthetic fill recorded for the same
        order, and a synthetic fill for an order that already has one is skipped.
        """
        trade = normalize_trade(record)
        if trade is None:
            return False
        if is_synthetic(trade) and self.has_execution(trade.order_id):
            return False
        known = self._by_id.get(trade.id)
        if known == trade:
            return False
        self._by_id[trade.id] = trade
        dropped = _drop_superseded(self._by_id)
        for stale in dropped:
            logger.debug(f"Execution {trade.id} supersedes synthetic fill {stale.id}")
        if known is None and not dropped:
            self._sorted.insert(bisect_left(self._sorted, trade.sort_key(), key=TradeRecord.sort_key), trade)
        else:
            self._sorted = sorted(self._by_id.values(), key=TradeRecord.sort_key)
        self.writer.submit(trade.to_dict())
        return True

    def has_execution(self, order_id: int | None) -> bool:
        """True when a broker execution report is stored for `order_id`."""
        if order_id is None:
            return False
        return any(t.order_id == order_id and not is_synthetic(t) for t in self._sorted)

    def merge(self, records: Iterable[dict[str, Any] | TradeRecord]) -> int:
        return sum(1 for record in records if self.append(record))

    def record_outcome(self, outcome: OrderOutcome, time: str | None = None) -> TradeRecord | None:
        """Persist a filled outcome that has no broker execution report yet."""
        if not outcome.filled or outcome.avg_fill_price is None:
            return None
        payload = {
            "symbol": outcome.symbol,
            "side": outcome.action,
            "quantity": outcome.filled,
            "price": outcome.avg_fill_price,
            "time": time or pd.Timestamp.now(tz="UTC").strftime("%Y%m%d %H:%M:%S"),
            "orderId": outcome.order_id,
        }
        payload["id"] = synthetic_trade_id(payload)
        trade = normalize_trade(payload)
        self.append(trade)
        return trade

    def for_symbol(self, symbol: str) -> list[TradeRecord]:
        return [t for t in self._sorted if t.symbol == symbol]

    def first_purchase_time(self, symbol: str) -> str | None:
        buys = [t for t in self.for_symbol(symbol) if (t.side or "").upper() in {"BOT", "BUY"}]
        return buys[0].time if buys else None

    def as_frame(self) -> pd.DataFrame:
        columns = ["id", "symbol", "side", "quantity", "price", "time", "orderId"]
        return pd.DataFrame([t.to_dict() for t in self._sorted], columns=columns)


def normalize_point(raw: dict[str, Any] | PortfolioPoint | None) -> PortfolioPoint | None:
    """Return a finite `PortfolioPoint` or None."""
    if raw is None:
        return None
    if isinstance(raw, PortfolioPoint):
        raw = raw.to_dict()
    try:
        ts = float(raw.get("ts"))
        net = float(raw.get("netLiquidation", raw.get("net_liquidation")))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(ts) or not math.isfinite(net):
        return None
    cash_raw = raw.get("cash")
    cash: float | None
    try:
        cash = None if cash_raw is None else float(cash_raw)
    except (TypeError, ValueError):
        cash = None
    if cash is not None and not math.isfinite(cash):
        cash = None
    return PortfolioPoint(ts=int(ts), net_liquidation=net, cash=cash)


def dedupe_and_sort(points: Iterable[dict[str, Any] | PortfolioPoint]) -> list[PortfolioPoint]:
    by_ts: dict[int, PortfolioPoint] = {}
    for raw in points:
        point = normalize_point(raw)
        if point is not None:
            by_ts[point.ts] = point
    return [by_ts[ts] for ts in sorted(by_ts)]


class PortfolioLedger:
    """Throttled per-account log of net liquidation samples."""

    def __init__(
        self,
        account_id: str | None,
        base_dir: str | Path | None = None,
        config: HistoryConfig | None = None,
        clock: Callable[[], int] = now_ms,
        writer: SerialAppendWriter | None = None,
    ) -> None:
        self.config = config or HistoryConfig()
        self.account_id = account_id
        self.path = portfolio_history_path(account_id, base_dir or self.config.resolved_base_dir)
        self.clock = clock
        self.writer = writer or SerialAppendWriter(self.path)
        self._points: list[PortfolioPoint] = []
        self.loaded = False

    def load(self) -> list[PortfolioPoint]:
        try:
            rows = read_jsonl(self.path)
        except OSError as exc:
            logger.warning(f"Failed to load portfolio history from {self.path}: {exc}")
            rows = []
        self._points = dedupe_and_sort(rows)
        self._trim()
        self.loaded = True
        logger.debug(f"Loaded {len(self._points)} portfolio points for {self.account_id}")
        return self.points

    @property
    def points(self) -> list[PortfolioPoint]:
        return list(self._points)

    @property
    def last(self) -> PortfolioPoint | None:
        return self._points[-1] if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def _trim(self) -> None:
        overflow = len(self._points) - self.config.max_points
        if overflow > 0:
            del self._points[:overflow]

    def append_point(self, raw: dict[str, Any] | PortfolioPoint) -> bool:
        """Store one point; a later write at an existing `ts` replaces it."""
        point = normalize_point(raw)
        if point is None:
            return False
        idx = bisect_left(self._points, point.ts, key=lambda p: p.ts)
        if idx < len(self._points) and self._points[idx].ts == point.ts:
            if self._points[idx] == point:
                return False
            self._points[idx] = point
        else:
            self._points.insert(idx, point)
            self._trim()
        self.writer.submit(point.to_dict())
        return True

    def should_record(self, net_liquidation: float, now_ms: int) -> bool:
        last = self.last
        if last is None:
            return True
        elapsed_ms = now_ms - last.ts
        threshold = max(self.config.min_abs_move, abs(last.net_liquidation) * self.config.min_rel_move)
        moved = abs(net_liquidation - last.net_liquidation)
        return elapsed_ms >= self.config.min_interval_seconds * 1000 or moved >= threshold

    def record(self, net_liquidation: float, cash: float | None = None, now_ms: int | None = None) -> bool:
        """Record a sample unless it is too soon and too small a move."""
        if not _positive_finite(net_liquidation):
            return False
        ts = self.clock() if now_ms is None else now_ms
        if not self.should_record(net_liquidation, ts):
            return False
        return self.append_point(PortfolioPoint(ts=ts, net_liquidation=net_liquidation, cash=_finite_or_none(cash)))

    def seed_if_sparse(self, net_liquidation: float, cash: float | None = None, now_ms: int | None = None) -> bool:
        """Guarantee two distinct timestamps so a chart has something to draw."""
        if not _positive_finite(net_liquidation) or len(self._points) >= 2:
            return False
        ts = self.clock() if now_ms is None else now_ms
        offset_ms = int(self.config.seed_offset_seconds * 1000)
        current = PortfolioPoint(ts=ts, net_liquidation=net_liquidation, cash=_finite_or_none(cash))
        if not self._points:
            earlier = PortfolioPoint(ts=ts - offset_ms, net_liquidation=net_liquidation, cash=current.cash)
        else:
            first = self._points[0]
            earlier = PortfolioPoint(
                ts=min(first.ts, ts - offset_ms),
                net_liquidation=first.net_liquidation,
                cash=first.cash,
            )
            if earlier.ts != first.ts:
                self._points.clear()
        self.append_point(earlier)
        self.append_point(current)
        return len(self._points) >= 2

    def as_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            [p.to_dict() for p in self._points], columns=["ts", "netLiquidation", "cash"]
        )
        frame["time"] = pd.to_datetime(frame["ts"], unit="ms", utc=True)
        return frame.set_index("time")


def _positive_finite(value: float | None) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value) and value > 0


def _finite_or_none(value: float | None) -> float | None:
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None
