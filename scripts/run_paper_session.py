"""Run a paper broker session: buy, queue an after-hours order, cancel it, list activity."""

from __future__ import annotations

import argparse
import asyncio

from folio.config import FolioConfig, load_config
from folio.execution import PaperBrokerConnection
from folio.live import humanize_warning
from folio.logging_utils import setup_logging_from_config
from folio.orchestration import BrokerSession


async def run(config: FolioConfig, symbol: str, quantity: int, price: float) -> None:
    broker = PaperBrokerConnection(
        account_id=config.account_id or "DU0000000",
        prices={symbol: price},
        latency=0.05,
        audit_path="outputs/paper_broker_audit.jsonl",
    )
    async with BrokerSession(broker, config) as session:
        outcome = await session.buy(symbol, quantity, wait_for_fill=True)
        print("Buy:", outcome.to_dict())

        broker.close_market()
        queued = await session.buy(symbol, quantity)
        print("Queued:", queued.status, humanize_warning(queued.warning))
        await session.registry.wait_until_loaded()
        for order in session.pending_orders():
            print("Pending:", order.to_dict())

        cancelled = await session.cancel_order(queued.order_id)
        print("Cancelled:", cancelled)

        batch = await session.fetch_executions()
        print(f"Executions today: {len(batch.records)} (complete={batch.complete})")
        for trade in batch.records:
            print(trade.to_dict())
        print(session.trades.as_frame().tail())


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a paper broker session.")
    parser.add_argument("--config", default=None, help="YAML config path.")
    parser.add_argument("--symbol", default="AAPL")
    parser.add_argument("--quantity", type=int, default=10)
    parser.add_argument("--price", type=float, default=190.0)
    args = parser.parse_args()

    config = load_config(args.config) if args.config else FolioConfig()
    setup_logging_from_config(config.logging)
    asyncio.run(run(config, args.symbol.upper(), args.quantity, args.price))


if __name__ == "__main__":
    main()
