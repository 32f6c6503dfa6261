from __future__ import annotations

import argparse
import asyncio
import logging
import time

import pandas as pd

from chainsignals.config.settings import get_settings
from chainsignals.db.database import SessionLocal, init_db
from chainsignals.performance.prices import hour_floor
from chainsignals.services.price_backfill import PriceBackfillService
from chainsignals.services.segment_engine import extend_all_strategy_segments, recompute_all_strategy_stats
from chainsignals.services.strategy_queries import leaderboard, normalize_window_param

LEADERBOARD_COLUMNS = [
    "id",
    "trader",
    "strategyName",
    "numSignals",
    "sharpeAnnual",
    "volAnnual",
    "totalReturn",
    "maxDrawdown",
    "lastSegmentEndTs",
]


def _sync(batch_size: int) -> bool:
    from chainsignals.services.chain_client import ChainSignalsClient
    from chainsignals.services.signal_sync import sync_signals

    db = SessionLocal()
    try:
        return sync_signals(db, ChainSignalsClient.from_settings(get_settings()), batch_size=batch_size)
    finally:
        db.close()


async def _backfill(to_ts: int) -> int | None:
    service = PriceBackfillService(SessionLocal)
    try:
        return await service.backfill(to_ts)
    finally:
        await service.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one sync/backfill/replay/stats pass and print the leaderboard.")
    parser.add_argument("--window", default="1M", help="Stats window: 1W, 1M, 3M, 6M, 1Y or ALL.")
    parser.add_argument("--skip-sync", action="store_true", help="Do not read new signals from the chain.")
    parser.add_argument("--skip-prices", action="store_true", help="Do not call the price API.")
    parser.add_argument("--to-ts", type=int, default=0, help="Backfill prices up to this unix time (default: current hour).")
    parser.add_argument("--batch-size", type=int, default=get_settings().signal_batch_size)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    init_db()

    if not args.skip_sync:
        _sync(args.batch_size)
    if not args.skip_prices:
        asyncio.run(_backfill(args.to_ts or hour_floor(time.time())))

    db = SessionLocal()
    try:
        extend_all_strategy_segments(db)
        recompute_all_strategy_stats(db, int(time.time()))
        rows = leaderboard(db, args.window)
    finally:
        db.close()

    window = normalize_window_param(args.window)
    if not rows:
        print(f"No strategies yet (window={window}).")
        return
    frame = pd.DataFrame(rows, columns=LEADERBOARD_COLUMNS)
    print(f"Leaderboard window={window}")
    print(frame.to_string(index=False))


if __name__ == "__main__":
    main()
