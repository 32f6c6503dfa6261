from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from chainsignals.db.meta import LAST_SIGNAL_ID_SYNCED, get_meta_int, set_meta
from chainsignals.db.models import SignalRecord, Strategy, StrategyHolding, StrategyPositionSnapshot
from chainsignals.performance.allocation import (
    Position,
    SignalInput,
    SnapshotPosition,
    approximate_positions,
    contract_direction,
    is_seed_state,
    positions_from_holdings,
)
from chainsignals.performance.assets import USD, normalize_symbol
from chainsignals.performance.replay import PositionSnapshot
from chainsignals.services.segment_engine import upsert_position_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainSignalRecord:
    """One entry of the contract's signal array, as returned by ``getSignalsRange``."""

    trader: str
    strategy: str
    asset: str
    message: str
    target: int
    leverage: int
    weight: int
    timestamp: int


class SignalSource(Protocol):
    def get_signals_count(self) -> int: ...

    def get_signals_range(self, start: int, end: int) -> list[ChainSignalRecord]: ...


def _get_or_create_strategy(db: Session, trader: str, name: str, ts: int) -> Strategy:
    strategy = (
        db.query(Strategy)
        .filter(Strategy.trader_address == trader, Strategy.strategy_name == name)
        .first()
    )
    if strategy is None:
        strategy = Strategy(
            trader_address=trader,
            strategy_name=name,
            first_signal_ts=ts,
            last_signal_ts=ts,
            num_signals=1,
            last_value_index=1.0,
            last_segment_end_ts=None,
            is_liquidated=False,
        )
        db.add(strategy)
        db.flush()
        return strategy
    strategy.last_signal_ts = max(int(strategy.last_signal_ts), ts)
    strategy.num_signals = int(strategy.num_signals or 0) + 1
    return strategy


def _only_full_cash(positions: list[SnapshotPosition]) -> bool:
    live = [p for p in positions if p.percent > 0]
    return len(live) == 1 and live[0].asset == USD and abs(live[0].percent - 100.0) < 1e-6


def _approximate_base(db: Session, strategy: Strategy) -> tuple[list[SnapshotPosition], bool]:
    """Best known allocation before a new signal, and whether it is the untouched seed."""
    latest = (
        db.query(StrategyPositionSnapshot)
        .filter(StrategyPositionSnapshot.strategy_id == strategy.id)
        .order_by(StrategyPositionSnapshot.signal_ts.desc())
        .first()
    )
    holdings = {
        row.asset_symbol: Position(float(row.value), int(row.direction), int(row.leverage), bool(row.is_usd))
        for row in db.query(StrategyHolding).filter(StrategyHolding.strategy_id == strategy.id).all()
        if row.value > 0
    }
    watermark = strategy.last_segment_end_ts
    if holdings and watermark is not None and (latest is None or watermark >= latest.signal_ts):
        return positions_from_holdings(holdings), is_seed_state(holdings)
    if latest is not None:
        items = json.loads(latest.positions_json or "[]")
        positions = [SnapshotPosition.from_dict(item) for item in items if isinstance(item, dict)]
        # Before any replay, an all-cash snapshot is still the seeded unit of cash.
        return positions, watermark is None and _only_full_cash(positions)
    return [SnapshotPosition(asset=USD, percent=100.0, direction="CASH", leverage=1)], True


def _ingest_signal(db: Session, signal_id: int, record: ChainSignalRecord) -> bool:
    if db.get(SignalRecord, signal_id) is not None:
        return False
    trader = str(record.trader).lower()
    asset = normalize_symbol(record.asset)
    direction = contract_direction(record.target)
    ts = int(record.timestamp)
    message = record.message or None
    db.add(
        SignalRecord(
            id=signal_id,
            trader=trader,
            strategy_name=record.strategy,
            asset_symbol=asset,
            direction=direction,
            leverage=int(record.leverage),
            weight_raw=int(record.weight),
            message=message,
            timestamp=ts,
        )
    )
    strategy = _get_or_create_strategy(db, trader, record.strategy, ts)

    signal = SignalInput.from_raw(asset, direction, record.leverage, record.weight)
    if not signal.supported:
        logger.warning("event=signal_asset_unsupported signal_id=%s asset=%s", signal_id, asset)
        return True
    base, first_position = _approximate_base(db, strategy)
    positions = approximate_positions(base, signal, first_position)
    upsert_position_snapshot(db, strategy.id, PositionSnapshot(signal_ts=ts, positions=positions, message=message))
    return True


def sync_signals(db: Session, source: SignalSource, batch_size: int = 200) -> bool:
    """Pull signals past the stored cursor; returns True when anything new was stored.

    Each batch (signals, strategy counters, approximate snapshots and the cursor)
    commits as one unit. Segment extension is never triggered from here.
    """
    last_synced = get_meta_int(db, LAST_SIGNAL_ID_SYNCED, -1)
    count = int(source.get_signals_count())
    start = last_synced + 1
    if count <= start:
        return False

    stored_any = False
    batch_size = max(1, int(batch_size))
    while start < count:
        end = min(start + batch_size, count)
        records = source.get_signals_range(start, end)
        if not records:
            logger.warning("event=signal_batch_empty from=%s to=%s", start, end)
            break
        try:
            stored = 0
            for offset, record in enumerate(records):
                if _ingest_signal(db, start + offset, record):
                    stored += 1
            set_meta(db, LAST_SIGNAL_ID_SYNCED, start + len(records) - 1)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("event=signals_synced from=%s to=%s stored=%s", start, start + len(records), stored)
        stored_any = stored_any or stored > 0
        start += len(records)
    return stored_any
