from __future__ import annotations

import json
import logging
import time
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from chainsignals.config.settings import get_settings
from chainsignals.db.models import (
    Price,
    SignalRecord,
    Strategy,
    StrategyHolding,
    StrategyPositionSnapshot,
    StrategySegment,
    StrategyStats,
)
from chainsignals.performance.allocation import Holdings, Position, SignalInput
from chainsignals.performance.prices import PriceBook
from chainsignals.performance.replay import (
    PositionSnapshot,
    ReplayResult,
    ReplaySignal,
    StrategyReplayState,
    replay_strategy,
)
from chainsignals.performance.stats import compute_all_window_stats

logger = logging.getLogger(__name__)


def load_price_book(db: Session) -> PriceBook:
    rows = db.query(Price.asset_symbol, Price.timestamp, Price.price_usd).all()
    return PriceBook.from_rows(rows)


def _load_state(db: Session, strategy: Strategy) -> StrategyReplayState:
    holdings: Holdings = {}
    for row in db.query(StrategyHolding).filter(StrategyHolding.strategy_id == strategy.id).all():
        holdings[row.asset_symbol] = Position(
            value=float(row.value),
            direction=int(row.direction),
            leverage=int(row.leverage),
            is_usd=bool(row.is_usd),
        )
    return StrategyReplayState(
        holdings=holdings,
        last_value_index=float(strategy.last_value_index if strategy.last_value_index is not None else 1.0),
        last_segment_end_ts=strategy.last_segment_end_ts,
    )


def _load_signals(db: Session, strategy: Strategy) -> list[ReplaySignal]:
    q = db.query(SignalRecord).filter(
        SignalRecord.trader == strategy.trader_address,
        SignalRecord.strategy_name == strategy.strategy_name,
    )
    if strategy.last_segment_end_ts is not None:
        q = q.filter(SignalRecord.timestamp > strategy.last_segment_end_ts)
    rows = q.order_by(SignalRecord.timestamp.asc(), SignalRecord.id.asc()).all()
    return [
        ReplaySignal(
            signal_id=row.id,
            timestamp=int(row.timestamp),
            signal=SignalInput.from_raw(row.asset_symbol, row.direction, row.leverage, row.weight_raw),
            message=row.message,
        )
        for row in rows
    ]


def upsert_position_snapshot(db: Session, strategy_id: int, snapshot: PositionSnapshot) -> None:
    payload = json.dumps([p.to_dict() for p in snapshot.positions])
    row = (
        db.query(StrategyPositionSnapshot)
        .filter(
            StrategyPositionSnapshot.strategy_id == strategy_id,
            StrategyPositionSnapshot.signal_ts == snapshot.signal_ts,
        )
        .first()
    )
    if row is None:
        db.add(
            StrategyPositionSnapshot(
                strategy_id=strategy_id,
                signal_ts=snapshot.signal_ts,
                positions_json=payload,
                message=snapshot.message,
            )
        )
        db.flush()
        return
    row.positions_json = payload
    if snapshot.message:
        row.message = snapshot.message


def _persist_replay(db: Session, strategy: Strategy, result: ReplayResult) -> int:
    written = 0
    if result.segments:
        first_start = min(seg.start_ts for seg in result.segments)
        existing = {
            (int(start), int(end))
            for start, end in db.query(StrategySegment.start_ts, StrategySegment.end_ts)
            .filter(StrategySegment.strategy_id == strategy.id, StrategySegment.start_ts >= first_start)
            .all()
        }
        for seg in result.segments:
            if (seg.start_ts, seg.end_ts) in existing:
                continue
            db.add(
                StrategySegment(
                    strategy_id=strategy.id,
                    start_ts=seg.start_ts,
                    end_ts=seg.end_ts,
                    duration_sec=seg.duration_sec,
                    raw_return=seg.raw_return,
                    hourly_equiv_ret=seg.hourly_equiv_ret,
                    value_index_end=seg.value_index_end,
                )
            )
            existing.add((seg.start_ts, seg.end_ts))
            written += 1

    for snapshot in result.snapshots:
        upsert_position_snapshot(db, strategy.id, snapshot)

    for row in db.query(StrategyHolding).filter(StrategyHolding.strategy_id == strategy.id).all():
        db.delete(row)
    db.flush()
    for asset, pos in result.state.holdings.items():
        db.add(
            StrategyHolding(
                strategy_id=strategy.id,
                asset_symbol=asset,
                value=pos.value,
                direction=pos.direction,
                leverage=pos.leverage,
                is_usd=pos.is_usd,
            )
        )

    strategy.last_value_index = result.state.last_value_index
    strategy.last_segment_end_ts = result.state.last_segment_end_ts
    db.flush()
    return written


def extend_strategy_segments(db: Session, strategy: Strategy, price_book: PriceBook, grid: list[int]) -> int:
    """Replay one strategy forward and commit segments, holdings and watermark together."""
    state = _load_state(db, strategy)
    signals = _load_signals(db, strategy)
    result = replay_strategy(state, signals, price_book, grid, int(strategy.first_signal_ts))
    if not result.segments:
        return 0
    try:
        written = _persist_replay(db, strategy, result)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return written


def extend_all_strategy_segments(db: Session) -> dict[str, int]:
    price_book = load_price_book(db)
    grid = price_book.hourly_grid()
    summary = {"strategies": 0, "segments": 0, "failed": 0}
    if len(grid) < 2:
        logger.info("event=segment_extend_skipped reason=insufficient_price_grid hours=%s", len(grid))
        return summary

    strategy_ids = [row[0] for row in db.query(Strategy.id).order_by(Strategy.id.asc()).all()]
    for strategy_id in strategy_ids:
        strategy = db.get(Strategy, strategy_id)
        if strategy is None:
            continue
        try:
            written = extend_strategy_segments(db, strategy, price_book, grid)
        except Exception:
            summary["failed"] += 1
            logger.exception("event=segment_extend_failed strategy_id=%s", strategy_id)
            continue
        summary["strategies"] += 1
        summary["segments"] += written
    logger.info(
        "event=segment_extend_done strategies=%s segments=%s failed=%s",
        summary["strategies"],
        summary["segments"],
        summary["failed"],
    )
    return summary


def recompute_strategy_stats(
    db: Session,
    strategy: Strategy,
    now_ts: int,
    min_observations: int | None = None,
    maturity_hours: float | None = None,
) -> list[dict[str, Any]]:
    settings = get_settings()
    segments = (
        db.query(StrategySegment)
        .filter(StrategySegment.strategy_id == strategy.id)
        .order_by(StrategySegment.end_ts.asc(), StrategySegment.start_ts.asc())
        .all()
    )
    rows = compute_all_window_stats(
        segments,
        now_ts,
        min_observations=settings.sharpe_min_observations if min_observations is None else min_observations,
        maturity_hours=settings.sharpe_maturity_hours if maturity_hours is None else maturity_hours,
    )
    existing = {
        row.window: row
        for row in db.query(StrategyStats).filter(StrategyStats.strategy_id == strategy.id).all()
    }
    try:
        for stats in rows:
            row = existing.get(stats.window)
            if row is None:
                row = StrategyStats(strategy_id=strategy.id, window=stats.window)
                db.add(row)
            row.last_updated_ts = int(now_ts)
            row.sharpe_annual = stats.sharpe_annual
            row.vol_annual = stats.vol_annual
            row.vol_hourly = stats.vol_hourly
            row.total_return = stats.total_return
            row.max_drawdown = stats.max_drawdown
        db.commit()
    except Exception:
        db.rollback()
        raise
    return [stats.as_dict() for stats in rows]


def recompute_all_strategy_stats(db: Session, now_ts: int | None = None) -> dict[str, int]:
    now = int(now_ts if now_ts is not None else time.time())
    summary = {"strategies": 0, "failed": 0}
    strategy_ids = [row[0] for row in db.query(Strategy.id).order_by(Strategy.id.asc()).all()]
    for strategy_id in strategy_ids:
        strategy = db.get(Strategy, strategy_id)
        if strategy is None:
            continue
        try:
            recompute_strategy_stats(db, strategy, now)
        except Exception:
            summary["failed"] += 1
            logger.exception("event=stats_recompute_failed strategy_id=%s", strategy_id)
            continue
        summary["strategies"] += 1
    logger.info("event=stats_recompute_done strategies=%s failed=%s", summary["strategies"], summary["failed"])
    return summary


def strategies_need_extension(db: Session, last_price_ts: int) -> bool:
    watermark = func.coalesce(Strategy.last_segment_end_ts, 0)
    pending = (
        db.query(Strategy.id)
        .filter(
            or_(
                watermark < last_price_ts,
                and_(Strategy.last_signal_ts <= last_price_ts, Strategy.last_signal_ts > watermark),
            )
        )
        .first()
    )
    return pending is not None
