from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence, TypeVar

from sqlalchemy.orm import Session

from chainsignals.db.models import Price, Strategy, StrategyHolding, StrategyPositionSnapshot, StrategySegment, StrategyStats
from chainsignals.performance.allocation import Position, positions_from_holdings
from chainsignals.performance.assets import SUPPORTED_ASSETS, USD, normalize_symbol
from chainsignals.performance.stats import DAY_SECONDS, STAT_WINDOWS

logger = logging.getLogger(__name__)

DEFAULT_LEADERBOARD_WINDOW = "1M"
MAX_EQUITY_POINTS = 100

_WINDOW_RE = re.compile(r"^(\d+)([DWMY])$")
_UNIT_SECONDS = {"D": DAY_SECONDS, "W": 7 * DAY_SECONDS, "M": 30 * DAY_SECONDS, "Y": 365 * DAY_SECONDS}

T = TypeVar("T")


def normalize_window_param(raw: str | None) -> str:
    window = (raw or "").strip().upper()
    return window if window in STAT_WINDOWS else DEFAULT_LEADERBOARD_WINDOW


def parse_window_seconds(raw: str | None) -> int | None:
    """Seconds for ``<n>D|<n>W|<n>M|<n>Y``; None for ALL or anything unparseable."""
    text = (raw or "").strip().upper()
    if not text or text == "ALL":
        return None
    match = _WINDOW_RE.match(text)
    if not match:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    return value * _UNIT_SECONDS[match.group(2)]


def thin_keep_ends(items: Sequence[T], max_points: int) -> list[T]:
    n = len(items)
    if n <= max_points:
        return list(items)
    if max_points <= 1:
        return [items[0]]
    if max_points == 2:
        return [items[0], items[-1]]
    step = -(-(n - 1) // (max_points - 1))
    out = [items[i] for i in range(0, n, step)]
    if out[-1] is not items[-1]:
        out.append(items[-1])
    if len(out) > max_points:
        del out[-2]
    return out


def _strategy_summary(strategy: Strategy) -> dict[str, Any]:
    return {
        "id": strategy.id,
        "trader": strategy.trader_address,
        "strategyName": strategy.strategy_name,
        "firstSignalTs": strategy.first_signal_ts,
        "lastSignalTs": strategy.last_signal_ts,
        "numSignals": strategy.num_signals,
        "isLiquidated": bool(strategy.is_liquidated),
        "lastValueIndex": strategy.last_value_index,
        "lastSegmentEndTs": strategy.last_segment_end_ts,
    }


def _stats_payload(row: StrategyStats) -> dict[str, Any]:
    return {
        "lastUpdatedTs": row.last_updated_ts,
        "sharpeAnnual": row.sharpe_annual,
        "volAnnual": row.vol_annual,
        "volHourly": row.vol_hourly,
        "totalReturn": row.total_return,
        "maxDrawdown": row.max_drawdown,
    }


def _leaderboard_key(entry: dict[str, Any]) -> tuple:
    sharpe = entry["sharpeAnnual"]
    ret = entry["totalReturn"]
    ret_key = -ret if ret is not None else float("inf")
    if sharpe is not None:
        return (0, -sharpe, ret_key, entry["id"])
    return (1, 0.0, ret_key, entry["id"])


def leaderboard(db: Session, window: str | None) -> list[dict[str, Any]]:
    window = normalize_window_param(window)
    stats = {
        row.strategy_id: row for row in db.query(StrategyStats).filter(StrategyStats.window == window).all()
    }
    entries: list[dict[str, Any]] = []
    for strategy in db.query(Strategy).all():
        row = stats.get(strategy.id)
        entry = _strategy_summary(strategy)
        entry.update(
            {
                "sharpeAnnual": row.sharpe_annual if row else None,
                "volAnnual": row.vol_annual if row else None,
                "volHourly": row.vol_hourly if row else None,
                "totalReturn": row.total_return if row else None,
                "maxDrawdown": row.max_drawdown if row else None,
                "window": window,
            }
        )
        entries.append(entry)
    entries.sort(key=_leaderboard_key)
    return entries


def _positions_history(db: Session, strategy_id: int) -> list[dict[str, Any]]:
    rows = (
        db.query(StrategyPositionSnapshot)
        .filter(StrategyPositionSnapshot.strategy_id == strategy_id)
        .order_by(StrategyPositionSnapshot.signal_ts.asc())
        .all()
    )
    history: list[dict[str, Any]] = []
    for row in rows:
        try:
            positions = json.loads(row.positions_json or "[]")
        except ValueError:
            logger.warning("event=snapshot_json_invalid strategy_id=%s signal_ts=%s", strategy_id, row.signal_ts)
            continue
        if isinstance(positions, list) and positions:
            history.append({"timestamp": int(row.signal_ts), "positions": positions, "message": row.message})
    return history


def _current_position(db: Session, strategy: Strategy, history: list[dict[str, Any]]) -> dict[str, Any] | None:
    latest = history[-1] if history else None
    holdings = {
        row.asset_symbol: Position(float(row.value), int(row.direction), int(row.leverage), bool(row.is_usd))
        for row in db.query(StrategyHolding).filter(StrategyHolding.strategy_id == strategy.id).all()
        if row.value > 0
    }
    hourly_ts = strategy.last_segment_end_ts or 0
    if holdings and (latest is None or (hourly_ts > 0 and hourly_ts >= latest["timestamp"])):
        return {
            "source": "holdings",
            "asOfTs": strategy.last_segment_end_ts,
            "positions": [p.to_dict() for p in positions_from_holdings(holdings)],
        }
    if latest is not None:
        return {"source": "signal", "asOfTs": latest["timestamp"], "positions": latest["positions"]}
    return None


def strategy_detail(db: Session, strategy_id: int) -> dict[str, Any] | None:
    strategy = db.get(Strategy, strategy_id)
    if strategy is None:
        return None
    stats = {
        row.window: _stats_payload(row)
        for row in db.query(StrategyStats).filter(StrategyStats.strategy_id == strategy_id).all()
    }
    history = _positions_history(db, strategy_id)
    payload = _strategy_summary(strategy)
    payload.update(
        {
            "stats": stats,
            "currentPosition": _current_position(db, strategy, history),
            "positionsHistory": history,
        }
    )
    return payload


def trader_strategies(db: Session, address: str) -> dict[str, Any]:
    trader = address.strip().lower()
    strategies = db.query(Strategy).filter(Strategy.trader_address == trader).order_by(Strategy.id.asc()).all()
    if not strategies:
        return {"trader": trader, "strategies": []}
    ids = [s.id for s in strategies]
    by_strategy: dict[int, dict[str, Any]] = {}
    for row in db.query(StrategyStats).filter(StrategyStats.strategy_id.in_(ids)).all():
        by_strategy.setdefault(row.strategy_id, {})[row.window] = _stats_payload(row)
    out = []
    for strategy in strategies:
        entry = _strategy_summary(strategy)
        entry["stats"] = by_strategy.get(strategy.id, {})
        out.append(entry)
    return {"trader": trader, "strategies": out}


def _benchmark_series(db: Session, symbol: str, points: list[dict[str, Any]]) -> dict[str, Any] | None:
    if symbol == USD:
        return {
            "symbol": USD,
            "points": [{"timestamp": p["timestamp"], "price": 1.0, "priceRebased": 1.0} for p in points],
        }
    if symbol not in SUPPORTED_ASSETS:
        return None
    rows = (
        db.query(Price.timestamp, Price.price_usd)
        .filter(
            Price.asset_symbol == symbol,
            Price.timestamp >= points[0]["timestamp"],
            Price.timestamp <= points[-1]["timestamp"],
        )
        .order_by(Price.timestamp.asc())
        .all()
    )
    by_ts = {int(ts): float(price) for ts, price in rows}
    base_price: float | None = None
    series: list[dict[str, Any]] = []
    for point in points:
        price = by_ts.get(point["timestamp"])
        if price is None or price <= 0:
            if series:
                price = series[-1]["price"]
            elif rows:
                price = float(rows[0][1])
            else:
                continue
        if base_price is None:
            base_price = price
        series.append(
            {
                "timestamp": point["timestamp"],
                "price": price,
                "priceRebased": price / base_price if base_price > 0 else 1.0,
            }
        )
    if not series:
        return None
    return {"symbol": symbol, "points": series}


def strategy_equity(
    db: Session,
    strategy_id: int,
    window: str | None = None,
    benchmark: str | None = None,
    max_points: int = MAX_EQUITY_POINTS,
) -> dict[str, Any] | None:
    strategy = db.get(Strategy, strategy_id)
    if strategy is None:
        return None
    payload: dict[str, Any] = {
        "id": strategy.id,
        "trader": strategy.trader_address,
        "strategyName": strategy.strategy_name,
        "firstSignalTs": strategy.first_signal_ts,
        "lastSignalTs": strategy.last_signal_ts,
        "lastValueIndex": strategy.last_value_index,
        "window": "ALL",
        "sampling": None,
        "points": [],
        "benchmark": None,
    }
    segments = (
        db.query(StrategySegment)
        .filter(StrategySegment.strategy_id == strategy_id)
        .order_by(StrategySegment.end_ts.asc())
        .all()
    )
    if not segments:
        return payload

    last_ts = strategy.last_segment_end_ts or segments[-1].end_ts or strategy.last_signal_ts
    duration = parse_window_seconds(window)
    window_label = "ALL"
    in_window = segments
    if duration and last_ts:
        from_ts = max(0, int(last_ts) - duration)
        window_label = (window or "").strip().upper()
        if from_ts > 0:
            in_window = [s for s in segments if s.end_ts >= from_ts]
            if not in_window:
                in_window = segments
                window_label = "ALL"

    sampled = thin_keep_ends(in_window, max_points)
    first = sampled[0]
    i0 = segments.index(first)
    base_value = segments[i0 - 1].value_index_end if i0 > 0 and segments[i0 - 1].value_index_end > 0 else 1.0
    window_start = max(first.start_ts, strategy.first_signal_ts) if i0 == 0 else first.start_ts

    points = [{"timestamp": int(window_start), "valueIndex": base_value, "valueIndexRebased": 1.0}]
    for seg in sampled:
        points.append(
            {
                "timestamp": int(seg.end_ts),
                "valueIndex": seg.value_index_end,
                "valueIndexRebased": seg.value_index_end / base_value if base_value > 0 else 1.0,
            }
        )

    payload.update({"window": window_label, "sampling": "hourly", "points": points})
    symbol = normalize_symbol(benchmark)
    if symbol:
        payload["benchmark"] = _benchmark_series(db, symbol, points)
    return payload
