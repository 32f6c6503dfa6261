from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Sequence

from chainsignals.performance.allocation import (
    Holdings,
    SignalInput,
    SnapshotPosition,
    apply_target_allocation,
    drift_holdings,
    positions_from_holdings,
    seed_holdings,
    total_value,
)
from chainsignals.performance.prices import HOUR_SECONDS, PriceBook


@dataclass(frozen=True)
class ReplaySignal:
    signal_id: int
    timestamp: int
    signal: SignalInput
    message: str | None = None


@dataclass(frozen=True)
class Segment:
    start_ts: int
    end_ts: int
    duration_sec: int
    raw_return: float
    hourly_equiv_ret: float
    value_index_end: float


@dataclass(frozen=True)
class PositionSnapshot:
    signal_ts: int
    positions: list[SnapshotPosition]
    message: str | None = None


@dataclass
class StrategyReplayState:
    holdings: Holdings = field(default_factory=dict)
    last_value_index: float = 1.0
    last_segment_end_ts: int | None = None


@dataclass
class ReplayResult:
    state: StrategyReplayState
    segments: list[Segment] = field(default_factory=list)
    snapshots: list[PositionSnapshot] = field(default_factory=list)


def _start_index(grid: Sequence[int], state: StrategyReplayState, first_signal_ts: int) -> int | None:
    if state.last_segment_end_ts is not None:
        return bisect_left(grid, state.last_segment_end_ts)
    if grid[-1] <= first_signal_ts:
        return None
    for i in range(len(grid) - 1):
        if grid[i] <= first_signal_ts < grid[i + 1]:
            return i
    return 0


class _Cursor:
    """Walks timestamp-sorted signals, applying all signals that share a timestamp at once."""

    def __init__(self, signals: list[ReplaySignal]) -> None:
        self._signals = signals
        self._pos = 0

    def peek_ts(self) -> int | None:
        if self._pos >= len(self._signals):
            return None
        return self._signals[self._pos].timestamp

    def has_signal_by(self, ts: int) -> bool:
        nxt = self.peek_ts()
        return nxt is not None and nxt <= ts

    def apply_next_group(self, holdings: Holdings) -> tuple[Holdings, PositionSnapshot]:
        ts = self._signals[self._pos].timestamp
        message: str | None = None
        while self._pos < len(self._signals) and self._signals[self._pos].timestamp == ts:
            item = self._signals[self._pos]
            holdings = apply_target_allocation(holdings, item.signal)
            if item.message:
                message = item.message
            self._pos += 1
        return holdings, PositionSnapshot(signal_ts=ts, positions=positions_from_holdings(holdings), message=message)


def replay_strategy(
    state: StrategyReplayState,
    signals: Sequence[ReplaySignal],
    price_book: PriceBook,
    hourly_grid: Sequence[int],
    first_signal_ts: int,
) -> ReplayResult:
    """Extend a strategy's equity segments across every available hourly pair.

    Pure: the caller loads ``state`` and the signals, and persists the result.
    A first replay starts at the hour containing ``first_signal_ts`` on a seeded
    unit of cash. A resumed replay starts at the watermark and only applies
    signals strictly after it. Replaying with no new hours returns ``state``
    unchanged and no segments.
    """
    unchanged = ReplayResult(state=state)
    grid = list(hourly_grid)
    if len(grid) < 2:
        return unchanged
    start = _start_index(grid, state, first_signal_ts)
    if start is None or start >= len(grid) - 1:
        return unchanged

    watermark = state.last_segment_end_ts
    if watermark is None:
        holdings = seed_holdings()
        value_index = 1.0
        pending = list(signals)
    else:
        holdings = dict(state.holdings)
        value_index = state.last_value_index
        pending = [s for s in signals if s.timestamp > watermark]
    pending.sort(key=lambda s: (s.timestamp, s.signal_id))
    cursor = _Cursor(pending)

    segments: list[Segment] = []
    snapshots: list[PositionSnapshot] = []
    last_end = watermark

    for i in range(start, len(grid) - 1):
        t_start, t_end = grid[i], grid[i + 1]
        duration = t_end - t_start

        while cursor.has_signal_by(t_start):
            holdings, snap = cursor.apply_next_group(holdings)
            if snap.positions:
                snapshots.append(snap)

        equity_start = total_value(holdings)
        if equity_start <= 0:
            segments.append(Segment(t_start, t_end, duration, 0.0, 0.0, value_index))
            last_end = t_end
            continue

        at = t_start
        while cursor.has_signal_by(t_end):
            ts = cursor.peek_ts()
            holdings = drift_holdings(holdings, price_book, at, ts)
            holdings, snap = cursor.apply_next_group(holdings)
            if snap.positions:
                snapshots.append(snap)
            at = ts
        holdings = drift_holdings(holdings, price_book, at, t_end)

        raw_return = total_value(holdings) / equity_start - 1.0
        value_index *= 1.0 + raw_return
        hourly_equiv = raw_return / (duration / HOUR_SECONDS)
        segments.append(Segment(t_start, t_end, duration, raw_return, hourly_equiv, value_index))
        last_end = t_end

    next_state = StrategyReplayState(
        holdings={asset: pos for asset, pos in holdings.items() if pos.value > 0},
        last_value_index=value_index,
        last_segment_end_ts=last_end,
    )
    return ReplayResult(state=next_state, segments=segments, snapshots=snapshots)
