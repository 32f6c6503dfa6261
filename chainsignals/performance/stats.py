from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import numpy as np

DAY_SECONDS = 86400
HOURS_PER_YEAR = 8760.0
DEFAULT_MIN_OBSERVATIONS = 24
DEFAULT_MATURITY_HOURS = 720.0

# Lookback per window; None means the full history.
STAT_WINDOWS: dict[str, int | None] = {
    "1W": 7 * DAY_SECONDS,
    "1M": 30 * DAY_SECONDS,
    "3M": 90 * DAY_SECONDS,
    "6M": 180 * DAY_SECONDS,
    "1Y": 365 * DAY_SECONDS,
    "ALL": None,
}


class SegmentLike(Protocol):
    start_ts: int
    end_ts: int
    duration_sec: int
    hourly_equiv_ret: float
    value_index_end: float


@dataclass(frozen=True)
class WindowStats:
    window: str
    sharpe_annual: float | None
    vol_annual: float | None
    vol_hourly: float | None
    total_return: float
    max_drawdown: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "sharpeAnnual": self.sharpe_annual,
            "volAnnual": self.vol_annual,
            "volHourly": self.vol_hourly,
            "totalReturn": self.total_return,
            "maxDrawdown": self.max_drawdown,
        }


def neutral_stats(window: str) -> WindowStats:
    return WindowStats(window, None, None, None, 0.0, 0.0)


def maturity_multiplier(total_hours: float, maturity_hours: float = DEFAULT_MATURITY_HOURS) -> float:
    if maturity_hours <= 0:
        return 1.0
    return max(0.0, min(1.0, total_hours / maturity_hours))


def max_drawdown(values: Sequence[float], base: float) -> float:
    if base <= 0 or not values:
        return 0.0
    peak = 1.0
    worst = 0.0
    for value in values:
        equity = value / base
        if equity > peak:
            peak = equity
        drawdown = (peak - equity) / peak
        if drawdown > worst:
            worst = drawdown
    return worst


def compute_window_stats(
    segments: Sequence[SegmentLike],
    window: str,
    now_ts: int,
    min_observations: int = DEFAULT_MIN_OBSERVATIONS,
    maturity_hours: float = DEFAULT_MATURITY_HOURS,
) -> WindowStats:
    """Risk/return statistics over the segments ending inside ``window``.

    ``segments`` must be ordered by ``end_ts``. A window with no segment yields a
    neutral row. Volatility needs two hourly observations and a non-zero spread;
    the Sharpe ratio additionally needs ``min_observations`` and is damped by
    ``maturity_multiplier`` until the window spans ``maturity_hours``.
    """
    if window not in STAT_WINDOWS:
        raise ValueError(f"Unknown stats window: {window}")
    if not segments:
        return neutral_stats(window)

    seconds = STAT_WINDOWS[window]
    if seconds is None:
        i0 = 0
    else:
        i0 = bisect_left([int(s.end_ts) for s in segments], int(now_ts) - seconds)
        if i0 >= len(segments):
            return neutral_stats(window)

    base = float(segments[i0 - 1].value_index_end) if i0 > 0 else 1.0
    if base <= 0:
        return neutral_stats(window)
    in_window = segments[i0:]
    values = [float(s.value_index_end) for s in in_window]
    final = values[-1]
    total_return = final / base - 1.0
    drawdown = max_drawdown(values, base)

    total_hours = sum(max(0, int(s.duration_sec)) for s in in_window) / 3600.0
    hourly = np.array([float(s.hourly_equiv_ret) for s in in_window if int(s.duration_sec) > 0], dtype=float)
    partial = WindowStats(window, None, None, None, total_return, drawdown)
    if hourly.size < 2 or total_hours <= 0:
        return partial

    sigma = float(np.std(hourly, ddof=1))
    if not math.isfinite(sigma) or sigma == 0:
        return partial

    sharpe: float | None = None
    if hourly.size >= min_observations and final > 0:
        mu = (math.log(final) - math.log(base)) / total_hours
        sharpe = mu / sigma * math.sqrt(HOURS_PER_YEAR) * maturity_multiplier(total_hours, maturity_hours)

    return WindowStats(
        window=window,
        sharpe_annual=sharpe,
        vol_annual=sigma * math.sqrt(HOURS_PER_YEAR),
        vol_hourly=sigma,
        total_return=total_return,
        max_drawdown=drawdown,
    )


def compute_all_window_stats(
    segments: Sequence[SegmentLike],
    now_ts: int,
    min_observations: int = DEFAULT_MIN_OBSERVATIONS,
    maturity_hours: float = DEFAULT_MATURITY_HOURS,
) -> list[WindowStats]:
    ordered = sorted(segments, key=lambda s: (int(s.end_ts), int(s.start_ts)))
    return [
        compute_window_stats(ordered, window, now_ts, min_observations, maturity_hours)
        for window in STAT_WINDOWS
    ]
