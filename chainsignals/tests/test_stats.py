from __future__ import annotations

import math
import statistics

import pytest

from chainsignals.performance.replay import Segment
from chainsignals.performance.stats import (
    STAT_WINDOWS,
    compute_all_window_stats,
    compute_window_stats,
    maturity_multiplier,
    max_drawdown,
)

H = 3600
DAY = 86400


def _segments(returns: list[float], start: int = 0) -> list[Segment]:
    out = []
    value = 1.0
    for i, r in enumerate(returns):
        value *= 1.0 + r
        out.append(Segment(start + i * H, start + (i + 1) * H, H, r, r, value))
    return out


def _alternating(n: int) -> list[float]:
    return [0.01 if i % 2 == 0 else -0.004 for i in range(n)]


def test_maturity_multiplier_ramps_to_one():
    assert maturity_multiplier(0) == 0.0
    assert maturity_multiplier(360) == pytest.approx(0.5)
    assert maturity_multiplier(5000) == 1.0


def test_max_drawdown_against_base():
    assert max_drawdown([1.1, 0.88, 1.0], 1.0) == pytest.approx(0.2)
    assert max_drawdown([0.9, 0.95], 1.0) == pytest.approx(0.1)
    assert max_drawdown([], 1.0) == 0.0


def test_no_segments_gives_six_neutral_rows():
    rows = compute_all_window_stats([], now_ts=10 * DAY)
    assert [r.window for r in rows] == list(STAT_WINDOWS)
    for row in rows:
        assert row.total_return == 0.0
        assert row.max_drawdown == 0.0
        assert row.sharpe_annual is None
        assert row.vol_annual is None


def test_one_week_window_without_recent_segments_is_neutral_not_missing():
    segments = _segments(_alternating(48))
    now = segments[-1].end_ts + 10 * DAY
    rows = {r.window: r for r in compute_all_window_stats(segments, now)}

    assert rows["1W"].total_return == 0.0
    assert rows["1W"].max_drawdown == 0.0
    assert rows["1W"].sharpe_annual is None
    assert rows["1M"].total_return == pytest.approx(segments[-1].value_index_end - 1.0)


def test_all_window_total_return_matches_value_index():
    segments = _segments([0.02, -0.01, 0.005, 0.03])
    stats = compute_window_stats(segments, "ALL", now_ts=segments[-1].end_ts)
    assert stats.total_return == pytest.approx(segments[-1].value_index_end - 1.0)


def test_window_base_is_previous_segment_value():
    old = _segments([0.5, 0.5])
    recent = _segments([0.1, 0.1], start=old[-1].end_ts + 20 * DAY)
    recent = [
        Segment(s.start_ts, s.end_ts, s.duration_sec, s.raw_return, s.hourly_equiv_ret, s.value_index_end * 2.25)
        for s in recent
    ]
    segments = old + recent
    stats = compute_window_stats(segments, "1W", now_ts=segments[-1].end_ts)
    assert stats.total_return == pytest.approx(0.21)
    assert stats.max_drawdown == 0.0


def test_twenty_three_observations_suppress_sharpe():
    segments = _segments(_alternating(23))
    stats = compute_window_stats(segments, "ALL", now_ts=segments[-1].end_ts)
    assert stats.sharpe_annual is None
    assert stats.vol_hourly is not None
    assert stats.vol_annual == pytest.approx(stats.vol_hourly * math.sqrt(8760))


def test_twenty_four_observations_scale_sharpe_by_maturity():
    returns = _alternating(24)
    segments = _segments(returns)
    stats = compute_window_stats(segments, "ALL", now_ts=segments[-1].end_ts)

    sigma = statistics.stdev(returns)
    mu = math.log(segments[-1].value_index_end) / 24.0
    raw = mu / sigma * math.sqrt(8760)
    assert stats.sharpe_annual is not None
    assert stats.sharpe_annual == pytest.approx(raw * 24.0 / 720.0)
    assert stats.vol_hourly == pytest.approx(sigma)


def test_thresholds_are_configurable():
    segments = _segments(_alternating(10))
    stats = compute_window_stats(
        segments, "ALL", now_ts=segments[-1].end_ts, min_observations=5, maturity_hours=10.0
    )
    assert stats.sharpe_annual is not None


def test_flat_returns_report_only_return_and_drawdown():
    segments = _segments([0.0] * 30)
    stats = compute_window_stats(segments, "ALL", now_ts=segments[-1].end_ts)
    assert stats.vol_hourly is None
    assert stats.sharpe_annual is None
    assert stats.total_return == 0.0


def test_single_observation_has_no_volatility():
    segments = _segments([0.05])
    stats = compute_window_stats(segments, "ALL", now_ts=segments[-1].end_ts)
    assert stats.total_return == pytest.approx(0.05)
    assert stats.vol_hourly is None


def test_unknown_window_rejected():
    with pytest.raises(ValueError):
        compute_window_stats([], "2W", now_ts=0)
