from __future__ import annotations

import pytest

from chainsignals.performance.allocation import SignalInput
from chainsignals.performance.prices import PriceBook
from chainsignals.performance.replay import ReplaySignal, StrategyReplayState, replay_strategy

H = 3600
T0 = 10 * H


def _signal(signal_id: int, ts: int, asset: str, weight: int, leverage: int = 1, short: bool = False, message=None):
    return ReplaySignal(
        signal_id=signal_id,
        timestamp=ts,
        signal=SignalInput.from_raw(asset, 1 if short else 0, leverage, weight),
        message=message,
    )


def _book(prices: dict[str, list[float]], start: int = T0) -> PriceBook:
    rows = []
    for asset, series in prices.items():
        for i, px in enumerate(series):
            rows.append((asset, start + i * H, px))
    return PriceBook.from_rows(rows)


def _assert_contiguous(segments):
    for left, right in zip(segments, segments[1:]):
        assert left.end_ts == right.start_ts


def test_first_replay_starts_at_hour_containing_first_signal():
    book = _book({"BTC": [100.0, 110.0, 121.0]})
    first_ts = T0 + 1200
    result = replay_strategy(
        StrategyReplayState(),
        [_signal(0, first_ts, "BTC", 60)],
        book,
        book.hourly_grid(),
        first_ts,
    )

    assert [(s.start_ts, s.end_ts) for s in result.segments] == [(T0, T0 + H), (T0 + H, T0 + 2 * H)]
    assert result.segments[0].raw_return == pytest.approx(0.1)
    assert result.segments[1].value_index_end == pytest.approx(1.21)
    assert result.segments[0].hourly_equiv_ret == pytest.approx(0.1)
    assert set(result.state.holdings) == {"BTC"}
    assert result.state.holdings["BTC"].value == pytest.approx(1.21)
    assert result.state.last_value_index == pytest.approx(1.21)
    assert result.state.last_segment_end_ts == T0 + 2 * H
    assert len(result.snapshots) == 1
    assert result.snapshots[0].signal_ts == first_ts
    assert [(p.asset, p.percent) for p in result.snapshots[0].positions] == [("BTC", 100.0)]


def test_second_signal_rebalances_inside_the_hour():
    book = _book({"BTC": [100.0, 100.0, 100.0], "ETH": [50.0, 50.0, 50.0]})
    signals = [_signal(0, T0 + 60, "BTC", 60), _signal(1, T0 + H + 600, "ETH", 40, leverage=2)]
    result = replay_strategy(StrategyReplayState(), signals, book, book.hourly_grid(), T0 + 60)

    holdings = result.state.holdings
    assert holdings["BTC"].value == pytest.approx(0.6)
    assert holdings["ETH"].value == pytest.approx(0.4)
    assert holdings["ETH"].leverage == 2
    assert [s.signal_ts for s in result.snapshots] == [T0 + 60, T0 + H + 600]
    _assert_contiguous(result.segments)


def test_replay_is_a_noop_without_new_prices():
    book = _book({"BTC": [100.0, 105.0, 103.0]})
    signals = [_signal(0, T0, "BTC", 100)]
    first = replay_strategy(StrategyReplayState(), signals, book, book.hourly_grid(), T0)
    again = replay_strategy(first.state, signals, book, book.hourly_grid(), T0)

    assert again.segments == []
    assert again.snapshots == []
    assert again.state == first.state


def test_resume_appends_after_watermark_only():
    signals = [_signal(0, T0, "BTC", 100)]
    short_book = _book({"BTC": [100.0, 110.0]})
    first = replay_strategy(StrategyReplayState(), signals, short_book, short_book.hourly_grid(), T0)
    assert first.state.last_segment_end_ts == T0 + H

    long_book = _book({"BTC": [100.0, 110.0, 99.0, 99.0]})
    resumed = replay_strategy(first.state, signals, long_book, long_book.hourly_grid(), T0)

    assert [s.start_ts for s in resumed.segments] == [T0 + H, T0 + 2 * H]
    assert resumed.segments[0].raw_return == pytest.approx(-0.1)
    assert resumed.state.last_value_index == pytest.approx(0.99)
    assert resumed.snapshots == []


def test_signals_before_the_first_hour_are_applied_at_segment_start():
    book = _book({"BTC": [100.0, 120.0], "ETH": [10.0, 10.0]})
    signals = [_signal(0, T0 - 1800, "BTC", 100), _signal(1, T0 - 900, "ETH", 50)]
    result = replay_strategy(StrategyReplayState(), signals, book, book.hourly_grid(), T0 - 1800)

    assert len(result.segments) == 1
    seg = result.segments[0]
    assert (seg.start_ts, seg.end_ts) == (T0, T0 + H)
    # BTC 50% / ETH 50% at the boundary, then BTC rallies 20%.
    assert seg.raw_return == pytest.approx(0.1)
    assert result.state.holdings["BTC"].value == pytest.approx(0.6)
    assert result.state.holdings["ETH"].value == pytest.approx(0.5)
    assert [s.signal_ts for s in result.snapshots] == [T0 - 1800, T0 - 900]


def test_wiped_out_strategy_writes_flat_segments():
    book = _book({"BTC": [100.0, 50.0, 80.0, 90.0]})
    result = replay_strategy(
        StrategyReplayState(), [_signal(0, T0, "BTC", 100, leverage=5)], book, book.hourly_grid(), T0
    )

    assert result.segments[0].raw_return == pytest.approx(-1.0)
    assert result.segments[0].value_index_end == 0.0
    for seg in result.segments[1:]:
        assert seg.raw_return == 0.0
        assert seg.value_index_end == 0.0
    assert result.state.holdings == {}
    assert result.state.last_segment_end_ts == T0 + 3 * H


def test_first_signal_after_last_price_produces_nothing():
    book = _book({"BTC": [100.0, 101.0]})
    state = StrategyReplayState()
    result = replay_strategy(state, [_signal(0, T0 + 5 * H, "BTC", 100)], book, book.hourly_grid(), T0 + 5 * H)
    assert result.segments == []
    assert result.state is state


def test_signals_sharing_a_timestamp_share_one_snapshot():
    book = _book({"BTC": [100.0, 100.0], "ETH": [10.0, 10.0]})
    signals = [
        _signal(0, T0 + 10, "BTC", 100, message="open btc"),
        _signal(1, T0 + 20, "ETH", 50, message="add eth"),
        _signal(2, T0 + 20, "BTC", 25, message="trim btc"),
    ]
    result = replay_strategy(StrategyReplayState(), signals, book, book.hourly_grid(), T0 + 10)

    assert [s.signal_ts for s in result.snapshots] == [T0 + 10, T0 + 20]
    last = result.snapshots[-1]
    assert last.message == "trim btc"
    percents = {p.asset: p.percent for p in last.positions}
    assert percents["BTC"] == pytest.approx(25.0)
    assert percents["ETH"] == pytest.approx(75.0)
    assert sum(percents.values()) == pytest.approx(100.0)


def test_signal_after_wipe_out_records_no_empty_snapshot():
    book = _book({"BTC": [100.0, 50.0, 80.0, 90.0]})
    signals = [
        _signal(0, T0, "BTC", 100, leverage=5),
        _signal(1, T0 + H + 10, "ETH", 50),
    ]
    result = replay_strategy(StrategyReplayState(), signals, book, book.hourly_grid(), T0)

    assert [s.signal_ts for s in result.snapshots] == [T0]
    assert all(s.positions for s in result.snapshots)
