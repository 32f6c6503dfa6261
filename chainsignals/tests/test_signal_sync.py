from __future__ import annotations

import json

import pytest

from chainsignals.db.meta import LAST_SIGNAL_ID_SYNCED, get_meta_int
from chainsignals.db.models import (
    Price,
    SignalRecord,
    Strategy,
    StrategyPositionSnapshot,
    StrategySegment,
)
from chainsignals.services.segment_engine import extend_all_strategy_segments
from chainsignals.services.signal_sync import ChainSignalRecord, sync_signals

H = 3600
T0 = 1_700_000_000 - 1_700_000_000 % H
TRADER = "0xAbCdEf0000000000000000000000000000000001"


class _FakeSignalSource:
    def __init__(self, records: list[ChainSignalRecord]) -> None:
        self.records = records
        self.calls: list[tuple[int, int]] = []

    def get_signals_count(self) -> int:
        return len(self.records)

    def get_signals_range(self, start: int, end: int) -> list[ChainSignalRecord]:
        self.calls.append((start, end))
        return self.records[start:end]


def _record(ts: int, asset: str, weight: int, target: int = 0, leverage: int = 1, strategy="alpha", message=""):
    return ChainSignalRecord(
        trader=TRADER,
        strategy=strategy,
        asset=asset,
        message=message,
        target=target,
        leverage=leverage,
        weight=weight,
        timestamp=ts,
    )


def _snapshots(db, strategy_id: int) -> list[StrategyPositionSnapshot]:
    return (
        db.query(StrategyPositionSnapshot)
        .filter(StrategyPositionSnapshot.strategy_id == strategy_id)
        .order_by(StrategyPositionSnapshot.signal_ts.asc())
        .all()
    )


def test_sync_stores_signals_in_batches_and_advances_cursor(db_session):
    source = _FakeSignalSource([_record(T0 + i, "BTC", 50) for i in range(5)])

    assert sync_signals(db_session, source, batch_size=2) is True

    assert source.calls == [(0, 2), (2, 4), (4, 5)]
    assert db_session.query(SignalRecord).count() == 5
    assert get_meta_int(db_session, LAST_SIGNAL_ID_SYNCED, -1) == 4
    assert sync_signals(db_session, source, batch_size=2) is False
    assert len(source.calls) == 3


def test_sync_lowercases_trader_and_maintains_strategy_counters(db_session):
    source = _FakeSignalSource(
        [
            _record(T0, "btc", 60, message="first"),
            _record(T0 + 100, "ETH", 40, target=1, leverage=2),
            _record(T0 + 50, "SOL", 10, strategy="beta"),
        ]
    )
    sync_signals(db_session, source)

    alpha = db_session.query(Strategy).filter_by(strategy_name="alpha").one()
    assert alpha.trader_address == TRADER.lower()
    assert alpha.first_signal_ts == T0
    assert alpha.last_signal_ts == T0 + 100
    assert alpha.num_signals == 2
    assert alpha.last_segment_end_ts is None
    assert alpha.last_value_index == 1.0

    eth = db_session.get(SignalRecord, 1)
    assert eth.asset_symbol == "ETH"
    assert eth.direction == 1
    assert db_session.get(SignalRecord, 0).message == "first"
    assert db_session.query(Strategy).count() == 2


def test_sync_writes_approximate_snapshots(db_session):
    source = _FakeSignalSource([_record(T0, "BTC", 60), _record(T0 + 100, "ETH", 40, target=1, leverage=2)])
    sync_signals(db_session, source)

    strategy = db_session.query(Strategy).one()
    snaps = _snapshots(db_session, strategy.id)
    first = json.loads(snaps[0].positions_json)
    second = json.loads(snaps[1].positions_json)
    assert first == [{"asset": "BTC", "percent": 100.0, "direction": "LONG", "leverage": 1}]
    assert second == [
        {"asset": "BTC", "percent": 60.0, "direction": "LONG", "leverage": 1},
        {"asset": "ETH", "percent": 40.0, "direction": "SHORT", "leverage": 2},
    ]


def test_sync_never_extends_segments(db_session):
    for i, px in enumerate([100.0, 110.0, 120.0]):
        db_session.add(Price(asset_symbol="BTC", timestamp=T0 + i * H, price_usd=px))
    db_session.commit()

    sync_signals(db_session, _FakeSignalSource([_record(T0, "BTC", 100)]))
    assert db_session.query(StrategySegment).count() == 0


def test_approximate_base_prefers_fresh_holdings(db_session):
    for i, px in enumerate([100.0, 200.0]):
        db_session.add(Price(asset_symbol="BTC", timestamp=T0 + i * H, price_usd=px))
    db_session.commit()
    records = [_record(T0, "BTC", 100)]
    source = _FakeSignalSource(records)
    sync_signals(db_session, source)
    extend_all_strategy_segments(db_session)

    # After the hour BTC doubled: holdings are BTC 2.0, so a 50% ETH signal is priced off them.
    records.append(_record(T0 + H + 60, "ETH", 50))
    sync_signals(db_session, source)

    strategy = db_session.query(Strategy).one()
    latest = json.loads(_snapshots(db_session, strategy.id)[-1].positions_json)
    assert {p["asset"]: p["percent"] for p in latest} == {"BTC": pytest.approx(50.0), "ETH": pytest.approx(50.0)}


def test_unsupported_asset_is_stored_without_snapshot(db_session):
    sync_signals(db_session, _FakeSignalSource([_record(T0, "DOGE", 50)]))

    assert db_session.query(SignalRecord).count() == 1
    strategy = db_session.query(Strategy).one()
    assert _snapshots(db_session, strategy.id) == []


def _add_prices(db, asset: str, prices: list[float]) -> None:
    for i, px in enumerate(prices):
        db.add(Price(asset_symbol=asset, timestamp=T0 + i * H, price_usd=px))
    db.commit()


def test_signal_after_all_cash_start_takes_the_whole_portfolio(db_session):
    sync_signals(db_session, _FakeSignalSource([_record(T0 + 60, "USD", 100), _record(T0 + 120, "BTC", 40)]))

    strategy = db_session.query(Strategy).one()
    approx = json.loads(_snapshots(db_session, strategy.id)[-1].positions_json)
    assert {p["asset"]: p["percent"] for p in approx} == {"BTC": 100.0}

    _add_prices(db_session, "BTC", [100.0, 100.0])
    extend_all_strategy_segments(db_session)

    snaps = _snapshots(db_session, strategy.id)
    exact = json.loads(snaps[-1].positions_json)
    assert snaps[-1].signal_ts == T0 + 120
    assert {p["asset"]: p["percent"] for p in exact} == {"BTC": pytest.approx(100.0)}


def test_replay_overwrites_approximate_snapshot_and_keeps_message(db_session):
    records = [
        _record(T0 + 60, "BTC", 100),
        _record(T0 + 600, "ETH", 50),
        _record(T0 + H + 60, "SOL", 20, message="rotate"),
    ]
    sync_signals(db_session, _FakeSignalSource(records))

    strategy = db_session.query(Strategy).one()
    approx = _snapshots(db_session, strategy.id)[-1]
    assert json.loads(approx.positions_json) == [
        {"asset": "BTC", "percent": 40.0, "direction": "LONG", "leverage": 1},
        {"asset": "ETH", "percent": 40.0, "direction": "LONG", "leverage": 1},
        {"asset": "SOL", "percent": 20.0, "direction": "LONG", "leverage": 1},
    ]

    # BTC doubles during the first hour, so BTC outweighs ETH when SOL is bought.
    _add_prices(db_session, "BTC", [100.0, 200.0, 200.0])
    _add_prices(db_session, "ETH", [10.0, 10.0, 10.0])
    _add_prices(db_session, "SOL", [5.0, 5.0, 5.0])
    extend_all_strategy_segments(db_session)

    snaps = _snapshots(db_session, strategy.id)
    assert [s.signal_ts for s in snaps] == [T0 + 60, T0 + 600, T0 + H + 60]
    exact = snaps[-1]
    percents = {p["asset"]: p["percent"] for p in json.loads(exact.positions_json)}
    assert percents == {
        "BTC": pytest.approx(160.0 / 3),
        "ETH": pytest.approx(80.0 / 3),
        "SOL": pytest.approx(20.0),
    }
    assert exact.message == "rotate"
