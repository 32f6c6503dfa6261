from __future__ import annotations

from types import SimpleNamespace

from chainsignals.performance.prices import PriceBook, hour_floor
from chainsignals.services.price_backfill import canonical_hourly_prices, pick_hourly_price, snap_prices_to_times


def test_hour_floor():
    assert hour_floor(7199) == 3600
    assert hour_floor(7200) == 7200


def test_price_book_at_or_before_and_grid():
    book = PriceBook.from_rows(
        [
            ("btc", 3600, 100.0),
            ("BTC", 5000, 105.0),
            ("BTC", 7200, 0.0),
            SimpleNamespace(asset_symbol="ETH", timestamp=10800, price_usd=50.0),
        ]
    )
    assert book.price_at_or_before("BTC", 3599) is None
    assert book.price_at_or_before("BTC", 3600) == 100.0
    assert book.price_at_or_before("BTC", 6000) == 105.0
    assert book.price_at_or_before("BTC", 7200) is None
    assert book.hourly_grid() == [3600, 7200, 10800]
    assert book.last_timestamp() == 10800


def test_pick_hourly_price_prefers_sample_before_boundary():
    points = [(3000, 1.0), (3300, 2.0), (3700, 3.0)]
    assert pick_hourly_price(points, 3600) == 2.0


def test_pick_hourly_price_falls_back_to_sample_after_boundary():
    points = [(2000, 1.0), (3900, 2.0)]
    assert pick_hourly_price(points, 3600) == 2.0
    assert pick_hourly_price(points, 3600, tolerance=200) is None


def test_canonical_hourly_prices_only_within_range():
    points = [(3590, 1.0), (7210, 2.0), (10790, 3.0), (14400, 4.0)]
    out = canonical_hourly_prices(points, 3601, 10800)
    assert out == [(7200, 2.0), (10800, 3.0)]


def test_snap_prices_to_times():
    points = [(100, 1.0), (200, 2.0), (300, 3.0)]
    assert snap_prices_to_times(points, [250, 50, 999, 200]) == [
        (50, 1.0),
        (200, 2.0),
        (250, 2.0),
        (999, 3.0),
    ]
    assert snap_prices_to_times([], [1]) == []
