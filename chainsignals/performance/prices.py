from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Iterable

HOUR_SECONDS = 3600


def hour_floor(ts: int | float) -> int:
    return int(ts) - int(ts) % HOUR_SECONDS


@dataclass
class _AssetSeries:
    timestamps: list[int] = field(default_factory=list)
    prices: list[float] = field(default_factory=list)


class PriceBook:
    """In-memory per-asset price series with at-or-before lookup."""

    def __init__(self, series: dict[str, _AssetSeries] | None = None) -> None:
        self._series: dict[str, _AssetSeries] = series or {}

    @classmethod
    def from_rows(cls, rows: Iterable[Any]) -> "PriceBook":
        """Build from ``(asset, ts, price)`` tuples or objects exposing
        ``asset_symbol``/``timestamp``/``price_usd``. Later duplicates win."""
        raw: dict[str, dict[int, float]] = {}
        for row in rows:
            if isinstance(row, (tuple, list)):
                asset, ts, price = row[0], row[1], row[2]
            else:
                asset, ts, price = row.asset_symbol, row.timestamp, row.price_usd
            raw.setdefault(str(asset).upper(), {})[int(ts)] = float(price)
        series: dict[str, _AssetSeries] = {}
        for asset, points in raw.items():
            ordered = sorted(points.items())
            series[asset] = _AssetSeries(
                timestamps=[ts for ts, _ in ordered],
                prices=[px for _, px in ordered],
            )
        return cls(series)

    def assets(self) -> list[str]:
        return sorted(self._series)

    def price_at_or_before(self, asset: str, ts: int) -> float | None:
        s = self._series.get(asset.upper())
        if s is None or not s.timestamps:
            return None
        idx = bisect_right(s.timestamps, int(ts)) - 1
        if idx < 0:
            return None
        price = s.prices[idx]
        if not price > 0:
            return None
        return price

    def hourly_grid(self) -> list[int]:
        grid: set[int] = set()
        for s in self._series.values():
            grid.update(ts for ts in s.timestamps if ts % HOUR_SECONDS == 0)
        return sorted(grid)

    def last_timestamp(self) -> int | None:
        last = [s.timestamps[-1] for s in self._series.values() if s.timestamps]
        return max(last) if last else None
