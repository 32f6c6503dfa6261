from __future__ import annotations

import logging
import time
from bisect import bisect_right
from typing import Any, Iterable, Optional, Sequence

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from chainsignals.config.settings import AppSettings, get_settings
from chainsignals.db.meta import LAST_PRICE_TS, get_meta_int, set_meta
from chainsignals.db.models import Price, SignalRecord, Strategy
from chainsignals.performance.assets import SUPPORTED_ASSETS
from chainsignals.performance.prices import HOUR_SECONDS, hour_floor
from chainsignals.shared.rate_limiter import RateLimitScheduler

logger = logging.getLogger(__name__)

PricePoint = tuple[int, float]


class PriceFetchError(RuntimeError):
    """Raised when one asset's price history could not be fetched."""


class CoinGeckoClient:
    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        timeout: float = 20.0,
        max_retries: int = 3,
        retry_base_interval: float = 1.0,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_interval = retry_base_interval
        self.client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "CoinGeckoClient":
        return cls(
            api_key=settings.coingecko_api_key,
            base_url=settings.coingecko_base_url,
            timeout=settings.price_fetch_timeout_seconds,
            max_retries=settings.price_fetch_max_retries,
        )

    async def initialize(self) -> None:
        if self.client:
            return
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
            follow_redirects=True,
        )

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def fetch_prices_in_range(self, coin_id: str, from_ts: int, to_ts: int) -> list[PricePoint]:
        """Chronological ``(unix_seconds, usd_price)`` samples for ``coin_id``."""
        if not self.client:
            await self.initialize()
        params: dict[str, Any] = {"vs_currency": "usd", "from": int(from_ts), "to": int(to_ts)}
        if self.api_key:
            params["x_cg_demo_api_key"] = self.api_key
        url = f"{self.base_url}/coins/{coin_id}/market_chart/range"

        backoff = RateLimitScheduler(
            f"coingecko:{coin_id}",
            base_interval=self.retry_base_interval,
            max_interval=60.0,
            max_retries=self.max_retries,
        )
        while True:
            try:
                response = await self.client.get(url, params=params)
            except httpx.HTTPError as exc:
                if not backoff.can_retry():
                    raise PriceFetchError(f"{coin_id}: request failed: {exc}") from exc
                backoff.on_error()
                await backoff.wait()
                continue

            if response.status_code == 429 or response.status_code >= 500:
                if not backoff.can_retry():
                    raise PriceFetchError(f"{coin_id}: HTTP {response.status_code} after {backoff.failures} retries")
                if response.status_code == 429:
                    backoff.on_rate_limit()
                else:
                    backoff.on_error()
                await backoff.wait()
                continue
            if response.status_code >= 400:
                raise PriceFetchError(f"{coin_id}: HTTP {response.status_code}")
            backoff.on_success()
            return _parse_market_chart(response.json())


def _parse_market_chart(payload: Any) -> list[PricePoint]:
    raw = payload.get("prices") if isinstance(payload, dict) else None
    points: list[PricePoint] = []
    for item in raw or []:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            continue
        try:
            ts = int(float(item[0]) // 1000)
            price = float(item[1])
        except (TypeError, ValueError):
            continue
        points.append((ts, price))
    points.sort(key=lambda p: p[0])
    return points


def pick_hourly_price(points: Sequence[PricePoint], hour_ts: int, tolerance: int = 600) -> float | None:
    """Price for an hour boundary without looking ahead when avoidable.

    The last sample at or before ``hour_ts`` wins if it is within ``tolerance``;
    otherwise the first sample after the boundary, if it is close enough.
    """
    if not points:
        return None
    timestamps = [p[0] for p in points]
    idx = bisect_right(timestamps, hour_ts) - 1
    if idx >= 0 and hour_ts - points[idx][0] <= tolerance:
        return points[idx][1]
    after = idx + 1
    if after < len(points) and points[after][0] - hour_ts <= tolerance:
        return points[after][1]
    return None


def canonical_hourly_prices(
    points: Sequence[PricePoint],
    from_ts: int,
    to_ts: int,
    tolerance: int = 600,
) -> list[PricePoint]:
    out: list[PricePoint] = []
    hour = hour_floor(from_ts)
    if hour < from_ts:
        hour += HOUR_SECONDS
    while hour <= to_ts:
        price = pick_hourly_price(points, hour, tolerance)
        if price is not None:
            out.append((hour, price))
        hour += HOUR_SECONDS
    return out


def snap_prices_to_times(points: Sequence[PricePoint], times: Iterable[int]) -> list[PricePoint]:
    """Price at each signal time: last sample at or before, else the first sample."""
    if not points:
        return []
    timestamps = [p[0] for p in points]
    out: list[PricePoint] = []
    for t in sorted(set(int(x) for x in times)):
        idx = bisect_right(timestamps, t) - 1
        if idx >= len(points) - 1:
            out.append((t, points[-1][1]))
        elif idx >= 0:
            out.append((t, points[idx][1]))
        else:
            out.append((t, points[0][1]))
    return out


def _insert_prices(db: Session, asset: str, rows: Iterable[PricePoint]) -> int:
    rows = list(rows)
    if not rows:
        return 0
    stamps = [ts for ts, _ in rows]
    existing = {
        int(ts)
        for (ts,) in db.query(Price.timestamp)
        .filter(Price.asset_symbol == asset, Price.timestamp >= min(stamps), Price.timestamp <= max(stamps))
        .all()
    }
    inserted = 0
    for ts, price in rows:
        if ts in existing or not price > 0:
            continue
        db.add(Price(asset_symbol=asset, timestamp=int(ts), price_usd=float(price)))
        existing.add(ts)
        inserted += 1
    return inserted


class PriceBackfillService:
    """Fills the ``prices`` table from CoinGecko up to a target timestamp."""

    def __init__(
        self,
        session_factory,
        client: CoinGeckoClient | None = None,
        settings: AppSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._client = client or CoinGeckoClient.from_settings(self._settings)

    async def close(self) -> None:
        await self._client.close()

    def _range(self, db: Session, to_ts: int) -> tuple[int, int] | None:
        min_first = db.query(func.min(Strategy.first_signal_ts)).scalar()
        if min_first is None:
            logger.info("event=price_backfill_skipped reason=no_strategies")
            return None
        earliest_hour = hour_floor(int(min_first))
        last_price_ts = get_meta_int(db, LAST_PRICE_TS, 0)
        if last_price_ts <= 0:
            last_price_ts = earliest_hour
        from_ts = max(earliest_hour, last_price_ts)
        if to_ts <= from_ts:
            logger.info("event=price_backfill_skipped reason=up_to_date from=%s to=%s", from_ts, to_ts)
            return None
        return from_ts, to_ts

    def _wanted_times(self, db: Session, asset: str, from_ts: int, to_ts: int) -> set[int]:
        signal_times = (
            db.query(SignalRecord.timestamp)
            .filter(SignalRecord.asset_symbol == asset, SignalRecord.timestamp.between(from_ts, to_ts))
            .all()
        )
        start_times = (
            db.query(Strategy.first_signal_ts).filter(Strategy.first_signal_ts.between(from_ts, to_ts)).all()
        )
        return {int(row[0]) for row in signal_times} | {int(row[0]) for row in start_times}

    async def _backfill_asset(self, db: Session, asset: str, coin_id: str, from_ts: int, to_ts: int) -> int:
        tolerance = self._settings.price_tolerance_seconds
        points = await self._client.fetch_prices_in_range(coin_id, max(0, from_ts - tolerance), to_ts + tolerance)
        if not points:
            logger.info("event=price_backfill_empty asset=%s from=%s to=%s", asset, from_ts, to_ts)
            return 0
        hourly = canonical_hourly_prices(points, from_ts, to_ts, tolerance)
        snapped = snap_prices_to_times(points, self._wanted_times(db, asset, from_ts, to_ts))
        try:
            inserted = _insert_prices(db, asset, hourly)
            db.flush()
            inserted += _insert_prices(db, asset, snapped)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(
            "event=price_backfill_asset asset=%s hourly=%s signal_time=%s inserted=%s",
            asset,
            len(hourly),
            len(snapped),
            inserted,
        )
        return inserted

    async def backfill(self, to_ts: int | None = None) -> int | None:
        """Backfill every supported asset up to ``to_ts``; returns the stored ``last_price_ts``.

        A failing asset is logged and skipped. ``last_price_ts`` only moves forward,
        and never past the newest price actually stored.
        """
        target = int(to_ts if to_ts is not None else time.time())
        db = self._session_factory()
        try:
            window = self._range(db, target)
            if window is not None:
                from_ts, to_ts_final = window
                for asset, coin_id in SUPPORTED_ASSETS.items():
                    try:
                        await self._backfill_asset(db, asset, coin_id, from_ts, to_ts_final)
                    except Exception:
                        logger.exception("event=price_backfill_asset_failed asset=%s", asset)
                        continue
                self._advance_last_price_ts(db, to_ts_final)
            return get_meta_int(db, LAST_PRICE_TS, 0) or None
        finally:
            db.close()

    def _advance_last_price_ts(self, db: Session, to_ts: int) -> None:
        max_ts = db.query(func.max(Price.timestamp)).scalar()
        if max_ts is None:
            logger.warning("event=price_backfill_no_prices")
            return
        actual_last = min(int(max_ts), int(to_ts))
        previous = get_meta_int(db, LAST_PRICE_TS, 0)
        if actual_last <= previous:
            return
        set_meta(db, LAST_PRICE_TS, actual_last)
        db.commit()
        logger.info("event=last_price_ts_advanced value=%s", actual_last)
