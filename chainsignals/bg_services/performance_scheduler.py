from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from chainsignals.config.settings import AppSettings, get_settings
from chainsignals.performance.prices import hour_floor
from chainsignals.services.price_backfill import PriceBackfillService
from chainsignals.services.segment_engine import (
    extend_all_strategy_segments,
    recompute_all_strategy_stats,
    strategies_need_extension,
)
from chainsignals.services.signal_sync import SignalSource, sync_signals

logger = logging.getLogger(__name__)


def _default_session_factory():
    from chainsignals.db.database import SessionLocal

    return SessionLocal()


def _default_signal_source(settings: AppSettings) -> SignalSource:
    from chainsignals.services.chain_client import ChainSignalsClient

    return ChainSignalsClient.from_settings(settings)


class PerformanceScheduler:
    """Frequent signal ingestion plus price-gated segment extension and stats."""

    def __init__(
        self,
        session_factory: Callable[[], Any] | None = None,
        signal_source: SignalSource | None = None,
        backfill_service: PriceBackfillService | None = None,
        settings: AppSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or _default_session_factory
        self._signal_source = signal_source
        self._backfill = backfill_service
        self._clock = clock
        self._scheduler: Any = None
        self._sync_lock = asyncio.Lock()
        self._recompute_lock = asyncio.Lock()
        self._last_sync_ts: int | None = None
        self._last_sync_status: str = "never"
        self._last_recompute_ts: int | None = None
        self._last_recompute_status: str = "never"

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "last_signal_sync_ts": self._last_sync_ts,
            "last_signal_sync_status": self._last_sync_status,
            "last_recompute_ts": self._last_recompute_ts,
            "last_recompute_status": self._last_recompute_status,
        }

    def _source(self) -> SignalSource:
        if self._signal_source is None:
            self._signal_source = _default_signal_source(self._settings)
        return self._signal_source

    def _backfill_service(self) -> PriceBackfillService:
        if self._backfill is None:
            self._backfill = PriceBackfillService(self._session_factory, settings=self._settings)
        return self._backfill

    async def start(self) -> None:
        if self._scheduler and self._scheduler.running:
            return
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore
            from apscheduler.triggers.interval import IntervalTrigger  # type: ignore
        except Exception as exc:
            logger.warning("Performance scheduler disabled: APScheduler unavailable (%s)", exc)
            self._last_recompute_status = "scheduler_unavailable"
            return

        await self.run_startup_pass()

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_sync_safe,
            trigger=IntervalTrigger(seconds=self._settings.signal_sync_interval_seconds),
            id="signal-sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self._run_recompute_safe,
            trigger=IntervalTrigger(seconds=self._settings.performance_attempt_interval_seconds),
            id="performance-recompute",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("event=performance_scheduler_started")

    async def stop(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None
        if self._backfill is not None:
            await self._backfill.close()
        logger.info("event=performance_scheduler_stopped")

    def _sync_blocking(self) -> bool:
        db = self._session_factory()
        try:
            return sync_signals(db, self._source(), batch_size=self._settings.signal_batch_size)
        finally:
            db.close()

    def _needs_extension_blocking(self, last_price_ts: int) -> bool:
        db = self._session_factory()
        try:
            return strategies_need_extension(db, last_price_ts)
        finally:
            db.close()

    def _extend_and_stats_blocking(self, now_ts: int) -> None:
        db = self._session_factory()
        try:
            extend_all_strategy_segments(db)
            recompute_all_strategy_stats(db, now_ts)
        finally:
            db.close()

    async def sync_once(self) -> bool:
        async with self._sync_lock:
            stored = await asyncio.to_thread(self._sync_blocking)
            self._last_sync_ts = int(self._clock())
            self._last_sync_status = "ok:new" if stored else "ok:idle"
            return stored

    async def recompute_once(self) -> str:
        """One hourly attempt: backfill to the last safely closed hour, then extend if needed."""
        async with self._recompute_lock:
            now = int(self._clock())
            target_hour = hour_floor(now - self._settings.performance_safety_lag_seconds)
            last_price_ts = await self._backfill_service().backfill(target_hour)
            if not last_price_ts:
                status = "skipped:no_prices"
            elif not await asyncio.to_thread(self._needs_extension_blocking, last_price_ts):
                status = "skipped:up_to_date"
            else:
                await asyncio.to_thread(self._extend_and_stats_blocking, now)
                status = "ok"
            self._last_recompute_ts = now
            self._last_recompute_status = status
            logger.info("event=performance_attempt status=%s target_hour=%s", status, target_hour)
            return status

    async def run_startup_pass(self) -> None:
        try:
            await self.sync_once()
        except Exception:
            logger.exception("event=startup_signal_sync_failed")
        try:
            await self._backfill_service().backfill(hour_floor(self._clock()))
        except Exception:
            logger.exception("event=startup_price_backfill_failed")
        try:
            async with self._recompute_lock:
                await asyncio.to_thread(self._extend_and_stats_blocking, int(self._clock()))
        except Exception:
            logger.exception("event=startup_performance_failed")

    async def _run_sync_safe(self) -> None:
        try:
            await self.sync_once()
        except Exception:
            self._last_sync_status = "error"
            logger.exception("event=signal_sync_failed")

    async def _run_recompute_safe(self) -> None:
        try:
            await self.recompute_once()
        except Exception:
            self._last_recompute_status = "error"
            logger.exception("event=performance_attempt_failed")


_performance_scheduler: PerformanceScheduler | None = None


def get_performance_scheduler() -> PerformanceScheduler:
    global _performance_scheduler
    if _performance_scheduler is None:
        _performance_scheduler = PerformanceScheduler()
    return _performance_scheduler
