"""Backoff state for upstream APIs that throttle or fail intermittently."""
from __future__ import annotations

import asyncio
import logging
import random

logger = logging.getLogger(__name__)


class RateLimitScheduler:
    """Per-provider retry budget with exponential backoff and jitter.

    A fetch loop asks ``can_retry()`` after a failure, records the failure with
    ``on_rate_limit()`` (HTTP 429) or ``on_error()`` (anything else), then
    awaits ``wait()`` before the next attempt. ``on_success()`` restores the
    base delay and the full retry budget.
    """

    def __init__(
        self,
        provider_name: str,
        base_interval: float = 1.0,
        max_interval: float = 60.0,
        jitter_factor: float = 0.3,
        max_retries: int = 3,
    ):
        self.provider = provider_name
        self.base = base_interval
        self.max = max_interval
        self.jitter_factor = jitter_factor
        self.max_retries = max(0, int(max_retries))
        self._current = base_interval
        self._failures = 0

    @property
    def current_interval(self) -> float:
        return self._current

    @property
    def failures(self) -> int:
        return self._failures

    def can_retry(self) -> bool:
        return self._failures < self.max_retries

    def on_success(self) -> None:
        self.reset()

    def on_rate_limit(self) -> None:
        self._failures += 1
        backoff = min(self.base * (2**self._failures), self.max)
        jitter = random.uniform(0, backoff * self.jitter_factor)
        self._current = min(backoff + jitter, self.max)
        logger.warning(
            "event=rate_limited provider=%s delay_s=%.1f attempt=%d",
            self.provider,
            self._current,
            self._failures,
        )

    def on_error(self) -> None:
        self._failures += 1
        self._current = min(self._current * 1.5, self.max)
        logger.warning(
            "event=upstream_error provider=%s delay_s=%.1f attempt=%d",
            self.provider,
            self._current,
            self._failures,
        )

    async def wait(self) -> None:
        await asyncio.sleep(self._current)

    def reset(self) -> None:
        self._failures = 0
        self._current = self.base
