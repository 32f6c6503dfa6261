from __future__ import annotations

from chainsignals.shared.rate_limiter import RateLimitScheduler

__all__ = ["RateLimitScheduler"]
