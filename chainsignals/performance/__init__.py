from chainsignals.performance.allocation import (
    Holdings,
    Position,
    SignalInput,
    SnapshotPosition,
    apply_target_allocation,
    approximate_positions,
    drift_holdings,
    positions_from_holdings,
    seed_holdings,
)
from chainsignals.performance.prices import PriceBook, hour_floor
from chainsignals.performance.replay import ReplayResult, ReplaySignal, StrategyReplayState, replay_strategy
from chainsignals.performance.stats import STAT_WINDOWS, WindowStats, compute_all_window_stats

__all__ = [
    "Holdings",
    "Position",
    "SignalInput",
    "SnapshotPosition",
    "apply_target_allocation",
    "approximate_positions",
    "drift_holdings",
    "positions_from_holdings",
    "seed_holdings",
    "PriceBook",
    "hour_floor",
    "ReplayResult",
    "ReplaySignal",
    "StrategyReplayState",
    "replay_strategy",
    "STAT_WINDOWS",
    "WindowStats",
    "compute_all_window_stats",
]
