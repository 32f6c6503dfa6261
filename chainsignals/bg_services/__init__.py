from chainsignals.bg_services.performance_scheduler import PerformanceScheduler, get_performance_scheduler

__all__ = ["PerformanceScheduler", "get_performance_scheduler"]
