from .snapshot_collector import MetricsCollector, falls_into_time_span

__all__ = ["MetricsCollector", "falls_into_time_span"]
