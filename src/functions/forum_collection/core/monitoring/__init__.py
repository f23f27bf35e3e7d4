"""Job monitoring and alerting."""

from .monitor import Alert, JobMetricsWindow, Monitor, categorize_error

__all__ = ["Alert", "JobMetricsWindow", "Monitor", "categorize_error"]
