"""Health monitoring: sampling, thresholds and operator reports."""

from vigil.health.monitor import HealthMonitor, HealthReport, HealthStatus
from vigil.health.thresholds import HealthThresholds

__all__ = ["HealthMonitor", "HealthReport", "HealthStatus", "HealthThresholds"]
