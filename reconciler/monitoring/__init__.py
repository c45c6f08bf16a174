"""Monitoring and observability package."""
from .health import HealthCheck, HealthCheckError
from .metrics import metrics

__all__ = ["HealthCheck", "HealthCheckError", "metrics"]
