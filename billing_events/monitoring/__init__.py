"""Logging, metrics and health checks."""
from .health import HealthCheck, HealthCheckError
from .logging import redact_secrets, setup_logging
from .metrics import metrics

__all__ = ["HealthCheck", "HealthCheckError", "metrics", "redact_secrets", "setup_logging"]
