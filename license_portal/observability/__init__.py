"""
Observability module - Logging, Metrics, and Tracing.
"""

from license_portal.observability.logging import get_logger, setup_logging
from license_portal.observability.metrics import metrics
from license_portal.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
