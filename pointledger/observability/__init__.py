"""
Observability module - Logging, Metrics, and Tracing.
"""

from pointledger.observability.logging import get_logger, log_context, setup_logging
from pointledger.observability.metrics import metrics
from pointledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
