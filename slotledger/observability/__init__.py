"""
Observability module - Logging, Metrics, and Tracing.
"""

from slotledger.observability.logging import get_logger, log_context, setup_logging
from slotledger.observability.metrics import metrics
from slotledger.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
