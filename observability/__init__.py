"""
Replication Observability Module
================================

Provides monitoring, alerting, and logging for the replication service.

Components:
- metrics: Prometheus metrics collection
- alerts: Alert deduplication and notification
- logging: Structured logging with per-thread context

Usage:
    from observability import MetricsCollector, AlertManager, setup_logging, log_context

    setup_logging(level="INFO", json_format=True)
    with log_context(table="propwise_mysql.propwise.propwise.leads"):
        ...
"""

from .metrics.collector import MetricsCollector
from .alerts.manager import AlertManager
from .logging.structured_logger import JsonFormatter, log_context, setup_logging

__version__ = "1.0.0"
__all__ = ["MetricsCollector", "AlertManager", "JsonFormatter", "log_context", "setup_logging"]
