"""
Metrics Collector
=================

Prometheus metrics for the replication service.

Every collector owns its registry, so several engines (or tests) in one
process never clash on metric names. Metrics can be pushed to a Pushgateway
or rendered in exposition format.
"""

import logging
from typing import Dict, Optional
import threading

from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, push_to_gateway,
    generate_latest
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and exports replication metrics.

    Usage:
        metrics = MetricsCollector()
        metrics.record_counter("replication_events_read_total", 10, {"table_name": "leads"})
        metrics.get_value("replication_events_read_total", {"table_name": "leads"})
    """

    METRIC_DEFINITIONS = {
        "replication_events_read_total": {
            "type": "counter",
            "description": "Change events read from the source",
            "labels": ["table_name"]
        },
        "replication_batches_total": {
            "type": "counter",
            "description": "Batches that completed a pipeline stage",
            "labels": ["table_name", "stage"]
        },
        "replication_rows_merged_total": {
            "type": "counter",
            "description": "Target rows changed by merges",
            "labels": ["table_name", "action"]
        },
        "replication_stage_failures_total": {
            "type": "counter",
            "description": "Failed stage attempts",
            "labels": ["table_name", "stage", "error_type"]
        },
        "replication_stage_duration_seconds": {
            "type": "histogram",
            "description": "Duration of successful stage calls",
            "labels": ["table_name", "stage"]
        },
        "replication_checkpoint_timestamp_seconds": {
            "type": "gauge",
            "description": "Unix time of the last committed checkpoint",
            "labels": ["table_name"]
        },
        "replication_circuit_open": {
            "type": "gauge",
            "description": "1 while the table's circuit is open",
            "labels": ["table_name"]
        },
        "replication_pipeline_failed": {
            "type": "gauge",
            "description": "1 when the table stopped on a configuration error",
            "labels": ["table_name"]
        },
    }

    def __init__(
        self,
        pushgateway_url: Optional[str] = None,
        job_name: str = "warehouse_replication"
    ):
        """
        Initialize metrics collector.

        Args:
            pushgateway_url: Prometheus Pushgateway URL
            job_name: Job name for Prometheus
        """
        self.job_name = job_name
        self.pushgateway_url = pushgateway_url

        self._registry = CollectorRegistry()
        self._prometheus_metrics: Dict = {}
        self._lock = threading.Lock()
        self._init_prometheus_metrics()

    def _init_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        for name, definition in self.METRIC_DEFINITIONS.items():
            metric_type = definition["type"]
            description = definition["description"]
            labels = definition.get("labels", [])

            if metric_type == "counter":
                self._prometheus_metrics[name] = Counter(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "gauge":
                self._prometheus_metrics[name] = Gauge(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "histogram":
                self._prometheus_metrics[name] = Histogram(
                    name, description, labels, registry=self._registry
                )

    def _metric(self, metric_name: str):
        metric = self._prometheus_metrics.get(metric_name)
        if metric is None:
            logger.warning(f"Unknown metric: {metric_name}")
        return metric

    # =========================================
    # METRIC RECORDING METHODS
    # =========================================

    def record_counter(
        self,
        metric_name: str,
        value: float = 1,
        labels: Optional[Dict] = None
    ):
        """
        Increment a counter metric.

        Args:
            metric_name: Name of the metric
            value: Value to increment by
            labels: Label key-value pairs
        """
        metric = self._metric(metric_name)
        if metric is not None:
            with self._lock:
                metric.labels(**(labels or {})).inc(value)

    def record_gauge(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict] = None
    ):
        """Set a gauge metric value."""
        metric = self._metric(metric_name)
        if metric is not None:
            with self._lock:
                metric.labels(**(labels or {})).set(value)

    def record_histogram(
        self,
        metric_name: str,
        value: float,
        labels: Optional[Dict] = None
    ):
        """Record a histogram observation."""
        metric = self._metric(metric_name)
        if metric is not None:
            with self._lock:
                metric.labels(**(labels or {})).observe(value)

    # =========================================
    # CONVENIENCE METHODS
    # =========================================

    def record_events_read(self, table_name: str, count: int):
        if count > 0:
            self.record_counter("replication_events_read_total", count, {"table_name": table_name})

    def record_stage_success(self, table_name: str, stage: str, duration_seconds: float):
        """Record a completed stage call for one batch."""
        labels = {"table_name": table_name, "stage": stage}
        self.record_counter("replication_batches_total", 1, labels)
        self.record_histogram("replication_stage_duration_seconds", duration_seconds, labels)

    def record_stage_failure(self, table_name: str, stage: str, error_type: str):
        self.record_counter(
            "replication_stage_failures_total",
            1,
            {"table_name": table_name, "stage": stage, "error_type": error_type}
        )

    def record_merge(self, table_name: str, upserts: int, deletes: int, stale_skipped: int):
        """Record the row outcome of a merge."""
        for action, count in (("upsert", upserts), ("delete", deletes), ("stale_skipped", stale_skipped)):
            if count > 0:
                self.record_counter(
                    "replication_rows_merged_total",
                    count,
                    {"table_name": table_name, "action": action}
                )

    def record_checkpoint(self, table_name: str, committed_at_epoch: float):
        self.record_gauge(
            "replication_checkpoint_timestamp_seconds",
            committed_at_epoch,
            {"table_name": table_name}
        )

    def set_circuit_open(self, table_name: str, is_open: bool):
        self.record_gauge("replication_circuit_open", 1 if is_open else 0, {"table_name": table_name})

    def set_pipeline_failed(self, table_name: str, failed: bool):
        self.record_gauge("replication_pipeline_failed", 1 if failed else 0, {"table_name": table_name})

    # =========================================
    # EXPORT METHODS
    # =========================================

    def push_to_prometheus(self) -> bool:
        """Push metrics to Prometheus Pushgateway."""
        if not self.pushgateway_url:
            logger.debug("Pushgateway URL not configured")
            return False

        try:
            push_to_gateway(
                self.pushgateway_url,
                job=self.job_name,
                registry=self._registry
            )
            logger.info("Metrics pushed to Prometheus Pushgateway")
            return True
        except OSError as e:
            logger.error(f"Failed to push metrics: {e}")
            return False

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self._registry).decode('utf-8')

    def get_value(self, sample_name: str, labels: Optional[Dict] = None) -> Optional[float]:
        """
        Read a sample back from the registry.

        Counters are exposed with a ``_total`` suffix, histograms with
        ``_count``/``_sum``; pass the sample name as it appears in exposition.
        """
        return self._registry.get_sample_value(sample_name, labels or {})
