"""
Replication Orchestrator
========================

Runs every table's SyncPipeline on its own thread.

- Polling tables wait poll_interval_seconds between cycles, or go again at
  once while the source still has data
- Log-based tables loop continuously with a short idle wait
- Pipelines with an open circuit wait out their cooldown
- SIGINT/SIGTERM stop every pipeline at its next safe boundary
"""

import logging
import signal
import threading
from typing import Dict, List, Optional

from observability.logging.structured_logger import log_context
from .config import InvalidTable
from .events import SyncMode
from .pipeline import CycleResult, PipelineState, SyncPipeline

logger = logging.getLogger(__name__)


class ReplicationOrchestrator:
    """Schedules one pipeline per replicated table."""

    def __init__(
        self,
        pipelines: List[SyncPipeline],
        alerts=None,
        stop_event: Optional[threading.Event] = None,
        invalid_tables: Optional[List[InvalidTable]] = None
    ):
        """
        Initialize orchestrator.

        Args:
            pipelines: One pipeline per table
            alerts: Optional AlertManager for circuit and configuration alerts
            stop_event: Shared stop signal (created if omitted)
            invalid_tables: Tables whose configuration failed to load; they are
                reported as failed and never run
        """
        self.pipelines = list(pipelines)
        self.alerts = alerts
        self.stop_event = stop_event or threading.Event()
        self.invalid_tables = list(invalid_tables or [])
        self._threads: Dict[str, threading.Thread] = {}
        self._invalid_reported = False

    # =========================================
    # SIGNALS
    # =========================================

    def install_signal_handlers(self):
        """Stop on SIGINT/SIGTERM (main thread only)."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop_event.set()

    # =========================================
    # SCHEDULING
    # =========================================

    def next_wait(self, pipeline: SyncPipeline, result: CycleResult) -> Optional[float]:
        """
        Seconds to wait before the pipeline's next cycle; None stops it.
        """
        if result.state is PipelineState.FAILED:
            return None
        if result.state is PipelineState.CIRCUIT_OPEN:
            return pipeline.circuit_remaining()

        settings = pipeline.settings
        if result.more_pending:
            wait = 0.0
        elif pipeline.ref.mode is SyncMode.LOG_BASED:
            wait = settings.idle_interval_seconds
        else:
            wait = settings.poll_interval_seconds

        # Come back in time for an age-triggered flush.
        if len(pipeline.buffer):
            wait = min(wait, max(0.0, settings.flush_interval_seconds - pipeline.buffer.oldest_age()))
        return wait

    def _report(self, pipeline: SyncPipeline, before: PipelineState, result: CycleResult):
        if self.alerts is None:
            return
        if result.state is PipelineState.CIRCUIT_OPEN and before is not PipelineState.CIRCUIT_OPEN:
            self.alerts.send_alert(
                severity="error",
                title="Replication circuit open",
                message=(
                    f"Table {pipeline.ref.key} hit {pipeline.settings.failure_threshold} consecutive "
                    f"failures and pauses for {pipeline.settings.circuit_cooldown_seconds}s. "
                    f"Last error: {result.error}"
                ),
                alert_type="circuit_open",
                source=pipeline.ref.key,
                metadata=pipeline.status(),
            )
        elif result.state is PipelineState.FAILED and before is not PipelineState.FAILED:
            self.alerts.send_alert(
                severity="critical",
                title="Replication stopped on configuration error",
                message=f"Table {pipeline.ref.key} stopped: {result.error}",
                alert_type="configuration_error",
                source=pipeline.ref.key,
                metadata=pipeline.status(),
            )

    def _invalid_results(self) -> Dict[str, CycleResult]:
        """FAILED results for unloadable tables, alerting on the first call only."""
        results = {
            invalid.name: CycleResult(
                table_key=invalid.name,
                state=PipelineState.FAILED,
                error=str(invalid.error),
            )
            for invalid in self.invalid_tables
        }
        if self._invalid_reported:
            return results
        self._invalid_reported = True

        for invalid in self.invalid_tables:
            logger.error(f"Replication for {invalid.name} not started: {invalid.error}")
            if self.alerts is not None:
                self.alerts.send_alert(
                    severity="critical",
                    title="Replication stopped on configuration error",
                    message=f"Table {invalid.name} stopped: {invalid.error}",
                    alert_type="configuration_error",
                    source=invalid.name,
                    metadata={"rule_name": invalid.rule_name, **invalid.error.to_dict()},
                )
        return results

    def run_pipeline_cycle(self, pipeline: SyncPipeline) -> CycleResult:
        before = pipeline.state
        result = pipeline.run_cycle(self.stop_event)
        self._report(pipeline, before, result)
        if result.events_read or result.batches_merged:
            logger.info(
                f"Cycle for {pipeline.ref.key}: read {result.events_read} events, "
                f"merged {result.batches_merged} batches ({result.state.value})"
            )
        return result

    def _run_pipeline(self, pipeline: SyncPipeline):
        with log_context(table=pipeline.ref.key):
            logger.info(f"Starting replication for {pipeline.ref.key} ({pipeline.ref.mode.value})")
            while not self.stop_event.is_set():
                try:
                    result = self.run_pipeline_cycle(pipeline)
                except Exception:
                    logger.exception(f"Replication thread for {pipeline.ref.key} crashed")
                    if self.alerts is not None:
                        self.alerts.send_alert(
                            severity="critical",
                            title="Replication thread crashed",
                            message=f"Unexpected error replicating {pipeline.ref.key}; see logs",
                            alert_type="pipeline_failure",
                            source=pipeline.ref.key,
                        )
                    raise

                wait = self.next_wait(pipeline, result)
                if wait is None:
                    logger.error(f"Replication for {pipeline.ref.key} stopped ({result.state.value})")
                    return
                if wait > 0:
                    self.stop_event.wait(wait)
            logger.info(f"Replication for {pipeline.ref.key} stopped")

    def start(self):
        """Start one thread per pipeline."""
        self._invalid_results()
        for pipeline in self.pipelines:
            key = pipeline.ref.key
            if key in self._threads and self._threads[key].is_alive():
                continue
            thread = threading.Thread(
                target=self._run_pipeline,
                args=(pipeline,),
                name=f"replicate-{pipeline.ref.table}",
                daemon=True,
            )
            self._threads[key] = thread
            thread.start()
        logger.info(f"Started {len(self._threads)} replication threads")

    def run_forever(self):
        """Start all pipelines and block until they stop or a signal arrives."""
        self.start()
        try:
            while not self.stop_event.is_set() and any(t.is_alive() for t in self._threads.values()):
                self.stop_event.wait(1.0)
        finally:
            self.shutdown()

    def run_once(self) -> Dict[str, CycleResult]:
        """Run a single cycle for every table concurrently."""
        results: Dict[str, CycleResult] = self._invalid_results()

        def run(pipeline: SyncPipeline):
            with log_context(table=pipeline.ref.key):
                results[pipeline.ref.key] = self.run_pipeline_cycle(pipeline)

        threads = [
            threading.Thread(target=run, args=(p,), name=f"replicate-{p.ref.table}")
            for p in self.pipelines
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def shutdown(self, timeout: Optional[float] = None):
        """Signal every pipeline to stop and wait for their threads."""
        self.stop_event.set()
        for key, thread in self._threads.items():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Replication thread for {key} did not stop within {timeout}s")
        for pipeline in self.pipelines:
            pipeline.close()
        logger.info("Replication shut down")

    def status(self) -> List[Dict]:
        statuses = [pipeline.status() for pipeline in self.pipelines]
        statuses.extend(
            {"table": invalid.name, "state": PipelineState.FAILED.value, "last_error": str(invalid.error)}
            for invalid in self.invalid_tables
        )
        return statuses
