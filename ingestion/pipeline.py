"""
Sync Pipeline
=============

Replication state machine for one table.

    IDLE -> READING -> BUFFERING -> FLUSHING -> LOADING -> MATERIALIZING -> CHECKPOINTING -> IDLE

plus CIRCUIT_OPEN (too many consecutive failures, cooling down) and FAILED
(configuration error, terminal for this table).

Each stage call runs under a timeout and is retried with exponential backoff.
A batch that could not finish keeps its place: the next cycle picks it up at
the stage that failed. The high watermark only moves after a merge commits,
so a crash at any point replays changes the target already tolerates.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from itertools import islice
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import (
    CircuitOpenError,
    EventOrderViolation,
    NonRetryableError,
    ReplicationError,
    RetryableError,
)
from processing.common_code.utils import utc_now
from .buffer import BatchBuffer
from .checkpoint import Checkpoint, CheckpointStore, StagedEntry
from .config import ReplicationSettings
from .connectors.base import ChangeSource
from .events import Batch, BatchStatus, ChangeEvent, OrderingToken, SourceTableRef
from .retry import CallRunner, backoff_delay
from .writer import BatchWriter

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    BUFFERING = "buffering"
    FLUSHING = "flushing"
    LOADING = "loading"
    MATERIALIZING = "materializing"
    CHECKPOINTING = "checkpointing"
    CIRCUIT_OPEN = "circuit_open"
    FAILED = "failed"


# Stages that may be abandoned when shutdown is requested.
_ABORTABLE_STAGES = {"connect", "discover", "prepare", "checkpoint_load", "read", "write"}


@dataclass
class CycleResult:
    """Outcome of one run_cycle() call."""
    table_key: str
    state: PipelineState = PipelineState.IDLE
    events_read: int = 0
    batches_merged: int = 0
    rows_merged: int = 0
    more_pending: bool = False
    error: Optional[str] = None


class SyncPipeline:
    """
    Moves one table's changes from its source into the warehouse.

    Not thread-safe for concurrent run_cycle() calls; the orchestrator runs
    each pipeline on its own thread. status() may be called from anywhere.
    """

    def __init__(
        self,
        ref: SourceTableRef,
        settings: ReplicationSettings,
        source: ChangeSource,
        writer: BatchWriter,
        loader,
        materializer,
        checkpoint_store: CheckpointStore,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize pipeline.

        Args:
            ref: Replicated table
            settings: Thresholds for this table
            source: Change source serving the table
            writer: Batch writer (object storage)
            loader: Staging loader
            materializer: Merge materializer
            checkpoint_store: Durable checkpoint store
            metrics: Optional MetricsCollector
            clock: Monotonic time source
            sleep: Sleep used for backoff once a batch is past the point of no return
        """
        self.ref = ref
        self.settings = settings
        self.source = source
        self.writer = writer
        self.loader = loader
        self.materializer = materializer
        self.checkpoint_store = checkpoint_store
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep

        self.buffer = BatchBuffer(ref.key, settings.batch_size, settings.flush_interval_seconds, clock=clock)
        self._runner = CallRunner(ref.key, max_workers=4)

        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self.consecutive_failures = 0
        self._circuit_until: Optional[float] = None
        self._circuit_until_wall: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._initialized = False
        self._checkpoint = Checkpoint()
        self._read_token: Optional[OrderingToken] = None
        # (batch, stage to resume at, checkpoint to save once merged)
        self._pending: Optional[Tuple[Batch, PipelineState, Optional[Checkpoint]]] = None

    # =========================================
    # STATE
    # =========================================

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: PipelineState):
        with self._state_lock:
            if self._state is not state:
                logger.debug(f"{self.ref.key}: {self._state.value} -> {state.value}")
            self._state = state

    @property
    def checkpoint(self) -> Checkpoint:
        return self._checkpoint

    def circuit_remaining(self) -> float:
        """Seconds until an open circuit may be retried (0 when closed)."""
        if self._circuit_until is None:
            return 0.0
        return max(0.0, self._circuit_until - self._clock())

    def status(self) -> Dict[str, Any]:
        checkpoint = self._checkpoint
        pending = self._pending
        watermark = checkpoint.watermark_token
        return {
            "table": self.ref.key,
            "mode": self.ref.mode.value,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open_until": self._circuit_until_wall.isoformat() if self._circuit_until_wall else None,
            "last_checkpoint_at": checkpoint.committed_at.isoformat() if checkpoint.committed_at else None,
            "high_watermark": str(watermark) if watermark is not None else None,
            "last_batch_id": checkpoint.last_batch_id,
            "staged_batches": len(checkpoint.staging_ledger),
            "buffered_events": len(self.buffer),
            "pending_batch": pending[0].batch_id if pending else None,
            "pending_stage": pending[1].value if pending else None,
            "last_error": self.last_error,
        }

    # =========================================
    # CYCLE
    # =========================================

    def run_cycle(self, stop_event: Optional[threading.Event] = None) -> CycleResult:
        """
        Run one pass: finish any pending batch, read what the source has,
        and push every full (or aged) buffer through to a checkpoint.
        """
        stop_event = stop_event or threading.Event()
        result = CycleResult(table_key=self.ref.key)

        if self.state is PipelineState.FAILED:
            result.state = PipelineState.FAILED
            result.error = self.last_error
            return result

        if self.state is PipelineState.CIRCUIT_OPEN:
            if self.circuit_remaining() > 0:
                result.state = PipelineState.CIRCUIT_OPEN
                return result
            logger.info(f"Circuit cooldown elapsed for {self.ref.key}, retrying")
            self._close_circuit(half_open=True)

        try:
            if not self._initialized:
                self._initialize(stop_event)

            if self._pending is not None:
                batch = self._advance_pending(stop_event)
                result.batches_merged += 1
                result.rows_merged += batch.event_count

            self._read_and_process(stop_event, result)
            self._set_state(PipelineState.IDLE)

        except NonRetryableError as e:
            self._fail(e)
            result.error = str(e)
        except CircuitOpenError as e:
            result.error = str(e)
        except RetryableError as e:
            # Attempts for this cycle are used up; the next cycle resumes.
            self.last_error = str(e)
            result.error = str(e)
            self._set_state(PipelineState.IDLE)

        result.state = self.state
        return result

    def _initialize(self, stop_event: threading.Event):
        self._set_state(PipelineState.READING)
        self._run_stage("connect", stop_event, self.source.connect)
        self._run_stage("discover", stop_event, self.source.discover, self.ref)
        self._run_stage("prepare", stop_event, self.loader.prepare, self.ref)
        checkpoint = self._run_stage("checkpoint_load", stop_event, self.checkpoint_store.get, self.ref)

        self._checkpoint = checkpoint or Checkpoint()
        self._read_token = self._checkpoint.watermark_token
        self._initialized = True
        logger.info(
            f"Pipeline ready for {self.ref.key} ({self.ref.mode.value}), "
            f"resuming after {self._read_token if self._read_token else 'the beginning'}"
        )

    def _read_chunk(self, since: Optional[OrderingToken], limit: int) -> List[ChangeEvent]:
        events = []
        for event in islice(self.source.read_changes(self.ref, since, max_events=limit), limit):
            if since is not None and event.ordering_token <= since:
                continue
            events.append(event)
        return events

    def _read_and_process(self, stop_event: threading.Event, result: CycleResult):
        settings = self.settings
        exhausted = False

        while not exhausted and result.events_read < settings.max_events_per_read and not stop_event.is_set():
            if self.buffer.should_flush():
                self._process_unit(stop_event, result)
                continue

            limit = min(settings.max_events_per_read - result.events_read, settings.batch_size - len(self.buffer))
            self._set_state(PipelineState.READING)
            events = self._run_stage("read", stop_event, self._read_chunk, self._read_token, limit)

            self._set_state(PipelineState.BUFFERING)
            for event in events:
                try:
                    self.buffer.append(event)
                except ValueError as e:
                    raise EventOrderViolation(
                        "Source returned a change below the last buffered token",
                        context={"table": self.ref.key, "token": str(event.ordering_token)},
                        original_exception=e
                    )
                self._read_token = event.ordering_token
            result.events_read += len(events)
            exhausted = len(events) < limit

        if self.metrics is not None:
            self.metrics.record_events_read(self.ref.key, result.events_read)
        result.more_pending = not exhausted and not stop_event.is_set()

        if stop_event.is_set():
            if self.settings.flush_on_shutdown and len(self.buffer):
                logger.info(f"Flushing {len(self.buffer)} buffered events for {self.ref.key} before shutdown")
                self._process_unit(stop_event, result, shutdown=True)
            elif len(self.buffer):
                logger.info(f"Discarding {len(self.buffer)} unflushed events for {self.ref.key} on shutdown")
            return

        if self.buffer.should_flush():
            self._process_unit(stop_event, result)

    def _process_unit(self, stop_event: threading.Event, result: CycleResult, shutdown: bool = False):
        """Flush the buffer and take the batch through to a saved checkpoint."""
        self._set_state(PipelineState.FLUSHING)
        # An explicit shutdown flush must not be abandoned halfway.
        write_stop = threading.Event() if shutdown else stop_event
        batch = self.buffer.flush(
            lambda events: self._run_stage("write", write_stop, self.writer.write, events, self.ref)
        )
        if batch is None:
            return
        self._pending = (batch, PipelineState.LOADING, None)
        batch = self._advance_pending(stop_event)
        result.batches_merged += 1
        result.rows_merged += batch.event_count

    def _advance_pending(self, stop_event: threading.Event) -> Batch:
        batch, stage, next_checkpoint = self._pending

        if stage is PipelineState.LOADING:
            self._set_state(PipelineState.LOADING)
            self._run_stage("load", stop_event, self.loader.load_to_staging, self.ref, batch, self._checkpoint)
            batch = batch.advance(BatchStatus.STAGED)
            self._record_staged(batch)
            stage = PipelineState.MATERIALIZING
            self._pending = (batch, stage, None)

        if stage is PipelineState.MATERIALIZING:
            self._set_state(PipelineState.MATERIALIZING)
            merge = self._run_stage("merge", stop_event, self.materializer.materialize, self.ref)
            batch = batch.advance(BatchStatus.MERGED)
            if self.metrics is not None:
                self.metrics.record_merge(self.ref.key, merge.upserts, merge.deletes, merge.stale_skipped)
            next_checkpoint = self._checkpoint.after_merge(
                batch_id=batch.batch_id,
                max_token=batch.max_token,
                committed_at=utc_now(),
                absorbed=merge.batch_ids,
            )
            stage = PipelineState.CHECKPOINTING
            self._pending = (batch, stage, next_checkpoint)

        if stage is PipelineState.CHECKPOINTING:
            self._set_state(PipelineState.CHECKPOINTING)
            self._run_stage("checkpoint", stop_event, self.checkpoint_store.save, self.ref, next_checkpoint)
            self._checkpoint = next_checkpoint
            self._pending = None
            if self.metrics is not None:
                self.metrics.record_checkpoint(self.ref.key, next_checkpoint.committed_at.timestamp())
            logger.info(
                f"Checkpoint committed for {self.ref.key}: batch {batch.batch_id}, "
                f"watermark {next_checkpoint.watermark_token}"
            )

        return batch

    def _record_staged(self, batch: Batch):
        """Note the staged batch in the ledger. Best effort: the merge tolerates re-staging."""
        entry = StagedEntry(
            batch_id=batch.batch_id,
            location=batch.location,
            max_token=batch.max_token,
            staged_at=utc_now(),
        )
        checkpoint = self._checkpoint.with_staged(entry, self.settings.staging_ledger_max_entries)
        if checkpoint is self._checkpoint:
            return
        try:
            self._runner.call(
                self.checkpoint_store.save, self.settings.call_timeout_seconds, self.ref, checkpoint
            )
            self._checkpoint = checkpoint
        except ReplicationError as e:
            logger.warning(f"Could not record staged batch {batch.batch_id} for {self.ref.key}: {e}")

    # =========================================
    # RETRY / CIRCUIT BREAKER
    # =========================================

    def _run_stage(self, stage: str, stop_event: threading.Event, func: Callable, *args):
        """
        Call ``func`` with the per-call timeout, retrying transient failures.

        Raises:
            NonRetryableError: Immediately, never retried
            CircuitOpenError: When this failure reached the threshold
            RetryableError: When the attempts for this cycle are used up
        """
        settings = self.settings
        last_error: Optional[RetryableError] = None

        for attempt in range(1, settings.max_attempts_per_stage + 1):
            if attempt > 1:
                delay = backoff_delay(attempt - 1, settings.retry_base_delay_seconds, settings.retry_max_delay_seconds)
                logger.info(
                    f"Retrying {stage} for {self.ref.key} in {delay:.1f}s "
                    f"(attempt {attempt}/{settings.max_attempts_per_stage})"
                )
                if stage in _ABORTABLE_STAGES:
                    if stop_event.wait(delay):
                        raise last_error
                else:
                    self._sleep(delay)

            started = time.monotonic()
            try:
                value = self._runner.call(func, settings.call_timeout_seconds, *args)
            except NonRetryableError:
                raise
            except RetryableError as e:
                last_error = e
            except Exception as e:
                last_error = RetryableError(
                    f"Unexpected failure during {stage}",
                    context={"table": self.ref.key, "stage": stage},
                    original_exception=e
                )
            else:
                self.consecutive_failures = 0
                if self.metrics is not None:
                    self.metrics.record_stage_success(self.ref.key, stage, time.monotonic() - started)
                return value

            self._record_failure(stage, last_error, attempt)

        raise last_error

    def _record_failure(self, stage: str, error: ReplicationError, attempt: int):
        self.consecutive_failures += 1
        self.last_error = str(error)
        logger.warning(
            f"{stage} failed for {self.ref.key} (attempt {attempt}/{self.settings.max_attempts_per_stage}, "
            f"{self.consecutive_failures} consecutive failures): {error}"
        )
        if self.metrics is not None:
            self.metrics.record_stage_failure(self.ref.key, stage, type(error).__name__)

        if self.consecutive_failures >= self.settings.failure_threshold:
            self._open_circuit()
            raise CircuitOpenError(
                "Circuit opened after consecutive failures",
                context={
                    "table": self.ref.key,
                    "stage": stage,
                    "failures": self.consecutive_failures,
                    "cooldown_seconds": self.settings.circuit_cooldown_seconds,
                },
                original_exception=error
            )

    def _open_circuit(self):
        cooldown = self.settings.circuit_cooldown_seconds
        self._circuit_until = self._clock() + cooldown
        self._circuit_until_wall = datetime.now(timezone.utc) + timedelta(seconds=cooldown)
        self._set_state(PipelineState.CIRCUIT_OPEN)
        if self.metrics is not None:
            self.metrics.set_circuit_open(self.ref.key, True)
        logger.error(
            f"Circuit open for {self.ref.key} after {self.consecutive_failures} consecutive failures; "
            f"retrying in {cooldown}s"
        )

    def _close_circuit(self, half_open: bool = False):
        self._circuit_until = None
        self._circuit_until_wall = None
        # Half-open: one more failure reopens the circuit.
        self.consecutive_failures = self.settings.failure_threshold - 1 if half_open else 0
        self._set_state(PipelineState.IDLE)
        if self.metrics is not None:
            self.metrics.set_circuit_open(self.ref.key, False)

    def _fail(self, error: NonRetryableError):
        self.last_error = str(error)
        self._set_state(PipelineState.FAILED)
        if self.metrics is not None:
            self.metrics.set_pipeline_failed(self.ref.key, True)
        logger.error(f"Pipeline for {self.ref.key} stopped: {error}")

    def close(self):
        self._runner.shutdown()
