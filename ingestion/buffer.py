"""
Batch Buffer
============

Per-table accumulator between the change source and the batch writer.

Events are kept in arrival order. A flush is due once the buffer holds
``batch_size`` events or its oldest event has waited ``flush_interval_seconds``.
The buffer only clears after the writer has returned a batch, so a failed
write leaves every event in place for the retry.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from .events import Batch, ChangeEvent

logger = logging.getLogger(__name__)


class BatchBuffer:
    """Thread-safe event buffer for one table."""

    def __init__(
        self,
        table_key: str,
        batch_size: int,
        flush_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize buffer.

        Args:
            table_key: Key of the table the events belong to
            batch_size: Flush once this many events are held
            flush_interval_seconds: Flush once the oldest event is this old
            clock: Monotonic time source
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.table_key = table_key
        self.batch_size = batch_size
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock
        self._events: List[ChangeEvent] = []
        self._first_arrival: Optional[float] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def last_token(self) -> Optional[str]:
        with self._lock:
            return self._events[-1].token if self._events else None

    def oldest_age(self) -> float:
        """Seconds since the oldest held event arrived (0 when empty)."""
        with self._lock:
            if self._first_arrival is None:
                return 0.0
            return self._clock() - self._first_arrival

    def append(self, event: ChangeEvent):
        """
        Add an event.

        Raises:
            ValueError: If the event's token is lower than the last held token
        """
        with self._lock:
            if self._events and event.token < self._events[-1].token:
                raise ValueError(
                    f"Out-of-order event for {self.table_key}: "
                    f"{event.ordering_token} after {self._events[-1].ordering_token}"
                )
            if not self._events:
                self._first_arrival = self._clock()
            self._events.append(event)

    def should_flush(self) -> bool:
        with self._lock:
            if not self._events:
                return False
            if len(self._events) >= self.batch_size:
                return True
            return self.oldest_age() >= self.flush_interval_seconds

    def snapshot(self) -> List[ChangeEvent]:
        with self._lock:
            return list(self._events)

    def flush(self, write: Callable[[List[ChangeEvent]], Batch]) -> Optional[Batch]:
        """
        Hand the held events to ``write`` and clear on success.

        Args:
            write: Callable turning the events into a written Batch

        Returns:
            The Batch, or None when the buffer is empty
        """
        with self._lock:
            if not self._events:
                return None
            events = list(self._events)

        batch = write(events)

        with self._lock:
            # Only drop what was written; anything appended meanwhile stays.
            del self._events[:len(events)]
            self._first_arrival = self._clock() if self._events else None

        logger.debug(f"Flushed {len(events)} events for {self.table_key} into batch {batch.batch_id}")
        return batch
