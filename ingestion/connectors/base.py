"""
Connector Interfaces
====================

Capability interfaces the replication core depends on. The pipeline only
talks to these; each source kind or storage backend provides its own variant.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from ..events import ChangeEvent, OrderingToken, SourceTableRef


@dataclass(frozen=True)
class SourceMetadata:
    """What a source reports about a table during discovery."""
    columns: Tuple[str, ...]
    primary_key: Tuple[str, ...]
    cursor_column: Optional[str] = None


class ChangeSource(ABC):
    """
    A source of ordered row changes.

    Contract for read_changes:
    - events come in ascending ordering-token order
    - no event with token <= since_token is emitted
    - nothing between two consecutive calls is skipped
    - each call is finite (at most max_events events)
    - connectivity loss raises SourceUnavailable
    """

    @abstractmethod
    def connect(self):
        """Establish the connection to the source."""

    @abstractmethod
    def discover(self, ref: SourceTableRef) -> SourceMetadata:
        """
        Validate the table declaration against the source.

        Raises:
            SourceSchemaMismatch: If declared primary key columns are absent
            ConfigurationError: If the cursor column is absent
        """

    @abstractmethod
    def read_changes(
        self,
        ref: SourceTableRef,
        since_token: Optional[OrderingToken] = None,
        max_events: Optional[int] = None
    ) -> Iterator[ChangeEvent]:
        """Lazily yield changes after since_token."""

    def close(self):
        """Release connections."""


class ObjectStore(ABC):
    """Durable object storage for batch artifacts."""

    def connect(self):
        """Prepare the store (create bucket or directory)."""

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Write an object; returns its URI once durably acknowledged."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Read an object."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """List object paths under a prefix."""

    @abstractmethod
    def delete(self, path: str):
        """Delete an object."""

    def exists(self, path: str) -> bool:
        return path in self.list(path)
