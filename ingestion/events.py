"""
Change Event Model
==================

Types moved through the replication pipeline:

- SourceTableRef: identifies a replicated table
- OrderingToken: total order of changes within one table
- ChangeEvent: one captured row change
- Batch: an immutable, content-identified group of events
"""

import functools
import hashlib
import struct
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from core.exceptions import ConfigurationError


class Operation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class SyncMode(str, Enum):
    POLLING = "polling"
    LOG_BASED = "log-based"


class BatchStatus(str, Enum):
    BUFFERED = "buffered"
    WRITTEN = "written"
    STAGED = "staged"
    MERGED = "merged"


_STATUS_ORDER = {
    BatchStatus.BUFFERED: 0,
    BatchStatus.WRITTEN: 1,
    BatchStatus.STAGED: 2,
    BatchStatus.MERGED: 3,
}


@dataclass(frozen=True)
class SourceTableRef:
    """
    Identifies one replicated table. Immutable once a pipeline is running.

    Attributes:
        source_id: Source system identifier
        database: Source database name
        schema: Source schema name (same as database on MySQL)
        table: Table name
        primary_key: Ordered primary key column names (non-empty)
        cursor_column: Change-tracking column for polling mode
        mode: polling or log-based
    """
    source_id: str
    database: str
    schema: str
    table: str
    primary_key: Tuple[str, ...]
    cursor_column: Optional[str] = None
    mode: SyncMode = SyncMode.POLLING

    def __post_init__(self):
        pk = tuple(self.primary_key or ())
        if not pk:
            raise ConfigurationError(
                "Primary key must not be empty",
                context={"table": f"{self.schema}.{self.table}"}
            )
        object.__setattr__(self, "primary_key", pk)
        object.__setattr__(self, "mode", SyncMode(self.mode))

    @property
    def key(self) -> str:
        """Stable identifier used for checkpoints, metrics and logs."""
        return f"{self.source_id}.{self.database}.{self.schema}.{self.table}"

    def __str__(self) -> str:
        return self.key


# ============================================================================
# Ordering token
# ============================================================================

SEP = "\x1f"
# Characters up to the escape are written as escape + (char + shift), which keeps
# code point order and always sorts above SEP.
_ESCAPE = " "
_ESCAPE_SHIFT = 0x21
_INT_OFFSET = 10 ** 20
_SIGN_BIT = 1 << 63
_MASK64 = (1 << 64) - 1
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def _escape_string(value: str) -> str:
    return "".join(
        _ESCAPE + chr(ord(c) + _ESCAPE_SHIFT) if c <= _ESCAPE else c
        for c in value
    )


def _unescape_string(text: str) -> str:
    chars = []
    i = 0
    while i < len(text):
        if text[i] == _ESCAPE:
            chars.append(chr(ord(text[i + 1]) - _ESCAPE_SHIFT))
            i += 2
        else:
            chars.append(text[i])
            i += 1
    return "".join(chars)


def _encode_component(value: Any) -> str:
    # Each encoding sorts lexicographically in the same order as its values.
    if value is None:
        return "0"
    if isinstance(value, bool):
        return "b1" if value else "b0"
    if isinstance(value, int):
        if not -_INT_OFFSET < value < _INT_OFFSET:
            raise ValueError(f"Integer out of token range: {value}")
        if value >= 0:
            return f"i1{value:020d}"
        return f"i0{value + _INT_OFFSET:020d}"
    if isinstance(value, (float, Decimal)):
        bits = struct.unpack(">Q", struct.pack(">d", float(value)))[0]
        bits = (bits ^ _MASK64) if bits & _SIGN_BIT else (bits | _SIGN_BIT)
        return f"f{bits:016x}"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return "T" + value.astimezone(timezone.utc).strftime(_TS_FORMAT)
        return "t" + value.strftime(_TS_FORMAT)
    if isinstance(value, date):
        return "d" + value.isoformat()
    if isinstance(value, str):
        return "s" + _escape_string(value)
    # pandas.Timestamp / numpy scalars
    if hasattr(value, "to_pydatetime"):
        return _encode_component(value.to_pydatetime())
    if hasattr(value, "item"):
        return _encode_component(value.item())
    raise TypeError(f"Unsupported ordering token component: {type(value).__name__}")


def _decode_component(text: str) -> Any:
    tag, body = text[:1], text[1:]
    if tag == "0":
        return None
    if tag == "b":
        return body == "1"
    if tag == "i":
        number = int(body[1:])
        return number if body[0] == "1" else number - _INT_OFFSET
    if tag == "f":
        bits = int(body, 16)
        bits = (bits & ~_SIGN_BIT) if bits & _SIGN_BIT else (bits ^ _MASK64)
        return struct.unpack(">d", struct.pack(">Q", bits))[0]
    if tag == "T":
        return datetime.strptime(body, _TS_FORMAT).replace(tzinfo=timezone.utc)
    if tag == "t":
        return datetime.strptime(body, _TS_FORMAT)
    if tag == "d":
        return date.fromisoformat(body)
    if tag == "s":
        return _unescape_string(body)
    raise ValueError(f"Unknown token component tag: {tag!r}")


@functools.total_ordering
@dataclass(frozen=True)
class OrderingToken:
    """
    Position of a change within its table: (position, key).

    ``position`` comes from the cursor value (polling) or the log coordinates
    (log-based); ``key`` is the primary key and breaks ties. The encoded form
    sorts lexicographically in token order, so it can be compared wherever it
    is stored (artifacts, staging, target, checkpoints).
    """
    position: Tuple[Any, ...]
    key: Tuple[Any, ...]

    def encode(self) -> str:
        parts = [str(len(self.position))]
        parts.extend(_encode_component(v) for v in self.position)
        parts.extend(_encode_component(v) for v in self.key)
        return SEP.join(parts)

    @classmethod
    def decode(cls, text: str) -> "OrderingToken":
        parts = text.split(SEP)
        n_position = int(parts[0])
        values = [_decode_component(p) for p in parts[1:]]
        return cls(tuple(values[:n_position]), tuple(values[n_position:]))

    def __lt__(self, other: "OrderingToken") -> bool:
        if not isinstance(other, OrderingToken):
            return NotImplemented
        return self.encode() < other.encode()

    def __str__(self) -> str:
        return f"{self.position}/{self.key}"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One captured row change.

    ``payload`` holds the full row for upserts and may be partial for deletes.
    """
    operation: Operation
    primary_key: Tuple[Any, ...]
    payload: Dict[str, Any]
    ordering_token: OrderingToken
    source_timestamp: Optional[datetime] = None
    ingested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def token(self) -> str:
        return self.ordering_token.encode()


# ============================================================================
# Batch
# ============================================================================

def compute_batch_id(table_key: str, events: Sequence[ChangeEvent]) -> str:
    """
    Content identifier of a group of events.

    The same events always produce the same id, so a re-read after a crash
    maps onto the batch that was already written or staged.
    """
    digest = hashlib.sha256(table_key.encode("utf-8"))
    for event in events:
        digest.update(SEP.encode("utf-8"))
        digest.update(event.token.encode("utf-8"))
        digest.update(event.operation.value.encode("utf-8"))
    return digest.hexdigest()[:32]


@dataclass(frozen=True)
class Batch:
    """Immutable group of events for one table. Status only moves forward."""
    batch_id: str
    table_key: str
    min_token: str
    max_token: str
    event_count: int
    location: Optional[str]
    created_at: datetime
    status: BatchStatus = BatchStatus.BUFFERED

    def advance(self, status: BatchStatus) -> "Batch":
        status = BatchStatus(status)
        if _STATUS_ORDER[status] <= _STATUS_ORDER[self.status]:
            raise ValueError(
                f"Batch {self.batch_id} cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "table_key": self.table_key,
            "min_token": self.min_token,
            "max_token": self.max_token,
            "event_count": self.event_count,
            "location": self.location,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }
