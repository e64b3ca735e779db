"""
Checkpoint Store
================

Durable, per-table record of replication progress.

A checkpoint holds:
- high_watermark: encoded token of the last change absorbed by a committed merge
- last_batch_id / committed_at: the merge that produced it
- staging_ledger: batches staged but not merged yet, so a restart does not
  stage them twice

The watermark never moves backwards; a save that would lower it raises
WatermarkRegression. Saves for one table are serialized, saves for different
tables never block each other.

Backends:
- FileCheckpointStore: one JSON document per table (atomic replace)
- PostgresCheckpointStore: one JSONB row per table (upsert in a transaction)
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote

import psycopg2
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from core.exceptions import CheckpointLoadFailed, CheckpointSaveFailed, WatermarkRegression
from processing.common_code.utils import parse_timestamp
from .events import OrderingToken, SourceTableRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagedEntry:
    """A batch that reached staging but has not been merged."""
    batch_id: str
    location: Optional[str]
    max_token: str
    staged_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "location": self.location,
            "max_token": self.max_token,
            "staged_at": self.staged_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagedEntry":
        return cls(
            batch_id=data["batch_id"],
            location=data.get("location"),
            max_token=data["max_token"],
            staged_at=parse_timestamp(data["staged_at"]),
        )


@dataclass(frozen=True)
class Checkpoint:
    high_watermark: Optional[str] = None
    last_batch_id: Optional[str] = None
    committed_at: Optional[datetime] = None
    staging_ledger: Tuple[StagedEntry, ...] = field(default_factory=tuple)

    @property
    def watermark_token(self) -> Optional[OrderingToken]:
        if self.high_watermark is None:
            return None
        return OrderingToken.decode(self.high_watermark)

    def is_staged(self, batch_id: str) -> bool:
        return any(entry.batch_id == batch_id for entry in self.staging_ledger)

    def with_staged(self, entry: StagedEntry, max_entries: int) -> "Checkpoint":
        """
        Record a staged batch in the ledger.

        A full ledger drops the new entry: the worst case is the batch being
        staged again after a restart, which the merge absorbs.
        """
        if self.is_staged(entry.batch_id):
            return self
        if len(self.staging_ledger) >= max_entries:
            logger.warning(
                f"Staging ledger full ({max_entries} entries), not recording batch {entry.batch_id}"
            )
            return self
        return replace(self, staging_ledger=self.staging_ledger + (entry,))

    def after_merge(
        self,
        batch_id: str,
        max_token: str,
        committed_at: datetime,
        absorbed: Iterable[str] = ()
    ) -> "Checkpoint":
        """
        Checkpoint after a committed merge.

        Args:
            batch_id: Batch whose merge committed
            max_token: Highest token of that batch
            committed_at: Merge commit time
            absorbed: Ledger batch ids the merge consumed
        """
        absorbed = set(absorbed) | {batch_id}
        candidates = [max_token] + [e.max_token for e in self.staging_ledger if e.batch_id in absorbed]
        if self.high_watermark is not None:
            candidates.append(self.high_watermark)
        return Checkpoint(
            high_watermark=max(candidates),
            last_batch_id=batch_id,
            committed_at=committed_at,
            staging_ledger=tuple(e for e in self.staging_ledger if e.batch_id not in absorbed),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "high_watermark": self.high_watermark,
            "last_batch_id": self.last_batch_id,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "staging_ledger": [entry.to_dict() for entry in self.staging_ledger],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            high_watermark=data.get("high_watermark"),
            last_batch_id=data.get("last_batch_id"),
            committed_at=parse_timestamp(data.get("committed_at")),
            staging_ledger=tuple(StagedEntry.from_dict(e) for e in data.get("staging_ledger") or ()),
        )


def check_watermark(key: str, stored: Optional[Checkpoint], new: Checkpoint):
    """Raise WatermarkRegression if ``new`` would lower the stored watermark."""
    if stored is None or stored.high_watermark is None:
        return
    if new.high_watermark is None or new.high_watermark < stored.high_watermark:
        raise WatermarkRegression(
            "Checkpoint save would move the high watermark backwards",
            context={
                "table": key,
                "stored": str(stored.watermark_token),
                "new": str(new.watermark_token) if new.high_watermark else None,
            }
        )


class CheckpointStore(ABC):
    """Base store: per-key locking and the monotonic watermark rule."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, ref: SourceTableRef) -> Optional[Checkpoint]:
        """Stored checkpoint for a table, or None if it was never saved."""
        with self._lock_for(ref.key):
            return self._read(ref.key)

    def save(self, ref: SourceTableRef, checkpoint: Checkpoint):
        """
        Persist a checkpoint.

        Raises:
            WatermarkRegression: If the watermark would move backwards
            CheckpointSaveFailed: If the backend write fails
        """
        with self._lock_for(ref.key):
            self._save(ref.key, checkpoint)
        logger.debug(f"Saved checkpoint for {ref.key}: {checkpoint.high_watermark!r}")

    def _save(self, key: str, checkpoint: Checkpoint):
        check_watermark(key, self._read(key), checkpoint)
        self._write(key, checkpoint)

    @abstractmethod
    def _read(self, key: str) -> Optional[Checkpoint]:
        ...

    @abstractmethod
    def _write(self, key: str, checkpoint: Checkpoint):
        ...

    @abstractmethod
    def list_tracked_tables(self) -> List[str]:
        """Keys of every table with a stored checkpoint."""

    def close(self):
        pass


class FileCheckpointStore(CheckpointStore):
    """One JSON file per table under a directory."""

    def __init__(self, directory: str):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='.-_')}.json"

    def _read(self, key: str) -> Optional[Checkpoint]:
        path = self._path(key)
        try:
            with open(path, "r") as f:
                return Checkpoint.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError) as e:
            raise CheckpointLoadFailed(
                "Failed to read checkpoint",
                context={"table": key, "path": str(path)},
                original_exception=e
            )

    def _write(self, key: str, checkpoint: Checkpoint):
        path = self._path(key)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(checkpoint.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise CheckpointSaveFailed(
                "Failed to write checkpoint",
                context={"table": key, "path": str(path)},
                original_exception=e
            )

    def list_tracked_tables(self) -> List[str]:
        return sorted(
            unquote(p.name[:-len(".json")])
            for p in self.directory.glob("*.json")
            if not p.name.startswith(".tmp-")
        )


class PostgresCheckpointStore(CheckpointStore):
    """
    Checkpoints as JSONB documents in PostgreSQL.

    Each call borrows its own connection from a thread-safe pool, so a slow
    save for one table never holds up another. The stored row is locked
    (SELECT ... FOR UPDATE) while the watermark is checked, so concurrent
    writers from other processes cannot interleave.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "replication_checkpoints",
        min_connections: int = 1,
        max_connections: int = 10
    ):
        super().__init__()
        self.dsn = dsn
        self.table = table
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool: Optional[ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> ThreadedConnectionPool:
        """Return the connection pool, creating it on first use."""
        with self._pool_lock:
            if self._pool is None or self._pool.closed:
                self._pool = ThreadedConnectionPool(self.min_connections, self.max_connections, self.dsn)
            return self._pool

    @contextmanager
    def _transaction(self):
        """Borrow a pooled connection for one transaction; broken connections are discarded."""
        pool = self._get_pool()
        conn = pool.getconn()
        broken = False
        try:
            with conn:
                yield conn
        except psycopg2.Error:
            broken = True
            raise
        finally:
            pool.putconn(conn, close=broken)

    def ensure_table(self):
        """Create the checkpoint table if it does not exist."""
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        CREATE TABLE IF NOT EXISTS {self.table} (
                            table_key TEXT PRIMARY KEY,
                            document JSONB NOT NULL,
                            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                        )
                    """)
        except psycopg2.Error as e:
            raise CheckpointSaveFailed(
                "Failed to create checkpoint table",
                context={"table": self.table},
                original_exception=e
            )

    def _read(self, key: str) -> Optional[Checkpoint]:
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT document FROM {self.table} WHERE table_key = %s",
                        (key,)
                    )
                    row = cur.fetchone()
        except psycopg2.Error as e:
            raise CheckpointLoadFailed(
                "Failed to read checkpoint",
                context={"table": key},
                original_exception=e
            )
        return Checkpoint.from_dict(row[0]) if row else None

    def _write(self, key: str, checkpoint: Checkpoint):
        self._save(key, checkpoint)

    def _save(self, key: str, checkpoint: Checkpoint):
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT document FROM {self.table} WHERE table_key = %s FOR UPDATE",
                        (key,)
                    )
                    row = cur.fetchone()
                    check_watermark(key, Checkpoint.from_dict(row[0]) if row else None, checkpoint)
                    cur.execute(
                        f"""
                        INSERT INTO {self.table} (table_key, document, updated_at)
                        VALUES (%s, %s, NOW())
                        ON CONFLICT (table_key)
                        DO UPDATE SET document = EXCLUDED.document, updated_at = NOW()
                        """,
                        (key, Json(checkpoint.to_dict()))
                    )
        except psycopg2.Error as e:
            raise CheckpointSaveFailed(
                "Failed to write checkpoint",
                context={"table": key},
                original_exception=e
            )

    def list_tracked_tables(self) -> List[str]:
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT table_key FROM {self.table} ORDER BY table_key")
                    return [r[0] for r in cur.fetchall()]
        except psycopg2.Error as e:
            raise CheckpointLoadFailed(
                "Failed to list checkpoints",
                context={"table": self.table},
                original_exception=e
            )

    def close(self):
        with self._pool_lock:
            if self._pool is not None and not self._pool.closed:
                self._pool.closeall()
            self._pool = None
