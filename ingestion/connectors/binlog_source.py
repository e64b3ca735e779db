"""
MySQL Binlog Source
===================

Log-based change source reading the MySQL binary log (ROW format).

Token position is (log_file, event_end_pos, row_index, resume_file,
resume_pos). The first three order the changes; the resume coordinates point
at the end of the last committed transaction before the change, so a restart
never lands in the middle of a transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

import pymysql
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import RotateEvent, XidEvent
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from core.exceptions import ConfigurationError, SourceSchemaMismatch, SourceUnavailable
from ..events import ChangeEvent, Operation, OrderingToken, SourceTableRef, SyncMode
from .base import ChangeSource, SourceMetadata

logger = logging.getLogger(__name__)

BINLOG_START_POS = 4


class MySQLBinlogSource(ChangeSource):
    """
    Reads row changes from the MySQL binlog without blocking: each call
    returns what is in the log now and then ends.
    """

    def __init__(self, config: Dict, server_id: int = 100, timeout_seconds: Optional[float] = None):
        """
        Initialize binlog source.

        Args:
            config: Connection dict with host, port, username, password
            server_id: Unique replica server id for this reader
            timeout_seconds: Socket read timeout
        """
        self.config = config
        self.server_id = server_id
        self.timeout_seconds = timeout_seconds

    @property
    def connection_settings(self) -> Dict:
        settings = {
            "host": self.config["host"],
            "port": int(self.config["port"]),
            "user": self.config["username"],
            "passwd": self.config["password"],
        }
        if self.timeout_seconds:
            settings["read_timeout"] = int(self.timeout_seconds)
        return settings

    def connect(self):
        """Check that the server is reachable and binlog is enabled."""
        try:
            conn = pymysql.connect(
                host=self.config["host"],
                port=int(self.config["port"]),
                user=self.config["username"],
                password=self.config["password"],
            )
        except pymysql.err.OperationalError as e:
            raise SourceUnavailable("Cannot connect to MySQL", original_exception=e)

        try:
            with conn.cursor() as cursor:
                cursor.execute("SHOW VARIABLES LIKE 'binlog_format'")
                row = cursor.fetchone()
        finally:
            conn.close()

        if not row or str(row[1]).upper() != "ROW":
            raise ConfigurationError(
                "Binlog replication requires binlog_format=ROW",
                context={"binlog_format": row[1] if row else None}
            )
        logger.info(f"Connected to MySQL binlog at {self.config['host']}:{self.config['port']}")

    def discover(self, ref: SourceTableRef) -> SourceMetadata:
        if ref.mode is not SyncMode.LOG_BASED:
            raise ConfigurationError(
                "Binlog source only serves log-based tables",
                context={"table": ref.key, "mode": ref.mode.value}
            )
        try:
            conn = pymysql.connect(
                host=self.config["host"],
                port=int(self.config["port"]),
                user=self.config["username"],
                password=self.config["password"],
            )
        except pymysql.err.OperationalError as e:
            raise SourceUnavailable("Cannot connect to MySQL", original_exception=e)

        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT column_name FROM information_schema.columns "
                    "WHERE table_schema = %s AND table_name = %s ORDER BY ordinal_position",
                    (ref.schema, ref.table)
                )
                columns = tuple(r[0] for r in cursor.fetchall())
        finally:
            conn.close()

        if not columns:
            raise ConfigurationError("Source table does not exist", context={"table": ref.key})

        missing = [c for c in ref.primary_key if c not in columns]
        if missing:
            raise SourceSchemaMismatch(
                "Declared primary key columns are absent from the source",
                context={"table": ref.key, "missing_columns": missing}
            )
        return SourceMetadata(columns=columns, primary_key=ref.primary_key)

    def _open_stream(self, ref: SourceTableRef, since: Optional[OrderingToken]) -> BinLogStreamReader:
        resume_kwargs = {}
        if since is not None:
            resume_file, resume_pos = since.position[3], since.position[4]
            resume_kwargs = {"log_file": resume_file, "log_pos": resume_pos, "resume_stream": True}
            logger.info(f"Resuming binlog for {ref.key} from {resume_file}:{resume_pos}")

        return BinLogStreamReader(
            connection_settings=self.connection_settings,
            server_id=self.server_id,
            only_events=[WriteRowsEvent, UpdateRowsEvent, DeleteRowsEvent, XidEvent, RotateEvent],
            only_schemas=[ref.schema],
            only_tables=[ref.table],
            blocking=False,
            **resume_kwargs
        )

    def read_changes(
        self,
        ref: SourceTableRef,
        since_token: Optional[OrderingToken] = None,
        max_events: Optional[int] = None
    ) -> Iterator[ChangeEvent]:
        since_order = tuple(since_token.position[:3]) if since_token is not None else None
        if since_token is not None:
            resume = (since_token.position[3], since_token.position[4])
        else:
            resume = None

        try:
            stream = self._open_stream(ref, since_token)
        except pymysql.err.OperationalError as e:
            raise SourceUnavailable("Cannot open binlog stream", context={"table": ref.key}, original_exception=e)

        emitted = 0
        try:
            for event in stream:
                if resume is None:
                    resume = (stream.log_file, BINLOG_START_POS)

                if isinstance(event, XidEvent):
                    resume = (stream.log_file, stream.log_pos)
                    continue
                if isinstance(event, RotateEvent):
                    continue

                if isinstance(event, WriteRowsEvent):
                    operation, images = Operation.UPSERT, [r["values"] for r in event.rows]
                elif isinstance(event, UpdateRowsEvent):
                    operation, images = Operation.UPSERT, [r["after_values"] for r in event.rows]
                elif isinstance(event, DeleteRowsEvent):
                    operation, images = Operation.DELETE, [r["values"] for r in event.rows]
                else:
                    continue

                source_ts = datetime.fromtimestamp(event.timestamp, tz=timezone.utc)
                ingested_at = datetime.now(timezone.utc)
                for row_index, image in enumerate(images):
                    order = (stream.log_file, stream.log_pos, row_index)
                    if since_order is not None and order <= since_order:
                        continue

                    missing = [c for c in ref.primary_key if c not in image]
                    if missing:
                        raise SourceSchemaMismatch(
                            "Binlog row image lacks primary key columns",
                            context={"table": ref.key, "missing_columns": missing}
                        )

                    primary_key = tuple(image[c] for c in ref.primary_key)
                    yield ChangeEvent(
                        operation=operation,
                        primary_key=primary_key,
                        payload=dict(image),
                        ordering_token=OrderingToken(order + resume, primary_key),
                        source_timestamp=source_ts,
                        ingested_at=ingested_at,
                    )
                    emitted += 1
                    if max_events is not None and emitted >= max_events:
                        return
        except pymysql.err.OperationalError as e:
            raise SourceUnavailable("Lost binlog connection", context={"table": ref.key}, original_exception=e)
        finally:
            stream.close()
