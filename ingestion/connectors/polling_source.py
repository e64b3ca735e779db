"""
SQL Polling Source
==================

Change source that polls a table through SQLAlchemy (MySQL via PyMySQL by
default). Pages are requested with a strict "greater than the last seen
(cursor, primary key)" predicate, so rows sharing a cursor value across a page
boundary are neither dropped nor duplicated.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import MetaData, String, Table, and_, collate, create_engine, inspect, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    DisconnectionError,
    InterfaceError,
    NoSuchTableError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)

from core.exceptions import ConfigurationError, SourceSchemaMismatch, SourceUnavailable
from ..events import ChangeEvent, Operation, OrderingToken, SourceTableRef
from .base import ChangeSource, SourceMetadata

logger = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)

# Collations that compare strings by code point, the order OrderingToken uses.
BINARY_COLLATIONS = {
    "mysql": "utf8mb4_bin",
    "mariadb": "utf8mb4_bin",
    "sqlite": "binary",
    "postgresql": "C",
}


def greater_than(columns: Sequence, values: Sequence[Any]):
    """
    Lexicographic ``(c0, c1, ...) > (v0, v1, ...)`` as portable SQL.

    Expands to ``c0 > v0 OR (c0 = v0 AND (c1 > v1 OR (...)))`` so it works on
    dialects without row-value comparison.
    """
    if len(columns) != len(values) or not columns:
        raise ValueError("columns and values must be non-empty and the same length")
    expr = columns[-1] > values[-1]
    for column, value in reversed(list(zip(columns[:-1], values[:-1]))):
        expr = or_(column > value, and_(column == value, expr))
    return expr


class SQLPollingSource(ChangeSource):
    """
    Polling-based change source for any SQLAlchemy-reachable database.

    Deletes are only visible through soft-delete detection
    (``column == delete_value``) configured per table.
    """

    def __init__(
        self,
        url: str,
        page_size: int = 1000,
        delete_detection: Optional[Dict[str, Dict]] = None,
        engine_kwargs: Optional[Dict] = None,
        engine: Optional[Engine] = None,
        binary_collation: Optional[str] = None
    ):
        """
        Initialize polling source.

        Args:
            url: SQLAlchemy database URL
            page_size: Rows fetched per query
            delete_detection: table key -> {"column": ..., "delete_value": ...}
            engine_kwargs: Extra create_engine() arguments
            engine: Pre-built engine (skips create_engine)
            binary_collation: Collation applied to string cursor/key columns
                when paging; defaults to the dialect's code point collation
        """
        self.url = url
        self.page_size = page_size
        self.delete_detection = delete_detection or {}
        self.engine_kwargs = engine_kwargs or {}
        self.engine = engine
        self.binary_collation = binary_collation
        self._tables: Dict[str, Table] = {}

    @classmethod
    def from_mysql_config(
        cls,
        config: Dict,
        page_size: int = 1000,
        delete_detection: Optional[Dict[str, Dict]] = None,
        timeout_seconds: Optional[float] = None
    ) -> "SQLPollingSource":
        """
        Build a source from the MySQL connection block of task_settings.json.

        Args:
            config: Connection dict with host, port, database, username, password
            page_size: Rows fetched per query
            delete_detection: Per-table soft-delete detection
            timeout_seconds: Socket read/write timeout per query
        """
        url = (
            f"mysql+pymysql://{config['username']}:{config['password']}"
            f"@{config['host']}:{config['port']}/{config['database']}"
        )
        connect_args = {}
        if timeout_seconds:
            connect_args = {
                "connect_timeout": int(timeout_seconds),
                "read_timeout": int(timeout_seconds),
                "write_timeout": int(timeout_seconds),
            }
        return cls(
            url,
            page_size=page_size,
            delete_detection=delete_detection,
            engine_kwargs={"connect_args": connect_args},
            binary_collation=config.get("binary_collation"),
        )

    def connect(self):
        """Establish connection to the source database."""
        if self.engine is None:
            self.engine = create_engine(self.url, pool_pre_ping=True, **self.engine_kwargs)
        try:
            with self.engine.connect():
                pass
        except _CONNECTIVITY_ERRORS as e:
            raise SourceUnavailable(
                "Cannot connect to source",
                context={"url": self.engine.url.render_as_string(hide_password=True)},
                original_exception=e
            )
        logger.info(f"Connected to source: {self.engine.url.render_as_string(hide_password=True)}")

    def close(self):
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Source connection closed")

    def _table(self, ref: SourceTableRef) -> Table:
        table = self._tables.get(ref.key)
        if table is None:
            try:
                table = Table(ref.table, MetaData(), schema=ref.schema, autoload_with=self.engine)
            except NoSuchTableError as e:
                raise ConfigurationError(
                    "Source table does not exist",
                    context={"table": ref.key},
                    original_exception=e
                )
            except _CONNECTIVITY_ERRORS as e:
                raise SourceUnavailable(
                    "Lost connection while reflecting source table",
                    context={"table": ref.key},
                    original_exception=e
                )
            self._tables[ref.key] = table
        return table

    def _sortable(self, column):
        """Column as compared when paging: strings under a code point collation."""
        if not isinstance(column.type, String):
            return column
        name = self.binary_collation or BINARY_COLLATIONS.get(self.engine.dialect.name)
        return collate(column, name) if name else column

    def discover(self, ref: SourceTableRef) -> SourceMetadata:
        try:
            inspector = inspect(self.engine)
            columns = tuple(c["name"] for c in inspector.get_columns(ref.table, schema=ref.schema))
            pk_constraint = inspector.get_pk_constraint(ref.table, schema=ref.schema) or {}
        except NoSuchTableError as e:
            raise ConfigurationError(
                "Source table does not exist",
                context={"table": ref.key},
                original_exception=e
            )
        except _CONNECTIVITY_ERRORS as e:
            raise SourceUnavailable(
                "Lost connection during discovery",
                context={"table": ref.key},
                original_exception=e
            )

        if not columns:
            raise ConfigurationError("Source table does not exist", context={"table": ref.key})

        missing = [c for c in ref.primary_key if c not in columns]
        if missing:
            raise SourceSchemaMismatch(
                "Declared primary key columns are absent from the source",
                context={"table": ref.key, "missing_columns": missing}
            )

        if ref.cursor_column and ref.cursor_column not in columns:
            raise ConfigurationError(
                "Cursor column is absent from the source",
                context={"table": ref.key, "cursor_column": ref.cursor_column}
            )

        source_pk = tuple(pk_constraint.get("constrained_columns") or ())
        if source_pk and source_pk != ref.primary_key:
            logger.warning(
                f"Declared primary key {ref.primary_key} differs from source "
                f"primary key {source_pk} for {ref.key}"
            )

        return SourceMetadata(columns=columns, primary_key=ref.primary_key, cursor_column=ref.cursor_column)

    def _fetch(self, stmt, ref: SourceTableRef) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                return [dict(row) for row in conn.execute(stmt).mappings()]
        except _CONNECTIVITY_ERRORS as e:
            raise SourceUnavailable(
                "Lost connection while reading changes",
                context={"table": ref.key},
                original_exception=e
            )

    def _to_event(self, ref: SourceTableRef, row: Dict[str, Any], ingested_at: datetime) -> ChangeEvent:
        primary_key = tuple(row[c] for c in ref.primary_key)
        cursor_value = row[ref.cursor_column] if ref.cursor_column else None
        position = (cursor_value,) if ref.cursor_column else ()

        operation = Operation.UPSERT
        detection = self.delete_detection.get(ref.key)
        if detection and row.get(detection.get("column")) == detection.get("delete_value"):
            operation = Operation.DELETE

        return ChangeEvent(
            operation=operation,
            primary_key=primary_key,
            payload=row,
            ordering_token=OrderingToken(position, primary_key),
            source_timestamp=cursor_value if isinstance(cursor_value, datetime) else None,
            ingested_at=ingested_at,
        )

    def read_changes(
        self,
        ref: SourceTableRef,
        since_token: Optional[OrderingToken] = None,
        max_events: Optional[int] = None
    ) -> Iterator[ChangeEvent]:
        table = self._table(ref)
        pk_columns = [table.c[c] for c in ref.primary_key]
        cursor_column = table.c[ref.cursor_column] if ref.cursor_column else None
        order_columns = ([cursor_column] if cursor_column is not None else []) + pk_columns
        sort_columns = [self._sortable(c) for c in order_columns]

        last_values = None
        if since_token is not None:
            last_values = list(since_token.position) + list(since_token.key)
            if len(last_values) != len(order_columns):
                raise ConfigurationError(
                    "Checkpoint token does not match the table's cursor/primary key layout",
                    context={"table": ref.key, "token": str(since_token)}
                )

        emitted = 0
        while max_events is None or emitted < max_events:
            limit = self.page_size if max_events is None else min(self.page_size, max_events - emitted)

            stmt = select(table)
            if cursor_column is not None:
                stmt = stmt.where(cursor_column.isnot(None))
            if last_values is not None:
                stmt = stmt.where(greater_than(sort_columns, last_values))
            stmt = stmt.order_by(*sort_columns).limit(limit)

            rows = self._fetch(stmt, ref)
            ingested_at = datetime.now(timezone.utc)
            logger.debug(f"Fetched {len(rows)} rows from {ref.key} after {last_values}")

            for row in rows:
                event = self._to_event(ref, row, ingested_at)
                last_values = list(event.ordering_token.position) + list(event.ordering_token.key)
                emitted += 1
                yield event

            if len(rows) < limit:
                return
