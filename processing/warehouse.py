"""
Warehouse Access
================

SQLAlchemy Core access to the analytical warehouse.

Every replicated table gets two warehouse tables with a fixed layout (the
row itself travels as JSON text, so no per-table schema is derived):

    {staging_prefix}{schema}_{table}
        _stage_id, _cdc_batch_id, _cdc_pk, _cdc_op, _cdc_token,
        _cdc_ingested_at, payload

    {target_prefix}{schema}_{table}
        _cdc_pk (primary key), payload, _cdc_op, _cdc_token, _cdc_deleted,
        _cdc_ingested_at, _cdc_merged_at, _cdc_batch_id
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

from ingestion.events import SourceTableRef

logger = logging.getLogger(__name__)

PK_LENGTH = 512
TOKEN_LENGTH = 1024


class Warehouse:
    """Staging and target tables for replicated sources."""

    def __init__(
        self,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
        staging_prefix: str = "stg_",
        target_prefix: str = "rep_",
        schema: Optional[str] = None,
        engine_kwargs: Optional[Dict] = None
    ):
        """
        Initialize warehouse access.

        Args:
            url: SQLAlchemy database URL
            engine: Pre-built engine (skips create_engine)
            staging_prefix: Name prefix of staging tables
            target_prefix: Name prefix of target tables
            schema: Warehouse schema holding both (default schema if None)
            engine_kwargs: Extra create_engine() arguments
        """
        if url is None and engine is None:
            raise ValueError("Either url or engine is required")
        self.url = url
        self.engine = engine
        self.staging_prefix = staging_prefix
        self.target_prefix = target_prefix
        self.schema = schema
        self.engine_kwargs = engine_kwargs or {}

        self.metadata = MetaData(schema=schema)
        self._tables: Dict[str, Tuple[Table, Table]] = {}
        self._tables_lock = threading.Lock()

    def connect(self):
        if self.engine is None:
            self.engine = create_engine(self.url, pool_pre_ping=True, **self.engine_kwargs)
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info(f"Connected to warehouse: {self.engine.url.render_as_string(hide_password=True)}")

    def close(self):
        if self.engine is not None:
            self.engine.dispose()

    # =========================================
    # LAYOUT
    # =========================================

    def staging_table_name(self, ref: SourceTableRef) -> str:
        return f"{self.staging_prefix}{ref.schema}_{ref.table}"

    def target_table_name(self, ref: SourceTableRef) -> str:
        return f"{self.target_prefix}{ref.schema}_{ref.table}"

    def tables(self, ref: SourceTableRef) -> Tuple[Table, Table]:
        """(staging, target) table objects for a ref."""
        with self._tables_lock:
            pair = self._tables.get(ref.key)
            if pair is None:
                pair = (self._staging_table(ref), self._target_table(ref))
                self._tables[ref.key] = pair
            return pair

    def _staging_table(self, ref: SourceTableRef) -> Table:
        return Table(
            self.staging_table_name(ref),
            self.metadata,
            Column(
                "_stage_id",
                BigInteger().with_variant(Integer, "sqlite"),
                primary_key=True,
                autoincrement=True
            ),
            Column("_cdc_batch_id", String(64), nullable=False, index=True),
            Column("_cdc_pk", String(PK_LENGTH), nullable=False),
            Column("_cdc_op", String(16), nullable=False),
            Column("_cdc_token", String(TOKEN_LENGTH), nullable=False),
            Column("_cdc_ingested_at", DateTime(timezone=True)),
            Column("payload", Text),
        )

    def _target_table(self, ref: SourceTableRef) -> Table:
        return Table(
            self.target_table_name(ref),
            self.metadata,
            Column("_cdc_pk", String(PK_LENGTH), primary_key=True),
            Column("payload", Text),
            Column("_cdc_op", String(16), nullable=False),
            Column("_cdc_token", String(TOKEN_LENGTH), nullable=False),
            Column("_cdc_deleted", Boolean, nullable=False, default=False),
            Column("_cdc_ingested_at", DateTime(timezone=True)),
            Column("_cdc_merged_at", DateTime(timezone=True)),
            Column("_cdc_batch_id", String(64)),
        )

    # =========================================
    # DDL / DML
    # =========================================

    def ensure_tables(self, ref: SourceTableRef):
        """Create the staging and target tables for a ref if missing."""
        staging, target = self.tables(ref)
        self.metadata.create_all(self.engine, tables=[staging, target], checkfirst=True)
        logger.info(f"Warehouse tables ready for {ref.key}: {staging.name}, {target.name}")

    def transaction(self):
        """Context manager yielding a Connection inside one transaction."""
        return self.engine.begin()

    def bulk_load(self, ref: SourceTableRef, rows: List[Dict[str, Any]], conn: Optional[Connection] = None) -> int:
        """
        Insert staging rows in one transaction.

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0
        staging, _ = self.tables(ref)
        if conn is not None:
            conn.execute(insert(staging), rows)
        else:
            with self.engine.begin() as own_conn:
                own_conn.execute(insert(staging), rows)
        return len(rows)

    # =========================================
    # INSPECTION
    # =========================================

    def count_staged(self, ref: SourceTableRef) -> int:
        staging, _ = self.tables(ref)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(staging)).scalar_one()

    def fetch_target_rows(self, ref: SourceTableRef, include_deleted: bool = True) -> List[Dict[str, Any]]:
        """
        Target rows with the payload decoded, ordered by primary key.

        Args:
            ref: Replicated table
            include_deleted: Include soft-deleted rows
        """
        _, target = self.tables(ref)
        stmt = select(target).order_by(target.c._cdc_pk)
        if not include_deleted:
            stmt = stmt.where(target.c._cdc_deleted.is_(False))
        with self.engine.connect() as conn:
            rows = [dict(r) for r in conn.execute(stmt).mappings()]
        for row in rows:
            row["payload"] = json.loads(row["payload"]) if row["payload"] else None
        return rows
