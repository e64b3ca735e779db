"""
Batch Writer
============

Serializes a buffered group of events into one Parquet artifact in object
storage and returns the written Batch.

Artifact layout:
    {root}/{source}/{database}.{schema}/{table}/cdc/window=YYYYMMDDHH/batch_id={id}/data.parquet

Each row holds the event payload plus the synthetic columns
_cdc_op, _cdc_token, _cdc_pk, _cdc_ingested_at and _cdc_source_ts.
"""

import io
import logging
from typing import Any, Dict, List, Sequence

import pandas as pd
import pyarrow.parquet as pq

from core.exceptions import WriteFailed
from processing.common_code.utils import batch_window, canonical_key, clean_payload, utc_now
from .connectors.base import ObjectStore
from .events import Batch, BatchStatus, ChangeEvent, SourceTableRef, compute_batch_id

logger = logging.getLogger(__name__)

OP_COLUMN = "_cdc_op"
TOKEN_COLUMN = "_cdc_token"
PK_COLUMN = "_cdc_pk"
INGESTED_AT_COLUMN = "_cdc_ingested_at"
SOURCE_TS_COLUMN = "_cdc_source_ts"

SYNTHETIC_COLUMNS = (OP_COLUMN, TOKEN_COLUMN, PK_COLUMN, INGESTED_AT_COLUMN, SOURCE_TS_COLUMN)

PARQUET_CONTENT_TYPE = "application/vnd.apache.parquet"


def events_to_records(events: Sequence[ChangeEvent]) -> List[Dict[str, Any]]:
    records = []
    for event in events:
        record = clean_payload(event.payload, exclude=SYNTHETIC_COLUMNS)
        record[OP_COLUMN] = event.operation.value
        record[TOKEN_COLUMN] = event.token
        record[PK_COLUMN] = canonical_key(event.primary_key)
        record[INGESTED_AT_COLUMN] = event.ingested_at.isoformat()
        record[SOURCE_TS_COLUMN] = event.source_timestamp.isoformat() if event.source_timestamp else None
        records.append(record)
    return records


def read_artifact(data: bytes) -> List[Dict[str, Any]]:
    """
    Read a batch artifact back into row dicts.

    Goes through pyarrow directly so integer columns with nulls stay integers.
    """
    return pq.read_table(io.BytesIO(data)).to_pylist()


class BatchWriter:
    """Writes batches of change events to object storage."""

    def __init__(self, object_store: ObjectStore, root_prefix: str = ""):
        """
        Initialize writer.

        Args:
            object_store: Durable storage for artifacts
            root_prefix: Path prefix for every artifact
        """
        self.object_store = object_store
        self.root_prefix = root_prefix.strip("/")

    def artifact_path(self, ref: SourceTableRef, batch_id: str, events: Sequence[ChangeEvent]) -> str:
        window = batch_window(events[0].ingested_at if events else None)
        parts = [
            ref.source_id,
            f"{ref.database}.{ref.schema}",
            ref.table,
            "cdc",
            f"window={window}",
            f"batch_id={batch_id}",
            "data.parquet",
        ]
        if self.root_prefix:
            parts.insert(0, self.root_prefix)
        return "/".join(parts)

    def serialize(self, events: Sequence[ChangeEvent]) -> bytes:
        # object dtype keeps pandas from turning nullable ints into floats
        df = pd.DataFrame(events_to_records(events), dtype=object)
        buffer = io.BytesIO()
        df.to_parquet(buffer, index=False, engine="pyarrow")
        return buffer.getvalue()

    def write(self, events: Sequence[ChangeEvent], ref: SourceTableRef) -> Batch:
        """
        Write events as one artifact.

        Args:
            events: Non-empty, token-ordered events of one table
            ref: Table the events belong to

        Returns:
            Batch with status 'written'

        Raises:
            WriteFailed: If serialization or the storage write fails
        """
        if not events:
            raise ValueError("Cannot write an empty batch")

        batch_id = compute_batch_id(ref.key, events)
        path = self.artifact_path(ref, batch_id, events)

        try:
            data = self.serialize(events)
            uri = self.object_store.put(path, data, content_type=PARQUET_CONTENT_TYPE)
        except Exception as e:
            raise WriteFailed(
                "Failed to write batch artifact",
                context={"table": ref.key, "batch_id": batch_id, "path": path},
                original_exception=e
            )

        logger.info(f"Wrote batch {batch_id} ({len(events)} events) to {uri}")

        return Batch(
            batch_id=batch_id,
            table_key=ref.key,
            min_token=min(e.token for e in events),
            max_token=max(e.token for e in events),
            event_count=len(events),
            location=path,
            created_at=utc_now(),
            status=BatchStatus.BUFFERED,
        ).advance(BatchStatus.WRITTEN)
