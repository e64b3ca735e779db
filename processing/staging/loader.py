"""
Staging Loader
==============

Moves a written batch from object storage into the table's staging area.

Core Logic:
1. Skip the batch if the checkpoint ledger says it is already staged
2. Read the Parquet artifact
3. Turn each row into a staging record (pk, op, token, ingestion time, payload)
4. Bulk insert all records in one transaction
"""

import logging
from typing import Any, Dict, List, Optional

from core.exceptions import ReplicationError, StagingLoadFailed
from ingestion.checkpoint import Checkpoint
from ingestion.connectors.base import ObjectStore
from ingestion.events import Batch, SourceTableRef
from ingestion.writer import (
    INGESTED_AT_COLUMN,
    OP_COLUMN,
    PK_COLUMN,
    SYNTHETIC_COLUMNS,
    TOKEN_COLUMN,
    read_artifact,
)
from processing.common_code.utils import clean_payload, dumps_canonical, parse_timestamp
from processing.warehouse import Warehouse

logger = logging.getLogger(__name__)


class StagingLoader:
    """Loads batch artifacts into warehouse staging tables."""

    def __init__(self, object_store: ObjectStore, warehouse: Warehouse):
        self.object_store = object_store
        self.warehouse = warehouse

    def prepare(self, ref: SourceTableRef):
        """Make sure the staging and target tables exist."""
        self.warehouse.ensure_tables(ref)

    def to_staging_records(self, batch: Batch, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        records = []
        for row in rows:
            records.append({
                "_cdc_batch_id": batch.batch_id,
                "_cdc_pk": row[PK_COLUMN],
                "_cdc_op": row[OP_COLUMN],
                "_cdc_token": row[TOKEN_COLUMN],
                "_cdc_ingested_at": parse_timestamp(row.get(INGESTED_AT_COLUMN)),
                "payload": dumps_canonical(clean_payload(row, exclude=SYNTHETIC_COLUMNS)),
            })
        return records

    def load_to_staging(
        self,
        ref: SourceTableRef,
        batch: Batch,
        checkpoint: Optional[Checkpoint] = None
    ) -> int:
        """
        Stage one batch.

        Args:
            ref: Table the batch belongs to
            batch: Written batch
            checkpoint: Current checkpoint (its ledger marks staged batches)

        Returns:
            Number of staged rows (0 if the batch was already staged)

        Raises:
            StagingLoadFailed: If reading the artifact or the bulk load fails
        """
        if checkpoint is not None and checkpoint.is_staged(batch.batch_id):
            logger.info(f"Batch {batch.batch_id} already staged for {ref.key}, skipping load")
            return 0

        try:
            rows = read_artifact(self.object_store.get(batch.location))
            records = self.to_staging_records(batch, rows)
            staged = self.warehouse.bulk_load(ref, records)
        except ReplicationError:
            raise
        except Exception as e:
            raise StagingLoadFailed(
                "Failed to load batch into staging",
                context={"table": ref.key, "batch_id": batch.batch_id, "location": batch.location},
                original_exception=e
            )

        if staged != batch.event_count:
            logger.warning(
                f"Batch {batch.batch_id} staged {staged} rows but holds {batch.event_count} events"
            )
        logger.info(f"Staged {staged} rows from batch {batch.batch_id} into "
                    f"{self.warehouse.staging_table_name(ref)}")
        return staged
