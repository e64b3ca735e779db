"""
Merge Materializer
==================

Folds a table's staged changes into its target table.

Core Logic:
1. Group staged rows by primary key
2. Keep the latest change per key (highest token; on equal tokens a delete
   wins over an upsert)
3. Apply it only if it is newer than what the target already holds:
   - upsert: insert or update the row, clear the deleted marker
   - delete: set the deleted marker (no physical delete), keeping the newest
     known image of the row: the latest staged upsert if it is newer than
     the target row. When neither exists a tombstone (deleted row holding
     the delete's payload) is inserted, so an older upsert merged later
     stays stale
4. Clear the consumed staging rows in the same transaction

Re-merging the same staged rows is a no-op, and a late stale change never
overwrites a newer row.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy import bindparam, delete, insert, select, update

from core.exceptions import MergeFailed, ReplicationError
from ingestion.events import Operation, SourceTableRef
from processing.common_code.utils import utc_now
from processing.warehouse import Warehouse

logger = logging.getLogger(__name__)

FETCH_CHUNK_SIZE = 500

# One writer per target table within this process.
_LEASES: Dict[str, threading.Lock] = {}
_LEASES_GUARD = threading.Lock()


def _lease_for(target_name: str) -> threading.Lock:
    with _LEASES_GUARD:
        lease = _LEASES.get(target_name)
        if lease is None:
            lease = _LEASES[target_name] = threading.Lock()
        return lease


def op_rank(op: str) -> int:
    return 1 if op == Operation.DELETE.value else 0


def _py(value: Any) -> Any:
    """Unwrap pandas scalars for the database driver."""
    if value is None:
        return None
    if hasattr(value, "to_pydatetime"):
        return None if pd.isna(value) else value.to_pydatetime()
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


@dataclass(frozen=True)
class MergeResult:
    rows_staged: int = 0
    groups: int = 0
    upserts: int = 0
    deletes: int = 0
    stale_skipped: int = 0
    missing_deletes: int = 0
    max_token: Optional[str] = None
    batch_ids: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows_staged": self.rows_staged,
            "groups": self.groups,
            "upserts": self.upserts,
            "deletes": self.deletes,
            "stale_skipped": self.stale_skipped,
            "missing_deletes": self.missing_deletes,
            "max_token": self.max_token,
            "batch_ids": list(self.batch_ids),
        }


class MergeMaterializer:
    """Applies staged changes to target tables."""

    def __init__(self, warehouse: Warehouse, lease_timeout_seconds: float = 30.0):
        """
        Initialize materializer.

        Args:
            warehouse: Warehouse holding staging and target tables
            lease_timeout_seconds: How long to wait for another merge of the same target
        """
        self.warehouse = warehouse
        self.lease_timeout_seconds = lease_timeout_seconds

    def materialize(self, ref: SourceTableRef) -> MergeResult:
        """
        Merge everything staged for ``ref`` into its target table.

        Raises:
            MergeFailed: On lease timeout or any failure (rolled back, staging untouched)
        """
        target_name = self.warehouse.target_table_name(ref)
        lease = _lease_for(target_name)
        if not lease.acquire(timeout=self.lease_timeout_seconds):
            raise MergeFailed(
                "Timed out waiting for the merge lease",
                context={"table": ref.key, "target": target_name}
            )

        try:
            with self.warehouse.transaction() as conn:
                result = self._merge(conn, ref)
        except ReplicationError:
            raise
        except Exception as e:
            raise MergeFailed(
                "Merge failed and was rolled back",
                context={"table": ref.key, "target": target_name},
                original_exception=e
            )
        finally:
            lease.release()

        if result.rows_staged:
            logger.info(
                f"Merged {ref.key}: {result.rows_staged} staged rows, {result.groups} keys, "
                f"{result.upserts} upserts, {result.deletes} deletes, "
                f"{result.stale_skipped} stale, {result.missing_deletes} deletes of missing rows"
            )
        return result

    def _load_staged(self, conn, staging) -> pd.DataFrame:
        rows = [dict(r) for r in conn.execute(select(staging)).mappings()]
        return pd.DataFrame(rows, columns=[c.name for c in staging.columns])

    def _deduplicate(self, df: pd.DataFrame) -> pd.DataFrame:
        """Keep the latest change per primary key."""
        df = df.copy()
        df["_op_rank"] = df["_cdc_op"].map(op_rank)
        df = df.sort_values(
            by=["_cdc_pk", "_cdc_token", "_op_rank", "_stage_id"],
            ascending=[True, False, False, False]
        )
        return df.drop_duplicates(subset=["_cdc_pk"], keep="first")

    def _latest_upserts(self, df: pd.DataFrame) -> Dict[str, Dict[str, Any]]:
        """Latest staged upsert per primary key (payload for deletes that win)."""
        upserts = df[df["_cdc_op"] == Operation.UPSERT.value]
        if upserts.empty:
            return {}
        upserts = upserts.sort_values(
            by=["_cdc_pk", "_cdc_token", "_stage_id"],
            ascending=[True, False, False]
        ).drop_duplicates(subset=["_cdc_pk"], keep="first")
        return {row["_cdc_pk"]: row for row in upserts.to_dict("records")}

    def _fetch_existing(self, conn, target, keys: List[str]) -> Dict[str, Tuple[str, str]]:
        existing = {}
        for start in range(0, len(keys), FETCH_CHUNK_SIZE):
            chunk = keys[start:start + FETCH_CHUNK_SIZE]
            stmt = select(target.c._cdc_pk, target.c._cdc_token, target.c._cdc_op).where(
                target.c._cdc_pk.in_(chunk)
            )
            for pk, token, op in conn.execute(stmt):
                existing[pk] = (token, op)
        return existing

    def _merge(self, conn, ref: SourceTableRef) -> MergeResult:
        staging, target = self.warehouse.tables(ref)

        df = self._load_staged(conn, staging)
        if df.empty:
            return MergeResult()

        max_stage_id = int(df["_stage_id"].max())
        batch_ids = tuple(sorted(df["_cdc_batch_id"].unique()))
        winners = self._deduplicate(df)
        latest_upserts = self._latest_upserts(df)
        existing = self._fetch_existing(conn, target, list(winners["_cdc_pk"]))
        merged_at = utc_now()

        inserts, updates, soft_deletes = [], [], []
        deleted = stale = missing = 0
        for row in winners.to_dict("records"):
            pk, token, op = row["_cdc_pk"], row["_cdc_token"], row["_cdc_op"]
            current = existing.get(pk)

            if current is not None and (token, op_rank(op)) <= (current[0], op_rank(current[1])):
                stale += 1
                continue

            if op == Operation.DELETE.value:
                # A delete keeps the newest known image of the row.
                upsert = latest_upserts.get(pk)
                if upsert is not None and current is not None and upsert["_cdc_token"] <= current[0]:
                    upsert = None

                values = {
                    "_cdc_op": op,
                    "_cdc_token": token,
                    "_cdc_deleted": True,
                    "_cdc_ingested_at": _py(row["_cdc_ingested_at"]),
                    "_cdc_merged_at": merged_at,
                    "_cdc_batch_id": row["_cdc_batch_id"],
                }
                if current is None and upsert is None:
                    # Tombstone: keeps older upserts of this key stale.
                    missing += 1
                    inserts.append(dict(values, _cdc_pk=pk, payload=row["payload"]))
                    continue

                deleted += 1
                if current is None:
                    inserts.append(dict(values, _cdc_pk=pk, payload=upsert["payload"]))
                elif upsert is not None:
                    updates.append(dict(values, b_pk=pk, payload=upsert["payload"]))
                else:
                    soft_deletes.append(dict(values, b_pk=pk))
                continue

            values = {
                "payload": row["payload"],
                "_cdc_op": op,
                "_cdc_token": token,
                "_cdc_deleted": False,
                "_cdc_ingested_at": _py(row["_cdc_ingested_at"]),
                "_cdc_merged_at": merged_at,
                "_cdc_batch_id": row["_cdc_batch_id"],
            }
            if current is None:
                inserts.append(dict(values, _cdc_pk=pk))
            else:
                updates.append(dict(values, b_pk=pk))

        if inserts:
            conn.execute(insert(target), inserts)
        if updates:
            conn.execute(update(target).where(target.c._cdc_pk == bindparam("b_pk")), updates)
        if soft_deletes:
            conn.execute(update(target).where(target.c._cdc_pk == bindparam("b_pk")), soft_deletes)

        conn.execute(delete(staging).where(staging.c._stage_id <= max_stage_id))

        return MergeResult(
            rows_staged=len(df),
            groups=len(winners),
            upserts=len(inserts) + len(updates) + len(soft_deletes) - deleted - missing,
            deletes=deleted,
            stale_skipped=stale,
            missing_deletes=missing,
            max_token=df["_cdc_token"].max(),
            batch_ids=batch_ids,
        )
