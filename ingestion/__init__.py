"""
Replication Ingestion
=====================

Change capture side of the warehouse replication service:

- events: change event model (SourceTableRef, OrderingToken, ChangeEvent, Batch)
- connectors: change sources and object stores
- buffer / writer: batching and durable artifacts
- checkpoint: resumable per-table progress
- pipeline / orchestrator: per-table state machine and scheduling

Rows are replicated exactly as they are in the source; no transformation.
"""

__version__ = "1.0.0"
