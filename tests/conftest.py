"""
Shared fixtures for the replication test suite.

Everything runs against local resources: SQLite for the source and the
warehouse, a temporary directory for object storage and checkpoints.
"""

import threading
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import pytest
from sqlalchemy import create_engine

from core.exceptions import SourceUnavailable
from ingestion.checkpoint import FileCheckpointStore
from ingestion.config import ReplicationSettings
from ingestion.connectors.base import ChangeSource, SourceMetadata
from ingestion.connectors.local_connector import LocalFileConnector
from ingestion.events import ChangeEvent, Operation, OrderingToken, SourceTableRef
from ingestion.pipeline import SyncPipeline
from ingestion.writer import BatchWriter
from processing.merge.materializer import MergeMaterializer
from processing.staging.loader import StagingLoader
from processing.warehouse import Warehouse


def make_ref(table="orders", primary_key=("id",), cursor_column="version", **kwargs) -> SourceTableRef:
    values = dict(source_id="shop", database="main", schema="main")
    values.update(kwargs)
    return SourceTableRef(table=table, primary_key=primary_key, cursor_column=cursor_column, **values)


def make_event(pk, position, op="upsert", **payload) -> ChangeEvent:
    """Event for a single-column integer key with a one-value position."""
    row = {"id": pk}
    row.update(payload)
    return ChangeEvent(
        operation=Operation(op),
        primary_key=(pk,),
        payload=row,
        ordering_token=OrderingToken((position,), (pk,)),
        ingested_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


def make_settings(**overrides) -> ReplicationSettings:
    values = dict(
        batch_size=100,
        flush_interval_seconds=0,
        max_events_per_read=1000,
        page_size=50,
        max_attempts_per_stage=3,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        failure_threshold=5,
        circuit_cooldown_seconds=60,
        call_timeout_seconds=10,
    )
    values.update(overrides)
    return ReplicationSettings(**values)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ListSource(ChangeSource):
    """
    In-memory change source over a fixed, token-ordered event list.

    ``fail_reads`` makes the next N read_changes calls raise SourceUnavailable.
    """

    def __init__(self, events: Optional[List[ChangeEvent]] = None, columns=("id", "name", "version")):
        self.events = sorted(events or [], key=lambda e: e.token)
        self.columns = tuple(columns)
        self.fail_reads = 0
        self.read_calls = 0
        self.lock = threading.Lock()

    def add(self, *events: ChangeEvent):
        with self.lock:
            self.events = sorted(self.events + list(events), key=lambda e: e.token)

    def connect(self):
        pass

    def discover(self, ref: SourceTableRef) -> SourceMetadata:
        return SourceMetadata(columns=self.columns, primary_key=ref.primary_key, cursor_column=ref.cursor_column)

    def read_changes(self, ref, since_token=None, max_events=None) -> Iterator[ChangeEvent]:
        with self.lock:
            self.read_calls += 1
            if self.fail_reads:
                self.fail_reads -= 1
                raise SourceUnavailable("source down", context={"table": ref.key})
            events = list(self.events)
        emitted = 0
        for event in events:
            if since_token is not None and event.ordering_token <= since_token:
                continue
            if max_events is not None and emitted >= max_events:
                return
            emitted += 1
            yield event


# =========================================
# FIXTURES
# =========================================

@pytest.fixture
def ref():
    return make_ref()


@pytest.fixture
def object_store(tmp_path):
    store = LocalFileConnector({"path": str(tmp_path / "objects")})
    store.connect()
    return store


@pytest.fixture
def warehouse_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'warehouse.db'}",
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def warehouse(warehouse_engine):
    return Warehouse(engine=warehouse_engine)


@pytest.fixture
def source_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'source.db'}",
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def checkpoint_store(tmp_path):
    return FileCheckpointStore(str(tmp_path / "checkpoints"))


@pytest.fixture
def writer(object_store):
    return BatchWriter(object_store, root_prefix="replication")


@pytest.fixture
def loader(object_store, warehouse):
    return StagingLoader(object_store, warehouse)


@pytest.fixture
def materializer(warehouse):
    return MergeMaterializer(warehouse, lease_timeout_seconds=5)


@pytest.fixture
def build_pipeline(ref, writer, loader, materializer, checkpoint_store):
    """Factory for pipelines sharing the test's storage and warehouse."""
    pipelines = []

    def build(source, settings=None, **kwargs):
        values = dict(
            ref=ref,
            settings=settings or make_settings(),
            source=source,
            writer=writer,
            loader=loader,
            materializer=materializer,
            checkpoint_store=checkpoint_store,
            sleep=lambda seconds: None,
        )
        values.update(kwargs)
        pipeline = SyncPipeline(**values)
        pipelines.append(pipeline)
        return pipeline

    yield build
    for pipeline in pipelines:
        pipeline.close()
