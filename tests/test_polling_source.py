"""
SQL Polling Source Tests
========================

Runs against a SQLite database standing in for MySQL.
"""

import pytest
from sqlalchemy import text

from conftest import make_ref
from core.exceptions import ConfigurationError, SourceSchemaMismatch
from ingestion.connectors.polling_source import SQLPollingSource
from ingestion.events import Operation, OrderingToken


@pytest.fixture
def orders_db(source_engine):
    with source_engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE orders (id INTEGER PRIMARY KEY, name TEXT, status TEXT, version INTEGER)"
        ))
        conn.execute(
            text("INSERT INTO orders (id, name, status, version) VALUES (:id, :name, :status, :version)"),
            [
                {"id": 1, "name": "a", "status": "open", "version": 1},
                {"id": 2, "name": "b", "status": "open", "version": 5},
                {"id": 3, "name": "c", "status": "open", "version": 5},
                {"id": 4, "name": "d", "status": "deleted", "version": 5},
                {"id": 5, "name": "e", "status": "open", "version": 5},
                {"id": 6, "name": "f", "status": "open", "version": 7},
                {"id": 7, "name": "g", "status": "open", "version": None},
            ]
        )
    return source_engine


def _source(engine, page_size=2, delete_detection=None):
    source = SQLPollingSource("sqlite://", page_size=page_size, delete_detection=delete_detection, engine=engine)
    source.connect()
    return source


def test_reads_in_cursor_then_key_order(orders_db):
    ref = make_ref()
    events = list(_source(orders_db).read_changes(ref))

    assert [e.primary_key for e in events] == [(1,), (2,), (3,), (4,), (5,), (6,)]
    assert [e.ordering_token.position for e in events] == [(1,), (5,), (5,), (5,), (5,), (7,)]
    assert all(e.operation is Operation.UPSERT for e in events)
    assert events[0].payload == {"id": 1, "name": "a", "status": "open", "version": 1}


def test_shared_cursor_values_across_pages_are_not_skipped(orders_db):
    # Page size 2 splits the four rows with version=5 over three pages.
    ref = make_ref()
    source = _source(orders_db, page_size=2)

    first = list(source.read_changes(ref, max_events=3))
    assert [e.primary_key for e in first] == [(1,), (2,), (3,)]

    rest = list(source.read_changes(ref, since_token=first[-1].ordering_token))
    assert [e.primary_key for e in rest] == [(4,), (5,), (6,)]


def test_resume_after_token_in_the_middle_of_a_cursor_value(orders_db):
    ref = make_ref()
    since = OrderingToken((5,), (3,))
    events = list(_source(orders_db, page_size=1).read_changes(ref, since_token=since))
    assert [e.primary_key for e in events] == [(4,), (5,), (6,)]


def test_max_events_bounds_a_call(orders_db):
    events = list(_source(orders_db, page_size=10).read_changes(make_ref(), max_events=2))
    assert len(events) == 2


def test_soft_delete_detection(orders_db):
    ref = make_ref()
    detection = {ref.key: {"column": "status", "delete_value": "deleted"}}
    events = list(_source(orders_db, delete_detection=detection).read_changes(ref))

    ops = {e.primary_key[0]: e.operation for e in events}
    assert ops[4] is Operation.DELETE
    assert ops[2] is Operation.UPSERT


def test_discover_reports_columns(orders_db):
    metadata = _source(orders_db).discover(make_ref())
    assert metadata.columns == ("id", "name", "status", "version")
    assert metadata.primary_key == ("id",)
    assert metadata.cursor_column == "version"


def test_discover_missing_primary_key_column(orders_db):
    with pytest.raises(SourceSchemaMismatch):
        _source(orders_db).discover(make_ref(primary_key=("order_id",)))


def test_discover_missing_cursor_column(orders_db):
    with pytest.raises(ConfigurationError):
        _source(orders_db).discover(make_ref(cursor_column="updated_at"))


def test_discover_missing_table(orders_db):
    with pytest.raises(ConfigurationError):
        _source(orders_db).discover(make_ref(table="missing"))


def test_token_layout_mismatch(orders_db):
    since = OrderingToken((5, 1), (3,))
    with pytest.raises(ConfigurationError):
        list(_source(orders_db).read_changes(make_ref(), since_token=since))


# =========================================
# STRING KEYS
# =========================================

@pytest.fixture
def codes_db(source_engine):
    with source_engine.begin() as conn:
        conn.execute(text("CREATE TABLE codes (id TEXT COLLATE NOCASE PRIMARY KEY, version INTEGER)"))
        conn.execute(
            text("INSERT INTO codes (id, version) VALUES (:id, :version)"),
            [{"id": "a", "version": 5}, {"id": "B", "version": 5}, {"id": "c", "version": 5}]
        )
    return source_engine


def test_case_insensitive_keys_read_in_token_order(codes_db):
    ref = make_ref(table="codes")
    events = list(_source(codes_db, page_size=1).read_changes(ref))

    assert [e.primary_key for e in events] == [("B",), ("a",), ("c",)]
    tokens = [e.ordering_token for e in events]
    assert tokens == sorted(tokens)


def test_resume_after_case_insensitive_key(codes_db):
    ref = make_ref(table="codes")
    since = OrderingToken((5,), ("B",))
    events = list(_source(codes_db, page_size=1).read_changes(ref, since_token=since))
    assert [e.primary_key for e in events] == [("a",), ("c",)]


def test_explicit_binary_collation(codes_db):
    source = SQLPollingSource("sqlite://", page_size=1, engine=codes_db, binary_collation="binary")
    source.connect()
    events = list(source.read_changes(make_ref(table="codes")))
    assert [e.primary_key for e in events] == [("B",), ("a",), ("c",)]
