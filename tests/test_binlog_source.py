"""
MySQL Binlog Source Tests
=========================

The binlog stream reader and its event classes are replaced with fakes, so
no MySQL server is needed.
"""

from unittest.mock import MagicMock, patch

import pymysql
import pytest

from conftest import make_ref
from core.exceptions import ConfigurationError, SourceSchemaMismatch, SourceUnavailable
from ingestion.connectors import binlog_source
from ingestion.connectors.binlog_source import MySQLBinlogSource
from ingestion.events import Operation

CONFIG = {"host": "localhost", "port": 3306, "username": "repl", "password": "secret"}


class FakeEvent:
    def __init__(self, log_pos, rows=(), timestamp=1714564800, log_file="mysql-bin.000001"):
        self.log_pos = log_pos
        self.log_file = log_file
        self.rows = list(rows)
        self.timestamp = timestamp


class FakeWrite(FakeEvent):
    pass


class FakeUpdate(FakeEvent):
    pass


class FakeDelete(FakeEvent):
    pass


class FakeXid(FakeEvent):
    pass


class FakeRotate(FakeEvent):
    pass


class FakeStream:
    """Iterates events and tracks the reader's log coordinates like BinLogStreamReader."""

    instances = []

    def __init__(self, events, **kwargs):
        self.events = events
        self.kwargs = kwargs
        self.log_file = None
        self.log_pos = None
        self.closed = False
        FakeStream.instances.append(self)

    def __iter__(self):
        for event in self.events:
            self.log_file, self.log_pos = event.log_file, event.log_pos
            yield event

    def close(self):
        self.closed = True


def binlog():
    return [
        FakeWrite(200, rows=[{"values": {"id": 1, "name": "a"}}, {"values": {"id": 2, "name": "b"}}]),
        FakeXid(230),
        FakeUpdate(300, rows=[{"before_values": {"id": 1, "name": "a"}, "after_values": {"id": 1, "name": "c"}}]),
        FakeXid(330),
        FakeDelete(400, rows=[{"values": {"id": 2, "name": "b"}}]),
        FakeXid(430),
    ]


@pytest.fixture
def fake_binlog():
    FakeStream.instances = []
    events = binlog()

    def reader(**kwargs):
        return FakeStream(events, **kwargs)

    with patch.multiple(
        binlog_source,
        BinLogStreamReader=MagicMock(side_effect=reader),
        WriteRowsEvent=FakeWrite,
        UpdateRowsEvent=FakeUpdate,
        DeleteRowsEvent=FakeDelete,
        XidEvent=FakeXid,
        RotateEvent=FakeRotate,
    ):
        yield events


def log_ref():
    return make_ref(mode="log-based", cursor_column=None)


def test_reads_row_events_in_log_order(fake_binlog):
    events = list(MySQLBinlogSource(CONFIG).read_changes(log_ref()))

    assert [(e.operation, e.primary_key) for e in events] == [
        (Operation.UPSERT, (1,)),
        (Operation.UPSERT, (2,)),
        (Operation.UPSERT, (1,)),
        (Operation.DELETE, (2,)),
    ]
    assert events[2].payload == {"id": 1, "name": "c"}
    assert [e.ordering_token for e in events] == sorted(e.ordering_token for e in events)
    assert events[0].source_timestamp.year == 2024
    assert FakeStream.instances[-1].closed


def test_token_carries_last_commit_position(fake_binlog):
    events = list(MySQLBinlogSource(CONFIG).read_changes(log_ref()))

    assert events[0].ordering_token.position == ("mysql-bin.000001", 200, 0, "mysql-bin.000001", 4)
    assert events[1].ordering_token.position == ("mysql-bin.000001", 200, 1, "mysql-bin.000001", 4)
    assert events[2].ordering_token.position == ("mysql-bin.000001", 300, 0, "mysql-bin.000001", 230)
    assert events[3].ordering_token.position == ("mysql-bin.000001", 400, 0, "mysql-bin.000001", 330)


def test_resume_skips_already_seen_rows(fake_binlog):
    source = MySQLBinlogSource(CONFIG, server_id=105)
    first = list(source.read_changes(log_ref(), max_events=1))
    assert len(first) == 1

    rest = list(source.read_changes(log_ref(), since_token=first[0].ordering_token))
    assert [e.primary_key for e in rest] == [(2,), (1,), (2,)]

    kwargs = FakeStream.instances[-1].kwargs
    assert kwargs["server_id"] == 105
    assert kwargs["log_file"] == "mysql-bin.000001"
    assert kwargs["log_pos"] == 4
    assert kwargs["resume_stream"] is True
    assert kwargs["only_tables"] == ["orders"]
    assert kwargs["blocking"] is False


def test_missing_primary_key_in_row_image(fake_binlog):
    fake_binlog[0].rows = [{"values": {"name": "no id"}}]
    with pytest.raises(SourceSchemaMismatch):
        list(MySQLBinlogSource(CONFIG).read_changes(log_ref()))


def test_lost_connection_is_retryable():
    with patch.object(
        binlog_source,
        "BinLogStreamReader",
        side_effect=pymysql.err.OperationalError(2003, "Can't connect"),
    ):
        with pytest.raises(SourceUnavailable):
            list(MySQLBinlogSource(CONFIG).read_changes(log_ref()))


# =========================================
# CONNECT / DISCOVER
# =========================================

def _mysql(rows=None, fetchone=None):
    cursor = MagicMock()
    cursor.fetchall.return_value = rows or []
    cursor.fetchone.return_value = fetchone
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


def test_connect_requires_row_format():
    with patch.object(binlog_source.pymysql, "connect", return_value=_mysql(fetchone=("binlog_format", "STATEMENT"))):
        with pytest.raises(ConfigurationError):
            MySQLBinlogSource(CONFIG).connect()

    with patch.object(binlog_source.pymysql, "connect", return_value=_mysql(fetchone=("binlog_format", "ROW"))):
        MySQLBinlogSource(CONFIG).connect()


def test_discover_checks_primary_key():
    conn = _mysql(rows=[("id",), ("name",)])
    with patch.object(binlog_source.pymysql, "connect", return_value=conn):
        metadata = MySQLBinlogSource(CONFIG).discover(log_ref())
        assert metadata.columns == ("id", "name")

        with pytest.raises(SourceSchemaMismatch):
            MySQLBinlogSource(CONFIG).discover(make_ref(mode="log-based", cursor_column=None, primary_key=("uuid",)))


def test_discover_rejects_polling_tables():
    with pytest.raises(ConfigurationError):
        MySQLBinlogSource(CONFIG).discover(make_ref())
