"""
Object Store Connector Tests
============================
"""

from unittest.mock import MagicMock

import pytest

from ingestion.connectors.local_connector import LocalFileConnector
from ingestion.connectors.minio_connector import MinIOConnector


# =========================================
# LOCAL FILESYSTEM
# =========================================

def test_local_put_get_list_delete(object_store):
    uri = object_store.put("a/b/data.parquet", b"123")
    object_store.put("a/c/data.parquet", b"456")

    assert uri.startswith("file://")
    assert object_store.get("a/b/data.parquet") == b"123"
    assert object_store.list("a/") == ["a/b/data.parquet", "a/c/data.parquet"]
    assert object_store.exists("a/b/data.parquet")

    object_store.delete("a/b/data.parquet")
    assert not object_store.exists("a/b/data.parquet")
    assert object_store.list() == ["a/c/data.parquet"]


def test_local_overwrite_replaces_content(object_store):
    object_store.put("x/data.parquet", b"old")
    object_store.put("x/data.parquet", b"new")
    assert object_store.get("x/data.parquet") == b"new"
    assert object_store.list("x/") == ["x/data.parquet"]


def test_local_rejects_paths_outside_root(object_store):
    with pytest.raises(ValueError):
        object_store.put("../escape.parquet", b"x")


def test_local_list_before_connect(tmp_path):
    assert LocalFileConnector({"path": str(tmp_path / "missing")}).list() == []


# =========================================
# MINIO
# =========================================

def test_minio_creates_missing_bucket():
    client = MagicMock()
    client.bucket_exists.return_value = False
    connector = MinIOConnector({"endpoint": "localhost:9000", "bucket": "raw-data"}, client=client)

    connector.connect()

    client.make_bucket.assert_called_once_with("raw-data")


def test_minio_put_returns_uri():
    client = MagicMock()
    connector = MinIOConnector({"bucket": "raw-data"}, client=client)

    uri = connector.put("replication/t/data.parquet", b"abc", content_type="application/vnd.apache.parquet")

    assert uri == "s3://raw-data/replication/t/data.parquet"
    kwargs = client.put_object.call_args.kwargs
    assert kwargs["object_name"] == "replication/t/data.parquet"
    assert kwargs["length"] == 3
    assert kwargs["content_type"] == "application/vnd.apache.parquet"


def test_minio_get_releases_connection():
    client = MagicMock()
    client.get_object.return_value.read.return_value = b"abc"
    connector = MinIOConnector({"bucket": "raw-data"}, client=client)

    assert connector.get("p") == b"abc"
    client.get_object.return_value.release_conn.assert_called_once()
