"""
Replication Engine / CLI Tests
==============================

Builds the engine from a config directory pointing at local resources
(SQLite source and warehouse, filesystem object store and checkpoints).
"""

import json
import sys

import pytest
from sqlalchemy import create_engine, text

from ingestion import run_replication
from ingestion.engine import ReplicationEngine
from ingestion.pipeline import PipelineState


@pytest.fixture
def config_dir(tmp_path):
    source_db = tmp_path / "source.db"
    engine = create_engine(f"sqlite:///{source_db}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE orders (id INTEGER PRIMARY KEY, name TEXT, status TEXT, version INTEGER)"))
        conn.execute(text(
            "INSERT INTO orders VALUES (1, 'a', 'open', 1), (2, 'b', 'open', 2), (3, 'c', 'gone', 3)"
        ))
    engine.dispose()

    task_settings = {
        "source": {"source_id": "local", "type": "sqlite", "connection": {"url": f"sqlite:///{source_db}"}},
        "target": {"type": "local", "connection": {"path": str(tmp_path / "objects")}, "root_prefix": "replication"},
        "warehouse": {"connection": {"url": f"sqlite:///{tmp_path / 'warehouse.db'}"}},
        "checkpoint": {"type": "file", "connection": {"path": str(tmp_path / "checkpoints")}},
        "task_settings": {
            "replication": {"flush_interval_seconds": 0, "retry_base_delay_seconds": 0},
            "logging": {"level": "INFO"},
        },
    }
    table_mappings = {
        "rules": [{
            "rule-type": "selection",
            "rule-id": "1",
            "rule-name": "orders",
            "object-locator": {"schema-name": "main", "table-name": "orders"},
            "rule-action": "explicit",
            "cdc-config": {
                "primary_key": ["id"],
                "tracking_column": "version",
                "delete_detection": {"column": "status", "delete_value": "gone"},
            },
        }]
    }
    (tmp_path / "configs").mkdir()
    (tmp_path / "configs" / "task_settings.json").write_text(json.dumps(task_settings))
    (tmp_path / "configs" / "table_mappings.json").write_text(json.dumps(table_mappings))
    return str(tmp_path / "configs")


@pytest.fixture(autouse=True)
def keep_test_logging(monkeypatch):
    monkeypatch.setattr("ingestion.engine.setup_logging", lambda **kwargs: None)


def test_engine_replicates_configured_tables(config_dir):
    engine = ReplicationEngine(config_path=config_dir)
    engine.connect()
    try:
        results = engine.build_orchestrator().run_once()
        key = "local.main.main.orders"

        assert results[key].state is PipelineState.IDLE
        assert results[key].events_read == 3

        rows = engine.warehouse.fetch_target_rows(engine.tables[0].ref)
        assert [r["payload"]["name"] for r in rows] == ["a", "b"]

        status = engine.checkpoint_status()
        assert status[0]["table"] == key
        assert status[0]["last_batch_id"] is not None
        assert engine.object_store.list("replication/local/main.main/orders/")
    finally:
        engine.disconnect()


def test_engine_table_selection(config_dir):
    engine = ReplicationEngine(config_path=config_dir, table_names=["orders"])
    assert [t.ref.table for t in engine.tables] == ["orders"]


def _run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["run_replication.py", *args])
    with pytest.raises(SystemExit) as exc:
        run_replication.main()
    return exc.value.code


def test_cli_once_and_status(monkeypatch, capsys, config_dir):
    assert _run_cli(monkeypatch, "once", "--config", config_dir) == 0
    assert "Events read: 3" in capsys.readouterr().out

    assert _run_cli(monkeypatch, "status", "--config", config_dir) == 0
    output = capsys.readouterr().out
    assert json.loads(output)[0]["table"] == "local.main.main.orders"


def test_cli_invalid_config(monkeypatch, tmp_path):
    assert _run_cli(monkeypatch, "status", "--config", str(tmp_path)) == 2


def _add_rule(config_dir, table, **cdc_config):
    path = f"{config_dir}/table_mappings.json"
    with open(path) as f:
        mappings = json.load(f)
    mappings["rules"].append({
        "rule-type": "selection",
        "rule-id": str(len(mappings["rules"]) + 1),
        "rule-name": table,
        "object-locator": {"schema-name": "main", "table-name": table},
        "rule-action": "explicit",
        "cdc-config": cdc_config,
    })
    with open(path, "w") as f:
        json.dump(mappings, f)


def test_engine_runs_valid_tables_next_to_an_invalid_one(config_dir):
    _add_rule(config_dir, "customers", primary_key=[], tracking_column="version")
    engine = ReplicationEngine(config_path=config_dir)
    assert [t.ref.table for t in engine.tables] == ["orders"]
    assert [i.name for i in engine.invalid_tables] == ["local.main.main.customers"]

    engine.connect()
    try:
        results = engine.build_orchestrator().run_once()
        assert results["local.main.main.orders"].events_read == 3
        assert results["local.main.main.customers"].state is PipelineState.FAILED
    finally:
        engine.disconnect()


def test_cli_once_reports_invalid_table(monkeypatch, capsys, config_dir):
    _add_rule(config_dir, "customers", primary_key=[], tracking_column="version")

    assert _run_cli(monkeypatch, "once", "--config", config_dir) == 1
    output = capsys.readouterr().out
    assert "✓ local.main.main.orders" in output
    assert "Events read: 3" in output
    assert "✗ local.main.main.customers" in output


def test_cli_connection_check_lists_each_table(monkeypatch, capsys, config_dir):
    assert _run_cli(monkeypatch, "test", "--config", config_dir) == 0
    assert "✓ local.main.main.orders" in capsys.readouterr().out

    _add_rule(config_dir, "customers", primary_key=["id"], tracking_column="version")
    assert _run_cli(monkeypatch, "test", "--config", config_dir) == 1
    output = capsys.readouterr().out
    assert "✓ local.main.main.orders" in output
    assert "✗ local.main.main.customers" in output
