"""
Configuration Tests
===================
"""

import json

import pytest

from core.exceptions import ConfigurationError
from ingestion.config import (
    ReplicationSettings,
    get_default_config_path,
    load_config,
    parse_table_mappings,
    resolve_connection,
)
from ingestion.events import SyncMode


def test_default_config_loads():
    config = load_config(get_default_config_path())

    assert [t.ref.table for t in config.tables] == ["leads", "sales"]
    leads = config.table("leads")
    assert leads.ref.key == "propwise_mysql.propwise_source.propwise_source.leads"
    assert leads.ref.cursor_column == "updated_at"
    assert leads.ref.mode is SyncMode.POLLING
    assert leads.delete_detection == {"column": "status_name", "delete_value": "Deleted"}
    assert leads.settings.batch_size == 1000
    assert config.table("sales").settings.batch_size == 500


def test_unknown_table():
    config = load_config()
    with pytest.raises(ConfigurationError):
        config.table("missing")


def test_env_overrides_secrets(monkeypatch):
    monkeypatch.setenv("REPLICATION_SOURCE_PASSWORD", "from-env")
    monkeypatch.setenv("REPLICATION_WAREHOUSE_URL", "sqlite://")
    config = load_config()
    assert config.task_settings["source"]["connection"]["password"] == "from-env"
    assert config.task_settings["warehouse"]["connection"]["url"] == "sqlite://"


def test_docker_hosts():
    task_settings = {
        "target": {
            "connection": {"endpoint": "localhost:9000", "bucket": "raw"},
            "docker_endpoint": "minio:9000",
        }
    }
    assert resolve_connection(task_settings, "target")["endpoint"] == "localhost:9000"
    assert resolve_connection(task_settings, "target", use_docker_hosts=True)["endpoint"] == "minio:9000"


def test_missing_config_dir(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path))


def test_invalid_json(tmp_path):
    (tmp_path / "task_settings.json").write_text("{")
    (tmp_path / "table_mappings.json").write_text("{}")
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path))


def _rule(**cdc_config):
    return {
        "rule-type": "selection",
        "rule-id": "1",
        "rule-name": "orders",
        "object-locator": {"schema-name": "shop", "table-name": "orders"},
        "rule-action": "explicit",
        "cdc-config": cdc_config,
    }


def test_table_overrides_and_log_mode():
    tables = parse_table_mappings(
        {"rules": [_rule(primary_key="id, region", mode="log-based", failure_threshold=2, unknown_key=1)]},
        source_id="src",
        default_database="shop",
        base_settings=ReplicationSettings(),
    )
    assert tables[0].ref.primary_key == ("id", "region")
    assert tables[0].ref.mode is SyncMode.LOG_BASED
    assert tables[0].settings.failure_threshold == 2
    assert tables[0].settings.batch_size == ReplicationSettings().batch_size


def test_rule_without_primary_key():
    with pytest.raises(ConfigurationError):
        parse_table_mappings(
            {"rules": [_rule(tracking_column="updated_at")]},
            source_id="src",
            default_database="shop",
            base_settings=ReplicationSettings(),
        )


def test_non_selection_rules_ignored():
    rule = dict(_rule(primary_key=["id"]), **{"rule-action": "exclude"})
    assert parse_table_mappings({"rules": [rule]}, "src", "shop", ReplicationSettings()) == []


def test_settings_validation():
    with pytest.raises(ConfigurationError):
        ReplicationSettings(batch_size=0)
    with pytest.raises(ConfigurationError):
        ReplicationSettings(failure_threshold=0)


def test_settings_file_round_trip(tmp_path):
    settings = {"task_settings": {"replication": {"batch_size": 7}}, "source": {"source_id": "s"}}
    (tmp_path / "task_settings.json").write_text(json.dumps(settings))
    (tmp_path / "table_mappings.json").write_text(json.dumps({"rules": [_rule(primary_key=["id"])]}))

    config = load_config(str(tmp_path))
    assert config.tables[0].settings.batch_size == 7
    assert config.tables[0].ref.key == "s.shop.shop.orders"


def test_invalid_rule_does_not_stop_other_tables(tmp_path):
    broken = dict(_rule(primary_key=[]), **{"rule-name": "customers"})
    broken["object-locator"] = {"schema-name": "shop", "table-name": "customers"}
    (tmp_path / "task_settings.json").write_text(json.dumps({"source": {"source_id": "s"}}))
    (tmp_path / "table_mappings.json").write_text(
        json.dumps({"rules": [broken, _rule(primary_key=["id"])]})
    )

    config = load_config(str(tmp_path))

    assert [t.ref.table for t in config.tables] == ["orders"]
    assert len(config.invalid_tables) == 1
    invalid = config.invalid_table("customers")
    assert invalid.name.endswith(".customers")
    assert invalid.rule_name == "customers"
    assert isinstance(invalid.error, ConfigurationError)
    assert config.invalid_table("orders") is None


def test_invalid_mode_is_recorded_when_collecting():
    invalid = []
    tables = parse_table_mappings(
        {"rules": [_rule(primary_key=["id"], mode="streaming")]},
        source_id="src",
        default_database="shop",
        base_settings=ReplicationSettings(),
        invalid=invalid,
    )
    assert tables == []
    assert invalid[0].rule_name == "orders"
