"""
Replication Configuration
=========================

Loads the JSON task settings and table mappings once at startup and turns
them into immutable structures:

- ReplicationSettings: thresholds, retry limits, timeouts
- TableConfig: a SourceTableRef plus its per-table settings and source options
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import ConfigurationError
from .events import SourceTableRef, SyncMode

logger = logging.getLogger(__name__)

# Environment variables that override secrets in task_settings.json
ENV_OVERRIDES = {
    "REPLICATION_SOURCE_PASSWORD": ("source", "connection", "password"),
    "REPLICATION_MINIO_SECRET_KEY": ("target", "connection", "secret_key"),
    "REPLICATION_WAREHOUSE_URL": ("warehouse", "connection", "url"),
    "REPLICATION_CHECKPOINT_DSN": ("checkpoint", "connection", "dsn"),
}


@dataclass(frozen=True)
class ReplicationSettings:
    """Per-pipeline thresholds. Built once, never mutated at runtime."""
    batch_size: int = 1000
    flush_interval_seconds: float = 30.0
    max_events_per_read: int = 10000
    page_size: int = 1000
    max_attempts_per_stage: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0
    failure_threshold: int = 5
    circuit_cooldown_seconds: float = 300.0
    poll_interval_seconds: float = 10.0
    idle_interval_seconds: float = 1.0
    call_timeout_seconds: float = 120.0
    merge_lease_timeout_seconds: float = 30.0
    staging_ledger_max_entries: int = 256
    flush_on_shutdown: bool = True

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1")
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.max_attempts_per_stage < 1:
            raise ConfigurationError("max_attempts_per_stage must be >= 1")

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "ReplicationSettings":
        return cls().with_overrides(values)

    def with_overrides(self, values: Optional[Dict[str, Any]]) -> "ReplicationSettings":
        """Return a copy with known keys replaced; unknown keys are ignored."""
        if not values:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(values) - known
        if unknown:
            logger.warning(f"Ignoring unknown replication settings: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in values.items() if k in known})


@dataclass(frozen=True)
class TableConfig:
    """One selected table: its reference, settings and source options."""
    ref: SourceTableRef
    settings: ReplicationSettings
    delete_detection: Optional[Dict[str, Any]] = None
    rule_name: Optional[str] = None
    enabled: bool = True


@dataclass(frozen=True)
class InvalidTable:
    """A selection rule that could not be turned into a TableConfig."""
    name: str
    error: ConfigurationError
    rule_name: Optional[str] = None


@dataclass(frozen=True)
class ReplicationConfig:
    """Everything loaded from the config directory."""
    task_settings: Dict[str, Any]
    tables: List[TableConfig] = field(default_factory=list)
    invalid_tables: List[InvalidTable] = field(default_factory=list)

    def invalid_table(self, name: str) -> Optional[InvalidTable]:
        for invalid in self.invalid_tables:
            if name in (invalid.name, invalid.rule_name) or invalid.name.endswith(f".{name}"):
                return invalid
        return None

    def table(self, name: str) -> TableConfig:
        for table_config in self.tables:
            if name in (table_config.ref.table, table_config.ref.key):
                return table_config
        raise ConfigurationError(f"Table not configured: {name}")


def get_default_config_path() -> str:
    """Get default config path."""
    return str(Path(__file__).parent / "configs")


def _load_json(config_path: str, filename: str) -> Dict:
    path = os.path.join(config_path, filename)
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}", original_exception=e)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}", original_exception=e)


def apply_env_overrides(task_settings: Dict) -> Dict:
    """Overlay secrets from the environment onto the task settings."""
    for env_name, path in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        node = task_settings
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value
    return task_settings


def resolve_connection(task_settings: Dict, section: str, use_docker_hosts: bool = False) -> Dict:
    """
    Connection dict for a section, with Docker-internal host overrides.

    Args:
        task_settings: Loaded task settings
        section: 'source', 'target', 'warehouse' or 'checkpoint'
        use_docker_hosts: Use docker_* alternates (for running inside containers)
    """
    section_config = task_settings.get(section, {})
    connection = dict(section_config.get("connection", {}))
    if use_docker_hosts:
        for key in ("host", "port", "endpoint", "url"):
            docker_key = f"docker_{key}"
            if docker_key in section_config:
                connection[key] = section_config[docker_key]
    return connection


def _parse_rule(
    rule: Dict,
    source_id: str,
    default_database: str,
    base_settings: ReplicationSettings
) -> TableConfig:
    locator = rule.get("object-locator", {})
    cdc_config = dict(rule.get("cdc-config", {}))
    schema = locator.get("schema-name")
    table = locator.get("table-name")
    if not schema or not table:
        raise ConfigurationError(
            "Selection rule needs schema-name and table-name",
            context={"rule_id": rule.get("rule-id")}
        )

    primary_key = cdc_config.pop("primary_key", None) or []
    if isinstance(primary_key, str):
        primary_key = [c.strip() for c in primary_key.split(",") if c.strip()]

    mode = cdc_config.pop("mode", SyncMode.POLLING.value)
    try:
        mode = SyncMode(mode)
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown replication mode: {mode}",
            context={"table": f"{schema}.{table}"},
            original_exception=e
        )

    ref = SourceTableRef(
        source_id=source_id,
        database=locator.get("database-name", default_database or schema),
        schema=schema,
        table=table,
        primary_key=tuple(primary_key),
        cursor_column=cdc_config.pop("tracking_column", None),
        mode=mode,
    )

    delete_detection = cdc_config.pop("delete_detection", None)
    enabled = cdc_config.pop("enabled", True)

    return TableConfig(
        ref=ref,
        settings=base_settings.with_overrides(cdc_config),
        delete_detection=delete_detection,
        rule_name=rule.get("rule-name"),
        enabled=enabled,
    )


def _rule_label(rule: Dict, source_id: str, default_database: str) -> str:
    locator = rule.get("object-locator", {})
    schema = locator.get("schema-name")
    table = locator.get("table-name")
    if schema and table:
        database = locator.get("database-name", default_database or schema)
        return f"{source_id}.{database}.{schema}.{table}"
    return str(rule.get("rule-name") or f"rule-{rule.get('rule-id')}")


def parse_table_mappings(
    table_mappings: Dict,
    source_id: str,
    default_database: str,
    base_settings: ReplicationSettings,
    invalid: Optional[List[InvalidTable]] = None
) -> List[TableConfig]:
    """
    Build TableConfigs from DMS-style selection rules.

    Args:
        table_mappings: Loaded table_mappings.json
        source_id: Source system id for every ref
        default_database: Database used when a rule omits it
        base_settings: Settings that per-table cdc-config keys override
        invalid: When given, rules with a configuration error are recorded
            here and skipped instead of raising

    Raises:
        ConfigurationError: For an invalid rule when ``invalid`` is None
    """
    tables = []
    for rule in table_mappings.get("rules", []):
        if rule.get("rule-type") != "selection" or rule.get("rule-action") != "explicit":
            continue
        try:
            tables.append(_parse_rule(rule, source_id, default_database, base_settings))
        except ConfigurationError as e:
            if invalid is None:
                raise
            name = _rule_label(rule, source_id, default_database)
            logger.error(f"Skipping table {name}: {e}")
            invalid.append(InvalidTable(name=name, error=e, rule_name=rule.get("rule-name")))
    return tables


def load_config(config_path: Optional[str] = None) -> ReplicationConfig:
    """
    Load task_settings.json and table_mappings.json from a config directory.

    A table whose rule is invalid is listed in ``invalid_tables`` and does
    not stop the others from loading.

    Args:
        config_path: Path to the configs directory (defaults to ingestion/configs)

    Returns:
        ReplicationConfig with immutable per-table settings
    """
    config_path = config_path or get_default_config_path()
    task_settings = apply_env_overrides(_load_json(config_path, "task_settings.json"))
    table_mappings = _load_json(config_path, "table_mappings.json")

    base_settings = ReplicationSettings.from_dict(
        task_settings.get("task_settings", {}).get("replication", {})
    )
    source = task_settings.get("source", {})
    invalid: List[InvalidTable] = []
    tables = parse_table_mappings(
        table_mappings,
        source_id=source.get("source_id", "source"),
        default_database=source.get("connection", {}).get("database"),
        base_settings=base_settings,
        invalid=invalid,
    )

    logger.info(
        f"Loaded configuration for {len(tables)} tables from {config_path}"
        + (f" ({len(invalid)} invalid)" if invalid else "")
    )
    return ReplicationConfig(task_settings=task_settings, tables=tables, invalid_tables=invalid)
