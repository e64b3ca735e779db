"""
Replication Engine
==================

Wires configuration, connectors, warehouse, checkpoint store, metrics and
alerts into one SyncPipeline per selected table, and hands them to the
orchestrator.
"""

import logging
from typing import Dict, Iterable, List, Optional

from core.exceptions import ConfigurationError
from observability.alerts.manager import AlertManager
from observability.logging.structured_logger import setup_logging
from observability.metrics.collector import MetricsCollector
from processing.merge.materializer import MergeMaterializer
from processing.staging.loader import StagingLoader
from processing.warehouse import Warehouse
from .checkpoint import CheckpointStore, FileCheckpointStore, PostgresCheckpointStore
from .config import InvalidTable, ReplicationConfig, TableConfig, load_config, resolve_connection
from .connectors.base import ChangeSource, ObjectStore
from .connectors.binlog_source import MySQLBinlogSource
from .connectors.local_connector import LocalFileConnector
from .connectors.minio_connector import MinIOConnector
from .connectors.polling_source import SQLPollingSource
from .events import SyncMode
from .orchestrator import ReplicationOrchestrator
from .pipeline import SyncPipeline
from .writer import BatchWriter

logger = logging.getLogger(__name__)


class ReplicationEngine:
    """
    Builds and owns every long-lived component of a replication run.

    Usage:
        engine = ReplicationEngine()
        engine.connect()
        engine.build_orchestrator().run_forever()
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[ReplicationConfig] = None,
        use_docker_hosts: bool = False,
        table_names: Optional[Iterable[str]] = None,
        configure_logging: bool = True
    ):
        """
        Initialize the replication engine.

        Args:
            config_path: Path to the configs directory
            config: Already loaded configuration (skips config_path)
            use_docker_hosts: Use Docker internal hostnames (for running inside containers)
            table_names: Restrict the run to these tables (name or full key)
            configure_logging: Apply the logging section of task_settings.json
        """
        self.config = config or load_config(config_path)
        self.task_settings = self.config.task_settings
        self.use_docker_hosts = use_docker_hosts
        self.invalid_tables: List[InvalidTable] = []
        self.tables = self._select_tables(table_names)

        if configure_logging:
            self._setup_logging()

        settings = self.task_settings.get("task_settings", {})
        self.metrics = MetricsCollector(
            pushgateway_url=settings.get("metrics", {}).get("pushgateway_url"),
        )
        alert_settings = settings.get("alerts", {})
        self.alerts = AlertManager(
            slack_webhook_url=alert_settings.get("slack_webhook_url"),
            dedup_window_minutes=alert_settings.get("dedup_window_minutes", 60),
        )

        self.object_store: Optional[ObjectStore] = None
        self.warehouse: Optional[Warehouse] = None
        self.checkpoint_store: Optional[CheckpointStore] = None
        self.sources: Dict[str, ChangeSource] = {}
        self.pipelines: List[SyncPipeline] = []

    def _select_tables(self, table_names: Optional[Iterable[str]]) -> List[TableConfig]:
        if not table_names:
            self.invalid_tables = list(self.config.invalid_tables)
            return [t for t in self.config.tables if t.enabled]

        tables = []
        for name in table_names:
            invalid = self.config.invalid_table(name)
            if invalid is not None:
                self.invalid_tables.append(invalid)
            else:
                tables.append(self.config.table(name))
        return tables

    def _setup_logging(self):
        """Setup logging configuration."""
        log_settings = self.task_settings.get("task_settings", {}).get("logging", {})
        setup_logging(
            level=log_settings.get("level", "INFO"),
            json_format=log_settings.get("json_format", False),
            log_file=log_settings.get("log_path") if log_settings.get("log_to_file") else None,
        )

    # =========================================
    # COMPONENT FACTORIES
    # =========================================

    def build_object_store(self) -> ObjectStore:
        target = self.task_settings.get("target", {})
        connection = resolve_connection(self.task_settings, "target", self.use_docker_hosts)
        store_type = target.get("type", "minio")
        if store_type == "minio":
            return MinIOConnector(connection)
        if store_type == "local":
            return LocalFileConnector(connection)
        raise ConfigurationError(f"Unsupported target type: {store_type}")

    def build_warehouse(self) -> Warehouse:
        warehouse = self.task_settings.get("warehouse", {})
        connection = resolve_connection(self.task_settings, "warehouse", self.use_docker_hosts)
        if not connection.get("url"):
            raise ConfigurationError("warehouse.connection.url is required")
        return Warehouse(
            url=connection["url"],
            staging_prefix=warehouse.get("staging_prefix", "stg_"),
            target_prefix=warehouse.get("target_prefix", "rep_"),
            schema=warehouse.get("schema"),
        )

    def build_checkpoint_store(self) -> CheckpointStore:
        checkpoint = self.task_settings.get("checkpoint", {})
        connection = resolve_connection(self.task_settings, "checkpoint", self.use_docker_hosts)
        store_type = checkpoint.get("type", "file")
        if store_type == "file":
            return FileCheckpointStore(connection.get("path", "checkpoints"))
        if store_type == "postgres":
            store = PostgresCheckpointStore(connection["dsn"], table=checkpoint.get("table", "replication_checkpoints"))
            store.ensure_table()
            return store
        raise ConfigurationError(f"Unsupported checkpoint type: {store_type}")

    def build_source(self, table_config: TableConfig, index: int = 0) -> ChangeSource:
        source = self.task_settings.get("source", {})
        connection = resolve_connection(self.task_settings, "source", self.use_docker_hosts)
        settings = table_config.settings
        ref = table_config.ref

        if ref.mode is SyncMode.LOG_BASED:
            # Each concurrent binlog reader needs its own replica server id.
            server_id = int(source.get("binlog", {}).get("server_id", 100)) + index
            return MySQLBinlogSource(connection, server_id=server_id, timeout_seconds=settings.call_timeout_seconds)

        delete_detection = {ref.key: table_config.delete_detection} if table_config.delete_detection else None
        if source.get("type", "mysql") == "mysql":
            return SQLPollingSource.from_mysql_config(
                connection,
                page_size=settings.page_size,
                delete_detection=delete_detection,
                timeout_seconds=settings.call_timeout_seconds,
            )
        if connection.get("url"):
            return SQLPollingSource(connection["url"], page_size=settings.page_size, delete_detection=delete_detection)
        raise ConfigurationError(f"Unsupported source type: {source.get('type')}")

    # =========================================
    # LIFECYCLE
    # =========================================

    def connect(self):
        """
        Establish connections to object storage and the warehouse, and build
        one change source per table. Sources connect inside their pipeline,
        so an unreachable or misconfigured source only affects its table.
        """
        logger.info("Connecting to object storage and warehouse...")

        self.object_store = self.build_object_store()
        self.object_store.connect()

        self.warehouse = self.build_warehouse()
        self.warehouse.connect()

        self.checkpoint_store = self.build_checkpoint_store()

        for index, table_config in enumerate(self.tables):
            try:
                self.sources[table_config.ref.key] = self.build_source(table_config, index)
            except ConfigurationError as e:
                logger.error(f"Skipping table {table_config.ref.key}: {e}")
                self.invalid_tables.append(InvalidTable(
                    name=table_config.ref.key,
                    error=e,
                    rule_name=table_config.rule_name,
                ))

        logger.info(
            f"Connected; {len(self.sources)} tables selected"
            + (f", {len(self.invalid_tables)} invalid" if self.invalid_tables else "")
        )

    def build_pipelines(self) -> List[SyncPipeline]:
        if self.object_store is None:
            raise RuntimeError("connect() must be called before build_pipelines()")

        root_prefix = self.task_settings.get("target", {}).get("root_prefix", "")
        writer = BatchWriter(self.object_store, root_prefix=root_prefix)
        loader = StagingLoader(self.object_store, self.warehouse)

        self.pipelines = []
        for table_config in self.tables:
            if table_config.ref.key not in self.sources:
                continue
            self.pipelines.append(SyncPipeline(
                ref=table_config.ref,
                settings=table_config.settings,
                source=self.sources[table_config.ref.key],
                writer=writer,
                loader=loader,
                materializer=MergeMaterializer(
                    self.warehouse,
                    lease_timeout_seconds=table_config.settings.merge_lease_timeout_seconds,
                ),
                checkpoint_store=self.checkpoint_store,
                metrics=self.metrics,
            ))
        return self.pipelines

    def build_orchestrator(self) -> ReplicationOrchestrator:
        pipelines = self.pipelines or self.build_pipelines()
        return ReplicationOrchestrator(pipelines, alerts=self.alerts, invalid_tables=self.invalid_tables)

    def checkpoint_status(self) -> List[Dict]:
        """Stored checkpoint of every selected table."""
        store = self.checkpoint_store or self.build_checkpoint_store()
        rows = []
        for table_config in self.tables:
            checkpoint = store.get(table_config.ref)
            watermark = checkpoint.watermark_token if checkpoint else None
            rows.append({
                "table": table_config.ref.key,
                "mode": table_config.ref.mode.value,
                "high_watermark": str(watermark) if watermark else None,
                "last_batch_id": checkpoint.last_batch_id if checkpoint else None,
                "committed_at": (
                    checkpoint.committed_at.isoformat()
                    if checkpoint and checkpoint.committed_at else None
                ),
                "staged_batches": len(checkpoint.staging_ledger) if checkpoint else 0,
            })
        return rows

    def disconnect(self):
        """Close all connections."""
        for pipeline in self.pipelines:
            pipeline.close()
        for source in self.sources.values():
            source.close()
        if self.warehouse is not None:
            self.warehouse.close()
        if self.checkpoint_store is not None:
            self.checkpoint_store.close()
        self.metrics.push_to_prometheus()
        logger.info("Connections closed")
