#!/usr/bin/env python3
"""
Replication Runner
==================

CLI script to run the replication engine.

Usage:
    python run_replication.py run              # Replicate continuously until SIGINT/SIGTERM
    python run_replication.py once             # One cycle per table, then exit
    python run_replication.py status           # Show stored checkpoints
    python run_replication.py test             # Test connections only
    python run_replication.py once --table leads
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.exceptions import ReplicationError
from ingestion.engine import ReplicationEngine
from ingestion.pipeline import PipelineState


def test_connections(engine: ReplicationEngine) -> bool:
    """Test object storage, warehouse and source connections."""
    print("=" * 60)
    print("TESTING CONNECTIONS")
    print("=" * 60)

    try:
        engine.connect()
    except ReplicationError as e:
        print(f"\n✗ Connection failed: {e}")
        engine.disconnect()
        return False

    ok = True
    for invalid in engine.invalid_tables:
        ok = False
        print(f"\n✗ {invalid.name}")
        print(f"    Invalid configuration: {invalid.error}")

    for table_config in engine.tables:
        source = engine.sources.get(table_config.ref.key)
        if source is None:
            continue
        try:
            source.connect()
            metadata = source.discover(table_config.ref)
        except ReplicationError as e:
            ok = False
            print(f"\n✗ {table_config.ref.key}")
            print(f"    Connection failed: {e}")
            continue
        print(f"\n✓ {table_config.ref.key}")
        print(f"    Mode: {table_config.ref.mode.value}")
        print(f"    Primary key: {', '.join(metadata.primary_key)}")
        if metadata.cursor_column:
            print(f"    Cursor column: {metadata.cursor_column}")
        print(f"    Columns: {len(metadata.columns)}")

    engine.disconnect()
    if ok:
        print("\n✓ All connections successful!")
    return ok


def run_once(engine: ReplicationEngine) -> bool:
    """Run a single replication cycle for every selected table."""
    print("=" * 60)
    print("REPLICATION CYCLE")
    print("=" * 60)

    try:
        engine.connect()
        results = engine.build_orchestrator().run_once()
    except ReplicationError as e:
        print(f"\n✗ Replication failed: {e}")
        engine.disconnect()
        return False

    ok = True
    for key, result in sorted(results.items()):
        failed = result.error is not None or result.state in (PipelineState.FAILED, PipelineState.CIRCUIT_OPEN)
        ok = ok and not failed
        print(f"\n{'✗' if failed else '✓'} {key}")
        print(f"    State: {result.state.value}")
        print(f"    Events read: {result.events_read:,}")
        print(f"    Batches merged: {result.batches_merged}")
        if result.more_pending:
            print("    More changes pending")
        if result.error:
            print(f"    Error: {result.error}")

    engine.disconnect()
    return ok


def run_forever(engine: ReplicationEngine) -> bool:
    """Replicate until a shutdown signal arrives."""
    try:
        engine.connect()
        orchestrator = engine.build_orchestrator()
    except ReplicationError as e:
        print(f"\n✗ Startup failed: {e}")
        engine.disconnect()
        return False

    orchestrator.install_signal_handlers()
    orchestrator.run_forever()
    engine.disconnect()
    return not any(s["state"] == PipelineState.FAILED.value for s in orchestrator.status())


def show_status(engine: ReplicationEngine) -> bool:
    """Print the stored checkpoint of every selected table."""
    try:
        print(json.dumps(engine.checkpoint_status(), indent=2))
        return True
    except ReplicationError as e:
        print(f"\n✗ Could not read checkpoints: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description="Warehouse Replication Engine")
    parser.add_argument(
        "command",
        choices=["run", "once", "status", "test"],
        help="Command to run"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the configs directory"
    )
    parser.add_argument(
        "--docker",
        action="store_true",
        help="Use Docker internal hostnames"
    )
    parser.add_argument(
        "--table",
        action="append",
        default=None,
        help="Only replicate this table (repeatable)"
    )

    args = parser.parse_args()

    try:
        engine = ReplicationEngine(
            config_path=args.config,
            use_docker_hosts=args.docker,
            table_names=args.table,
        )
    except ReplicationError as e:
        print(f"✗ Invalid configuration: {e}")
        sys.exit(2)

    if args.command == "run":
        success = run_forever(engine)
    elif args.command == "once":
        success = run_once(engine)
    elif args.command == "status":
        success = show_status(engine)
    elif args.command == "test":
        success = test_connections(engine)
    else:
        print(f"Unknown command: {args.command}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
