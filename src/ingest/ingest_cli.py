#!/usr/bin/env python3
"""
CLI entry point for checkpointed ingestion.

Usage:
    ingest-cli --config config/pipeline.yaml run
    ingest-cli --config config/pipeline.yaml run --max-pages 2 --workers 1
    ingest-cli --config config/pipeline.yaml checkpoint --partition-key character#1009685
    ingest-cli --config config/pipeline.yaml derive --since 2024-05-01
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from ingest.config import PipelineConfig
from ingest.connectors import HttpRecordFetcher, StaticRecordFetcher, create_synthetic_comics
from ingest.core.checkpoint_store import CheckpointStore
from ingest.core.exceptions import PipelineError, ValidationError, error_response
from ingest.core.fetcher import RecordFetcher
from ingest.core.logging import configure_logging
from ingest.core.models import IngestPartition
from ingest.core.utils import parse_datetime
from ingest.derive import derive_records
from ingest.runner import IngestRunner, RunnerConfig
from ingest.state import create_checkpoint_store
from ingest.storage import CanonicalRecordStore, FileObjectStore


logger = logging.getLogger(__name__)


def build_checkpoint_store(config: PipelineConfig) -> CheckpointStore:
    """Build the checkpoint ledger from configuration."""
    state_config = config.get_state_config()
    backend = state_config.get("type", "sqlite")

    if backend == "sqlserver":
        sql_config = state_config.get("sqlserver", {})
        return create_checkpoint_store(
            backend="sqlserver",
            host=sql_config.get("host", "localhost"),
            port=int(sql_config.get("port", 1433)),
            database=sql_config.get("database", "MarvelIndex"),
            username=sql_config.get("user", "sa"),
            driver=sql_config.get("driver", "ODBC Driver 18 for SQL Server"),
            schema=sql_config.get("schema", "ingest"),
        )

    return create_checkpoint_store(
        backend=backend,
        db_path=Path(state_config.get("db_path", "local/state/checkpoints.db")),
    )


def build_record_store(config: PipelineConfig) -> CanonicalRecordStore:
    """Build the record store over the filesystem lake."""
    base_dir = Path(config.get("storage.base_dir", "local/lake"))
    return CanonicalRecordStore(FileObjectStore(base_dir=base_dir))


def build_fetcher(config: PipelineConfig, partitions: List[IngestPartition]) -> RecordFetcher:
    """Build the upstream fetcher from configuration."""
    fetcher_config = config.get_fetcher_config()
    fetcher_type = fetcher_config.get("type", "http")

    if fetcher_type == "static":
        count = int(fetcher_config.get("static_count", 25))
        datasets = {p.request_uri: create_synthetic_comics(count) for p in partitions}
        return StaticRecordFetcher(datasets=datasets)

    if fetcher_type == "http":
        auth_params = {}
        for param, env_var in (fetcher_config.get("auth_env") or {}).items():
            value = os.environ.get(env_var)
            if value is None:
                logger.warning(f"Auth parameter {param} not set (expected env var {env_var})")
                continue
            auth_params[param] = value
        return HttpRecordFetcher(
            timeout=int(fetcher_config.get("timeout", 30)),
            user_agent=fetcher_config.get("user_agent"),
            auth_params=auth_params,
        )

    raise ValidationError(f"Unknown fetcher type: {fetcher_type}")


def cmd_run(args: argparse.Namespace, config: PipelineConfig) -> int:
    """Run ingestion over the configured partitions."""
    partitions = config.get_partitions()
    if args.partition_key:
        partitions = [p for p in partitions if p.partition_key == args.partition_key]
    if not partitions:
        logger.warning("No partitions configured; nothing to ingest")
        print(json.dumps({"partitions_total": 0}, indent=2))
        return 0

    runner_config = RunnerConfig.from_dict(config.get_runner_config())
    if args.max_pages is not None:
        runner_config.max_pages = args.max_pages
    if args.workers is not None:
        runner_config.max_workers = args.workers
    if args.page_size is not None:
        runner_config.page_size = args.page_size

    runner = IngestRunner(
        checkpoint_store=build_checkpoint_store(config),
        fetcher=build_fetcher(config, partitions),
        record_store=build_record_store(config),
        config=runner_config,
    )
    try:
        metrics = runner.run(partitions, run_id=args.run_id)
    finally:
        runner.close()

    print(json.dumps(metrics.to_dict(), indent=2))
    return 0 if metrics.partitions_failed == 0 else 1


def cmd_checkpoint(args: argparse.Namespace, config: PipelineConfig) -> int:
    """Print committed checkpoints."""
    store = build_checkpoint_store(config)
    try:
        checkpoints = store.list_checkpoints(args.partition_key)
    finally:
        store.close()

    print(json.dumps([c.to_dict() for c in checkpoints], indent=2))
    return 0


def cmd_derive(args: argparse.Namespace, config: PipelineConfig) -> int:
    """Derive text records from raw records."""
    since = parse_datetime(args.since).date() if args.since else None
    until = parse_datetime(args.until).date() if args.until else None

    result = derive_records(
        build_record_store(config),
        date_range=(since, until),
        run_id=args.run_id,
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Checkpointed ingestion CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration YAML file",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--structured",
        action="store_true",
        help="Emit JSON-structured logs",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Ingest configured partitions")
    run_parser.add_argument("--partition-key", help="Only ingest this partition key")
    run_parser.add_argument("--max-pages", type=int, help="Stop each partition after N pages")
    run_parser.add_argument("--workers", type=int, help="Concurrent partitions")
    run_parser.add_argument("--page-size", type=int, help="Items per page")
    run_parser.add_argument("--run-id", help="Run identifier")
    run_parser.set_defaults(func=cmd_run)

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Show committed checkpoints")
    checkpoint_parser.add_argument("--partition-key", help="Only show this partition key")
    checkpoint_parser.set_defaults(func=cmd_checkpoint)

    derive_parser = subparsers.add_parser("derive", help="Derive text records from raw records")
    derive_parser.add_argument("--since", help="First raw partition date (YYYY-MM-DD)")
    derive_parser.add_argument("--until", help="Last raw partition date (YYYY-MM-DD)")
    derive_parser.add_argument("--run-id", help="Run identifier")
    derive_parser.set_defaults(func=cmd_derive)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(verbose=args.verbose, structured=args.structured)

    try:
        config = PipelineConfig(config_path=args.config)
        logger.debug("Configuration loaded")
        return args.func(args, config)
    except PipelineError as e:
        logger.error(f"{e.code}: {e}")
        print(json.dumps(error_response(e), indent=2), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
