#!/usr/bin/env python3
"""
CLI entry point for the vector index.

Usage:
    vector-cli --config config/pipeline.yaml index
    vector-cli --config config/pipeline.yaml query --q "web-slinging hero" --k 3
    vector-cli --config config/pipeline.yaml query --q "symbiote" --entity comic --since 2024-01-01
    vector-cli --config config/pipeline.yaml manifests
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ingest.config import PipelineConfig
from ingest.core.exceptions import PipelineError, error_response
from ingest.core.logging import configure_logging
from ingest.core.utils import parse_datetime
from ingest.storage import CanonicalRecordStore, FileObjectStore

from .chunker import ChunkingPolicy, chunk_records
from .embedding import EmbeddingConfig, EmbeddingProducer, create_provider
from .indexer import Indexer
from .query import QueryConfig, QueryEngine
from .shards import IndexConfig, ShardManager


logger = logging.getLogger(__name__)


def build_components(config: PipelineConfig) -> Dict[str, Any]:
    """Wire the record store, shard manager and producer from configuration."""
    object_store = FileObjectStore(base_dir=Path(config.get("storage.base_dir", "local/lake")))
    embedding_config = EmbeddingConfig.from_dict(config.get_embedding_config())
    producer = EmbeddingProducer(
        create_provider(embedding_config),
        batch_size=embedding_config.batch_size,
    )
    return {
        "record_store": CanonicalRecordStore(object_store),
        "shard_manager": ShardManager(object_store, IndexConfig.from_dict(config.get_index_config())),
        "producer": producer,
        "embedding_config": embedding_config,
    }


def _date_range(args: argparse.Namespace):
    since = parse_datetime(args.since).date() if args.since else None
    until = parse_datetime(args.until).date() if args.until else None
    return since, until


def cmd_index(args: argparse.Namespace, config: PipelineConfig) -> int:
    """Chunk derived records, then embed and index new chunks."""
    components = build_components(config)
    date_range = _date_range(args)

    chunk_result = chunk_records(
        components["record_store"],
        date_range=date_range,
        policy=ChunkingPolicy.from_dict(config.get_chunking_config()),
        run_id=args.run_id,
    )
    indexer = Indexer(
        components["record_store"],
        components["producer"],
        components["shard_manager"],
        batch_size=components["embedding_config"].batch_size,
        snippet_chars=components["embedding_config"].snippet_chars,
    )
    summary = indexer.run(date_range=date_range, run_id=args.run_id)

    print(json.dumps({"chunking": chunk_result.to_dict(), "index": summary.to_dict()}, indent=2))
    return 0


def cmd_query(args: argparse.Namespace, config: PipelineConfig) -> int:
    """Run one similarity query and print the response."""
    components = build_components(config)
    engine = QueryEngine(
        components["shard_manager"],
        components["producer"],
        QueryConfig.from_dict(config.get_query_config()),
    )

    params: Dict[str, Any] = {"q": args.q, "k": args.k, "threshold": args.threshold, "mode": args.mode}
    for name in ("entity", "id", "since", "until"):
        value = getattr(args, name)
        if value is not None:
            params[f"filter.{name}"] = value

    response = engine.query_params(params)
    print(json.dumps(response.to_dict(), indent=2))
    return 0


def cmd_manifests(args: argparse.Namespace, config: PipelineConfig) -> int:
    """List committed shard manifests."""
    components = build_components(config)
    warnings: List[str] = []
    manifests = components["shard_manager"].list_manifests(
        model_id=args.model_id,
        dims=args.dims,
        warnings=warnings,
    )
    print(json.dumps({"manifests": [m.to_dict() for m in manifests], "warnings": warnings}, indent=2))
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Vector index CLI",
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

    index_parser = subparsers.add_parser("index", help="Chunk and index derived records")
    index_parser.add_argument("--since", help="First partition date (YYYY-MM-DD)")
    index_parser.add_argument("--until", help="Last partition date (YYYY-MM-DD)")
    index_parser.add_argument("--run-id", help="Run identifier")
    index_parser.set_defaults(func=cmd_index)

    query_parser = subparsers.add_parser("query", help="Run a similarity query")
    query_parser.add_argument("--q", required=True, help="Query text")
    query_parser.add_argument("--k", help="Number of results")
    query_parser.add_argument("--threshold", help="Minimum score (0 keeps everything)")
    query_parser.add_argument("--mode", default="dense", help="Scoring mode")
    query_parser.add_argument("--entity", help="Only this entity type")
    query_parser.add_argument("--id", help="Only this chunk id")
    query_parser.add_argument("--since", help="Only records modified at or after (ISO-8601)")
    query_parser.add_argument("--until", help="Only records modified at or before (ISO-8601)")
    query_parser.set_defaults(func=cmd_query)

    manifests_parser = subparsers.add_parser("manifests", help="List shard manifests")
    manifests_parser.add_argument("--model-id", help="Only this model")
    manifests_parser.add_argument("--dims", type=int, help="Only this dimensionality")
    manifests_parser.set_defaults(func=cmd_manifests)

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
