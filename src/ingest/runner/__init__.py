"""
Runner module for orchestrating the ingestion pipeline.
"""

from .ingest_runner import IngestRunner, PartitionResult, RunMetrics, RunnerConfig

__all__ = ["IngestRunner", "PartitionResult", "RunMetrics", "RunnerConfig"]
