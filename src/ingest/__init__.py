"""
Ingestion Module

Resumable, checkpointed ingestion of a paginated catalogue API into the
canonical record store.

Key components:
- core/: Models, interfaces and the error taxonomy shared with the vector index
- state/: Checkpoint ledger backends (SQLite, SQL Server)
- storage/: Object stores and the canonical record store
- connectors/: Upstream page fetchers
- runner/: IngestRunner
- derive.py: Raw -> derived text records
"""

__version__ = "0.1.0"
