"""
Configuration loader for the indexing pipeline.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml
except ImportError:
    yaml = None

from ..core.exceptions import ValidationError
from ..core.models import IngestPartition


logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "storage": {
        "base_dir": "local/lake",
    },
    "state": {
        "type": "sqlite",
        "db_path": "local/state/checkpoints.db",
        "sqlserver": {
            "host": "localhost",
            "port": 1433,
            "database": "MarvelIndex",
            "user": "sa",
            "schema": "ingest",
        },
    },
    "runner": {
        "page_size": 100,
        "max_workers": 4,
        "max_pages": None,
        "retry": {
            "max_attempts": 3,
            "initial_delay_ms": 250,
            "max_delay_ms": 5000,
            "backoff_multiplier": 2.0,
            "jitter": True,
        },
    },
    "fetcher": {
        "type": "http",
        "timeout": 30,
        "user_agent": None,
        # Query parameter name -> environment variable holding its value
        "auth_env": {},
        # Items per partition served by the static fetcher
        "static_count": 25,
    },
    "embedding": {
        "provider": "hashing",
        "model_id": "hashing-v1",
        "dims": 384,
        "batch_size": 32,
        "base_url": "http://localhost:11434",
        "timeout": 60,
        "snippet_chars": 200,
    },
    "chunking": {
        "chunk_size": 1200,
        "overlap": 150,
        "max_chunks_per_source": 100,
    },
    "index": {
        "max_shard_bytes": 8 * 1024 * 1024,
    },
    "query": {
        "default_k": 5,
        "max_k": 50,
        "max_query_chars": 2048,
    },
    "sources": [],
}

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "PIPELINE_LAKE_DIR": "storage.base_dir",
    "DB_BACKEND": "state.type",
    "PIPELINE_EMBED_MODEL": "embedding.model_id",
    "OLLAMA_BASE_URL": "embedding.base_url",
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; lists and scalars replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class PipelineConfig:
    """
    Configuration for the indexing pipeline.

    Loads a YAML file over the built-in defaults, then applies environment
    overrides. Every key has a default, so an empty file is valid.
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        loaded = self._load_config() if self.config_path else {}
        self.config = _deep_merge(DEFAULT_CONFIG, loaded)
        self._apply_env_overrides()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from an in-memory dict (defaults still apply)."""
        config = cls()
        config.config = _deep_merge(DEFAULT_CONFIG, data)
        config._apply_env_overrides()
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if yaml is None:
            raise ImportError(
                "pyyaml is required for config loading. "
                "Install with: pip install pyyaml"
            )

        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")

        with open(self.config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if config is not None and not isinstance(config, dict):
            raise ValidationError(f"Config root must be a mapping: {self.config_path}")

        return config or {}

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to loaded config."""
        for env_var, dotted in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            section_name, key = dotted.split(".", 1)
            section = self.config.setdefault(section_name, {})
            section[key] = value.lower() if env_var == "DB_BACKEND" else value
            logger.debug(f"Config override from {env_var}: {dotted}")

    def get_storage_config(self) -> Dict[str, Any]:
        """Get storage configuration."""
        return self.config.get("storage", {})

    def get_state_config(self) -> Dict[str, Any]:
        """Get checkpoint ledger configuration."""
        return self.config.get("state", {})

    def get_runner_config(self) -> Dict[str, Any]:
        """Get runner configuration."""
        return self.config.get("runner", {})

    def get_fetcher_config(self) -> Dict[str, Any]:
        """Get upstream fetcher configuration."""
        return self.config.get("fetcher", {})

    def get_embedding_config(self) -> Dict[str, Any]:
        """Get embedding configuration."""
        return self.config.get("embedding", {})

    def get_chunking_config(self) -> Dict[str, Any]:
        """Get chunking configuration."""
        return self.config.get("chunking", {})

    def get_index_config(self) -> Dict[str, Any]:
        """Get shard index configuration."""
        return self.config.get("index", {})

    def get_query_config(self) -> Dict[str, Any]:
        """Get query configuration."""
        return self.config.get("query", {})

    def get_sources(self) -> List[Dict[str, Any]]:
        """Get list of source configurations."""
        return self.config.get("sources", []) or []

    def get_partitions(self) -> List[IngestPartition]:
        """
        Build ingest partitions from the ``sources`` section.

        Raises:
            ValidationError: If a source entry lacks a required key
        """
        partitions = []
        for i, source in enumerate(self.get_sources()):
            missing = [k for k in ("partition_key", "sort_key", "request_uri") if not source.get(k)]
            if missing:
                raise ValidationError(f"sources[{i}] is missing: {', '.join(missing)}")
            partitions.append(IngestPartition.from_dict(source))
        return partitions

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
