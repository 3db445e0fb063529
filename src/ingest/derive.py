"""
Derive step: raw page records to one text-bearing record per upstream item.

Raw records carry the upstream JSON untouched. Derived records carry the
fields downstream stages need: a stable id, a joined ``text`` body, and the
upstream ``modified`` timestamp that later becomes shard time ranges.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .core.models import CanonicalRecord, Stage
from .storage.record_store import CanonicalRecordStore, DateRange

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


@dataclass
class DeriveConfig:
    """Configuration for the derive step."""
    # Upstream fields joined into the text body, in order
    text_fields: Tuple[str, ...] = ("title", "name", "description")
    # Records written per derived object
    batch_size: int = 500
    # Items whose joined text is shorter than this are dropped
    min_text_chars: int = 1


@dataclass
class DeriveResult:
    """Outcome of one derive run."""
    records_read: int = 0
    records_written: int = 0
    skipped_existing: int = 0
    skipped_empty: int = 0
    object_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_read": self.records_read,
            "records_written": self.records_written,
            "skipped_existing": self.skipped_existing,
            "skipped_empty": self.skipped_empty,
            "object_keys": list(self.object_keys),
        }


def clean_text(value: Any) -> str:
    """Strip markup and collapse whitespace."""
    if value is None:
        return ""
    text = _TAG_RE.sub(" ", str(value))
    return _WS_RE.sub(" ", text).strip()


def derive_payload(raw: CanonicalRecord, text_fields: Sequence[str]) -> Dict[str, Any]:
    """
    Build the derived payload for one raw record.

    Args:
        raw: Raw record holding one upstream item
        text_fields: Fields joined into ``text``

    Returns:
        Derived payload dict
    """
    item = raw.payload if isinstance(raw.payload, dict) else {}
    parts = [clean_text(item.get(name)) for name in text_fields]
    text = "\n\n".join(part for part in parts if part)

    return {
        "id": raw.source_id,
        "entity_type": raw.entity_type,
        "title": clean_text(item.get("title") or item.get("name")) or None,
        "text": text,
        "modified": item.get("modified"),
        "source_checksum": raw.checksum,
    }


def derive_records(
    record_store: CanonicalRecordStore,
    date_range: Optional[DateRange] = None,
    partition_date: Optional[date] = None,
    run_id: Optional[str] = None,
    config: Optional[DeriveConfig] = None,
) -> DeriveResult:
    """
    Turn raw records into derived records, skipping ones already derived.

    Re-running over the same raw objects writes nothing new, since each
    derived payload is deterministic and its dedupe key is checked against
    what the derived stage already holds.

    Args:
        record_store: Record store holding both stages
        date_range: Raw partition dates to read
        partition_date: Partition date for derived objects (defaults to today)
        run_id: Run identifier stamped on written records
        config: Derive configuration

    Returns:
        DeriveResult with counts and written object keys
    """
    config = config or DeriveConfig()
    result = DeriveResult()
    seen = record_store.processed_keys(Stage.DERIVED)
    batch: List[CanonicalRecord] = []

    def flush() -> None:
        if not batch:
            return
        written = record_store.write(Stage.DERIVED, partition_date, batch)
        result.object_keys.append(written.object_key)
        result.records_written += written.record_count
        batch.clear()

    for raw in record_store.read(Stage.RAW, date_range):
        result.records_read += 1
        payload = derive_payload(raw, config.text_fields)
        if len(payload["text"]) < config.min_text_chars:
            result.skipped_empty += 1
            continue

        derived = CanonicalRecord.create(
            entity_type=raw.entity_type,
            source_id=raw.source_id,
            payload=payload,
            run_id=run_id,
        )
        if derived.dedupe_key in seen:
            result.skipped_existing += 1
            continue
        seen.add(derived.dedupe_key)
        batch.append(derived)

        if len(batch) >= config.batch_size:
            flush()

    flush()
    logger.info(
        f"Derived {result.records_written} records from {result.records_read} raw "
        f"({result.skipped_existing} already derived, {result.skipped_empty} without text)"
    )
    return result
