"""
Shared hashing and time helpers for the ingestion and vector layers.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from typing import Any, Optional, Union


def canonical_json(data: Any) -> str:
    """Serialize data to a stable JSON string (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_payload_checksum(payload: Any) -> str:
    """
    Compute SHA256 of a payload's canonical JSON form.

    Identical payloads always hash identically regardless of key order, which
    makes the checksum usable as a dedupe key across re-runs.
    """
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def compute_bytes_checksum(data: bytes) -> str:
    """Compute SHA256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def compute_content_hash(content: str) -> str:
    """
    Compute SHA256 hash of text content.

    Example:
        >>> compute_content_hash("Hello, World!")
        'dffd6021bb2bd5b0af676290809ec3a53191dd81c7f70a4b28688a362182986f'
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Union[str, datetime, date, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string, date, or datetime into an aware UTC datetime.

    Accepts a trailing ``Z`` and upstream offsets without a colon
    (``2014-04-29T14:18:17-0400``).

    Raises:
        ValueError: If the string is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # -0400 -> -04:00
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit() and "T" in text:
        text = f"{text[:-2]}:{text[-2:]}"
    return ensure_utc(datetime.fromisoformat(text))
