"""
Fetchers for upstream record sources.
"""

from .http import HttpRecordFetcher
from .static_fetcher import (
    StaticRecordFetcher,
    SYNTHETIC_BASE_URI,
    create_synthetic_comics,
)

__all__ = [
    "HttpRecordFetcher",
    "StaticRecordFetcher",
    "SYNTHETIC_BASE_URI",
    "create_synthetic_comics",
]
