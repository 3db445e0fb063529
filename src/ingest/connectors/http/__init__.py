"""
HTTP fetcher package.
"""

from .http_connector import HttpRecordFetcher

__all__ = ["HttpRecordFetcher"]
