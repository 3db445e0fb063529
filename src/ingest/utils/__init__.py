"""
Utility helpers for the ingestion framework.
"""

from .retry import RetryConfig, RetryResult, calculate_delay, retry_with_backoff

__all__ = ["RetryConfig", "RetryResult", "calculate_delay", "retry_with_backoff"]
