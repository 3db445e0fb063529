"""
Bounded exponential backoff for transient I/O.

Page fetches, record-store writes and shard commits go through
``retry_with_backoff``. Only ``TransientIOError`` (or whatever the caller
passes as ``retry_on``) is retried; validation, not-found and stale-checkpoint
errors surface on the first attempt. The query path never retries.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from ..core.exceptions import TransientIOError


logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Backoff settings for one I/O boundary.

    Attributes:
        max_attempts: Attempts including the first one
        initial_delay_ms: Wait before the second attempt
        max_delay_ms: Cap on any single wait
        backoff_multiplier: Growth factor between waits
        jitter: Spread each wait by up to 25% either way
    """
    max_attempts: int = 3
    initial_delay_ms: float = 250.0
    max_delay_ms: float = 5000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        """Create from the ``runner.retry`` config section."""
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            initial_delay_ms=float(data.get("initial_delay_ms", 250.0)),
            max_delay_ms=float(data.get("max_delay_ms", 5000.0)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            jitter=bool(data.get("jitter", True)),
        )


@dataclass
class RetryResult:
    """Outcome of a retried call; ``unwrap()`` turns failure back into an exception."""
    success: bool
    result: Any = None
    attempts: int = 0
    error: Optional[BaseException] = None
    error_history: List[str] = field(default_factory=list)

    def unwrap(self) -> Any:
        if not self.success:
            raise self.error
        return self.result


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Seconds to wait after the given 0-based failed attempt.

    ``initial * multiplier**attempt``, capped at ``max_delay_ms``, then
    jittered when enabled.
    """
    delay_ms = config.initial_delay_ms * (config.backoff_multiplier ** attempt)
    delay_ms = min(delay_ms, config.max_delay_ms)
    if config.jitter:
        delay_ms *= random.uniform(0.75, 1.25)
    return delay_ms / 1000.0


def retry_with_backoff(
    operation: Callable[[], Any],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,),
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Call ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    Args:
        operation: Zero-argument callable performing the I/O
        config: Backoff settings
        retry_on: Exception types treated as transient
        operation_name: Label used in log messages
        sleep: Wait function (tests pass a no-op)

    Returns:
        RetryResult; errors are captured rather than raised

    Example:
        >>> retry_with_backoff(lambda: store.put(key, data), RetryConfig()).unwrap()
    """
    history: List[str] = []
    last_error: Optional[BaseException] = None
    attempt = 0

    while attempt < config.max_attempts:
        attempt += 1
        try:
            value = operation()
        except retry_on as e:
            last_error = e
            history.append(str(e))
            logger.warning(f"{operation_name}: transient failure {attempt}/{config.max_attempts}: {e}")
            if attempt < config.max_attempts:
                sleep(calculate_delay(attempt - 1, config))
            continue
        except Exception as e:
            history.append(str(e))
            logger.error(f"{operation_name}: permanent failure on attempt {attempt}: {e}")
            return RetryResult(success=False, attempts=attempt, error=e, error_history=history)

        if attempt > 1:
            logger.info(f"{operation_name}: recovered on attempt {attempt}")
        return RetryResult(success=True, result=value, attempts=attempt, error_history=history)

    logger.error(f"{operation_name}: gave up after {config.max_attempts} attempts")
    return RetryResult(
        success=False,
        attempts=config.max_attempts,
        error=last_error or TransientIOError(f"{operation_name} made no attempts"),
        error_history=history,
    )
