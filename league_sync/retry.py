"""
Retry executor: run one async interaction primitive with N attempts, a hard
per-attempt timeout and exponential backoff between attempts.

Only idempotent primitives (navigate, snapshot, click, fill) are wrapped.
Whole stages are never retried: they are stateful multi-step sequences.

Backoff after attempt n (1-indexed) is 2^(n-1) * backoff_base_ms, so with the
default 1000ms base and 3 attempts the waits are 1s then 2s.
"""

import asyncio
import logging

from league_sync.cancellation import CancellationToken, pause
from league_sync.utils import scaled_timeout

logger = logging.getLogger("league_sync")


class OperationTimeoutError(TimeoutError):
    """An attempt lost the race against its per-attempt timer."""


class RetryExhaustedError(Exception):
    """Every attempt failed. Carries the operation name, count and last error."""

    def __init__(self, name: str, attempts: int, last_error: BaseException = None):
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"{name} failed after {attempts} attempts. Last error: {detail}")


def backoff_delay(attempt: int, base_ms: float = 1000) -> float:
    """Seconds to wait after failed attempt `attempt` (1-indexed)."""
    return (2 ** (attempt - 1)) * base_ms / 1000.0


def retry_kwargs(config: dict) -> dict:
    """execute_with_retry() keyword arguments taken from a loaded config."""
    return {
        "max_attempts": config.get("retry_attempts", 3),
        "timeout_ms": scaled_timeout(config.get("operation_timeout_ms", 30_000), config),
        "backoff_base_ms": config.get("backoff_base_ms", 1000),
    }


async def execute_with_retry(
    operation,
    name: str,
    max_attempts: int = 3,
    timeout_ms: int = 30_000,
    *,
    backoff_base_ms: float = 1000,
    cancel_token: CancellationToken = None,
):
    """
    Await `operation()` up to `max_attempts` times.

    Each attempt races the operation against `timeout_ms`. Exceptions whose
    `retryable` attribute is False (cancellation, missing driver capability,
    non-retryable extraction errors) propagate immediately.

    Raises RetryExhaustedError after the last failed attempt.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error = None
    for attempt in range(1, max_attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        logger.debug(f"  [{name}] attempt {attempt}/{max_attempts}")
        try:
            result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            last_error = OperationTimeoutError(f"{name} timeout after {timeout_ms}ms")
        except Exception as exc:
            if not getattr(exc, "retryable", True):
                raise
            last_error = exc
        else:
            if attempt > 1:
                logger.info(f"  [{name}] succeeded on attempt {attempt}/{max_attempts}")
            return result

        logger.warning(f"  [{name}] failed on attempt {attempt}/{max_attempts}: {last_error}")
        if attempt < max_attempts:
            delay = backoff_delay(attempt, backoff_base_ms)
            logger.debug(f"  [{name}] waiting {delay:.1f}s before retry")
            await pause(delay, cancel_token)

    raise RetryExhaustedError(name, max_attempts, last_error)
