"""
Cooperative cancellation for sync runs.

A CancellationToken is threaded through every stage of a job. Driver calls
cannot be interrupted once issued, so cancellation is observed at the
checkpoints: before each retry attempt, around every pause, and between
stages.
"""

import asyncio
from typing import Optional


class SyncCancelledError(Exception):
    """Raised at a checkpoint once the run's token has been cancelled."""

    retryable = False


class CancellationToken:

    def __init__(self):
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Sync cancelled") -> None:
        # First reason wins
        if self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise SyncCancelledError(self._reason)


async def pause(seconds: float, token: Optional[CancellationToken] = None) -> None:
    """Sleep for `seconds`, checking the token before and after."""
    if token is not None:
        token.raise_if_cancelled()
    await asyncio.sleep(seconds)
    if token is not None:
        token.raise_if_cancelled()
