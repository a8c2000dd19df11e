"""
Recovery strategies for detected stuck states.

Each reason from the stuck detector maps to one remediation. Anything not in
the table gets the default: reload the current location and wait.

    dispatcher = RecoveryDispatcher(driver, session, config)
    if not await dispatcher.attempt_recovery(check.reason):
        ... fail the stage ...
"""

import logging

from league_sync import stuck
from league_sync.cancellation import CancellationToken, pause
from league_sync.models import SessionState
from league_sync.retry import execute_with_retry, retry_kwargs

logger = logging.getLogger("league_sync")

# A human has to clear these; retrying only burns attempts.
NON_RETRYABLE_REASONS = frozenset({stuck.CHALLENGE})

# Recovery means logging in again, which a running stage cannot do.
REAUTH_REASONS = frozenset({stuck.ACCESS_DENIED, stuck.SESSION_EXPIRED})


def is_retryable(reason: str) -> bool:
    return reason not in NON_RETRYABLE_REASONS


class RecoveryDispatcher:

    def __init__(self, driver, session: SessionState, config: dict, cancel_token: CancellationToken = None):
        self.driver = driver
        self.session = session
        self.config = config
        self.cancel_token = cancel_token
        self._strategies = {
            stuck.ENDLESS_LOADING: self._reload,
            stuck.ERROR_BANNER: self._wait,
            stuck.CHALLENGE: self._needs_human,
            stuck.ACCESS_DENIED: self._invalidate_auth,
            stuck.SESSION_EXPIRED: self._invalidate_auth,
        }

    async def attempt_recovery(self, reason: str) -> bool:
        """Run the strategy for `reason`. True when the session may be usable again."""
        strategy = self._strategies.get(reason, self._reload)
        logger.info(f"  Attempting recovery for: {reason} ({strategy.__name__.lstrip('_')})")
        recovered = await strategy()
        if recovered:
            logger.info("  Recovery action completed")
        else:
            logger.warning(f"  Recovery not possible for: {reason}")
        return recovered

    async def _reload(self) -> bool:
        if not self.session.has("navigate"):
            return False
        location = self.session.current_location or self.config.get("home_url", "https://fantasy.nfl.com")
        kwargs = retry_kwargs(self.config)
        kwargs["max_attempts"] = 1
        try:
            await execute_with_retry(
                lambda: self.driver.navigate(location),
                "recovery reload",
                cancel_token=self.cancel_token,
                **kwargs,
            )
        except Exception as exc:
            if not getattr(exc, "retryable", True):
                raise
            logger.warning(f"  Recovery reload failed: {exc}")
            return False
        self.session.touch(location)
        await pause(self.config.get("recovery_reload_delay", 3.0), self.cancel_token)
        return True

    async def _wait(self) -> bool:
        await pause(self.config.get("recovery_wait_delay", 2.0), self.cancel_token)
        return True

    async def _needs_human(self) -> bool:
        logger.error("  Human verification required; cannot recover automatically")
        return False

    async def _invalidate_auth(self) -> bool:
        self.session.is_authenticated = False
        return False
