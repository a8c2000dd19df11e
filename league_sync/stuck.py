"""
Stuck-state detection.

A snapshot of the remote session is matched against an ordered table of
known-bad patterns. The first matching rule wins, so more specific
conditions (challenge, access denied) sit before the generic error banner.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("league_sync")

# Reasons. RecoveryDispatcher keys its strategies on these strings.
CHALLENGE = "CAPTCHA challenge detected"
ACCESS_DENIED = "Access denied error"
SESSION_EXPIRED = "Session expired"
ENDLESS_LOADING = "Endless loading spinner"
UNAVAILABLE = "Service temporarily unavailable"
ERROR_BANNER = "Error message displayed"


@dataclass(frozen=True)
class StuckRule:
    pattern: str
    reason: str

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, re.IGNORECASE) is not None


@dataclass(frozen=True)
class StuckCheck:
    stuck: bool
    reason: Optional[str] = None


NOT_STUCK = StuckCheck(False)

DEFAULT_RULES = (
    StuckRule(r"captcha|verify (that )?you are (a )?human", CHALLENGE),
    StuckRule(r"access.*denied", ACCESS_DENIED),
    StuckRule(r"session.*expired", SESSION_EXPIRED),
    StuckRule(r"loading.*spinner", ENDLESS_LOADING),
    StuckRule(r"temporarily.*unavailable", UNAVAILABLE),
    StuckRule(r"error.*occurred", ERROR_BANNER),
)


def snapshot_text(snapshot) -> str:
    """Flatten whatever the driver returned into searchable text."""
    if snapshot is None:
        return ""
    if isinstance(snapshot, str):
        return snapshot
    if isinstance(snapshot, (dict, list)):
        return json.dumps(snapshot, default=str)
    return str(snapshot)


class StuckDetector:
    """Ordered, pluggable rule table. Extra rules are evaluated first."""

    def __init__(self, rules=None):
        self.rules = list(DEFAULT_RULES if rules is None else rules)

    @classmethod
    def from_config(cls, config: dict) -> "StuckDetector":
        extra = [StuckRule(r["pattern"], r["reason"]) for r in config.get("stuck_rules", [])]
        return cls(extra + list(DEFAULT_RULES))

    def add_rule(self, pattern: str, reason: str, *, first: bool = True) -> None:
        re.compile(pattern)
        rule = StuckRule(pattern, reason)
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def classify(self, snapshot) -> StuckCheck:
        text = snapshot_text(snapshot)
        if not text:
            return NOT_STUCK
        for rule in self.rules:
            if rule.matches(text):
                return StuckCheck(True, rule.reason)
        return NOT_STUCK

    async def detect(self, driver, session=None) -> StuckCheck:
        """
        Snapshot the session and classify it.

        Fails open: a driver without snapshot capability, or a snapshot that
        raises, is reported as not stuck.
        """
        if session is not None and session.probed and not session.has("snapshot"):
            return NOT_STUCK
        if "snapshot" not in getattr(driver, "capabilities", ()):
            return NOT_STUCK
        try:
            snapshot = await driver.snapshot()
        except Exception as exc:
            logger.debug(f"  Stuck check skipped, snapshot failed: {exc}")
            return NOT_STUCK

        check = self.classify(snapshot)
        if check.stuck:
            logger.warning(f"  Stuck state detected: {check.reason}")
        return check
