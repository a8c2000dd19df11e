"""
Data model for league sync runs.

Jobs are immutable once scheduled. SyncProgress is the one mutable record per
in-flight job, owned by the pipeline; subscribers only ever see copies made
by SyncProgress.snapshot(). SyncResult and LeagueData are frozen once built.
"""

import copy
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


# ── Stages ───────────────────────────────────────────────────────────────

class SyncStage(str, Enum):
    AUTHENTICATING = "authenticating"
    NAVIGATING = "navigating"
    EXTRACTING_SETTINGS = "extracting_settings"
    EXTRACTING_MEMBERS = "extracting_members"
    EXTRACTING_SUB_RECORDS = "extracting_sub_records"
    EXTRACTING_METADATA = "extracting_metadata"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    ERROR = "error"


# Pipeline progression order; ERROR sits outside it and is reachable from anywhere.
STAGE_ORDER = [
    SyncStage.AUTHENTICATING,
    SyncStage.NAVIGATING,
    SyncStage.EXTRACTING_SETTINGS,
    SyncStage.EXTRACTING_MEMBERS,
    SyncStage.EXTRACTING_SUB_RECORDS,
    SyncStage.EXTRACTING_METADATA,
    SyncStage.AGGREGATING,
    SyncStage.COMPLETE,
]

TERMINAL_STAGES = (SyncStage.COMPLETE, SyncStage.ERROR)


def stage_index(stage: SyncStage) -> int:
    """Position of a stage in the pipeline order. ERROR sorts after everything."""
    if stage == SyncStage.ERROR:
        return len(STAGE_ORDER)
    return STAGE_ORDER.index(stage)


# ── Errors ───────────────────────────────────────────────────────────────

class ErrorKind(str, Enum):
    NAVIGATION_ERROR = "NAVIGATION_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    PARSING_ERROR = "PARSING_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ExtractionError(Exception):
    """A job-level failure tagged with the stage that was active when it happened."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN_ERROR,
        stage: SyncStage = SyncStage.ERROR,
        job_id: Optional[str] = None,
        *,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind)
        self.stage = SyncStage(stage)
        self.job_id = job_id
        self.retryable = retryable

    def __repr__(self):
        return (
            f"ExtractionError({self.kind.value}, stage={self.stage.value}, "
            f"job={self.job_id}, {self.message!r})"
        )

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "stage": self.stage.value,
            "job_id": self.job_id,
            "retryable": self.retryable,
        }


# ── Jobs ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(default="", repr=False)


@dataclass(frozen=True)
class Job:
    id: str
    display_name: str
    source_locator: str
    priority: int = 1
    credentials: Optional[Credentials] = None

    @classmethod
    def from_dict(cls, raw: dict, index: int = 0) -> "Job":
        """Build a Job from one `jobs:` entry of config.yaml."""
        creds = raw.get("credentials")
        return cls(
            id=str(raw["id"]),
            display_name=raw.get("name") or str(raw["id"]),
            source_locator=raw["url"],
            priority=raw.get("priority", index + 1),
            credentials=Credentials(creds["username"], creds.get("password", "")) if creds else None,
        )


def jobs_from_config(config: dict) -> list:
    return [Job.from_dict(raw, i) for i, raw in enumerate(config.get("jobs", []))]


# ── Progress ─────────────────────────────────────────────────────────────

@dataclass
class SyncProgress:
    job_id: str
    stage: SyncStage = SyncStage.AUTHENTICATING
    message: str = ""
    progress: float = 0.0
    start_time: float = field(default_factory=time.time)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    estimated_time_remaining: Optional[float] = None

    def advance(self, stage: SyncStage, progress: Optional[float] = None, message: Optional[str] = None) -> None:
        """
        Move to `stage` (or stay in it) and raise the progress percentage.

        Stages only move forward; ERROR may be entered from any non-terminal
        stage. Percentages are clamped so they never decrease.
        """
        stage = SyncStage(stage)
        if self.stage in TERMINAL_STAGES:
            raise ValueError(f"Job {self.job_id} already terminal ({self.stage.value}), cannot enter {stage.value}")
        if stage != SyncStage.ERROR and stage_index(stage) < stage_index(self.stage):
            raise ValueError(f"Job {self.job_id} cannot move back from {self.stage.value} to {stage.value}")

        self.stage = stage
        if progress is not None:
            self.progress = min(100.0, max(self.progress, float(progress)))
        if message is not None:
            self.message = message
        self._update_eta()

    def _update_eta(self) -> None:
        if self.stage in TERMINAL_STAGES:
            self.estimated_time_remaining = None
            return
        if self.progress <= 0:
            return
        elapsed = time.time() - self.start_time
        self.estimated_time_remaining = round(elapsed / self.progress * (100.0 - self.progress), 1)

    @property
    def elapsed(self) -> float:
        return time.time() - self.start_time

    def snapshot(self) -> "SyncProgress":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


# ── Results ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DataExtracted:
    settings: bool = False
    members: bool = False
    sub_records: bool = False
    metadata: bool = False


@dataclass(frozen=True)
class SyncResult:
    job_id: str
    success: bool
    duration: float
    data_extracted: DataExtracted
    errors: tuple = ()
    warnings: tuple = ()
    timestamp: datetime = field(default_factory=datetime.now)
    fallbacks: tuple = ()
    data: Optional["LeagueData"] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "success": self.success,
            "duration": round(self.duration, 3),
            "data_extracted": asdict(self.data_extracted),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp.isoformat(),
            "fallbacks": list(self.fallbacks),
        }


# ── Remote session ───────────────────────────────────────────────────────

@dataclass
class SessionState:
    """State of the single remote automation session shared by every job."""

    is_active: bool = False
    is_authenticated: bool = False
    last_activity_time: Optional[float] = None
    current_location: Optional[str] = None
    driver_available: bool = False
    available_capabilities: set = field(default_factory=set)
    probed: bool = False

    def touch(self, location: Optional[str] = None) -> None:
        self.last_activity_time = time.time()
        if location is not None:
            self.current_location = location
            self.is_active = True

    def has(self, capability: str) -> bool:
        return capability in self.available_capabilities

    def to_dict(self) -> dict:
        data = asdict(self)
        data["available_capabilities"] = sorted(self.available_capabilities)
        return data


# ── League payload ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class LeagueSettings:
    name: str
    size: int = 12
    scoring_type: str = "PPR"
    roster_slots: tuple = (
        ("qb", 1), ("rb", 2), ("wr", 2), ("te", 1), ("flex", 1), ("k", 1), ("def", 1), ("bench", 6),
    )
    playoff_teams: Optional[int] = None
    waiver_type: Optional[str] = None


@dataclass(frozen=True)
class RosterEntry:
    name: str
    position: str
    team: str = ""
    status: str = "Healthy"


@dataclass(frozen=True)
class TeamMember:
    id: str
    name: str
    owner: str = ""
    locator: Optional[str] = None
    is_current_user: bool = False
    roster: tuple = ()
    placeholder: bool = False


@dataclass(frozen=True)
class DraftMetadata:
    draft_type: str = "Snake"
    status: str = "Scheduled"
    total_rounds: int = 16
    draft_date: Optional[str] = None
    order: tuple = ()


@dataclass(frozen=True)
class LeagueData:
    job_id: str
    name: str
    source_locator: str
    settings: LeagueSettings
    members: tuple
    metadata: DraftMetadata
    synced_at: datetime = field(default_factory=datetime.now)

    @property
    def my_team(self) -> Optional[TeamMember]:
        return next((m for m in self.members if m.is_current_user), None)
