"""
Job stage pipeline: one league sync from authentication to a SyncResult.

    authenticating → navigating → extracting_settings → extracting_members
    → extracting_sub_records → extracting_metadata → aggregating → complete

Any stage can end the run in `error`. Each driver primitive goes through the
retry executor; when a primitive is exhausted, or a snapshot matches a
stuck rule, one recovery is attempted per stage before the stage fails.

Usage:
    pipeline = JobPipeline(driver, session, config, reporter)
    result = await pipeline.run(job, cancel_token)
"""

import logging
import time
from dataclasses import replace

from league_sync import auth, navigator
from league_sync.cancellation import CancellationToken, SyncCancelledError, pause
from league_sync.extractors import (
    SettingsParseError,
    default_metadata,
    default_settings,
    fallback_members,
    parse_members,
    parse_metadata,
    parse_roster,
    parse_settings,
)
from league_sync.models import (
    DataExtracted,
    ErrorKind,
    ExtractionError,
    Job,
    LeagueData,
    SessionState,
    SyncProgress,
    SyncResult,
    SyncStage,
)
from league_sync.progress import ProgressReporter
from league_sync.recovery import REAUTH_REASONS, RecoveryDispatcher, is_retryable
from league_sync.retry import RetryExhaustedError, execute_with_retry, retry_kwargs
from league_sync.stuck import StuckDetector

logger = logging.getLogger("league_sync")


def _reraise_fatal(exc: Exception) -> None:
    """Best-effort stages degrade on stalls; challenges still end the job."""
    if not getattr(exc, "retryable", True):
        raise exc


class JobRun:
    """
    Everything one job needs while it moves through the stages: the live
    progress record, retry/recovery helpers and what has been extracted so far.
    """

    def __init__(self, job: Job, driver, session: SessionState, config: dict,
                 reporter: ProgressReporter, detector: StuckDetector, cancel_token: CancellationToken):
        self.job = job
        self.driver = driver
        self.session = session
        self.config = config
        self.reporter = reporter
        self.detector = detector
        self.cancel_token = cancel_token
        self.progress = SyncProgress(job.id)
        self.recovery = RecoveryDispatcher(driver, session, config, cancel_token)
        self.extracted: set = set()
        self.fallbacks: list = []
        self._recovered_stages: set = set()

    # ── Progress ──────────────────────────────────────────────────────────

    def advance(self, stage: SyncStage, progress: float = None, message: str = None) -> None:
        self.cancel_token.raise_if_cancelled()
        self.progress.advance(stage, progress, message)
        self.reporter.publish_progress(self.job.id, self.progress)

    def warn(self, message: str) -> None:
        self.progress.warnings.append(message)
        logger.warning(f"  [{self.job.id}] {message}")

    def use_fallback(self, category: str) -> None:
        if category not in self.fallbacks:
            self.fallbacks.append(category)

    async def pause(self, seconds: float) -> None:
        await pause(seconds, self.cancel_token)

    # ── Driver calls ──────────────────────────────────────────────────────

    def can(self, capability: str) -> bool:
        """Usable capability; nothing is usable once the driver is unavailable."""
        return self.session.driver_available and self.session.has(capability)

    async def call(self, name: str, operation, **overrides):
        """Run one primitive through the retry executor."""
        kwargs = retry_kwargs(self.config)
        kwargs.update(overrides)
        return await execute_with_retry(
            operation, f"{self.job.id}: {name}", cancel_token=self.cancel_token, **kwargs,
        )

    async def guarded(self, name: str, operation):
        """
        call() with stall handling: when retries are exhausted and the
        session looks stuck, recover once and retry the primitive again.
        """
        try:
            return await self.call(name, operation)
        except RetryExhaustedError:
            check = await self.detector.detect(self.driver, self.session)
            if not check.stuck:
                raise
            await self.handle_stall(check.reason)
        return await self.call(name, operation)

    async def snapshot(self, name: str, *, ignore=()):
        """Snapshot the session, recovering once if it shows a stuck state."""
        snapshot = await self.guarded(name, self.driver.snapshot)
        if await self.inspect(snapshot, ignore=ignore):
            snapshot = await self.guarded(name, self.driver.snapshot)
            await self.inspect(snapshot, ignore=ignore)
        return snapshot

    async def try_snapshot(self):
        """Single snapshot attempt; None instead of an error."""
        try:
            return await self.call("poll snapshot", self.driver.snapshot, max_attempts=1)
        except RetryExhaustedError as exc:
            logger.debug(f"  [{self.job.id}] snapshot unavailable: {exc}")
            return None

    # ── Stall handling ────────────────────────────────────────────────────

    async def inspect(self, snapshot, *, ignore=()) -> bool:
        """Classify a snapshot in hand. True when a recovery was performed."""
        check = self.detector.classify(snapshot)
        if not check.stuck or check.reason in ignore:
            return False
        logger.warning(f"  Stuck state detected: {check.reason}")
        await self.handle_stall(check.reason)
        return True

    async def check_stall(self) -> None:
        check = await self.detector.detect(self.driver, self.session)
        if check.stuck:
            await self.handle_stall(check.reason)

    async def handle_stall(self, reason: str) -> None:
        """Recover from `reason` or raise an ExtractionError for the current stage."""
        stage = self.progress.stage
        kind = self._stall_kind(reason, stage)
        if not is_retryable(reason):
            await self.recovery.attempt_recovery(reason)
            raise ExtractionError(
                f"{reason}: manual action required", kind, stage, self.job.id, retryable=False,
            )
        if stage in self._recovered_stages:
            raise ExtractionError(f"Still stuck after recovery: {reason}", kind, stage, self.job.id)

        self._recovered_stages.add(stage)
        self.warn(f"Stuck during {stage.value} ({reason}); attempting recovery")
        if not await self.recovery.attempt_recovery(reason):
            raise ExtractionError(f"Recovery failed: {reason}", kind, stage, self.job.id)

    @staticmethod
    def _stall_kind(reason: str, stage: SyncStage) -> ErrorKind:
        if reason in REAUTH_REASONS:
            return ErrorKind.AUTHENTICATION_FAILED
        if stage == SyncStage.NAVIGATING:
            return ErrorKind.NAVIGATION_ERROR
        return ErrorKind.UNKNOWN_ERROR


class JobPipeline:

    def __init__(self, driver, session: SessionState, config: dict,
                 reporter: ProgressReporter = None, detector: StuckDetector = None):
        self.driver = driver
        self.session = session
        self.config = config
        self.reporter = reporter or ProgressReporter()
        self.detector = detector or StuckDetector.from_config(config)

    async def run(self, job: Job, cancel_token: CancellationToken = None) -> SyncResult:
        """Sync one league. Never raises: failures come back as a failed SyncResult."""
        token = cancel_token or CancellationToken()
        run = JobRun(job, self.driver, self.session, self.config, self.reporter, self.detector, token)
        started = time.time()
        logger.info(f"── Syncing {job.display_name} ({job.id}) ──")

        try:
            data = await self._execute(run)
        except SyncCancelledError as exc:
            error = ExtractionError(
                f"cancelled: {exc}", ErrorKind.UNKNOWN_ERROR, run.progress.stage, job.id, retryable=False,
            )
            return await self._fail(run, error, started)
        except ExtractionError as exc:
            if exc.job_id is None:
                exc.job_id = job.id
            return await self._fail(run, exc, started)
        except Exception as exc:
            logger.debug(f"  [{job.id}] unexpected error", exc_info=True)
            error = ExtractionError(
                str(exc) or type(exc).__name__, ErrorKind.UNKNOWN_ERROR, run.progress.stage, job.id,
            )
            error.__cause__ = exc
            return await self._fail(run, error, started)

        run.progress.advance(SyncStage.COMPLETE, 100, "League sync completed successfully!")
        self.reporter.publish_progress(job.id, run.progress)
        return SyncResult(
            job_id=job.id,
            success=True,
            duration=time.time() - started,
            data_extracted=self._extracted(run),
            errors=tuple(run.progress.errors),
            warnings=tuple(run.progress.warnings),
            fallbacks=tuple(run.fallbacks),
            data=data,
        )

    async def _execute(self, run: JobRun) -> LeagueData:
        await auth.authenticate(run)
        await navigator.navigate_to_league(run)
        settings = await self._extract_settings(run)
        members = await self._extract_members(run)
        members = await self._extract_sub_records(run, members)
        metadata = await self._extract_metadata(run, members)

        run.advance(SyncStage.AGGREGATING, 95, "Processing league data...")
        return LeagueData(
            job_id=run.job.id,
            name=settings.name,
            source_locator=run.job.source_locator,
            settings=settings,
            members=tuple(members),
            metadata=metadata,
        )

    # ── Stages ────────────────────────────────────────────────────────────

    async def _extract_settings(self, run: JobRun):
        run.advance(SyncStage.EXTRACTING_SETTINGS, 30, "Extracting league settings...")
        if not run.can("snapshot"):
            run.use_fallback("settings")
            settings = default_settings(run.job)
        else:
            try:
                snapshot = await run.snapshot("settings snapshot")
                settings = parse_settings(snapshot, run.job.display_name)
            except (SettingsParseError, RetryExhaustedError) as exc:
                raise ExtractionError(
                    f"Failed to extract league settings: {exc}",
                    ErrorKind.PARSING_ERROR,
                    SyncStage.EXTRACTING_SETTINGS,
                    run.job.id,
                ) from exc

        run.extracted.add("settings")
        run.advance(SyncStage.EXTRACTING_SETTINGS, 35, f"Settings: {settings.size} teams, {settings.scoring_type}")
        return settings

    async def _extract_members(self, run: JobRun) -> list:
        run.advance(SyncStage.EXTRACTING_MEMBERS, 40, "Extracting team information...")
        members = []
        if run.can("click") and run.can("snapshot"):
            try:
                await navigator.open_members(run)
                snapshot = await run.snapshot("teams snapshot")
                members = parse_members(snapshot, run.job)
                if not members:
                    run.warn("No teams found on the teams page; using placeholder teams")
            except (RetryExhaustedError, ExtractionError) as exc:
                _reraise_fatal(exc)
                run.warn(f"Teams navigation failed ({exc}); using placeholder teams")

        if not members:
            members = fallback_members(run.job, self.config.get("fallback_team_count", 12))
            run.use_fallback("members")

        run.extracted.add("members")
        run.advance(SyncStage.EXTRACTING_MEMBERS, 50, f"Found {len(members)} teams")
        return members

    async def _extract_sub_records(self, run: JobRun, members: list) -> list:
        run.advance(SyncStage.EXTRACTING_SUB_RECORDS, 55, "Extracting player rosters...")
        can_open = run.can("navigate") or run.can("click")
        if not members or members[0].placeholder or not (can_open and run.can("snapshot")):
            run.use_fallback("sub_records")
            run.extracted.add("sub_records")
            run.advance(SyncStage.EXTRACTING_SUB_RECORDS, 80, "Rosters unavailable; teams kept without players")
            return members

        updated = []
        total = len(members)
        for index, member in enumerate(members, 1):
            if index > 1:
                await run.pause(self.config.get("member_pacing_delay", 0.5))
            try:
                await navigator.open_member(run, member)
                snapshot = await run.snapshot(f"roster {member.id}")
                member = replace(member, roster=parse_roster(snapshot))
            except (RetryExhaustedError, ExtractionError) as exc:
                _reraise_fatal(exc)
                run.warn(f"Roster for {member.name} unavailable: {exc}")
            updated.append(member)
            run.advance(
                SyncStage.EXTRACTING_SUB_RECORDS,
                55 + 25 * index / total,
                f"Roster {index}/{total}: {member.name} ({len(member.roster)} players)",
            )

        run.extracted.add("sub_records")
        return updated

    async def _extract_metadata(self, run: JobRun, members: list):
        run.advance(SyncStage.EXTRACTING_METADATA, 82, "Extracting draft information...")
        metadata = None
        if run.can("navigate") and run.can("snapshot"):
            try:
                await navigator.return_to_league(run)
                metadata = parse_metadata(await run.snapshot("draft snapshot"), members)
            except (RetryExhaustedError, ExtractionError) as exc:
                _reraise_fatal(exc)
                run.warn(f"Draft information unavailable: {exc}")

        if metadata is None:
            metadata = default_metadata(members)
            run.use_fallback("metadata")

        run.extracted.add("metadata")
        run.advance(SyncStage.EXTRACTING_METADATA, 85, f"Draft: {metadata.draft_type}, {metadata.status}")
        return metadata

    # ── Outcome ───────────────────────────────────────────────────────────

    @staticmethod
    def _extracted(run: JobRun) -> DataExtracted:
        return DataExtracted(
            settings="settings" in run.extracted,
            members="members" in run.extracted,
            sub_records="sub_records" in run.extracted,
            metadata="metadata" in run.extracted,
        )

    async def _fail(self, run: JobRun, error: ExtractionError, started: float) -> SyncResult:
        job = run.job
        logger.error(f"  [{job.id}] {error.kind.value} during {error.stage.value}: {error.message}")
        run.progress.errors.append(error.message)
        run.progress.advance(SyncStage.ERROR, message=error.message)
        self.reporter.publish_progress(job.id, run.progress)
        self.reporter.error(error)

        if self.config.get("enable_screenshots", True) and run.can("capture_artifact") \
                and not run.cancel_token.cancelled:
            await self._capture(run)

        return SyncResult(
            job_id=job.id,
            success=False,
            duration=time.time() - started,
            data_extracted=self._extracted(run),
            errors=tuple(run.progress.errors),
            warnings=tuple(run.progress.warnings),
            fallbacks=tuple(run.fallbacks),
        )

    async def _capture(self, run: JobRun) -> None:
        try:
            path = await self.driver.capture_artifact(f"error-{run.job.id}")
        except Exception as exc:
            logger.warning(f"  [{run.job.id}] diagnostic capture failed: {exc}")
            return
        if path:
            run.warn(f"Diagnostic saved: {path}")
