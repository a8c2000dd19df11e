"""
Multi-job coordinator: runs the pipeline for every configured league.

Jobs run one at a time in ascending priority (stable for equal priorities),
with a pacing delay between them. One job's failure becomes a failed
SyncResult and the batch carries on, so every job ends up with a result.

Usage:
    coordinator = MultiJobCoordinator(driver, config, reporter=reporter)
    results = await coordinator.run_all(jobs)
    ...
    await coordinator.retry_job("league-2")
"""

import logging
from typing import Optional

from league_sync.cancellation import CancellationToken, SyncCancelledError, pause
from league_sync.driver import probe_capabilities
from league_sync.models import DataExtracted, Job, SessionState, SyncResult
from league_sync.pipeline import JobPipeline
from league_sync.progress import ProgressReporter
from league_sync.stuck import StuckDetector

logger = logging.getLogger("league_sync")


class MultiJobCoordinator:

    def __init__(self, driver, config: dict, *, reporter: ProgressReporter = None,
                 session: SessionState = None, detector: StuckDetector = None):
        self.driver = driver
        self.config = config
        self.session = session or SessionState()
        self.reporter = reporter or ProgressReporter()
        self.pipeline = JobPipeline(driver, self.session, config, self.reporter, detector)
        self.current_job_id: Optional[str] = None

        self._cancel_token = CancellationToken()
        self._jobs: dict = {}
        self._order: list = []
        self._results: dict = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> set:
        """Probe driver capabilities once; later calls return the recorded set."""
        if not self.session.probed:
            probe_capabilities(self.driver, self.session, self.config.get("min_capabilities", 3))
        return set(self.session.available_capabilities)

    def cancel(self, reason: str = "Sync cancelled by user") -> None:
        """The in-flight job fails at its next checkpoint; jobs not yet started are skipped."""
        if not self._cancel_token.cancelled:
            logger.warning(f"Cancelling sync: {reason}")
        self._cancel_token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._cancel_token.cancelled

    # ── Running ───────────────────────────────────────────────────────────

    async def run_all(self, jobs) -> list:
        """Run every job sequentially. Returns results in priority order."""
        self._cancel_token = CancellationToken()
        ordered = sorted(jobs, key=lambda job: job.priority)
        self._jobs = {job.id: job for job in ordered}
        self._order = [job.id for job in ordered]
        self._results = {}

        try:
            capabilities = self.start()
        except Exception as exc:
            # Each job re-probes and fails its authenticating stage
            logger.error(f"Capability probe failed: {exc}")
            capabilities = set()
        logger.info(f"Syncing {len(ordered)} league(s) with {len(capabilities)} driver capabilities")

        for index, job in enumerate(ordered):
            if index > 0 and not self.cancelled:
                try:
                    await pause(self.config.get("job_pacing_delay", 2.0), self._cancel_token)
                except SyncCancelledError:
                    pass
            if self.cancelled:
                self._record(self._cancelled_result(job))
                continue

            logger.info(f"[{index + 1}/{len(ordered)}] {job.display_name}")
            await self._run_one(job)

        results = self.results
        self.reporter.all_complete(results)
        return results

    async def retry_job(self, job_id: str) -> SyncResult:
        """Re-run one job from a previous run_all(); only its result is replaced."""
        if job_id not in self._jobs:
            raise KeyError(f"Unknown job id: {job_id}")
        if self.cancelled:
            logger.warning(f"Not retrying {job_id}: sync was cancelled ({self._cancel_token.reason})")
            return self._results[job_id]
        logger.info(f"Retrying {job_id}")
        return await self._run_one(self._jobs[job_id])

    async def retry_failed(self) -> list:
        """Retry every failed job once, in priority order."""
        retried = []
        for result in self.results:
            if not result.success and not self.cancelled:
                retried.append(await self.retry_job(result.job_id))
        return retried

    async def _run_one(self, job: Job) -> SyncResult:
        self.current_job_id = job.id
        try:
            result = await self.pipeline.run(job, self._cancel_token)
        except Exception as exc:
            logger.exception(f"Unhandled error while syncing {job.id}")
            result = SyncResult(
                job_id=job.id,
                success=False,
                duration=0.0,
                data_extracted=DataExtracted(),
                errors=(str(exc) or type(exc).__name__,),
            )
        finally:
            self.current_job_id = None
        self._record(result)
        return result

    def _record(self, result: SyncResult) -> None:
        self._results[result.job_id] = result
        self.reporter.job_complete(result)

    @staticmethod
    def _cancelled_result(job: Job) -> SyncResult:
        return SyncResult(
            job_id=job.id,
            success=False,
            duration=0.0,
            data_extracted=DataExtracted(),
            errors=("cancelled before start",),
        )

    # ── Results ───────────────────────────────────────────────────────────

    @property
    def results(self) -> list:
        return [self._results[job_id] for job_id in self._order if job_id in self._results]

    def result_for(self, job_id: str) -> Optional[SyncResult]:
        return self._results.get(job_id)

    def summary(self) -> dict:
        results = self.results
        succeeded = [r.job_id for r in results if r.success]
        failed = [r.job_id for r in results if not r.success]
        return {
            "total": len(results),
            "succeeded": succeeded,
            "failed": failed,
            "duration": round(sum(r.duration for r in results), 3),
        }
