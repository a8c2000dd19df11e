"""
Navigator module: league page, teams list and per-team roster pages.

League pages are SPAs; the driver waits for domcontentloaded and the
pipeline adds fixed settle delays after clicks that re-render the page.
"""

import logging

from league_sync.models import ErrorKind, ExtractionError, SyncStage, TeamMember
from league_sync.retry import RetryExhaustedError

logger = logging.getLogger("league_sync")

# Teams affordance candidates, tried in order.
MEMBERS_LINKS = ('a[href*="team"]', ".team-nav", ".roster-link")


async def navigate_to_league(run) -> None:
    """Open the job's league page. Failure is fatal (NAVIGATION_ERROR)."""
    job = run.job
    if not run.session.driver_available:
        run.advance(SyncStage.NAVIGATING, 25, "Skipped: automation driver unavailable")
        return

    run.advance(SyncStage.NAVIGATING, 22, f"Navigating to {job.display_name}...")
    logger.info(f"Navigating to: {job.source_locator}")
    try:
        await run.guarded("navigate to league", lambda: run.driver.navigate(job.source_locator))
    except RetryExhaustedError as exc:
        raise ExtractionError(
            f"Failed to navigate to league: {exc}",
            ErrorKind.NAVIGATION_ERROR,
            SyncStage.NAVIGATING,
            job.id,
        ) from exc
    run.session.touch(job.source_locator)

    await run.check_stall()
    run.advance(SyncStage.NAVIGATING, 25, "League page loaded")
    logger.info("League page loaded.")


async def open_members(run) -> str:
    """Click the first teams affordance that exists. Returns the locator used."""
    locator = await run.guarded("open teams", lambda: run.driver.click(MEMBERS_LINKS))
    run.session.touch()
    logger.debug(f"  Teams view opened via {locator}")
    await run.pause(run.config.get("members_settle_delay", 2.0))
    return locator


async def open_member(run, member: TeamMember) -> None:
    """Open one team's roster: by URL when known, else by clicking its name."""
    if member.locator and run.can("navigate"):
        await run.guarded(f"open roster {member.id}", lambda: run.driver.navigate(member.locator))
        run.session.touch(member.locator)
        return
    name = member.name.replace('"', '\\"')
    await run.guarded(f"open roster {member.id}", lambda: run.driver.click([f'a:has-text("{name}")']))
    run.session.touch()


async def return_to_league(run) -> None:
    """Go back to the league page unless the session is already there."""
    location = run.job.source_locator
    if run.session.current_location == location:
        return
    await run.guarded("return to league", lambda: run.driver.navigate(location))
    run.session.touch(location)
