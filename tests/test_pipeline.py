"""
End-to-end tests for JobPipeline against the scripted driver.
"""

import pytest

from league_sync.cancellation import CancellationToken
from league_sync.models import DataExtracted, ErrorKind, SessionState, SyncStage, stage_index
from league_sync.pipeline import JobPipeline
from league_sync.progress import ProgressReporter

from tests.conftest import (
    CAPTCHA_PAGE,
    LEAGUE_PAGE,
    LEAGUE_URL,
    LOGIN_URL,
    SPINNER_PAGE,
    TEAM_1_PAGE,
    TEAM_1_URL,
    TEAM_2_URL,
    TEAMS_URL,
    FakeDriver,
    RecordingListener,
    league_pages,
    make_config,
)

pytestmark = pytest.mark.asyncio

ALL_CATEGORIES = DataExtracted(settings=True, members=True, sub_records=True, metadata=True)


def build(driver, listener=None, **config_overrides):
    reporter = ProgressReporter()
    if listener is not None:
        reporter.subscribe(listener)
    session = SessionState()
    return JobPipeline(driver, session, make_config(**config_overrides), reporter), session


def scripted(**page_overrides):
    return FakeDriver(league_pages(**page_overrides), clicks={'a[href*="team"]': TEAMS_URL})


async def test_full_sync(job, listener):
    pipeline, session = build(scripted(), listener)
    result = await pipeline.run(job)

    assert result.success, result.errors
    assert result.data_extracted == ALL_CATEGORIES
    assert result.fallbacks == ()
    assert result.errors == ()
    assert result.duration >= 0

    data = result.data
    assert data.name == "Sunday Funday"
    assert data.settings.size == 12
    assert [m.name for m in data.members] == ["Gridiron Gurus", "Blitz Brigade"]
    assert data.my_team.id == "alpha_team_1"
    assert [p.name for p in data.members[0].roster] == ["Josh Allen", "Christian McCaffrey", "Justin Tucker"]
    assert data.members[1].roster[1].status == "Out"
    assert data.metadata.draft_type == "Snake"
    assert data.metadata.order == ("alpha_team_1", "alpha_team_2")
    assert session.is_authenticated
    assert session.current_location == LEAGUE_URL


async def test_progress_is_monotonic_and_ends_complete(job, listener):
    pipeline, _ = build(scripted(), listener)
    await pipeline.run(job)

    updates = listener.progress_for("alpha")
    stages = [u[2] for u in updates]
    percentages = [u[3] for u in updates]
    assert [stage_index(s) for s in stages] == sorted(stage_index(s) for s in stages)
    assert percentages == sorted(percentages)
    assert stages[0] == SyncStage.AUTHENTICATING
    assert stages[-1] == SyncStage.COMPLETE
    assert percentages[-1] == 100
    for stage in (SyncStage.NAVIGATING, SyncStage.EXTRACTING_SETTINGS, SyncStage.EXTRACTING_MEMBERS,
                  SyncStage.EXTRACTING_SUB_RECORDS, SyncStage.EXTRACTING_METADATA, SyncStage.AGGREGATING):
        assert stage in stages


async def test_navigation_failure(job, listener):
    driver = scripted()
    driver.fail("navigate", LEAGUE_URL)
    pipeline, _ = build(driver, listener)

    result = await pipeline.run(job)

    assert not result.success
    assert result.data is None
    assert result.data_extracted == DataExtracted()
    assert result.errors[0].startswith("Failed to navigate to league")
    assert driver.visits(LEAGUE_URL) == 3
    assert ("error", "alpha", ErrorKind.NAVIGATION_ERROR) in listener.events

    last = listener.progress_for("alpha")[-1]
    assert last[2] == SyncStage.ERROR
    # ERROR is entered from navigating; nothing comes after it
    assert listener.progress_for("alpha")[-2][2] == SyncStage.NAVIGATING


async def test_failure_captures_diagnostic(job):
    driver = scripted()
    driver.fail("navigate", LEAGUE_URL)
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert driver.artifacts == ["error-alpha"]
    assert "Diagnostic saved: /tmp/error-alpha.png" in result.warnings


async def test_no_diagnostic_when_screenshots_disabled(job):
    driver = scripted()
    driver.fail("navigate", LEAGUE_URL)
    pipeline, _ = build(driver, enable_screenshots=False)

    await pipeline.run(job)
    assert driver.artifacts == []


async def test_unparseable_settings(job, listener):
    pipeline, _ = build(scripted(**{LEAGUE_URL: "title: Welcome\n- text: Nothing here yet"}), listener)
    result = await pipeline.run(job)

    assert not result.success
    assert result.errors[0] == "Failed to extract league settings: no team count or scoring type found"
    assert ("error", "alpha", ErrorKind.PARSING_ERROR) in listener.events
    assert listener.progress_for("alpha")[-2][2] == SyncStage.EXTRACTING_SETTINGS


async def test_stall_recovered_once(job):
    driver = scripted(**{LEAGUE_URL: [SPINNER_PAGE, LEAGUE_PAGE]})
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert any(w.startswith("Stuck during navigating (Endless loading spinner)") for w in result.warnings)
    # initial visit, recovery reload, return for draft info
    assert driver.visits(LEAGUE_URL) == 3


async def test_stall_that_survives_recovery_fails_the_stage(job):
    pipeline, _ = build(scripted(**{LEAGUE_URL: SPINNER_PAGE}))
    result = await pipeline.run(job)

    assert not result.success
    assert result.errors[0] == "Still stuck after recovery: Endless loading spinner"


async def test_challenge_is_not_retried(job, listener):
    driver = scripted(**{LEAGUE_URL: CAPTCHA_PAGE})
    pipeline, _ = build(driver, listener)

    result = await pipeline.run(job)

    assert not result.success
    assert result.errors[0] == "CAPTCHA challenge detected: manual action required"
    assert driver.visits(LEAGUE_URL) == 1
    assert ("error", "alpha", ErrorKind.NAVIGATION_ERROR) in listener.events


async def test_missing_teams_link_uses_placeholder_teams(job):
    driver = FakeDriver(league_pages())
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert result.fallbacks == ("members", "sub_records")
    assert result.data_extracted == ALL_CATEGORIES
    assert len(result.data.members) == 12
    assert all(m.placeholder and m.roster == () for m in result.data.members)
    assert result.data.metadata.status == "Completed"


async def test_one_roster_failure_keeps_the_team(job):
    driver = scripted()
    driver.fail("navigate", TEAM_2_URL)
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert result.fallbacks == ()
    assert len(result.data.members[0].roster) == 3
    assert result.data.members[1].roster == ()
    assert any(w.startswith("Roster for Blitz Brigade unavailable") for w in result.warnings)


async def test_degraded_mode_without_driver(job, listener):
    driver = FakeDriver(capabilities=())
    pipeline, session = build(driver, listener)

    result = await pipeline.run(job)

    assert result.success
    assert result.data_extracted == ALL_CATEGORIES
    assert result.fallbacks == ("settings", "members", "sub_records", "metadata")
    assert result.data.name == "Sunday Funday"
    assert len(result.data.members) == 12
    assert result.data.metadata.order[0] == "alpha_team_1"
    assert not session.driver_available
    assert not session.is_authenticated
    assert driver.calls == []
    assert listener.progress_for("alpha")[-1][2] == SyncStage.COMPLETE


async def test_below_capability_threshold_is_degraded(job):
    driver = FakeDriver(league_pages(), capabilities=("navigate", "snapshot"))
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success
    assert len(result.fallbacks) == 4
    assert driver.calls == []


async def test_session_shared_between_runs(job):
    driver = scripted()
    pipeline, _ = build(driver)

    await pipeline.run(job)
    await pipeline.run(job)

    assert driver.visits(LOGIN_URL) == 1


async def test_cancelled_before_start(job):
    token = CancellationToken()
    token.cancel("stop now")
    driver = scripted()
    pipeline, _ = build(driver)

    result = await pipeline.run(job, token)

    assert not result.success
    assert result.errors == ("cancelled: stop now",)
    assert driver.calls == []
    assert driver.artifacts == []


async def test_listener_failure_does_not_fail_the_job(job):
    class Broken:
        def on_progress(self, job_id, progress):
            raise RuntimeError("listener down")

    pipeline, _ = build(scripted(), Broken())
    result = await pipeline.run(job)
    assert result.success


async def test_roster_stall_after_recovery_keeps_the_team(job):
    # the first roster page uses up the stage's recovery; the second stays stuck
    driver = scripted(**{TEAM_1_URL: [SPINNER_PAGE, TEAM_1_PAGE], TEAM_2_URL: "An error occurred"})
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert result.fallbacks == ()
    assert len(result.data.members[0].roster) == 3
    assert result.data.members[1].roster == ()
    assert any(w.startswith("Roster for Blitz Brigade unavailable: Still stuck after recovery")
               for w in result.warnings)


async def test_metadata_stall_falls_back_to_defaults(job):
    driver = scripted(**{LEAGUE_URL: [LEAGUE_PAGE, LEAGUE_PAGE, SPINNER_PAGE]})
    pipeline, _ = build(driver)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert result.fallbacks == ("metadata",)
    assert result.data_extracted == ALL_CATEGORIES
    assert result.data.metadata.order == ("alpha_team_1", "alpha_team_2")
    assert any(w.startswith("Draft information unavailable: Still stuck after recovery")
               for w in result.warnings)


async def test_challenge_on_roster_page_still_fails_the_job(job, listener):
    pipeline, _ = build(scripted(**{TEAM_2_URL: CAPTCHA_PAGE}), listener)

    result = await pipeline.run(job)

    assert not result.success
    assert result.errors[0] == "CAPTCHA challenge detected: manual action required"
    assert listener.progress_for("alpha")[-2][2] == SyncStage.EXTRACTING_SUB_RECORDS


async def test_unreadable_login_page_falls_through_to_polling(job, listener):
    driver = scripted()
    driver.fail("snapshot", LOGIN_URL, times=3)
    pipeline, session = build(driver, listener)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert session.is_authenticated
    assert any(w.startswith("Login page unreadable") for w in result.warnings)
    assert not any(e[0] == "error" for e in listener.events)


async def test_unconfirmed_login_moves_on_to_navigating(job, listener):
    pipeline, session = build(scripted(**{LOGIN_URL: "title: NFL Fantasy\n- text: Welcome back"}), listener)

    result = await pipeline.run(job)

    assert result.success, result.errors
    assert session.is_authenticated
    assert any("proceeding optimistically" in w for w in result.warnings)
    stages = [event[2] for event in listener.progress_for("alpha")]
    after_auth = next(stage for stage in stages if stage != SyncStage.AUTHENTICATING)
    assert after_auth == SyncStage.NAVIGATING
    assert SyncStage.ERROR not in stages
