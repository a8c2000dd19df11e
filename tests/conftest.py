"""
Shared fixtures: a scripted automation driver, canned league pages and a
config with every delay set to zero.
"""

import pytest

from league_sync.driver import CAPABILITIES, AutomationDriver, ElementNotFoundError
from league_sync.models import Job
from league_sync.utils import apply_defaults

LOGIN_URL = "https://fantasy.nfl.com/login"
LEAGUE_URL = "https://fantasy.nfl.com/league/123456"
TEAMS_URL = "https://fantasy.nfl.com/league/123456/owners"
TEAM_1_URL = "https://fantasy.nfl.com/league/123456/team/1"
TEAM_2_URL = "https://fantasy.nfl.com/league/123456/team/2"
MY_LEAGUES_URL = "https://fantasy.nfl.com/myleagues"

LOGGED_IN_PAGE = """title: NFL Fantasy
- heading "My Leagues" [level=1]
- link "Sign Out":
  - /url: /logout
"""

LOGIN_FORM_PAGE = """title: Sign In | NFL Fantasy
- heading "Sign In" [level=1]
- textbox "Email"
- textbox "Password"
- button "Sign In"
"""

LEAGUE_PAGE = """title: Sunday Funday | NFL Fantasy
- heading "Sunday Funday" [level=1]
- text: "12 Teams"
- text: "Scoring: Half PPR"
- text: "Playoff Teams: 6"
- text: "Waivers: FAAB"
- text: "QB: 1 RB: 2 WR: 3 TE: 1 K: 1 DEF: 1 BN: 6"
- text: "Snake Draft - 15 Rounds"
- text: "Draft is complete"
"""

TEAMS_PAGE = """title: Owners | NFL Fantasy
- heading "League Owners" [level=2]
- list:
  - listitem:
    - link "Gridiron Gurus (You)" [ref=e1]:
      - /url: /league/123456/team/1
  - listitem:
    - link "Blitz Brigade":
      - /url: /league/123456/team/2
  - listitem:
    - link "Blitz Brigade":
      - /url: /league/123456/team/2
  - link "League Home":
    - /url: /league/123456
"""

TEAM_1_PAGE = """- heading "Gridiron Gurus" [level=2]
- table:
  - row "Josh Allen QB - BUF":
  - row "Christian McCaffrey RB - SF Q":
  - row "Justin Tucker K - BAL":
"""

TEAM_2_PAGE = """- heading "Blitz Brigade" [level=2]
- table:
  - row "Lamar Jackson QB - BAL":
  - row "Tyreek Hill WR - MIA O":
"""

SPINNER_PAGE = """- img "Loading spinner"
- text: Please wait
"""

CAPTCHA_PAGE = """- heading "Please verify you are human" [level=1]
- text: Complete the CAPTCHA below. An error occurred loading the widget.
"""


class FakeDriver(AutomationDriver):
    """
    Scripted driver.

    pages:  location → snapshot text, or a list of texts served in order
            (the last one repeats)
    clicks: locator → location the click leads to
    fields: locators type() accepts (None accepts any)
    """

    name = "fake"

    def __init__(self, pages=None, *, clicks=None, fields=None, default="", capabilities=CAPABILITIES):
        self.capabilities = frozenset(capabilities)
        self.pages = {k: list(v) if isinstance(v, list) else v for k, v in (pages or {}).items()}
        self.clicks = dict(clicks or {})
        self.fields = fields
        self.default = default
        self.location = None
        self.calls = []
        self.typed = {}
        self.artifacts = []
        self._failures = {}

    def fail(self, method: str, key=None, times=None, exc=RuntimeError):
        """Make `method` (optionally only for `key`) raise, `times` times or forever."""
        self._failures[(method, key)] = [times, exc]

    def _maybe_fail(self, method: str, key) -> None:
        for probe in ((method, key), (method, None)):
            entry = self._failures.get(probe)
            if entry is None:
                continue
            remaining, exc = entry
            if remaining is None or remaining > 0:
                if remaining is not None:
                    entry[0] = remaining - 1
                raise exc(f"{method} failed at {key}")

    async def navigate(self, location):
        self.calls.append(("navigate", location))
        self._maybe_fail("navigate", location)
        self.location = location

    async def snapshot(self):
        self.calls.append(("snapshot", self.location))
        self._maybe_fail("snapshot", self.location)
        page = self.pages.get(self.location, self.default)
        if isinstance(page, list):
            return page.pop(0) if len(page) > 1 else page[0]
        return page

    async def click(self, candidates):
        candidates = [candidates] if isinstance(candidates, str) else list(candidates)
        self.calls.append(("click", tuple(candidates)))
        self._maybe_fail("click", None)
        for locator in candidates:
            if locator in self.clicks:
                self.location = self.clicks[locator]
                return locator
        raise ElementNotFoundError(f"no candidate among {candidates}")

    async def type(self, locator, text):
        self.calls.append(("type", locator))
        if self.fields is not None and locator not in self.fields:
            raise ElementNotFoundError(locator)
        self.typed[locator] = text

    async def capture_artifact(self, name):
        self.artifacts.append(name)
        return f"/tmp/{name}.png"

    def visits(self, location) -> int:
        return sum(1 for method, arg in self.calls if method == "navigate" and arg == location)


class RecordingListener:
    """Records every reporter event as a tuple, in arrival order."""

    def __init__(self):
        self.events = []

    def on_progress(self, job_id, progress):
        self.events.append(("progress", job_id, progress.stage, progress.progress, progress.message))

    def on_job_complete(self, result):
        self.events.append(("complete", result.job_id, result.success))

    def on_all_complete(self, results):
        self.events.append(("all_complete", [r.job_id for r in results]))

    def on_error(self, error):
        self.events.append(("error", error.job_id, error.kind))

    def progress_for(self, job_id):
        return [e for e in self.events if e[0] == "progress" and e[1] == job_id]


def make_config(**overrides) -> dict:
    config = {
        "jobs": [{"id": "alpha", "name": "Sunday Funday", "url": LEAGUE_URL}],
        "operation_timeout_ms": 1000,
        "backoff_base_ms": 0,
        "auth_poll_attempts": 3,
        "auth_poll_interval": 0,
        "auth_settle_delay": 0,
        "members_settle_delay": 0,
        "member_pacing_delay": 0,
        "job_pacing_delay": 0,
        "recovery_reload_delay": 0,
        "recovery_wait_delay": 0,
    }
    config.update(overrides)
    return apply_defaults(config)


def league_pages(**overrides) -> dict:
    pages = {
        LOGIN_URL: LOGGED_IN_PAGE,
        LEAGUE_URL: LEAGUE_PAGE,
        TEAMS_URL: TEAMS_PAGE,
        TEAM_1_URL: TEAM_1_PAGE,
        TEAM_2_URL: TEAM_2_PAGE,
    }
    pages.update(overrides)
    return pages


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def job():
    return Job(id="alpha", display_name="Sunday Funday", source_locator=LEAGUE_URL)


@pytest.fixture
def driver():
    return FakeDriver(league_pages(), clicks={'a[href*="team"]': TEAMS_URL})


@pytest.fixture
def listener():
    return RecordingListener()
