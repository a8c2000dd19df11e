"""
Authentication stage: capability probe, login page check, credential
submission and polling for a logged-in session.

League sites do not expose an auth API, so the session state is read from
page markers. When no marker settles within the poll budget the run either
proceeds optimistically (default) or fails, depending on `optimistic_auth`.
"""

import logging

from league_sync.driver import CapabilityMissingError, ElementNotFoundError, probe_capabilities
from league_sync.models import ErrorKind, ExtractionError, SyncStage
from league_sync.recovery import REAUTH_REASONS
from league_sync.retry import RetryExhaustedError
from league_sync.stuck import snapshot_text

logger = logging.getLogger("league_sync")

AUTHENTICATED = "authenticated"
LOGIN_REQUIRED = "login"
UNKNOWN = "unknown"

LOGIN_MARKERS = ("sign in", "log in", "email", "password", "username")
AUTHENTICATED_MARKERS = ("my leagues", "dashboard", "logout", "sign out")

USERNAME_FIELDS = (
    'input[type="email"]',
    'input[name*="user"]',
    'input[name*="email"]',
    "#username",
)
PASSWORD_FIELDS = ('input[type="password"]', 'input[name*="pass"]')
SUBMIT_BUTTONS = (
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Sign In")',
    'button:has-text("Log In")',
)


def classify_auth(snapshot) -> str:
    """
    Classify a snapshot as authenticated, login-required or unknown.

    Authenticated content only counts while no login form is visible.
    """
    text = snapshot_text(snapshot).lower()
    if not text:
        return UNKNOWN
    has_login_form = any(marker in text for marker in LOGIN_MARKERS)
    has_authenticated_content = any(marker in text for marker in AUTHENTICATED_MARKERS)
    if has_authenticated_content and not has_login_form:
        return AUTHENTICATED
    if has_login_form:
        return LOGIN_REQUIRED
    return UNKNOWN


def is_authenticated_snapshot(snapshot) -> bool:
    """Polling check: any authenticated marker counts, even beside a login link."""
    text = snapshot_text(snapshot).lower()
    return any(marker in text for marker in AUTHENTICATED_MARKERS)


async def _fill_first(driver, candidates, text: str) -> str:
    last_error = None
    for locator in candidates:
        try:
            await driver.type(locator, text)
            return locator
        except CapabilityMissingError:
            raise
        except Exception as exc:
            last_error = exc
    raise ElementNotFoundError(f"No fillable field among {list(candidates)}: {last_error}")


async def submit_credentials(run) -> bool:
    """Fill and submit the login form with the job's credentials. False on failure."""
    creds = run.job.credentials
    driver = run.driver
    try:
        await run.guarded("fill username", lambda: _fill_first(driver, USERNAME_FIELDS, creds.username))
        if creds.password:
            await run.guarded("fill password", lambda: _fill_first(driver, PASSWORD_FIELDS, creds.password))
        await run.guarded("submit login", lambda: driver.click(SUBMIT_BUTTONS))
    except RetryExhaustedError as exc:
        run.warn(f"Automatic login failed ({exc}); waiting for manual login")
        return False

    run.session.touch()
    logger.info(f"  Credentials submitted for {creds.username}")
    return True


def _confirm(run, message: str) -> bool:
    run.session.is_authenticated = True
    run.session.touch()
    run.advance(SyncStage.AUTHENTICATING, 20, message)
    logger.info(f"  ✅ {message}")
    return True


def _proceed_unconfirmed(run, why: str) -> bool:
    if not run.config.get("optimistic_auth", True):
        raise ExtractionError(
            f"Authentication could not be confirmed ({why})",
            ErrorKind.AUTHENTICATION_FAILED,
            SyncStage.AUTHENTICATING,
            run.job.id,
        )
    run.session.is_authenticated = True
    run.session.touch()
    run.warn(f"Authentication unconfirmed ({why}); proceeding optimistically")
    run.advance(SyncStage.AUTHENTICATING, 20, "Authentication timeout - assuming success, continuing with sync...")
    return True


async def poll_for_authentication(run) -> bool:
    """
    Poll the session for authenticated markers.

    Snapshot failures while polling are tolerated; the user may be
    mid-login. Returns once authenticated, or after the optimistic fallback.
    """
    attempts = run.config.get("auth_poll_attempts", 15)
    interval = run.config.get("auth_poll_interval", 2.0)

    for attempt in range(1, attempts + 1):
        await run.pause(interval)
        snapshot = await run.try_snapshot()
        if snapshot is not None:
            await run.inspect(snapshot, ignore=REAUTH_REASONS)
            if is_authenticated_snapshot(snapshot):
                return _confirm(run, "Authentication successful!")

        run.advance(
            SyncStage.AUTHENTICATING,
            10 + 8 * attempt / attempts,
            f"Waiting for authentication... ({attempts - attempt} attempts remaining)",
        )

    return _proceed_unconfirmed(run, f"no authenticated markers after {attempts} checks")


async def authenticate(run) -> bool:
    """
    Run the authenticating stage. Returns True when the session is (assumed)
    authenticated and False in degraded mode, where there is no driver to
    authenticate with.
    """
    session = run.session
    config = run.config
    run.advance(SyncStage.AUTHENTICATING, 0, "Checking automation driver...")

    if not session.probed:
        try:
            probe_capabilities(run.driver, session, config.get("min_capabilities", 3))
        except Exception as exc:
            raise ExtractionError(
                f"Capability probe failed: {exc}",
                ErrorKind.AUTHENTICATION_FAILED,
                SyncStage.AUTHENTICATING,
                run.job.id,
            ) from exc

    if not session.driver_available:
        run.warn("Automation driver unavailable; league data will use placeholders")
        run.advance(SyncStage.AUTHENTICATING, 20, "Skipped: automation driver unavailable")
        return False

    if not session.has("navigate"):
        raise ExtractionError(
            "Automation driver cannot navigate; authentication impossible",
            ErrorKind.AUTHENTICATION_FAILED,
            SyncStage.AUTHENTICATING,
            run.job.id,
        )

    if session.is_authenticated:
        run.advance(SyncStage.AUTHENTICATING, 20, "Session already authenticated")
        return True

    login_url = config.get("login_url", "https://fantasy.nfl.com/login")
    run.advance(SyncStage.AUTHENTICATING, 5, "Navigating to NFL.com login...")
    try:
        await run.guarded("navigate to login", lambda: run.driver.navigate(login_url))
    except RetryExhaustedError as exc:
        raise ExtractionError(
            str(exc), ErrorKind.NAVIGATION_ERROR, SyncStage.AUTHENTICATING, run.job.id,
        ) from exc
    session.touch(login_url)
    await run.pause(config.get("auth_settle_delay", 2.0))

    if not session.has("snapshot"):
        return _proceed_unconfirmed(run, "driver cannot read the page")

    run.advance(SyncStage.AUTHENTICATING, 8, "Checking authentication status...")
    try:
        snapshot = await run.snapshot("login snapshot", ignore=REAUTH_REASONS)
        state = classify_auth(snapshot)
    except RetryExhaustedError as exc:
        run.warn(f"Login page unreadable ({exc}); polling for a session instead")
        state = UNKNOWN
    if state == AUTHENTICATED:
        return _confirm(run, "Already authenticated - proceeding to league sync")

    if state == LOGIN_REQUIRED and run.job.credentials is not None and session.has("type") and session.has("click"):
        run.advance(SyncStage.AUTHENTICATING, 9, "Submitting credentials...")
        await submit_credentials(run)
    else:
        run.advance(SyncStage.AUTHENTICATING, 10, "Manual login required - waiting for user authentication...")

    return await poll_for_authentication(run)
