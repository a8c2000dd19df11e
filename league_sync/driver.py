"""
Remote automation drivers.

Every driver declares its capability set upfront. Primitives it does not
declare raise CapabilityMissingError, and probe_capabilities() records what
is usable on the shared SessionState once, at startup.

  AutomationDriver  : base class, no capabilities
  NullDriver        : explicit degraded/development driver (driver: none)
  PlaywrightDriver  : async Playwright page

Usage:
    async with open_driver(config) as driver:
        probe_capabilities(driver, session, config["min_capabilities"])
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from playwright.async_api import async_playwright, Error as PlaywrightError

from league_sync.models import SessionState
from league_sync.utils import (
    HTMLDUMP_DIR,
    SCREENSHOT_DIR,
    artifact_path,
    get_session_path,
    scaled_timeout,
)

logger = logging.getLogger("league_sync")

CAPABILITIES = ("navigate", "snapshot", "click", "type", "capture_artifact")

# League sites are SPAs; "networkidle" never settles reliably.
WAIT_STRATEGY = "domcontentloaded"
NAV_TIMEOUT = 60_000
ACTION_TIMEOUT = 5_000
SCREENSHOT_TIMEOUT = 5_000


class CapabilityMissingError(RuntimeError):
    """The driver does not provide the requested primitive."""

    retryable = False

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"Driver capability not available: {capability}")


class ElementNotFoundError(LookupError):
    """None of the locator candidates could be acted on."""


class AutomationDriver:
    """Driver interface. Subclasses override the primitives they declare."""

    name = "base"
    capabilities: frozenset = frozenset()

    async def navigate(self, location: str) -> None:
        raise CapabilityMissingError("navigate")

    async def snapshot(self) -> str:
        raise CapabilityMissingError("snapshot")

    async def click(self, candidates) -> str:
        """Click the first candidate locator that works; return that locator."""
        raise CapabilityMissingError("click")

    async def type(self, locator: str, text: str) -> None:
        raise CapabilityMissingError("type")

    async def capture_artifact(self, name: str) -> Optional[str]:
        raise CapabilityMissingError("capture_artifact")


class NullDriver(AutomationDriver):
    """
    Drop-in driver that can do nothing.

    Used when `driver: none` is configured. The pipeline sees zero
    capabilities and produces placeholder data for every job.
    """

    name = "null"


def probe_capabilities(driver: AutomationDriver, session: SessionState, min_capabilities: int = 3) -> set:
    """
    Record the driver's usable capabilities on `session`.

    A capability is usable when the driver declares it and exposes a
    callable for it. Fewer than `min_capabilities` marks the driver as
    unavailable; the pipeline then falls back to synthesized data.
    """
    declared = set(getattr(driver, "capabilities", ()) or ())
    available = {cap for cap in CAPABILITIES if cap in declared and callable(getattr(driver, cap, None))}

    session.available_capabilities = available
    session.driver_available = len(available) >= min_capabilities
    session.is_active = session.driver_available
    session.probed = True
    session.touch()

    logger.info(
        f"Driver capabilities ({getattr(driver, 'name', type(driver).__name__)}): "
        f"{len(available)}/{len(CAPABILITIES)} available: {', '.join(sorted(available)) or 'none'}"
    )
    if session.driver_available:
        logger.info("Driver is ACTIVE and ready for automation")
    else:
        logger.warning(
            f"Driver unavailable ({len(available)} < {min_capabilities} capabilities); "
            f"jobs will use placeholder data"
        )
    return available


# ═════════════════════════════════════════════════════════════════════════
#  Playwright
# ═════════════════════════════════════════════════════════════════════════

class PlaywrightDriver(AutomationDriver):
    """Driver backed by one async Playwright page."""

    name = "playwright"
    capabilities = frozenset(CAPABILITIES)

    def __init__(self, page, *, context=None, status_client=None, config: dict = None):
        config = config or {}
        self.page = page
        self.context = context
        self._status_client = status_client
        self._nav_timeout = scaled_timeout(NAV_TIMEOUT, config)
        self._action_timeout = scaled_timeout(ACTION_TIMEOUT, config)

    async def navigate(self, location: str) -> None:
        logger.debug(f"  goto {location}")
        await self.page.goto(location, wait_until=WAIT_STRATEGY, timeout=self._nav_timeout)

    async def snapshot(self) -> str:
        """Title plus an accessibility-tree snapshot of the body (inner text on older Playwright)."""
        title = await self.page.title()
        body = self.page.locator("body")
        try:
            content = await body.aria_snapshot()
        except AttributeError:
            content = await body.inner_text()
        return f"title: {title}\n{content}"

    async def click(self, candidates) -> str:
        if isinstance(candidates, str):
            candidates = [candidates]
        last_error = None
        for selector in candidates:
            try:
                await self.page.locator(selector).first.click(timeout=self._action_timeout)
                logger.debug(f"  clicked {selector}")
                return selector
            except PlaywrightError as exc:
                logger.debug(f"  click candidate failed: {selector} ({exc})")
                last_error = exc
        raise ElementNotFoundError(f"No clickable candidate among {list(candidates)}: {last_error}")

    async def type(self, locator: str, text: str) -> None:
        await self.page.locator(locator).first.fill(text, timeout=self._action_timeout)

    async def capture_artifact(self, name: str) -> Optional[str]:
        """
        Capture as much diagnostic data as the page still allows.

          1. log page.url and page.title()
          2. screenshot with a hard 5s timeout
          3. on failure: page.content() saved as an .html dump

        Returns the saved file path, or None when both captures fail.
        """
        try:
            current_url = self.page.url
        except Exception:
            current_url = "<unavailable>"
        try:
            current_title = await self.page.title()
        except Exception:
            current_title = "<unavailable>"
        logger.debug(f"[diag] url={current_url}  title={current_title}")

        try:
            filepath = artifact_path(SCREENSHOT_DIR, name, "png")
            await self.page.screenshot(path=filepath, full_page=False, timeout=SCREENSHOT_TIMEOUT)
            logger.info(f"📸 Screenshot saved: {filepath}")
            await self._upload(filepath, name)
            return filepath
        except Exception as ss_err:
            logger.debug(f"Screenshot failed ({ss_err}), falling back to HTML dump")

        try:
            html_filepath = artifact_path(HTMLDUMP_DIR, name, "html")
            html_content = await self.page.content()
            with open(html_filepath, "w", encoding="utf-8") as f:
                f.write(html_content)
            logger.info(f"📄 HTML dump saved: {html_filepath}")
            await self._upload(html_filepath, name)
            return html_filepath
        except Exception as html_err:
            logger.warning(f"HTML dump also failed: {html_err}")
            return None

    async def _upload(self, filepath: str, label: str) -> None:
        if self._status_client is None:
            return
        await asyncio.to_thread(self._status_client.upload_diagnostic, filepath, label)

    async def save_session(self) -> None:
        """Persist cookies + localStorage so the next run can skip the login."""
        if self.context is None:
            return
        session_path = get_session_path()
        await self.context.storage_state(path=session_path)
        logger.info(f"Session saved to: {session_path}")


@asynccontextmanager
async def open_driver(config: dict, status_client=None):
    """
    Yield the driver selected by config["driver"].

    "none"       -> NullDriver (degraded mode, placeholder data)
    "playwright" -> Chromium page, restoring session.json when present
    """
    if config.get("driver", "playwright") == "none":
        logger.info("Driver: none (degraded mode)")
        yield NullDriver()
        return

    is_headless = config.get("headless", False)
    session_path = get_session_path()

    async with async_playwright() as p:
        launch_args: list[str] = []
        if is_headless:
            # Keep navigator.webdriver false
            launch_args.append("--disable-blink-features=AutomationControlled")

        browser = await p.chromium.launch(
            headless=is_headless,
            slow_mo=0 if is_headless else 250,
            args=launch_args or None,
        )
        try:
            ctx_opts: dict = {}
            if os.path.exists(session_path):
                logger.info("Loading saved session...")
                ctx_opts["storage_state"] = session_path
            if is_headless:
                ctx_opts["viewport"] = {"width": 1920, "height": 1080}
                ctx_opts["user_agent"] = (
                    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                    "AppleWebKit/537.36 (KHTML, like Gecko) "
                    "Chrome/124.0.0.0 Safari/537.36"
                )

            context = await browser.new_context(**ctx_opts)
            page = await context.new_page()
            driver = PlaywrightDriver(page, context=context, status_client=status_client, config=config)
            yield driver

            try:
                await driver.save_session()
            except PlaywrightError as exc:
                logger.warning(f"Could not save session: {exc}")
        finally:
            logger.info("Closing browser...")
            await browser.close()
