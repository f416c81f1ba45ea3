"""
Shared headless browser process.

One BrowserSession owns at most one live browser. Concurrent callers that ask
for the browser while it is starting all await the same start task, so a burst
of browser fetches never launches more than one process.
"""
import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

import psutil
import structlog
from playwright.async_api import Browser, Error as PlaywrightError, async_playwright

from config.settings import (
    BROWSER_EXECUTABLE_PATH,
    BROWSER_HEADLESS,
    MEMORY_CHECK_INTERVAL_SECONDS,
    MEMORY_PROCESS_WARN_MB,
    MEMORY_TOTAL_WARN_MB,
)
from .errors import BrowserLaunchError
from .page_operations import CookieJar

logger = structlog.get_logger()

STATE_STOPPED = "stopped"
STATE_STARTING = "starting"
STATE_RUNNING = "running"

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-gpu',
    '--disable-blink-features=AutomationControlled',
    '--window-size=1920,1080',
]

# Returns (driver handle with an async stop(), browser)
Launcher = Callable[[], Awaitable[Tuple[Any, Browser]]]


async def launch_chromium() -> Tuple[Any, Browser]:
    """Start the Playwright driver and a Chromium instance"""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=BROWSER_HEADLESS,
            args=LAUNCH_ARGS,
            executable_path=BROWSER_EXECUTABLE_PATH,
        )
    except BaseException:
        await playwright.stop()
        raise
    return playwright, browser


@dataclass
class MemorySample:
    process_mb: float
    browser_mb: float

    @property
    def total_mb(self) -> float:
        return self.process_mb + self.browser_mb


class BrowserSession:
    """Lazily started, shareable browser with crash recovery and memory sampling"""

    def __init__(self, launcher: Optional[Launcher] = None, clock: Callable[[], float] = time.monotonic):
        self._launcher = launcher or launch_chromium
        self._clock = clock
        self._driver = None
        self._browser: Optional[Browser] = None
        self._start_task: Optional[asyncio.Future] = None
        self.last_memory_check: Optional[float] = None
        self.cookie_jar = CookieJar()
        self.launch_count = 0

    @property
    def state(self) -> str:
        if self._start_task is not None:
            return STATE_STARTING
        if self._browser is not None:
            return STATE_RUNNING
        return STATE_STOPPED

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def get_browser(self) -> Browser:
        """Return the running browser, launching it on first use"""
        if self.is_running:
            return self._browser

        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._start())
        else:
            logger.debug("browser_start_in_progress_waiting")

        # Shielded so one cancelled caller does not abort the launch for the others
        return await asyncio.shield(self._start_task)

    async def _start(self) -> Browser:
        try:
            await self._stop_driver()
            logger.info("browser_launching", headless=BROWSER_HEADLESS, executable_path=BROWSER_EXECUTABLE_PATH)
            self.launch_count += 1
            try:
                driver, browser = await self._launcher()
            except Exception as e:
                logger.error("browser_launch_failed", error=str(e), error_type=type(e).__name__)
                self._browser = None
                self._driver = None
                raise BrowserLaunchError(f"Failed to launch browser: {e}") from e

            browser.on("disconnected", self._on_disconnected)
            self._driver = driver
            self._browser = browser
            logger.info("browser_started")
            return browser
        finally:
            self._start_task = None

    def _on_disconnected(self, *_):
        if self._browser is None:
            return
        logger.warning("browser_disconnected")
        self._browser = None

    async def _stop_driver(self):
        driver, self._driver = self._driver, None
        if driver is None:
            return
        try:
            await driver.stop()
        except PlaywrightError as e:
            logger.warning("playwright_driver_stop_failed", error=str(e))

    async def close(self):
        """Close the browser (if any) and stop the driver"""
        if self._start_task is not None:
            try:
                await asyncio.shield(self._start_task)
            except BrowserLaunchError:
                pass

        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.warning("browser_close_failed", error=str(e))
            logger.info("browser_closed")

        await self._stop_driver()

    def check_memory_usage(self, force: bool = False) -> Optional[MemorySample]:
        """
        Sample resident memory of this process and its browser children.

        Runs at most once per MEMORY_CHECK_INTERVAL_SECONDS unless forced and
        only logs warnings; nothing is killed or throttled.
        """
        now = self._clock()
        if not force and self.last_memory_check is not None:
            if now - self.last_memory_check < MEMORY_CHECK_INTERVAL_SECONDS:
                return None
        self.last_memory_check = now

        process = psutil.Process(os.getpid())
        process_mb = process.memory_info().rss / (1024 * 1024)
        browser_bytes = 0
        for child in process.children(recursive=True):
            try:
                browser_bytes += child.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        sample = MemorySample(process_mb=process_mb, browser_mb=browser_bytes / (1024 * 1024))
        logger.debug(
            "memory_usage",
            process_mb=round(sample.process_mb, 1),
            browser_mb=round(sample.browser_mb, 1),
        )
        if sample.process_mb > MEMORY_PROCESS_WARN_MB:
            logger.warning("memory_usage_high", scope="process", rss_mb=round(sample.process_mb, 1))
        if sample.total_mb > MEMORY_TOTAL_WARN_MB:
            logger.warning("memory_usage_high", scope="total", rss_mb=round(sample.total_mb, 1))
        return sample
