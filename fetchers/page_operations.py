"""Things done to an open page: cookies, scrolling, challenge handling"""
import asyncio
import random
from typing import Dict, Optional
from urllib.parse import urlparse

import structlog
from playwright.async_api import Error as PlaywrightError, Page, TimeoutError as PlaywrightTimeoutError

from config.settings import CHALLENGE_NAVIGATION_TIMEOUT_MS

logger = structlog.get_logger()

AUTO_SCROLL_SCRIPT = """
async () => {
    await new Promise((resolve) => {
        let totalHeight = 0;
        const distance = 100;
        const timer = setInterval(() => {
            const scrollHeight = document.body.scrollHeight;
            window.scrollBy(0, distance);
            totalHeight += distance;
            if (totalHeight >= scrollHeight) {
                clearInterval(timer);
                resolve();
            }
        }, 100);
    });
}
"""

CHALLENGE_CHECK_SCRIPT = """
() => {
    const title = document.title || '';
    const text = (document.body && document.body.textContent) || '';
    return title.includes('Cloudflare') ||
        title.includes('Security Check') ||
        title.includes('Just a moment') ||
        title.includes('Attention Required') ||
        text.includes('Checking your browser') ||
        document.querySelector('#challenge-form') !== null ||
        document.querySelector('div.cf-challenge-running') !== null;
}
"""


class CookieJar:
    """Raw `document.cookie` strings kept per hostname"""

    def __init__(self):
        self._cookies: Dict[str, str] = {}

    @staticmethod
    def _domain(url: str) -> str:
        return (urlparse(url).hostname or url).lower()

    def get(self, url: str) -> Optional[str]:
        return self._cookies.get(self._domain(url))

    def save(self, url: str, cookie_header: str):
        if cookie_header:
            self._cookies[self._domain(url)] = cookie_header

    def clear(self):
        self._cookies.clear()

    def __len__(self) -> int:
        return len(self._cookies)


async def auto_scroll(page: Page):
    """Scroll to the bottom in small steps so lazy content loads"""
    logger.debug("browser_scrolling")
    try:
        await page.evaluate(AUTO_SCROLL_SCRIPT)
    except PlaywrightError as e:
        logger.warning("browser_scroll_error", error=str(e))


async def is_challenge_page(page: Page) -> bool:
    return bool(await page.evaluate(CHALLENGE_CHECK_SCRIPT))


async def simulate_human_behavior(page: Page):
    """Wiggle the mouse, click, scroll a little and pause"""
    try:
        for _ in range(5):
            await page.mouse.move(random.randint(0, 500), random.randint(0, 500))
            await asyncio.sleep(random.uniform(0, 0.5))

        await page.mouse.click(random.randint(0, 500), random.randint(0, 500))
        await page.evaluate(f"() => window.scrollBy(0, {random.randint(0, 199)})")
        await asyncio.sleep(random.uniform(2.0, 4.0))
    except PlaywrightError as e:
        logger.warning("simulate_human_error", error=str(e))


async def _wait_for_settle(page: Page):
    try:
        await page.wait_for_load_state("networkidle", timeout=CHALLENGE_NAVIGATION_TIMEOUT_MS)
    except PlaywrightTimeoutError:
        logger.debug("challenge_wait_timeout")


async def handle_challenge(page: Page, url: str) -> bool:
    """
    Try to get past a bot-defense interstitial.

    Returns True when a challenge was detected and is gone afterwards. Returns
    False when there was no challenge, when it could not be passed, or when
    checking failed; the fetch carries on either way.
    """
    try:
        if not await is_challenge_page(page):
            return False

        logger.info("challenge_detected", url=url)
        for attempt in range(2):
            await simulate_human_behavior(page)
            await _wait_for_settle(page)
            if not await is_challenge_page(page):
                logger.info("challenge_bypassed", url=url, attempts=attempt + 1)
                return True
            logger.info("challenge_still_present", url=url, attempt=attempt + 1)

        logger.warning("challenge_bypass_failed", url=url)
        return False
    except PlaywrightError as e:
        logger.warning("challenge_check_error", url=url, error=str(e))
        return False
