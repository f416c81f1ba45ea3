import asyncio
from typing import Dict, Optional

import structlog
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from config.settings import (
    BROWSER_CONTENT_MAX_BYTES,
    BROWSER_RETRY_ATTEMPTS,
    BROWSER_RETRY_BACKOFF_SECONDS,
)
from .base_fetcher import BaseFetcher, FetchRequest, RawResponse
from .browser_session import BrowserSession
from .chunk_store import truncate_utf8
from .httpx_fetcher import random_user_agent
from .page_operations import auto_scroll, handle_challenge
from .proxy import playwright_proxy_settings, resolve_proxy

logger = structlog.get_logger()

STEALTH_INIT_SCRIPT = """
    // Remove webdriver property
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });

    // Mock plugins
    Object.defineProperty(navigator, 'plugins', {
        get: () => [1, 2, 3, 4, 5]
    });

    // Mock languages
    Object.defineProperty(navigator, 'languages', {
        get: () => ['en-US', 'en']
    });

    // Chrome runtime
    window.chrome = {
        runtime: {}
    };
"""

STEALTH_HEADERS = {
    'Accept-Language': 'en-US,en;q=0.9',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
}

BROWSER_CLOSED_MESSAGE = "Browser closed successfully"


class PlaywrightFetcher(BaseFetcher):
    """Browser-based fetching using Playwright for anti-bot bypassing"""

    def __init__(
        self,
        session: Optional[BrowserSession] = None,
        proxy_resolver=resolve_proxy,
        retry_wait=None,
    ):
        self.session = session or BrowserSession()
        self._resolve_proxy = proxy_resolver
        # 1s, 2s, ... between attempts
        self._retry_wait = retry_wait or wait_incrementing(
            start=BROWSER_RETRY_BACKOFF_SECONDS,
            increment=BROWSER_RETRY_BACKOFF_SECONDS,
        )

    async def fetch(self, request: FetchRequest) -> RawResponse:
        """
        Fetch using the shared browser, retrying navigation failures.

        Raises BrowserLaunchError when the browser cannot be started; every
        other failure comes back as an unsuccessful RawResponse.
        """
        url = request.url
        if url == "about:blank" and request.close_browser_after:
            await self.session.close()
            return RawResponse(success=True, content=BROWSER_CLOSED_MESSAGE, method_used="playwright")

        proxy = await self._resolve_proxy(request.proxy, request.use_system_proxy, url=url)
        if proxy:
            logger.info("playwright_using_proxy", proxy=proxy)
        self.session.check_memory_usage()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(BROWSER_RETRY_ATTEMPTS),
                wait=self._retry_wait,
                retry=retry_if_exception_type(PlaywrightError),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    result = await self._fetch_once(request, proxy)
        except PlaywrightTimeoutError as e:
            logger.error("playwright_timeout", url=url, error=str(e))
            result = RawResponse(
                success=False,
                error=f"Error fetching {url}: Navigation timeout after {request.timeout_ms}ms ({e})",
                error_code="ETIMEDOUT",
                method_used="playwright",
            )
        except PlaywrightError as e:
            logger.error("playwright_error", url=url, error=str(e), error_type=type(e).__name__)
            result = RawResponse(
                success=False,
                error=f"Error fetching {url}: {e}",
                error_code="EBROWSER",
                method_used="playwright",
            )
        finally:
            if request.close_browser_after:
                await self.session.close()

        return result

    @staticmethod
    def _log_retry(retry_state):
        logger.warning(
            "playwright_fetch_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    @staticmethod
    def _split_user_agent(headers: Dict[str, str]):
        """Pull a caller-supplied User-Agent out of the header map"""
        remaining = {}
        user_agent = None
        for key, value in headers.items():
            if key.lower() == "user-agent":
                user_agent = value
            else:
                remaining[key] = value
        return user_agent or random_user_agent(), remaining

    async def _fetch_once(self, request: FetchRequest, proxy: Optional[str]) -> RawResponse:
        url = request.url
        browser = await self.session.get_browser()
        user_agent, headers = self._split_user_agent(request.headers)

        context = await browser.new_context(
            user_agent=user_agent,
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
            proxy=playwright_proxy_settings(proxy),
        )
        try:
            await context.add_init_script(STEALTH_INIT_SCRIPT)
            page = await context.new_page()
            page.set_default_timeout(request.timeout_ms)

            extra_headers = {**STEALTH_HEADERS, **headers}
            stored_cookies = self.session.cookie_jar.get(url) if request.save_cookies else None
            if stored_cookies:
                logger.debug("playwright_using_stored_cookies", url=url)
                extra_headers["Cookie"] = stored_cookies
            await page.set_extra_http_headers(extra_headers)

            logger.info("playwright_fetch_started", url=url)
            response = await page.goto(url, wait_until="networkidle", timeout=request.timeout_ms)

            bypassed = await handle_challenge(page, url)

            if request.wait_for_selector:
                try:
                    await page.wait_for_selector(request.wait_for_selector, timeout=request.timeout_ms)
                except PlaywrightTimeoutError:
                    logger.debug("playwright_selector_not_found", selector=request.wait_for_selector)

            if request.wait_for_timeout_ms > 0:
                await asyncio.sleep(request.wait_for_timeout_ms / 1000)

            if request.scroll_to_bottom:
                await auto_scroll(page)

            content = await page.content()

            if request.save_cookies:
                cookies = await page.evaluate("() => document.cookie")
                self.session.cookie_jar.save(url, cookies)

            truncated = truncate_utf8(content, BROWSER_CONTENT_MAX_BYTES)
            if len(truncated) < len(content):
                logger.warning("playwright_content_truncated", url=url, max_bytes=BROWSER_CONTENT_MAX_BYTES)

            logger.info("playwright_fetch_success", url=url, content_length=len(truncated))
            return RawResponse(
                success=True,
                content=truncated,
                status_code=response.status if response else 200,
                method_used="playwright",
                metadata={
                    "url": page.url,
                    "title": await page.title(),
                    "challenge_bypassed": bypassed,
                },
            )
        finally:
            await context.close()

    async def close(self):
        """Close the shared browser"""
        await self.session.close()
        logger.info("playwright_browser_closed")

    @property
    def name(self) -> str:
        return "playwright"
