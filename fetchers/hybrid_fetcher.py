import dataclasses
from typing import Optional

import structlog

from .base_fetcher import (
    TRANSPORT_AUTO,
    TRANSPORT_BROWSER,
    BaseFetcher,
    FetchRequest,
    FetchResult,
    RawResponse,
)
from .browser_session import BrowserSession
from .chunk_store import ChunkStore
from .content import render
from .delivery import deliver, resume
from .errors import ErrorKind, FetchError, classify, error_message, looks_like_challenge, requires_browser
from .httpx_fetcher import HttpxFetcher
from .playwright_fetcher import PlaywrightFetcher

logger = structlog.get_logger()


class HybridFetcher:
    """
    Smart fetcher that tries httpx first, falls back to Playwright if needed.

    One orchestrated fetch makes at most two transport attempts: the requested
    transport, then (only in auto mode with detection enabled) a single browser
    retry. Oversized bodies are chunked through the shared ChunkStore.
    """

    def __init__(
        self,
        http_fetcher: Optional[BaseFetcher] = None,
        browser_fetcher: Optional[BaseFetcher] = None,
        chunk_store: Optional[ChunkStore] = None,
        session: Optional[BrowserSession] = None,
    ):
        self.http_fetcher = http_fetcher or HttpxFetcher()
        self.browser_fetcher = browser_fetcher or PlaywrightFetcher(session=session or BrowserSession())
        self.session = getattr(self.browser_fetcher, "session", session)
        self.chunk_store = chunk_store or ChunkStore()

    def _transport_for(self, request: FetchRequest) -> BaseFetcher:
        if request.transport == TRANSPORT_BROWSER:
            return self.browser_fetcher
        return self.http_fetcher

    async def _attempt(self, request: FetchRequest) -> RawResponse:
        """Run one transport, turning raised faults into failed responses"""
        fetcher = self._transport_for(request)
        try:
            return await fetcher.fetch(request)
        except FetchError as e:
            logger.error("transport_error", transport=fetcher.name, url=request.url, error=str(e), code=e.code)
            return RawResponse(
                success=False,
                error=str(e),
                error_code=e.code,
                status_code=e.status_code,
                method_used=fetcher.name,
            )
        except Exception as e:
            logger.exception("transport_unexpected_error", transport=fetcher.name, url=request.url)
            return RawResponse(success=False, error=error_message(e), method_used=fetcher.name)

    @staticmethod
    def _should_fall_back(request: FetchRequest, response: RawResponse) -> bool:
        if request.transport != TRANSPORT_AUTO or not request.auto_detect:
            return False
        if response.success:
            return looks_like_challenge(response.content)
        return requires_browser(response)

    async def execute(self, request: FetchRequest, output: str = "html") -> FetchResult:
        """
        Fetch (or resume) one request and render it as `output`.

        Never raises for transport problems; failures come back as a
        FetchResult with is_error set.
        """
        if request.chunk_id:
            logger.info("chunk_resume", chunk_id=request.chunk_id, start_cursor=request.start_cursor)
            return resume(request.chunk_id, request.start_cursor, request.content_size_limit, self.chunk_store)

        if not request.url:
            return FetchResult.failure("URL is required when no chunkId is given", ErrorKind.UNKNOWN.value)

        logger.info("fetch_started", url=request.url, transport=request.transport, output=output)
        response = await self._attempt(request)

        if self._should_fall_back(request, response):
            logger.warning(
                "fallback_to_browser",
                url=request.url,
                status_code=response.status_code,
                reason=response.error if not response.success else "challenge page",
            )
            browser_request = dataclasses.replace(
                request,
                transport=TRANSPORT_BROWSER,
                close_browser_after=True,
            )
            response = await self._attempt(browser_request)

        if not response.success:
            kind = classify(response)
            logger.warning(
                "fetch_failed",
                url=request.url,
                method=response.method_used,
                error_code=response.error_code,
                error_kind=kind.value,
            )
            return FetchResult.failure(response.error or "Unknown error", kind.value)

        rendered = render(
            response.content or "",
            output,
            from_browser=response.method_used == "playwright",
        )
        if not rendered.success:
            return FetchResult.failure(rendered.error, ErrorKind.PARSE.value)

        logger.info("fetch_success", url=request.url, method=response.method_used, output=output)
        return deliver(rendered.text, request.content_size_limit, request.enable_chunking, self.chunk_store)

    async def html(self, request: FetchRequest) -> FetchResult:
        return await self.execute(request, "html")

    async def json(self, request: FetchRequest) -> FetchResult:
        return await self.execute(request, "json")

    async def txt(self, request: FetchRequest) -> FetchResult:
        return await self.execute(request, "txt")

    async def markdown(self, request: FetchRequest) -> FetchResult:
        return await self.execute(request, "markdown")

    async def plaintext(self, request: FetchRequest) -> FetchResult:
        return await self.execute(request, "plaintext")

    async def close_browser(self):
        await self.browser_fetcher.close()

    async def close(self):
        """Close all fetchers"""
        await self.http_fetcher.close()
        await self.browser_fetcher.close()

    @property
    def name(self) -> str:
        return "hybrid"
