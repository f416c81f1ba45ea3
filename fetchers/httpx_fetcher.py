import asyncio
import random
from dataclasses import dataclass
from typing import Dict, Optional, Union
from urllib.parse import urljoin

import httpx
import structlog

from config.settings import ERROR_BODY_PREVIEW_CHARS, REDIRECT_DELAY_RANGE
from config.user_agents import USER_AGENTS
from .base_fetcher import BaseFetcher, FetchRequest, RawResponse
from .errors import network_error_code
from .proxy import resolve_proxy

logger = structlog.get_logger()


@dataclass
class Ok:
    response: httpx.Response


@dataclass
class Redirect:
    url: str
    status_code: int


@dataclass
class Err:
    code: str
    message: str
    status_code: Optional[int] = None


Step = Union[Ok, Redirect, Err]


def build_redirect_url(location: str, current_url: str) -> str:
    """Resolve a Location header against the URL that produced it"""
    if location.startswith(("http://", "https://")):
        return location
    return urljoin(current_url, location)


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


class HttpxFetcher(BaseFetcher):
    """Lightweight HTTP transport with a manually walked redirect chain"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, proxy_resolver=resolve_proxy):
        self._transport = transport
        self._resolve_proxy = proxy_resolver
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    async def _ensure_client(self, proxy: Optional[str]) -> httpx.AsyncClient:
        """Lazy client initialization, one client per effective proxy"""
        client = self._clients.get(proxy)
        if client is not None:
            return client

        if self._transport is not None:
            client = httpx.AsyncClient(transport=self._transport, follow_redirects=False, trust_env=False)
        elif proxy:
            client = httpx.AsyncClient(
                http2=True,
                follow_redirects=False,
                trust_env=False,
                mounts={
                    "http://": httpx.AsyncHTTPTransport(proxy=proxy),
                    "https://": httpx.AsyncHTTPTransport(proxy=proxy, http2=True),
                },
            )
        else:
            client = httpx.AsyncClient(http2=True, follow_redirects=False, trust_env=False)

        self._clients[proxy] = client
        return client

    @staticmethod
    def _prepare_headers(headers: Dict[str, str]) -> Dict[str, str]:
        prepared = dict(headers)
        if not any(key.lower() == "user-agent" for key in prepared):
            prepared["User-Agent"] = random_user_agent()
        return prepared

    async def fetch(self, request: FetchRequest) -> RawResponse:
        """Fetch with redirect walking, a whole-call deadline and proxy support"""
        proxy = await self._resolve_proxy(request.proxy, request.use_system_proxy, url=request.url)
        if proxy:
            logger.info("httpx_using_proxy", proxy=proxy)

        client = await self._ensure_client(proxy)
        headers = self._prepare_headers(request.headers)
        timeout_s = request.timeout_ms / 1000
        redirects = {"count": 0}

        logger.info("httpx_fetch_started", url=request.url)
        try:
            outcome = await asyncio.wait_for(
                self._follow_redirects(client, request, headers, timeout_s, redirects),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            outcome = Err("ETIMEDOUT", f"Request timeout after {request.timeout_ms}ms")

        if isinstance(outcome, Err):
            logger.warning(
                "httpx_fetch_failed",
                url=request.url,
                code=outcome.code,
                status_code=outcome.status_code,
                redirects=redirects["count"],
            )
            return RawResponse(
                success=False,
                status_code=outcome.status_code,
                error=outcome.message,
                error_code=outcome.code,
                method_used="httpx",
                metadata={"redirects": redirects["count"]},
            )

        response = outcome.response
        logger.info("httpx_fetch_success", url=str(response.url), status_code=response.status_code)
        return RawResponse(
            success=True,
            content=response.text,
            status_code=response.status_code,
            method_used="httpx",
            metadata={
                "url": str(response.url),
                "headers": dict(response.headers),
                "redirects": redirects["count"],
            },
        )

    async def _follow_redirects(
        self,
        client: httpx.AsyncClient,
        request: FetchRequest,
        headers: Dict[str, str],
        timeout_s: float,
        redirects: Dict[str, int],
    ) -> Union[Ok, Err]:
        current_url = request.url

        while True:
            if redirects["count"] > 0 and not request.no_delay:
                await asyncio.sleep(random.uniform(*REDIRECT_DELAY_RANGE))

            step = await self._request_once(client, current_url, headers, timeout_s)
            if not isinstance(step, Redirect):
                return step

            if redirects["count"] >= request.max_redirects:
                return Err("EMAXREDIRECTS", f"Too many redirects ({request.max_redirects})")

            redirects["count"] += 1
            logger.info(
                "httpx_redirect",
                to=step.url,
                status_code=step.status_code,
                redirect_count=redirects["count"],
            )
            current_url = step.url

    async def _request_once(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        timeout_s: float,
    ) -> Step:
        try:
            response = await client.get(url, headers=headers, timeout=timeout_s)
        except httpx.TimeoutException:
            return Err("ETIMEDOUT", f"Request timeout after {int(timeout_s * 1000)}ms")
        except httpx.TransportError as e:
            code = network_error_code(e)
            return Err(code, f"Network error: {code} ({str(e) or type(e).__name__})")

        status = response.status_code
        location = response.headers.get("location")
        if 300 <= status < 400 and location:
            return Redirect(build_redirect_url(location, str(response.url)), status)

        if status >= 400:
            body = response.text
            preview = body[:ERROR_BODY_PREVIEW_CHARS]
            if len(body) > ERROR_BODY_PREVIEW_CHARS:
                preview += "..."
            return Err(
                "EHTTP",
                f"HTTP Error {status}: {response.reason_phrase}. Body: {preview}",
                status_code=status,
            )

        return Ok(response)

    async def close(self):
        """Close every pooled httpx client"""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    @property
    def name(self) -> str:
        return "httpx"
