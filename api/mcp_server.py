"""
FastMCP Server for adaptive web fetching
Exposes the hybrid HTTP/browser fetcher as MCP tools for AI agents (Claude, ChatGPT, etc.)
"""
import json
from typing import Dict, Optional

import structlog
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from config.log_setup import configure_logging
from config.settings import (
    DEFAULT_CONTENT_SIZE_LIMIT,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WAIT_FOR_SELECTOR,
    DEFAULT_WAIT_FOR_TIMEOUT_MS,
)
from fetchers import FetchRequest, HybridFetcher
from fetchers.base_fetcher import TRANSPORT_AUTO, TRANSPORT_BROWSER
from fetchers.playwright_fetcher import BROWSER_CLOSED_MESSAGE

logger = structlog.get_logger()

mcp = FastMCP("adaptive-fetch-mcp", json_response=True)

_orchestrator: Optional[HybridFetcher] = None

# === Helper Functions ===

def get_orchestrator() -> HybridFetcher:
    """Shared orchestrator so chunk IDs and the browser survive across tool calls"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = HybridFetcher()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[HybridFetcher]):
    global _orchestrator
    _orchestrator = orchestrator


def build_request(
    url: Optional[str] = None,
    chunkId: Optional[str] = None,
    startCursor: int = 0,
    headers: Optional[Dict[str, str]] = None,
    proxy: Optional[str] = None,
    noDelay: bool = False,
    timeout: int = DEFAULT_TIMEOUT_MS,
    maxRedirects: int = DEFAULT_MAX_REDIRECTS,
    useSystemProxy: bool = True,
    useBrowser: bool = False,
    autoDetectMode: bool = True,
    waitForSelector: Optional[str] = DEFAULT_WAIT_FOR_SELECTOR,
    waitForTimeout: int = DEFAULT_WAIT_FOR_TIMEOUT_MS,
    scrollToBottom: bool = False,
    saveCookies: bool = True,
    closeBrowser: bool = False,
    contentSizeLimit: int = DEFAULT_CONTENT_SIZE_LIMIT,
    enableContentSplitting: bool = True,
) -> FetchRequest:
    """Translate the tool's camelCase arguments into a FetchRequest"""
    return FetchRequest(
        url=url,
        transport=TRANSPORT_BROWSER if useBrowser else TRANSPORT_AUTO,
        headers=dict(headers or {}),
        proxy=proxy,
        timeout_ms=timeout,
        max_redirects=maxRedirects,
        use_system_proxy=useSystemProxy,
        no_delay=noDelay,
        auto_detect=autoDetectMode,
        content_size_limit=contentSizeLimit,
        enable_chunking=enableContentSplitting,
        chunk_id=chunkId,
        start_cursor=startCursor,
        wait_for_selector=waitForSelector,
        wait_for_timeout_ms=waitForTimeout,
        scroll_to_bottom=scrollToBottom,
        save_cookies=saveCookies,
        close_browser_after=closeBrowser,
    )


async def run_fetch(output: str, request: FetchRequest) -> str:
    """Execute a fetch; error results become MCP tool errors"""
    result = await get_orchestrator().execute(request, output)
    if result.is_error:
        raise ToolError(result.text_content)
    return result.text_content


def _make_fetch_tool(output: str):
    async def fetch_tool(
        url: Optional[str] = None,
        chunkId: Optional[str] = None,
        startCursor: int = 0,
        headers: Optional[Dict[str, str]] = None,
        proxy: Optional[str] = None,
        noDelay: bool = False,
        timeout: int = DEFAULT_TIMEOUT_MS,
        maxRedirects: int = DEFAULT_MAX_REDIRECTS,
        useSystemProxy: bool = True,
        useBrowser: bool = False,
        autoDetectMode: bool = True,
        waitForSelector: Optional[str] = DEFAULT_WAIT_FOR_SELECTOR,
        waitForTimeout: int = DEFAULT_WAIT_FOR_TIMEOUT_MS,
        scrollToBottom: bool = False,
        saveCookies: bool = True,
        closeBrowser: bool = False,
        contentSizeLimit: int = DEFAULT_CONTENT_SIZE_LIMIT,
        enableContentSplitting: bool = True,
    ) -> str:
        request = build_request(
            url=url,
            chunkId=chunkId,
            startCursor=startCursor,
            headers=headers,
            proxy=proxy,
            noDelay=noDelay,
            timeout=timeout,
            maxRedirects=maxRedirects,
            useSystemProxy=useSystemProxy,
            useBrowser=useBrowser,
            autoDetectMode=autoDetectMode,
            waitForSelector=waitForSelector,
            waitForTimeout=waitForTimeout,
            scrollToBottom=scrollToBottom,
            saveCookies=saveCookies,
            closeBrowser=closeBrowser,
            contentSizeLimit=contentSizeLimit,
            enableContentSplitting=enableContentSplitting,
        )
        return await run_fetch(output, request)

    return fetch_tool


_SHARED_ARGS_DOC = """
    Args:
        url: URL to fetch. Optional when chunkId is given.
        chunkId: ID from a previous split response; serves the next part without refetching.
        startCursor: Byte offset to resume from (the fetchedBytes of the previous part).
        headers: Extra request headers.
        proxy: Proxy URL; overrides environment proxies.
        noDelay: Skip the random pause between redirect hops.
        timeout: Whole-request timeout in milliseconds.
        maxRedirects: Redirect hops allowed before failing.
        useSystemProxy: Honour HTTP_PROXY / HTTPS_PROXY style settings.
        useBrowser: Fetch with the headless browser straight away.
        autoDetectMode: Retry once in the browser when plain HTTP looks blocked.
        waitForSelector: Browser only, CSS selector to wait for.
        waitForTimeout: Browser only, extra settle time in milliseconds.
        scrollToBottom: Browser only, scroll down to trigger lazy loading.
        saveCookies: Browser only, keep cookies per domain between calls.
        closeBrowser: Close the browser when done.
        contentSizeLimit: Maximum bytes per response.
        enableContentSplitting: Split oversized content into retrievable parts instead of truncating.
"""

_TOOLS = [
    ("fetch_html", "html", "Fetch a website and return its raw HTML."),
    ("fetch_json", "json", "Fetch a JSON document and return it after validating it parses."),
    ("fetch_txt", "txt", "Fetch a website and return the raw response text."),
    ("fetch_markdown", "markdown", "Fetch a website and return its content converted to Markdown."),
    ("fetch_plaintext", "plaintext", "Fetch a website and return its readable text with markup removed."),
]

# === Core Tools ===

for _name, _output, _summary in _TOOLS:
    mcp.tool(name=_name, description=_summary + "\n" + _SHARED_ARGS_DOC)(_make_fetch_tool(_output))


@mcp.tool()
async def close_browser() -> str:
    """
    Close the shared headless browser.

    It is started again automatically by the next browser fetch.
    """
    await get_orchestrator().close_browser()
    return BROWSER_CLOSED_MESSAGE


# === Resources ===

@mcp.resource("fetcher://status")
def get_fetcher_status() -> str:
    """Browser state, live chunk records and remembered cookie domains"""
    orchestrator = get_orchestrator()
    session = orchestrator.session
    return json.dumps({
        "browser_state": session.state if session else "unavailable",
        "browser_launches": session.launch_count if session else 0,
        "cookie_domains": len(session.cookie_jar) if session else 0,
        "stored_chunks": len(orchestrator.chunk_store),
    })


# === Run Server ===

def main():
    configure_logging()
    logger.info("mcp_server_starting", name=mcp.name)
    mcp.run()


if __name__ == "__main__":
    main()
