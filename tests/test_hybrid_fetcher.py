"""Tests for the orchestrator: transport selection, fallback, rendering and chunking."""

import pytest

from fetchers.base_fetcher import FetchRequest, RawResponse
from fetchers.chunk_store import ChunkStore
from fetchers.errors import BrowserLaunchError, ErrorKind
from fetchers.hybrid_fetcher import HybridFetcher
from conftest import StubFetcher


def ok(content, method="httpx"):
    return RawResponse(success=True, content=content, status_code=200, method_used=method)


def http_error(status, reason):
    return RawResponse(
        success=False,
        status_code=status,
        error=f"HTTP Error {status}: {reason}. Body: ",
        error_code="EHTTP",
        method_used="httpx",
    )


def make(http_outcomes=(), browser_outcomes=(), store=None):
    http = StubFetcher("httpx", *http_outcomes)
    browser = StubFetcher("playwright", *browser_outcomes)
    return HybridFetcher(http_fetcher=http, browser_fetcher=browser, chunk_store=store or ChunkStore()), http, browser


class TestTransportSelection:
    @pytest.mark.asyncio
    async def test_auto_starts_with_http(self):
        fetcher, http, browser = make([ok("<p>hi</p>")])
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert not result.is_error
        assert result.text_content == "<p>hi</p>"
        assert len(http.requests) == 1
        assert browser.requests == []

    @pytest.mark.asyncio
    async def test_explicit_browser(self):
        fetcher, http, browser = make(browser_outcomes=[ok("<p>js</p>", "playwright")])
        result = await fetcher.html(FetchRequest(url="https://example.com/", transport="browser"))

        assert result.text_content == "<p>js</p>"
        assert http.requests == []
        assert browser.requests[0].close_browser_after is False


class TestFallback:
    @pytest.mark.asyncio
    async def test_403_falls_back_exactly_once(self):
        fetcher, http, browser = make(
            [http_error(403, "Forbidden")],
            [ok("<html>real page</html>", "playwright")],
        )
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert not result.is_error
        assert result.text_content == "<html>real page</html>"
        assert len(http.requests) == 1
        assert len(browser.requests) == 1
        retried = browser.requests[0]
        assert retried.transport == "browser"
        assert retried.close_browser_after is True
        assert retried.url == "https://example.com/"

    @pytest.mark.asyncio
    async def test_browser_failure_after_fallback_is_final(self):
        fetcher, http, browser = make(
            [http_error(403, "Forbidden")],
            [RawResponse(success=False, error="Error fetching https://example.com/: Timeout 30000ms exceeded",
                         error_code="ETIMEDOUT", method_used="playwright")],
        )
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert result.is_error
        assert result.error_kind == ErrorKind.TIMEOUT.value
        assert len(browser.requests) == 1

    @pytest.mark.asyncio
    async def test_no_fallback_when_pinned_to_http(self):
        fetcher, http, browser = make([http_error(403, "Forbidden")])
        result = await fetcher.html(FetchRequest(url="https://example.com/", transport="http"))

        assert result.is_error
        assert result.text_content == "HTTP Error 403: Forbidden. Body: "
        assert result.error_kind == ErrorKind.ACCESS_DENIED.value
        assert browser.requests == []

    @pytest.mark.asyncio
    async def test_no_fallback_when_detection_disabled(self):
        fetcher, http, browser = make([http_error(403, "Forbidden")])
        result = await fetcher.html(FetchRequest(url="https://example.com/", auto_detect=False))

        assert result.is_error
        assert browser.requests == []

    @pytest.mark.asyncio
    async def test_no_fallback_for_plain_404(self):
        fetcher, http, browser = make([http_error(404, "Not Found")])
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert result.is_error
        assert result.error_kind == ErrorKind.HTTP_CLIENT.value
        assert browser.requests == []

    @pytest.mark.asyncio
    async def test_challenge_body_with_200_falls_back(self):
        challenge = "<html><head><title>Just a moment...</title></head><body>Checking your browser</body></html>"
        fetcher, http, browser = make([ok(challenge)], [ok("<html>content</html>", "playwright")])
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert result.text_content == "<html>content</html>"
        assert len(browser.requests) == 1

    @pytest.mark.asyncio
    async def test_raised_transport_error_falls_back(self):
        fetcher, http, browser = make(
            [ConnectionError("socket hang up")],
            [ok("<html>ok</html>", "playwright")],
        )
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert not result.is_error
        assert len(browser.requests) == 1

    @pytest.mark.asyncio
    async def test_browser_launch_error_becomes_result(self):
        fetcher, http, browser = make(
            [http_error(403, "Forbidden")],
            [BrowserLaunchError("Failed to launch browser: missing executable")],
        )
        result = await fetcher.html(FetchRequest(url="https://example.com/"))

        assert result.is_error
        assert "Failed to launch browser" in result.text_content
        assert result.error_kind == ErrorKind.BROWSER.value


class TestOutputs:
    @pytest.mark.asyncio
    async def test_json_success(self):
        fetcher, _, _ = make([ok('{"a": 1}')])
        result = await fetcher.json(FetchRequest(url="https://api.example.com/"))
        assert result.text_content == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_json_parse_failure(self):
        body = "<html>" + "n" * 150
        fetcher, _, _ = make([ok(body)])
        result = await fetcher.json(FetchRequest(url="https://api.example.com/"))

        assert result.is_error
        assert result.error_kind == ErrorKind.PARSE.value
        assert f'Text preview: "{body[:100]}...", length: {len(body)}' in result.text_content

    @pytest.mark.asyncio
    async def test_json_from_browser_pre_wrapper(self):
        wrapped = '<html><head></head><body><pre>{"b": 2}</pre></body></html>'
        fetcher, _, _ = make(browser_outcomes=[ok(wrapped, "playwright")])
        result = await fetcher.json(FetchRequest(url="https://api.example.com/", transport="browser"))
        assert result.text_content == '{"b": 2}'

    @pytest.mark.asyncio
    async def test_markdown_and_plaintext(self):
        page = "<html><body><h2>Heading</h2><p>Body text</p><script>x()</script></body></html>"
        fetcher, _, _ = make([ok(page), ok(page)])

        markdown = await fetcher.markdown(FetchRequest(url="https://example.com/"))
        plaintext = await fetcher.plaintext(FetchRequest(url="https://example.com/"))

        assert "## Heading" in markdown.text_content
        assert plaintext.text_content.split() == ["Heading", "Body", "text"]

    @pytest.mark.asyncio
    async def test_txt_is_raw(self):
        fetcher, _, _ = make([ok("line one\nline two")])
        result = await fetcher.txt(FetchRequest(url="https://example.com/robots.txt"))
        assert result.text_content == "line one\nline two"


class TestChunking:
    @pytest.mark.asyncio
    async def test_oversized_body_then_resume_without_refetch(self):
        store = ChunkStore()
        fetcher, http, browser = make([ok("a" * 130000)], store=store)

        first = await fetcher.html(FetchRequest(url="https://example.com/big", content_size_limit=50000))
        assert first.is_chunked
        assert first.has_more_chunks

        second = await fetcher.html(
            FetchRequest(chunk_id=first.chunk_id, start_cursor=first.fetched_bytes, content_size_limit=50000)
        )
        third = await fetcher.html(
            FetchRequest(chunk_id=first.chunk_id, start_cursor=second.fetched_bytes, content_size_limit=50000)
        )

        assert len(http.requests) == 1
        assert second.fetched_bytes == 100000
        assert third.has_more_chunks is False
        assert third.fetched_bytes == 130000

    @pytest.mark.asyncio
    async def test_truncation_when_splitting_disabled(self):
        fetcher, _, _ = make([ok("b" * 1000)])
        result = await fetcher.html(
            FetchRequest(url="https://example.com/", content_size_limit=100, enable_chunking=False)
        )
        assert result.text_content.startswith("b" * 100 + "\n\n=== SYSTEM NOTE ===")
        assert result.chunk_id is None

    @pytest.mark.asyncio
    async def test_unknown_chunk(self):
        fetcher, http, _ = make()
        result = await fetcher.html(FetchRequest(chunk_id="nope"))
        assert result.is_error
        assert http.requests == []

    @pytest.mark.asyncio
    async def test_missing_url(self):
        fetcher, _, _ = make()
        result = await fetcher.html(FetchRequest())
        assert result.is_error


@pytest.mark.asyncio
async def test_close_closes_both_transports():
    fetcher, http, browser = make()
    await fetcher.close()
    assert http.closed and browser.closed


@pytest.mark.parametrize(
    "kwargs",
    [{"transport": "ftp"}, {"content_size_limit": 0}, {"start_cursor": -5}],
)
def test_request_validation(kwargs):
    with pytest.raises(ValueError):
        FetchRequest(url="https://example.com/", **kwargs)
