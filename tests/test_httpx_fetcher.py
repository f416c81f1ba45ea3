"""Tests for the plain HTTP transport using httpx.MockTransport."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from config.user_agents import USER_AGENTS
from fetchers.base_fetcher import FetchRequest
from fetchers.httpx_fetcher import HttpxFetcher, build_redirect_url
from conftest import no_proxy


def make_fetcher(handler):
    return HttpxFetcher(transport=httpx.MockTransport(handler), proxy_resolver=no_proxy)


class TestSuccess:
    @pytest.mark.asyncio
    async def test_plain_200(self):
        fetcher = make_fetcher(lambda request: httpx.Response(200, text="<html>hi</html>"))
        result = await fetcher.fetch(FetchRequest(url="https://example.com/"))
        await fetcher.close()

        assert result.success
        assert result.content == "<html>hi</html>"
        assert result.status_code == 200
        assert result.method_used == "httpx"
        assert result.metadata["redirects"] == 0

    @pytest.mark.asyncio
    async def test_random_user_agent_added(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            return httpx.Response(200, text="ok")

        fetcher = make_fetcher(handler)
        await fetcher.fetch(FetchRequest(url="https://example.com/"))
        assert seen["ua"] in USER_AGENTS

    @pytest.mark.asyncio
    async def test_caller_user_agent_kept(self):
        seen = {}

        def handler(request):
            seen["ua"] = request.headers.get("user-agent")
            seen["x"] = request.headers.get("x-custom")
            return httpx.Response(200, text="ok")

        fetcher = make_fetcher(handler)
        await fetcher.fetch(
            FetchRequest(url="https://example.com/", headers={"user-agent": "MyBot/1.0", "X-Custom": "1"})
        )
        assert seen == {"ua": "MyBot/1.0", "x": "1"}


class TestRedirects:
    @pytest.mark.asyncio
    async def test_relative_redirect_followed(self):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"Location": "/new"})
            return httpx.Response(200, text="moved here")

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch(FetchRequest(url="https://example.com/old", no_delay=True))

        assert result.success
        assert result.content == "moved here"
        assert result.metadata["url"] == "https://example.com/new"
        assert result.metadata["redirects"] == 1

    @pytest.mark.asyncio
    async def test_redirect_bound(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(302, headers={"Location": f"/hop{len(calls)}"})

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch(FetchRequest(url="https://example.com/", max_redirects=3, no_delay=True))

        assert not result.success
        assert result.error_code == "EMAXREDIRECTS"
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_delay_between_hops_unless_disabled(self):
        def handler(request):
            if request.url.path == "/":
                return httpx.Response(302, headers={"Location": "/done"})
            return httpx.Response(200, text="ok")

        fetcher = make_fetcher(handler)
        with patch("fetchers.httpx_fetcher.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await fetcher.fetch(FetchRequest(url="https://example.com/"))
            delay = mock_sleep.await_args.args[0]
            assert 0.5 <= delay <= 3.0

            mock_sleep.reset_mock()
            await fetcher.fetch(FetchRequest(url="https://example.com/", no_delay=True))
            mock_sleep.assert_not_awaited()

    def test_build_redirect_url(self):
        assert build_redirect_url("https://other.org/x", "https://example.com/a") == "https://other.org/x"
        assert build_redirect_url("/b", "https://example.com/a/c") == "https://example.com/b"
        assert build_redirect_url("d", "https://example.com/a/c") == "https://example.com/a/d"


class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error_with_preview(self):
        body = "z" * 500
        fetcher = make_fetcher(lambda request: httpx.Response(404, text=body))
        result = await fetcher.fetch(FetchRequest(url="https://example.com/missing"))

        assert not result.success
        assert result.status_code == 404
        assert result.error_code == "EHTTP"
        assert result.error == f"HTTP Error 404: Not Found. Body: {'z' * 200}..."

    @pytest.mark.asyncio
    async def test_403_status_kept(self):
        fetcher = make_fetcher(lambda request: httpx.Response(403, text="denied"))
        result = await fetcher.fetch(FetchRequest(url="https://example.com/"))
        assert result.status_code == 403
        assert result.error.startswith("HTTP Error 403: Forbidden")

    @pytest.mark.asyncio
    async def test_whole_call_deadline(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, text="late")

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch(FetchRequest(url="https://example.com/", timeout_ms=50))

        assert not result.success
        assert result.error_code == "ETIMEDOUT"
        assert result.error == "Request timeout after 50ms"

    @pytest.mark.asyncio
    async def test_httpx_timeout_maps_to_etimedout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch(FetchRequest(url="https://example.com/"))
        assert result.error_code == "ETIMEDOUT"

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch(FetchRequest(url="http://127.0.0.1:1/"))

        assert not result.success
        assert result.error_code == "ECONNREFUSED"
        assert result.error.startswith("Network error: ECONNREFUSED")


class TestProxyClients:
    @pytest.mark.asyncio
    async def test_one_client_per_proxy(self):
        fetcher = HttpxFetcher(proxy_resolver=no_proxy)
        direct = await fetcher._ensure_client(None)
        assert await fetcher._ensure_client(None) is direct
        proxied = await fetcher._ensure_client("http://proxy.local:8080")
        assert proxied is not direct
        await fetcher.close()
        assert fetcher._clients == {}

    @pytest.mark.asyncio
    async def test_resolver_receives_request_settings(self):
        calls = []

        async def resolver(explicit, use_system, url=None):
            calls.append((explicit, use_system, url))
            return None

        fetcher = HttpxFetcher(
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
            proxy_resolver=resolver,
        )
        await fetcher.fetch(FetchRequest(url="https://example.com/", proxy="http://p:1", use_system_proxy=False))
        assert calls == [("http://p:1", False, "https://example.com/")]
