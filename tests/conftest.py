"""Shared fixtures and in-memory browser doubles."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fetchers.base_fetcher import BaseFetcher
from fetchers.browser_session import BrowserSession
from fetchers.page_operations import CHALLENGE_CHECK_SCRIPT


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakeMouse:
    def __init__(self):
        self.move = AsyncMock()
        self.click = AsyncMock()


class FakePage:
    """Just enough of playwright's Page for the fetch path."""

    def __init__(self, html="<html><body>ok</body></html>", status=200, cookie="", challenge_states=None):
        self.html = html
        self.status = status
        self.cookie = cookie
        self.challenge_states = list(challenge_states or [])
        self.goto_errors = []
        self.selector_error = None
        self.url = "about:blank"
        self.mouse = FakeMouse()
        self.extra_headers = {}
        self.default_timeout = None
        self.evaluated = []
        self.goto_calls = []
        self.load_state_calls = []
        self.closed = False

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def set_extra_http_headers(self, headers):
        self.extra_headers = dict(headers)

    async def goto(self, url, wait_until=None, timeout=None):
        self.goto_calls.append((url, wait_until, timeout))
        if self.goto_errors:
            raise self.goto_errors.pop(0)
        self.url = url
        return FakeResponse(self.status)

    async def evaluate(self, script):
        self.evaluated.append(script)
        if script == CHALLENGE_CHECK_SCRIPT:
            return self.challenge_states.pop(0) if self.challenge_states else False
        if "document.cookie" in script:
            return self.cookie
        return None

    async def wait_for_selector(self, selector, timeout=None):
        if self.selector_error:
            raise self.selector_error

    async def wait_for_load_state(self, state=None, timeout=None):
        self.load_state_calls.append((state, timeout))

    async def content(self):
        return self.html

    async def title(self):
        return "Fake page"

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page, options):
        self.page = page
        self.options = options
        self.init_scripts = []
        self.closed = False

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory=FakePage):
        self.page_factory = page_factory
        self.contexts = []
        self.handlers = {}
        self.connected = True
        self.closed = False

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self.page_factory(), options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False

    def crash(self):
        self.connected = False
        for handler in self.handlers.get("disconnected", []):
            handler(self)


class FakeDriver:
    def __init__(self):
        self.stopped = False

    async def stop(self):
        self.stopped = True


class FakeLauncher:
    """Stands in for launch_chromium; counts launches."""

    def __init__(self, page_factory=FakePage, delay: float = 0.0, error: Exception = None):
        self.page_factory = page_factory
        self.delay = delay
        self.error = error
        self.calls = 0
        self.browsers = []
        self.drivers = []

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        browser = FakeBrowser(self.page_factory)
        driver = FakeDriver()
        self.browsers.append(browser)
        self.drivers.append(driver)
        return driver, browser


class StubFetcher(BaseFetcher):
    """Returns (or raises) queued outcomes and records every request."""

    def __init__(self, name, *outcomes):
        self._name = name
        self.outcomes = list(outcomes)
        self.requests = []
        self.closed = False

    async def fetch(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True

    @property
    def name(self):
        return self._name


async def no_proxy(*args, **kwargs):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def session(launcher):
    return BrowserSession(launcher=launcher)
