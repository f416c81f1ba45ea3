"""
Failure taxonomy for fetches.

Classification is an ordered rule table: the first predicate that matches a
lower-cased error message decides the kind. Order matters, e.g. a 403 page that
mentions "timeout" is still ACCESS_DENIED.
"""
import errno
import re
import socket
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from .base_fetcher import RawResponse


class ErrorKind(str, Enum):
    ACCESS_DENIED = "access_denied"
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_CLIENT = "http_client"
    HTTP_SERVER = "http_server"
    PARSE = "parse"
    BROWSER = "browser"
    UNKNOWN = "unknown"


class FetchError(Exception):
    """Transport failure carrying an errno-style code"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class BrowserLaunchError(FetchError):
    """The shared browser process could not be started"""

    def __init__(self, message: str):
        super().__init__(message, code="EBROWSERLAUNCH")


ACCESS_DENIED_MARKERS = (
    "403",
    "forbidden",
    "access denied",
    "cloudflare",
    "captcha",
    "blocked",
    "security check",
    "bot detection",
)

NETWORK_MARKERS = (
    "network",
    "connection",
    "unreachable",
    "econnrefused",
    "econnreset",
    "enotfound",
    "socket",
    "dns",
)

TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")

PARSE_MARKERS = ("parse", "json", "syntax", "decode")

BROWSER_MARKERS = ("browser", "playwright", "chromium", "chrome", "page", "target closed")

# Message fragments that justify retrying an HTTP failure in the browser
BROWSER_REQUIRED_SIGNATURES = (
    "403",
    "forbidden",
    "access denied",
    "cloudflare",
    "captcha",
    "javascript required",
    "timeout",
    "etimedout",
    "socket",
    "econnrefused",
    "fetch failed",
)

# Markers of a bot-defense interstitial served with a 2xx status
CHALLENGE_BODY_MARKERS = (
    "checking your browser",
    "cf-challenge",
    "challenge-form",
    "<title>just a moment",
    "<title>attention required",
    "incapsula incident",
)

_STATUS_RE = re.compile(r"\b([45]\d{2})\b")


def _contains_any(markers: Tuple[str, ...]) -> Callable[[str], bool]:
    return lambda text: any(marker in text for marker in markers)


def _status_in(low: int, high: int) -> Callable[[str], bool]:
    def predicate(text: str) -> bool:
        match = _STATUS_RE.search(text)
        return bool(match) and low <= int(match.group(1)) < high
    return predicate


CLASSIFICATION_RULES: List[Tuple[Callable[[str], bool], ErrorKind]] = [
    (_contains_any(ACCESS_DENIED_MARKERS), ErrorKind.ACCESS_DENIED),
    (_contains_any(NETWORK_MARKERS), ErrorKind.NETWORK),
    (_contains_any(TIMEOUT_MARKERS), ErrorKind.TIMEOUT),
    (_status_in(400, 500), ErrorKind.HTTP_CLIENT),
    (_status_in(500, 600), ErrorKind.HTTP_SERVER),
    (_contains_any(PARSE_MARKERS), ErrorKind.PARSE),
    (_contains_any(BROWSER_MARKERS), ErrorKind.BROWSER),
]


def error_message(error: Union[str, BaseException, RawResponse, None]) -> str:
    """Flatten whatever failed into one message string"""
    if error is None:
        return ""
    if isinstance(error, RawResponse):
        return error.error or ""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def classify(error: Union[str, BaseException, RawResponse, None]) -> ErrorKind:
    """Map a raw error or failed response onto an ErrorKind"""
    text = error_message(error).lower()
    if not text:
        return ErrorKind.UNKNOWN

    for predicate, kind in CLASSIFICATION_RULES:
        if predicate(text):
            return kind
    return ErrorKind.UNKNOWN


def requires_browser(error: Union[str, BaseException, RawResponse, None]) -> bool:
    """Whether a failure looks like something a real browser could get past"""
    if isinstance(error, RawResponse) and error.status_code == 403:
        return True
    text = error_message(error).lower()
    return any(signature in text for signature in BROWSER_REQUIRED_SIGNATURES)


def looks_like_challenge(content: Optional[str]) -> bool:
    """Detect a bot-defense interstitial that came back with a success status"""
    if not content:
        return False
    head = content[:20000].lower()
    return any(marker in head for marker in CHALLENGE_BODY_MARKERS)


def network_error_code(exc: BaseException) -> str:
    """
    Recover an errno-style code from an httpx transport exception.

    httpx wraps the underlying OSError, so walk the cause chain first and fall
    back to sniffing the message.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return "ENOTFOUND"
        if isinstance(current, ConnectionRefusedError):
            return "ECONNREFUSED"
        if isinstance(current, ConnectionResetError):
            return "ECONNRESET"
        if isinstance(current, OSError) and current.errno is not None:
            if current.errno == errno.ECONNREFUSED:
                return "ECONNREFUSED"
            if current.errno == errno.ECONNRESET:
                return "ECONNRESET"
        current = current.__cause__ or current.__context__

    text = str(exc).lower()
    if "name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text:
        return "ENOTFOUND"
    if "refused" in text:
        return "ECONNREFUSED"
    if "reset" in text:
        return "ECONNRESET"
    return "ENETWORK"
