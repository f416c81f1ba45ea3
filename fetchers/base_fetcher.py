from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from config.settings import (
    DEFAULT_CONTENT_SIZE_LIMIT,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WAIT_FOR_SELECTOR,
    DEFAULT_WAIT_FOR_TIMEOUT_MS,
)

TRANSPORT_AUTO = "auto"
TRANSPORT_HTTP = "http"
TRANSPORT_BROWSER = "browser"
TRANSPORTS = (TRANSPORT_AUTO, TRANSPORT_HTTP, TRANSPORT_BROWSER)


@dataclass
class FetchRequest:
    """Everything a caller can ask of one fetch (or one chunk resumption)"""
    url: Optional[str] = None
    transport: str = TRANSPORT_AUTO  # 'auto', 'http' or 'browser'
    headers: Dict[str, str] = field(default_factory=dict)
    proxy: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    use_system_proxy: bool = True
    no_delay: bool = False
    auto_detect: bool = True
    content_size_limit: int = DEFAULT_CONTENT_SIZE_LIMIT
    enable_chunking: bool = True
    chunk_id: Optional[str] = None
    start_cursor: int = 0
    # Browser-only options
    wait_for_selector: Optional[str] = DEFAULT_WAIT_FOR_SELECTOR
    wait_for_timeout_ms: int = DEFAULT_WAIT_FOR_TIMEOUT_MS
    scroll_to_bottom: bool = False
    save_cookies: bool = True
    close_browser_after: bool = False

    def __post_init__(self):
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport {self.transport!r}, expected one of {TRANSPORTS}")
        if self.content_size_limit <= 0:
            raise ValueError("content_size_limit must be a positive number of bytes")
        if self.start_cursor < 0:
            raise ValueError("start_cursor cannot be negative")


@dataclass
class RawResponse:
    """What a single transport produced for one fetch"""
    success: bool
    content: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None  # 'ETIMEDOUT', 'EMAXREDIRECTS', 'EHTTP', ...
    method_used: str = ""  # 'httpx', 'playwright'
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    """Caller-facing outcome of an orchestrated fetch"""
    is_error: bool
    text_content: str
    chunk_id: Optional[str] = None
    total_chunks: Optional[int] = None
    current_chunk_index: Optional[int] = None
    has_more_chunks: bool = False
    fetched_bytes: Optional[int] = None
    remaining_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    error_kind: Optional[str] = None

    @property
    def is_chunked(self) -> bool:
        return self.chunk_id is not None

    @classmethod
    def ok(cls, text: str) -> "FetchResult":
        return cls(is_error=False, text_content=text)

    @classmethod
    def failure(cls, message: str, error_kind: Optional[str] = None) -> "FetchResult":
        return cls(is_error=True, text_content=message, error_kind=error_kind)


class BaseFetcher(ABC):
    """Abstract base class for all transports"""

    @abstractmethod
    async def fetch(self, request: FetchRequest) -> RawResponse:
        """Fetch the request's URL"""
        pass

    @abstractmethod
    async def close(self):
        """Cleanup resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport identifier"""
        pass
