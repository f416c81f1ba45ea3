"""Fetching layer with hybrid strategy"""

from .base_fetcher import BaseFetcher, FetchRequest, FetchResult, RawResponse
from .browser_session import BrowserSession
from .chunk_store import ChunkStore
from .errors import BrowserLaunchError, ErrorKind, FetchError, classify
from .httpx_fetcher import HttpxFetcher
from .playwright_fetcher import PlaywrightFetcher
from .hybrid_fetcher import HybridFetcher
from .proxy import resolve_proxy

__all__ = [
    'BaseFetcher',
    'BrowserLaunchError',
    'BrowserSession',
    'ChunkStore',
    'ErrorKind',
    'FetchError',
    'FetchRequest',
    'FetchResult',
    'HttpxFetcher',
    'HybridFetcher',
    'PlaywrightFetcher',
    'RawResponse',
    'classify',
    'resolve_proxy',
]
