"""Bounded-size delivery of fetched bodies: pass through, chunk, or truncate"""
import math

import structlog

from .base_fetcher import FetchResult
from .chunk_store import ChunkRetrieval, ChunkStore, truncate_utf8
from .errors import ErrorKind

logger = structlog.get_logger()

SYSTEM_NOTE_START = "=== SYSTEM NOTE ==="
SYSTEM_NOTE_END = "==================="


def has_system_note(text: str) -> bool:
    return SYSTEM_NOTE_START in text and SYSTEM_NOTE_END in text


def chunk_note(
    fetched_bytes: int,
    total_bytes: int,
    chunk_id: str,
    remaining_bytes: int,
    size_limit: int,
    is_first_request: bool,
) -> str:
    """Resumption instructions appended to a non-final slice"""
    prefix = "Content is too long and has been split. " if is_first_request else ""
    percent = round(fetched_bytes / total_bytes * 100) if total_bytes else 100
    estimated_requests = math.ceil(remaining_bytes / size_limit) if size_limit else 0
    return (
        f"\n\n{SYSTEM_NOTE_START}\n"
        f"{prefix}You've retrieved {fetched_bytes:,} bytes ({percent}% of total {total_bytes:,} bytes). "
        f"{remaining_bytes:,} bytes remaining. With current contentSizeLimit={size_limit:,}, "
        f"approximately {estimated_requests} more requests needed to retrieve all content. "
        f'To continue, use the same tool function with parameters chunkId="{chunk_id}" '
        f"and startCursor={fetched_bytes}.\n"
        f"{SYSTEM_NOTE_END}"
    )


def last_chunk_note(fetched_bytes: int, total_bytes: int, is_first_request: bool) -> str:
    prefix = "Content is too long and has been split. " if is_first_request else ""
    return (
        f"\n\n{SYSTEM_NOTE_START}\n"
        f"{prefix}You've retrieved {fetched_bytes:,} bytes (100% of total {total_bytes:,} bytes).\n"
        f"This is the last part of the content.\n"
        f"{SYSTEM_NOTE_END}"
    )


def truncation_note(original_bytes: int, size_limit: int) -> str:
    return (
        f"\n\n{SYSTEM_NOTE_START}\n"
        f"Content was too large ({original_bytes:,} bytes) and has been truncated to {size_limit:,} bytes. "
        f"Enable content splitting to view the full content.\n"
        f"{SYSTEM_NOTE_END}"
    )


def _chunked_result(chunk_id: str, retrieval: ChunkRetrieval, size_limit: int, is_first_request: bool) -> FetchResult:
    result = FetchResult(
        is_error=False,
        text_content=retrieval.content,
        chunk_id=chunk_id,
        total_chunks=retrieval.total_chunks,
        current_chunk_index=retrieval.chunk_index,
        has_more_chunks=not retrieval.is_last_chunk,
        fetched_bytes=retrieval.fetched_bytes,
        remaining_bytes=retrieval.remaining_bytes,
        total_bytes=retrieval.total_bytes,
    )
    return add_chunk_note(result, size_limit, is_first_request)


def add_chunk_note(result: FetchResult, size_limit: int, is_first_request: bool = False) -> FetchResult:
    """Append the resumption (or last-part) note unless one is already present"""
    if not result.is_chunked or result.is_error:
        return result
    if has_system_note(result.text_content):
        return result

    if result.has_more_chunks:
        note = chunk_note(
            result.fetched_bytes,
            result.total_bytes,
            result.chunk_id,
            result.remaining_bytes,
            size_limit,
            is_first_request,
        )
    else:
        note = last_chunk_note(result.fetched_bytes, result.total_bytes, is_first_request)

    result.text_content = result.text_content + note
    return result


def deliver(text: str, size_limit: int, enable_chunking: bool, store: ChunkStore) -> FetchResult:
    """
    Fit a freshly fetched body into the caller's size limit.

    Bodies within the limit pass through untouched. Oversized ones are stored
    and their first slice returned when chunking is enabled, otherwise they are
    hard-truncated and no chunk ID is issued.
    """
    total_bytes = len(text.encode("utf-8"))
    if total_bytes <= size_limit:
        return FetchResult.ok(text)

    if not enable_chunking:
        logger.info("content_truncated", original_bytes=total_bytes, size_limit=size_limit)
        return FetchResult.ok(truncate_utf8(text, size_limit) + truncation_note(total_bytes, size_limit))

    logger.info("content_too_large_chunking", size=total_bytes, size_limit=size_limit)
    chunk_id = store.store(text, size_limit)
    retrieval = store.retrieve(chunk_id, 0, size_limit)
    if retrieval is None:
        return FetchResult.failure("Failed to retrieve chunk content", ErrorKind.UNKNOWN.value)
    return _chunked_result(chunk_id, retrieval, size_limit, is_first_request=True)


def resume(chunk_id: str, start_cursor: int, size_limit: int, store: ChunkStore) -> FetchResult:
    """Serve the next slice of a previously chunked body"""
    retrieval = store.retrieve(chunk_id, start_cursor, size_limit)
    if retrieval is None:
        return FetchResult.failure(
            f"Chunk with ID {chunk_id} at cursor position {start_cursor} not found "
            f"(it may have expired; fetch the URL again)",
            ErrorKind.UNKNOWN.value,
        )

    logger.info(
        "chunk_served",
        chunk_id=chunk_id,
        fetched_bytes=retrieval.fetched_bytes,
        total_bytes=retrieval.total_bytes,
        is_last_chunk=retrieval.is_last_chunk,
    )
    return _chunked_result(chunk_id, retrieval, size_limit, is_first_request=start_cursor == 0)
