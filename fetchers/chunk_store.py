"""
In-memory store for oversized fetch bodies.

Bodies are kept as UTF-8 byte slices so callers can resume retrieval from any
byte cursor. Records live for a fixed TTL; expired ones are swept lazily before
each new store.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import structlog

from config.settings import CHUNK_TTL_SECONDS

logger = structlog.get_logger()


def _is_continuation(byte: int) -> bool:
    return (byte & 0xC0) == 0x80


def char_boundary_before(data: bytes, index: int) -> int:
    """Largest offset <= index that does not fall inside a UTF-8 sequence"""
    index = max(0, min(index, len(data)))
    while 0 < index < len(data) and _is_continuation(data[index]):
        index -= 1
    return index


def char_boundary_after(data: bytes, index: int) -> int:
    """Smallest offset >= index that does not fall inside a UTF-8 sequence"""
    index = max(0, min(index, len(data)))
    while index < len(data) and _is_continuation(data[index]):
        index += 1
    return index


def split_bytes(data: bytes, size_limit: int) -> List[bytes]:
    """
    Split UTF-8 bytes into slices of at most size_limit bytes.

    A slice never ends inside a multi-byte character. A single character wider
    than size_limit becomes a slice of its own.
    """
    if size_limit <= 0:
        raise ValueError("size_limit must be positive")

    slices = []
    start = 0
    while start < len(data):
        end = char_boundary_before(data, start + size_limit)
        if end <= start:
            end = char_boundary_after(data, start + 1)
        slices.append(data[start:end])
        start = end
    return slices


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut text to at most max_bytes of UTF-8 without splitting a character"""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    return data[:char_boundary_before(data, max_bytes)].decode("utf-8")


@dataclass
class ChunkRecord:
    id: str
    slices: List[bytes]
    slice_sizes: List[int]
    total_bytes: int
    created_at: float
    expires_at: float
    offsets: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.offsets:
            position = 0
            for size in self.slice_sizes:
                self.offsets.append(position)
                position += size

    def slice_index_at(self, cursor: int) -> int:
        """Index of the slice holding byte `cursor`"""
        index = 0
        for i, offset in enumerate(self.offsets):
            if offset <= cursor:
                index = i
            else:
                break
        return index


@dataclass
class ChunkRetrieval:
    content: str
    fetched_bytes: int
    remaining_bytes: int
    is_last_chunk: bool
    total_bytes: int
    chunk_index: int
    total_chunks: int


class ChunkStore:
    """Holds split bodies keyed by an opaque ID, with cursor-based retrieval"""

    def __init__(self, ttl_seconds: float = CHUNK_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, ChunkRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._records

    def store(self, text: str, size_limit: int) -> str:
        """Split text into byte-bounded slices and return the new chunk ID"""
        self.sweep_expired()

        data = text.encode("utf-8")
        slices = split_bytes(data, size_limit)
        now = self._clock()
        chunk_id = str(uuid.uuid4())

        self._records[chunk_id] = ChunkRecord(
            id=chunk_id,
            slices=slices,
            slice_sizes=[len(s) for s in slices],
            total_bytes=len(data),
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )

        logger.info(
            "chunks_stored",
            chunk_id=chunk_id,
            total_chunks=len(slices),
            total_bytes=len(data),
        )
        return chunk_id

    def get(self, chunk_id: str) -> Optional[ChunkRecord]:
        record = self._records.get(chunk_id)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            return None
        return record

    def retrieve(self, chunk_id: str, start_cursor: int, size_limit: int) -> Optional[ChunkRetrieval]:
        """
        Return up to size_limit bytes starting at start_cursor.

        Returns None when the ID is unknown or expired, or the cursor lies
        outside [0, total_bytes). A cursor that lands inside a multi-byte
        character is moved back to the start of that character.
        """
        record = self.get(chunk_id)
        if record is None:
            logger.warning("chunk_not_found", chunk_id=chunk_id)
            return None

        if start_cursor < 0 or start_cursor >= record.total_bytes:
            logger.warning(
                "chunk_cursor_out_of_range",
                chunk_id=chunk_id,
                start_cursor=start_cursor,
                total_bytes=record.total_bytes,
            )
            return None
        if size_limit <= 0:
            return None

        first = record.slice_index_at(start_cursor)
        last = record.slice_index_at(min(start_cursor + size_limit, record.total_bytes) - 1)
        window = b"".join(record.slices[first:last + 1])
        base = record.offsets[first]

        relative_start = char_boundary_before(window, start_cursor - base)
        relative_end = char_boundary_before(window, relative_start + size_limit)
        if relative_end <= relative_start:
            relative_end = char_boundary_after(window, relative_start + 1)

        piece = window[relative_start:relative_end]
        fetched = base + relative_end
        remaining = record.total_bytes - fetched

        return ChunkRetrieval(
            content=piece.decode("utf-8"),
            fetched_bytes=fetched,
            remaining_bytes=remaining,
            is_last_chunk=remaining == 0,
            total_bytes=record.total_bytes,
            chunk_index=first,
            total_chunks=len(record.slices),
        )

    def sweep_expired(self) -> int:
        """Drop expired records, returning how many were removed"""
        now = self._clock()
        expired = [chunk_id for chunk_id, record in self._records.items() if record.expires_at <= now]
        for chunk_id in expired:
            del self._records[chunk_id]

        if expired:
            logger.info("chunks_expired", expired_count=len(expired), remaining=len(self._records))
        return len(expired)
