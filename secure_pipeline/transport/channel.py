"""
Byte channels consumed by PipelineSession.

Any object with ``read(max_bytes) -> bytes`` (``b""`` on EOF) and
``write(data) -> None`` (raising ``OSError`` on failure) can carry a
session. ``MemoryChannel`` is an in-memory duplex pair for loopback use
and tests.
"""
import threading
from collections import deque
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class ByteChannel(Protocol):
    """Duplex byte-oriented channel."""

    def read(self, max_bytes: int) -> bytes:
        ...

    def write(self, data: bytes) -> None:
        ...


class _Pipe:
    """One direction of a MemoryChannel pair."""

    def __init__(self) -> None:
        self.chunks: deque[bytes] = deque()
        self.closed = False
        self.lock = threading.Lock()


class MemoryChannel:
    """In-memory end of a duplex channel.

    Writes are queued for the peer; reads never block and return ``b""``
    when nothing is queued. Use :meth:`pair` to build connected ends.
    """

    def __init__(self, inbound: _Pipe, outbound: _Pipe):
        self._inbound = inbound
        self._outbound = outbound

    @classmethod
    def pair(cls) -> tuple["MemoryChannel", "MemoryChannel"]:
        a_to_b, b_to_a = _Pipe(), _Pipe()
        return cls(b_to_a, a_to_b), cls(a_to_b, b_to_a)

    @property
    def eof(self) -> bool:
        """True once the peer closed and every queued byte was read."""
        with self._inbound.lock:
            return self._inbound.closed and not self._inbound.chunks

    @property
    def queued(self) -> int:
        """Bytes waiting to be read on this end."""
        with self._inbound.lock:
            return sum(len(c) for c in self._inbound.chunks)

    def read(self, max_bytes: int) -> bytes:
        if max_bytes < 1:
            raise ValueError("max_bytes must be positive")
        out = bytearray()
        with self._inbound.lock:
            while self._inbound.chunks and len(out) < max_bytes:
                chunk = self._inbound.chunks.popleft()
                room = max_bytes - len(out)
                if len(chunk) > room:
                    self._inbound.chunks.appendleft(chunk[room:])
                    chunk = chunk[:room]
                out += chunk
        return bytes(out)

    def write(self, data: bytes) -> None:
        with self._outbound.lock:
            if self._outbound.closed:
                raise BrokenPipeError("MemoryChannel is closed")
            if data:
                self._outbound.chunks.append(bytes(data))

    def drain(self, max_chunks: Optional[int] = None) -> list[bytes]:
        """Remove and return queued writes as written (one item per write)."""
        items = []
        with self._inbound.lock:
            while self._inbound.chunks and (max_chunks is None or len(items) < max_chunks):
                items.append(self._inbound.chunks.popleft())
        return items

    def close(self) -> None:
        """Stop writing; the peer reads EOF after consuming queued bytes."""
        with self._outbound.lock:
            self._outbound.closed = True
