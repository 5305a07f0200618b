"""Bounded byte queue that drops its oldest chunks on overflow."""

from __future__ import annotations

from collections import deque


class DropOldestQueue:
    """
    FIFO of byte chunks bounded by their total size.

    Chunks are never split: when an append pushes the total over the limit,
    whole chunks are evicted from the front until the total fits again.
    """

    def __init__(self, max_bytes: int) -> None:
        """Initialize an empty queue holding at most ``max_bytes``."""
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")
        self._max_bytes = max_bytes
        self._chunks: deque[bytes] = deque()
        self._byte_total = 0

    @property
    def max_bytes(self) -> int:
        """Upper bound of the byte total."""
        return self._max_bytes

    @property
    def byte_total(self) -> int:
        """Sum of the sizes of all queued chunks."""
        return self._byte_total

    def __len__(self) -> int:
        """Return the number of queued chunks."""
        return len(self._chunks)

    def __bool__(self) -> bool:
        """Return True if any chunk is queued."""
        return bool(self._chunks)

    def append(self, chunk: bytes) -> int:
        """
        Queue a chunk at the back.

        Returns:
            Number of bytes evicted to stay within the limit.
        """
        if not chunk:
            return 0
        self._chunks.append(chunk)
        self._byte_total += len(chunk)
        return self._evict()

    def appendleft(self, chunk: bytes) -> int:
        """
        Put a chunk back at the front, ahead of everything queued.

        Returns:
            Number of bytes evicted to stay within the limit.
        """
        if not chunk:
            return 0
        self._chunks.appendleft(chunk)
        self._byte_total += len(chunk)
        return self._evict()

    def popleft(self) -> bytes:
        """Remove and return the oldest chunk."""
        chunk = self._chunks.popleft()
        self._byte_total -= len(chunk)
        return chunk

    def clear(self) -> None:
        """Drop every chunk."""
        self._chunks.clear()
        self._byte_total = 0

    def _evict(self) -> int:
        removed = 0
        while self._byte_total > self._max_bytes and self._chunks:
            removed += len(self.popleft())
        return removed
