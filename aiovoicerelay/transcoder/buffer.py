"""Process-independent PCM buffer in front of the encoder."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

logger = logging.getLogger(__name__)

# Roughly five seconds of s16le stereo 48 kHz audio
DEFAULT_HIGH_WATER_BYTES = 5 * 192_000


class IntermediateBuffer:
    """
    FIFO of PCM chunks that outlives any single encoder process.

    Producers append with write(); exactly one consumer at a time drains the
    buffer with read(). The buffer never drops data: crossing the high-water
    mark is only reported so callers can log backpressure.
    """

    def __init__(self, *, high_water_bytes: int = DEFAULT_HIGH_WATER_BYTES) -> None:
        """Initialize an empty buffer."""
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._high_water_bytes = high_water_bytes
        self._data_available = asyncio.Event()
        self._ended = False

    @property
    def size(self) -> int:
        """Buffered byte count."""
        return self._size

    @property
    def ended(self) -> bool:
        """Return True once end() was called."""
        return self._ended

    @property
    def over_high_water(self) -> bool:
        """Return True while more than the high-water mark is buffered."""
        return self._size > self._high_water_bytes

    def write(self, data: bytes) -> bool:
        """
        Append bytes to the buffer.

        Returns:
            False if the buffer is above its high-water mark after the write
            (the bytes are still kept) or has ended (the bytes are ignored).
        """
        if self._ended:
            return False
        if data:
            self._chunks.append(bytes(data))
            self._size += len(data)
            self._data_available.set()
        return not self.over_high_water

    def unread(self, data: bytes) -> None:
        """Put bytes back at the front, e.g. after a failed write to the consumer."""
        if self._ended or not data:
            return
        self._chunks.appendleft(bytes(data))
        self._size += len(data)
        self._data_available.set()

    async def read(self) -> bytes | None:
        """
        Wait for buffered data and take all of it.

        Returns:
            The buffered bytes in submission order, or None once the buffer
            has ended and is empty.
        """
        while not self._chunks:
            if self._ended:
                return None
            self._data_available.clear()
            await self._data_available.wait()
        data = b"".join(self._chunks)
        self._chunks.clear()
        self._size = 0
        return data

    def end(self) -> None:
        """Stop accepting data and wake the consumer."""
        if self._ended:
            return
        self._ended = True
        self._data_available.set()

    def clear(self) -> int:
        """Drop everything buffered and return the dropped byte count."""
        dropped = self._size
        self._chunks.clear()
        self._size = 0
        return dropped
