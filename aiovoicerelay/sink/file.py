"""Local file output for the encoded stream."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)


class FileSink:
    """Append encoded audio to a file. Restarts never truncate earlier output."""

    _file: BinaryIO | None = None
    _closed: bool = False

    def __init__(self, path: str | Path) -> None:
        """Initialize the sink; call start() to open the file."""
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """Destination file."""
        return self._path

    @property
    def closed(self) -> bool:
        """Return True once close() was called."""
        return self._closed

    def start(self) -> None:
        """
        Open the file for appending.

        Raises:
            OSError: If the file cannot be opened.
        """
        if self._file is not None or self._closed:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._path.open("ab")
        logger.info("Writing stream to %s", self._path)

    def write(self, chunk: bytes) -> bool:
        """Append a chunk; returns False if the sink is not open."""
        if self._file is None or not chunk:
            return False
        try:
            self._file.write(chunk)
            self._file.flush()
        except OSError as err:
            logger.warning("Write to %s failed: %s", self._path, err)
            return False
        return True

    def close(self) -> None:
        """Close the file. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._file is not None:
            self._file.close()
            self._file = None
        logger.info("Closed %s", self._path)

    async def wait_closed(self) -> None:
        """Nothing to wait for; present for parity with NetworkSink."""
