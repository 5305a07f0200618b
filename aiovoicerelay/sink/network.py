"""Icecast-style SOURCE upload client with buffering and reconnection."""

from __future__ import annotations

import asyncio
import logging
import socket
from contextlib import suppress

from aiohttp import encode_basic_auth, hdrs

from aiovoicerelay.models import (
    ConnectionEvent,
    ConnectionState,
    NetworkSinkConfig,
    next_connection_state,
)
from aiovoicerelay.util import normalize_stream_url, redact_url

from .backoff import Backoff
from .queue import DropOldestQueue

logger = logging.getLogger(__name__)

DEFAULT_SEND_BUFFER_LIMIT = 64 * 1024
"""Transport write buffer size above which writes wait for a drain."""
DEFAULT_SOURCE_USER = "source"
RESPONSE_HEAD_LIMIT = 64 * 1024


class NetworkSink:
    """
    Stream encoded audio to an Icecast-compatible server.

    The sink keeps one long-lived SOURCE request open and writes audio into
    its body. While disconnected (or while the transport is draining), chunks
    go into a bounded drop-oldest queue that survives reconnects and is
    flushed first once the next connection is up. Failures never propagate:
    the sink reconnects with exponential backoff until close() is called.

    Must be created and used from within the event loop.
    """

    _state: ConnectionState = ConnectionState.DISCONNECTED
    _writer: asyncio.StreamWriter | None = None
    """Transport of the current connection, owned by this sink."""
    _connection_task: asyncio.Task[None] | None = None
    _drain_task: asyncio.Task[None] | None = None
    _reconnect_handle: asyncio.TimerHandle | None = None
    _waiting_for_drain: bool = False
    _started: bool = False
    _destroyed: bool = False
    _dropped_bytes: int = 0

    def __init__(
        self,
        url: str,
        *,
        config: NetworkSinkConfig | None = None,
        send_buffer_limit: int = DEFAULT_SEND_BUFFER_LIMIT,
    ) -> None:
        """
        Initialize the sink; call start() to connect.

        Args:
            url: Server URL with mount point, credentials in the user-info part
                (``icecast://``, ``http://`` and ``https://`` are accepted).
            config: Buffering, backoff and header settings.
            send_buffer_limit: Transport buffer size that triggers drain waits.

        Raises:
            ValueError: If the URL is empty or has no host.
        """
        config = config or NetworkSinkConfig()
        self._config = config
        self._url = normalize_stream_url(url)
        self._safe_url = redact_url(self._url)
        self._secure = self._url.scheme == "https"
        self._timeout_s = config.timeout_s
        self._send_buffer_limit = send_buffer_limit
        self._queue = DropOldestQueue(config.max_buffer_bytes)
        self._backoff = Backoff(config.base_backoff_ms, config.max_backoff_ms)
        self._request_head = self._build_request_head()

    def _build_request_head(self) -> bytes:
        url = self._url
        auth = encode_basic_auth(url.user or DEFAULT_SOURCE_USER, url.password or "")
        headers = {
            hdrs.HOST: url.host_port_subcomponent or "",
            hdrs.AUTHORIZATION: auth,
            hdrs.USER_AGENT: self._config.user_agent,
            hdrs.CONTENT_TYPE: "audio/mpeg",
            "Ice-Public": "0",
            "Ice-Name": self._config.stream_name,
            "Ice-Description": self._config.stream_description,
            hdrs.CONNECTION: "keep-alive",
        }
        headers.update(self._config.headers)
        lines = [f"SOURCE {url.raw_path_qs or '/'} HTTP/1.0"]
        lines += [f"{name}: {value}" for name, value in headers.items()]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    @property
    def url(self) -> str:
        """Server URL without credentials."""
        return self._safe_url

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Return True while audio is written straight to the server."""
        return self._state is ConnectionState.CONNECTED

    @property
    def waiting_for_drain(self) -> bool:
        """Return True while the transport buffer is full."""
        return self._waiting_for_drain

    @property
    def closed(self) -> bool:
        """Return True once close() was called."""
        return self._destroyed

    @property
    def queue(self) -> DropOldestQueue:
        """Chunks waiting for a connection."""
        return self._queue

    @property
    def dropped_bytes(self) -> int:
        """Total bytes evicted from the queue."""
        return self._dropped_bytes

    @property
    def current_backoff_ms(self) -> int:
        """Delay that the next reconnect will wait."""
        return self._backoff.current_ms

    def start(self) -> None:
        """Open the first connection."""
        if self._started or self._destroyed:
            return
        self._started = True
        self._connect()

    def _set_state(self, event: ConnectionEvent) -> None:
        previous = self._state
        self._state = next_connection_state(previous, event)
        if self._state is not previous:
            logger.debug("%s: %s -> %s", self._safe_url, previous.value, self._state.value)

    def _connect(self) -> None:
        if self._destroyed:
            return
        self._abort_transport()
        self._waiting_for_drain = False
        self._set_state(ConnectionEvent.CONNECT)
        logger.info("Connecting to %s", self._safe_url)
        self._connection_task = asyncio.get_running_loop().create_task(
            self._run_connection(), name="network-sink-connection"
        )

    async def _run_connection(self) -> None:
        event = ConnectionEvent.FAILED
        try:
            try:
                async with asyncio.timeout(self._timeout_s):
                    reader, writer = await asyncio.open_connection(
                        self._url.host,
                        self._url.port,
                        ssl=True if self._secure else None,
                        limit=RESPONSE_HEAD_LIMIT,
                    )
                    self._writer = writer
                    self._enable_keepalive(writer)
                    writer.write(self._request_head)
                    await writer.drain()
                    status = await self._read_status(reader)
            except TimeoutError:
                logger.warning("Timed out connecting to %s", self._safe_url)
                return
            except (OSError, EOFError, asyncio.LimitOverrunError, ValueError) as err:
                logger.error("Connection to %s failed: %s", self._safe_url, err)
                return

            if not 200 <= status < 300:
                logger.error("%s refused the connection (status %s)", self._safe_url, status)
                return

            logger.info("Connected to %s (status %s)", self._safe_url, status)
            event = ConnectionEvent.CLOSED
            self._on_ready()
            # Nothing meaningful follows the response; EOF means the server hung up
            try:
                while await reader.read(4096):
                    pass
            except OSError as err:
                logger.warning("Connection to %s lost: %s", self._safe_url, err)
            else:
                logger.warning("Connection to %s closed", self._safe_url)
        finally:
            self._handle_disconnect(event)

    @staticmethod
    def _enable_keepalive(writer: asyncio.StreamWriter) -> None:
        sock = writer.get_extra_info("socket")
        if sock is not None:
            with suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    @staticmethod
    async def _read_status(reader: asyncio.StreamReader) -> int:
        head = await reader.readuntil(b"\r\n\r\n")
        status_line = head.split(b"\r\n", 1)[0].decode("latin-1")
        parts = status_line.split(None, 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise ValueError(f"Malformed status line {status_line!r}")
        return int(parts[1])

    def _on_ready(self) -> None:
        if self._destroyed:
            return
        self._set_state(ConnectionEvent.HANDSHAKE_OK)
        self._waiting_for_drain = False
        self._backoff.reset()
        self._flush_queue()

    def _handle_disconnect(self, event: ConnectionEvent) -> None:
        if self._destroyed:
            return
        self._abort_transport()
        if self._drain_task is not None and self._drain_task is not asyncio.current_task():
            self._drain_task.cancel()
        self._drain_task = None
        self._waiting_for_drain = False
        self._set_state(event)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._destroyed or self._reconnect_handle is not None:
            return
        delay_ms = self._backoff.next_delay()
        logger.warning("Reconnecting to %s in %.1fs", self._safe_url, delay_ms / 1000)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._on_reconnect_timer
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._destroyed:
            return
        self._connect()

    def _abort_transport(self) -> None:
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.transport.abort()

    def _abort(self, writer: asyncio.StreamWriter) -> None:
        # The connection task notices the abort and schedules the reconnect
        if writer is self._writer:
            self._writer = None
        writer.transport.abort()

    def write(self, chunk: bytes) -> bool:
        """
        Send a chunk, or queue it while the connection is not writable.

        Returns:
            False if the chunk was ignored, could not be written or filled the
            transport buffer; True otherwise.
        """
        if self._destroyed or not chunk:
            return False
        if self.connected and self._writer is not None and not self._waiting_for_drain:
            return self._send(self._writer, chunk)
        self.enqueue(chunk)
        return True

    def enqueue(self, chunk: bytes) -> None:
        """Queue a chunk, evicting the oldest ones beyond the buffer limit."""
        if self._destroyed or not chunk:
            return
        self._report_dropped(self._queue.append(chunk))

    def _report_dropped(self, dropped: int) -> None:
        if dropped:
            self._dropped_bytes += dropped
            logger.warning(
                "Upload buffer for %s full, dropped %d kB", self._safe_url, round(dropped / 1024)
            )

    def _send(self, writer: asyncio.StreamWriter, chunk: bytes) -> bool:
        try:
            if writer.transport.is_closing():
                raise ConnectionResetError("transport is closing")
            writer.write(chunk)
        except (OSError, RuntimeError) as err:
            logger.warning("Write to %s failed: %s", self._safe_url, err)
            # Keep the chunk ahead of everything queued after it
            self._report_dropped(self._queue.appendleft(chunk))
            self._abort(writer)
            return False
        if writer.transport.get_write_buffer_size() > self._send_buffer_limit:
            self._waiting_for_drain = True
            self._drain_task = asyncio.get_running_loop().create_task(
                self._drain(writer), name="network-sink-drain"
            )
            return False
        return True

    async def _drain(self, writer: asyncio.StreamWriter) -> None:
        try:
            async with asyncio.timeout(self._timeout_s):
                await writer.drain()
        except TimeoutError:
            logger.warning("Timed out waiting for %s to accept data", self._safe_url)
            self._abort(writer)
            return
        except OSError as err:
            logger.warning("Connection to %s failed while draining: %s", self._safe_url, err)
            self._abort(writer)
            return
        if writer is not self._writer:
            return
        self._drain_task = None
        self._waiting_for_drain = False
        self._flush_queue()

    def _flush_queue(self) -> None:
        while self._queue and self.connected and not self._waiting_for_drain:
            writer = self._writer
            if writer is None:
                return
            if not self._send(writer, self._queue.popleft()):
                return

    def close(self) -> None:
        """Stop streaming for good and drop any queued audio."""
        if self._destroyed:
            return
        self._destroyed = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        for task in (self._connection_task, self._drain_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._abort_transport()
        self._waiting_for_drain = False
        self._set_state(ConnectionEvent.CLOSED)
        self._queue.clear()
        logger.info("Closed upload to %s", self._safe_url)

    async def wait_closed(self) -> None:
        """Wait for the tasks cancelled by close() to finish."""
        for task in (self._connection_task, self._drain_task):
            if task is None or task is asyncio.current_task():
                continue
            with suppress(asyncio.CancelledError):
                await task
        self._connection_task = None
        self._drain_task = None
