"""Supervisor for the external encoder process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiovoicerelay.errors import ConfigurationError, EncoderSpawnError
from aiovoicerelay.models import PCM_CHANNELS, PCM_SAMPLE_RATE, TranscoderConfig

from .buffer import DEFAULT_HIGH_WATER_BYTES, IntermediateBuffer
from .diagnostics import log_diagnostic

logger = logging.getLogger(__name__)

OUTPUT_CHUNK_BYTES = 16 * 1024
"""Maximum size of a chunk read from the encoder's stdout."""
SHUTDOWN_GRACE_S = 2.0
"""Time the encoder gets to flush and exit at each shutdown step."""

# Callback receiving encoded bytes from the encoder's stdout.
OutputCallback = Callable[[bytes], None]

# Callback invoked with the error that stopped the transcoder for good.
FatalErrorCallback = Callable[[BaseException], None]

# Builds the encoder invocation from the config.
CommandFactory = Callable[[TranscoderConfig], list[str]]


def build_encoder_command(config: TranscoderConfig) -> list[str]:
    """
    Build the ffmpeg command line turning the PCM contract into MP3 on stdout.

    Raises:
        ConfigurationError: If the output target is missing or ambiguous.
    """
    config.output_target.validate()
    cmd = [
        config.encoder_binary,
        "-hide_banner",
        "-nostats",
        "-loglevel", "warning",
        "-f", "s16le",
        "-ac", str(PCM_CHANNELS),
        "-ar", str(PCM_SAMPLE_RATE),
        "-i", "pipe:0",
        "-ar", str(config.sample_rate),
        "-ac", str(PCM_CHANNELS),
    ]  # fmt: skip
    if config.volume_multiplier != 1.0:
        cmd += ["-filter:a", f"volume={config.volume_multiplier:g}"]
    cmd += ["-c:a", "libmp3lame"]
    if config.compression_kbps:
        cmd += ["-b:a", f"{config.compression_kbps}k"]
    if config.min_bitrate_kbps is not None:
        cmd += ["-minrate", f"{config.min_bitrate_kbps}k"]
    cmd += ["-f", "mp3", "-flush_packets", "1", "pipe:1"]
    return cmd


async def _cancel_task(task: asyncio.Task[None] | None) -> None:
    """Cancel a task and wait for it, unless it is the running task."""
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Error while cancelling %s", task.get_name())


class Transcoder:
    """
    Feed mixed PCM into a respawnable encoder process.

    PCM submitted by the mixer lands in an IntermediateBuffer that lives for
    the whole run. The buffer is attached to the stdin of whichever encoder
    process is currently alive, so producers never notice encoder crashes:
    audio submitted while the encoder restarts is delivered, in order, to the
    next process. Encoded output is handed to ``on_output``.
    """

    _process: asyncio.subprocess.Process | None = None
    """The single live encoder process, owned by this supervisor."""
    _pump_task: asyncio.Task[None] | None = None
    """Moves buffered PCM into the current process's stdin."""
    _stdout_task: asyncio.Task[None] | None = None
    _stderr_task: asyncio.Task[None] | None = None
    _exit_task: asyncio.Task[None] | None = None
    """Exit listener of the current process."""
    _respawn_handle: asyncio.TimerHandle | None = None
    _respawn_task: asyncio.Task[None] | None = None
    _running: bool = False
    """Auto-restart enabled."""
    _shutdown: bool = False
    _backpressure: bool = False
    _spawn_count: int = 0
    _fatal_error: BaseException | None = None

    def __init__(
        self,
        config: TranscoderConfig,
        *,
        on_output: OutputCallback,
        on_fatal: FatalErrorCallback | None = None,
        command_factory: CommandFactory = build_encoder_command,
        high_water_bytes: int = DEFAULT_HIGH_WATER_BYTES,
    ) -> None:
        """
        Initialize the supervisor; call start() to launch the encoder.

        Args:
            config: Encoder settings, including the output target.
            on_output: Receives encoded bytes.
            on_fatal: Called once if a respawn fails for good.
            command_factory: Builds the encoder command line.
            high_water_bytes: Buffered PCM above which backpressure is logged.

        Raises:
            ConfigurationError: If the output target is missing or ambiguous.
        """
        config.output_target.validate()
        self._config = config
        self._on_output = on_output
        self._on_fatal = on_fatal
        self._command_factory = command_factory
        self._buffer = IntermediateBuffer(high_water_bytes=high_water_bytes)
        self._restart_delay_s = config.restart_delay_ms / 1000

    @property
    def buffer(self) -> IntermediateBuffer:
        """The process-independent PCM buffer."""
        return self._buffer

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        """The current encoder process, if one is alive."""
        return self._process

    @property
    def running(self) -> bool:
        """Return True while auto-restart is enabled."""
        return self._running

    @property
    def spawn_count(self) -> int:
        """Number of encoder processes started so far."""
        return self._spawn_count

    @property
    def fatal_error(self) -> BaseException | None:
        """The error that stopped auto-restart, if any."""
        return self._fatal_error

    def submit_audio(self, data: bytes) -> None:
        """Queue PCM for the encoder. Never raises."""
        if self._shutdown or self._fatal_error is not None:
            return
        if self._buffer.write(data):
            self._backpressure = False
        elif not self._backpressure:
            self._backpressure = True
            logger.debug("Encoder input backpressure: %d bytes buffered", self._buffer.size)

    async def start(self) -> None:
        """
        Enable auto-restart and launch the first encoder.

        Raises:
            EncoderSpawnError: If the encoder binary cannot be started.
            ConfigurationError: If the output target is missing or ambiguous.
        """
        if self._shutdown:
            raise RuntimeError("Transcoder was shut down")
        if self._running:
            return
        self._running = True
        try:
            await self.spawn_process()
        except Exception:
            self._running = False
            raise

    async def spawn_process(self) -> None:
        """
        Start an encoder process and attach the buffer to its stdin.

        Raises:
            EncoderSpawnError: If the process cannot be created.
            ConfigurationError: If the output target is missing or ambiguous.
        """
        if not self._running:
            logger.debug("Not spawning encoder, transcoder is stopped")
            return
        if self._process is not None:
            logger.debug("Encoder already running (pid %s)", self._process.pid)
            return

        cmd = self._command_factory(self._config)
        logger.debug("Encoder command: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise EncoderSpawnError(f"Could not start encoder {cmd[0]!r}: {err}") from err

        self._process = process
        self._spawn_count += 1
        loop = asyncio.get_running_loop()
        self._pump_task = loop.create_task(self._pump(process), name="encoder-pump")
        self._stdout_task = loop.create_task(self._read_output(process), name="encoder-stdout")
        self._stderr_task = loop.create_task(self._read_diagnostics(process), name="encoder-stderr")
        self._exit_task = loop.create_task(self._watch_exit(process), name="encoder-exit")
        logger.info("Encoder started (pid %s)", process.pid)

    async def _pump(self, process: asyncio.subprocess.Process) -> None:
        stdin = process.stdin
        assert stdin is not None
        while True:
            data = await self._buffer.read()
            if data is None:
                stdin.close()
                return
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as err:
                logger.warning("Encoder stdin: broken pipe (%s), keeping audio for restart", err)
                self._buffer.unread(data)
                return
            except asyncio.CancelledError:
                # Detached mid-write: the next process gets these bytes again
                self._buffer.unread(data)
                raise

    async def _read_output(self, process: asyncio.subprocess.Process) -> None:
        stdout = process.stdout
        assert stdout is not None
        while chunk := await stdout.read(OUTPUT_CHUNK_BYTES):
            try:
                self._on_output(chunk)
            except Exception:
                logger.exception("Error in output callback %s", self._on_output)

    async def _read_diagnostics(self, process: asyncio.subprocess.Process) -> None:
        stderr = process.stderr
        assert stderr is not None
        try:
            async for raw_line in stderr:
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    log_diagnostic(line, visible=self._config.diagnostics_visible, logger=logger)
        except ValueError:
            logger.debug("Encoder diagnostic line over the reader limit, stopped reading stderr")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if process is not self._process:
            return
        self._process = None

        # Detach the buffer from the dead process before anything new attaches
        await _cancel_task(self._pump_task)
        self._pump_task = None
        await self._wait_for_readers()

        if not self._running:
            return
        logger.warning(
            "Encoder exited unexpectedly (code %s), restarting in %.1fs",
            returncode,
            self._restart_delay_s,
        )
        self._respawn_handle = asyncio.get_running_loop().call_later(
            self._restart_delay_s, self._on_respawn_timer
        )

    async def _wait_for_readers(self) -> None:
        readers = [task for task in (self._stdout_task, self._stderr_task) if task is not None]
        self._stdout_task = None
        self._stderr_task = None
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=SHUTDOWN_GRACE_S)
        for task in pending:
            await _cancel_task(task)

    def _on_respawn_timer(self) -> None:
        self._respawn_handle = None
        if not self._running:
            return
        self._respawn_task = asyncio.get_running_loop().create_task(
            self._respawn(), name="encoder-respawn"
        )

    async def _respawn(self) -> None:
        try:
            await self.spawn_process()
        except (EncoderSpawnError, ConfigurationError) as err:
            self._escalate(err)

    def _escalate(self, err: BaseException) -> None:
        logger.error("Encoder cannot be restarted: %s", err)
        self._running = False
        self._fatal_error = err
        # Nothing will drain the buffer again
        self._buffer.end()
        dropped = self._buffer.clear()
        if dropped:
            logger.debug("Dropped %d bytes of unencoded audio", dropped)
        if self._on_fatal is None:
            return
        try:
            self._on_fatal(err)
        except Exception:
            logger.exception("Error in fatal error callback %s", self._on_fatal)

    async def shutdown(self) -> None:
        """Disable auto-restart, stop the encoder and end the buffer."""
        if self._shutdown:
            return
        self._shutdown = True
        self._running = False

        if self._respawn_handle is not None:
            self._respawn_handle.cancel()
            self._respawn_handle = None
        await _cancel_task(self._respawn_task)
        self._respawn_task = None
        # Remove the exit listener so the deliberate close is not taken for a crash
        await _cancel_task(self._exit_task)
        self._exit_task = None

        self._buffer.end()
        process = self._process
        self._process = None
        if process is not None:
            await self._stop_process(process)
        else:
            await _cancel_task(self._pump_task)
        self._pump_task = None
        self._buffer.clear()
        logger.info("Transcoder shut down")

    async def _stop_process(self, process: asyncio.subprocess.Process) -> None:
        # The pump flushes what is left and closes stdin once the buffer ended
        if self._pump_task is not None:
            _, pending = await asyncio.wait([self._pump_task], timeout=SHUTDOWN_GRACE_S)
            for task in pending:
                await _cancel_task(task)
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        try:
            await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_GRACE_S)
        except TimeoutError:
            logger.debug("Encoder did not exit on end of input, terminating")
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_GRACE_S)
            except TimeoutError:
                logger.warning("Encoder ignored SIGTERM, killing it")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        await self._wait_for_readers()
