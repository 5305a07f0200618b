"""Mix all speaker sessions and a keepalive signal into one continuous PCM stream."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress

import numpy as np

from aiovoicerelay.models import (
    PCM_CHANNELS,
    PCM_FRAME_STRIDE,
    PCM_SAMPLE_RATE,
    SPEAKER_FRAME_SAMPLES,
    MixerConfig,
    SessionEvent,
    frame_byte_size,
)

from .decoder import DecoderFactory, SpeakerDecoder
from .session import SpeakerSession

logger = logging.getLogger(__name__)

# Lag after which the clock stops catching up and restarts from "now".
MAX_CLOCK_LAG_S = 1.0

KEEPALIVE_INPUT_NAME = "keepalive"

# Callback receiving every mixed frame.
PCMCallback = Callable[[bytes], None]


class MixerInput:
    """
    Frame-aligned PCM buffer feeding one slot of the mixer.

    Writers may deliver any whole number of samples; the mixer always reads
    exactly one frame. Once closed, the input accepts no more data and is
    drained by the mixer before being dropped.
    """

    def __init__(self, name: str, *, frame_bytes: int, max_buffer_bytes: int) -> None:
        """
        Initialize an empty input.

        Args:
            name: Speaker id or KEEPALIVE_INPUT_NAME, used for logging.
            frame_bytes: Size of one mixer frame.
            max_buffer_bytes: Buffered bytes above which the oldest frames are dropped.
        """
        self.name = name
        self._frame_bytes = frame_bytes
        self._max_buffer_bytes = max(max_buffer_bytes - max_buffer_bytes % frame_bytes, frame_bytes)
        self._buffer = bytearray()
        self._closed = False
        self._dropped_bytes = 0

    @property
    def closed(self) -> bool:
        """Return True once the input no longer accepts data."""
        return self._closed

    @property
    def buffered_bytes(self) -> int:
        """Bytes waiting to be mixed."""
        return len(self._buffer)

    @property
    def dropped_bytes(self) -> int:
        """Bytes discarded because the input was over its buffer limit."""
        return self._dropped_bytes

    def write(self, pcm: bytes) -> None:
        """Append PCM samples."""
        if self._closed or not pcm:
            return
        self._buffer.extend(pcm)
        overflow = len(self._buffer) - self._max_buffer_bytes
        if overflow > 0:
            # Drop whole frames so the remaining data stays sample aligned
            overflow = -(-overflow // self._frame_bytes) * self._frame_bytes
            del self._buffer[:overflow]
            self._dropped_bytes += overflow
            logger.debug("Mixer input %s over its buffer limit, dropped %d bytes", self.name, overflow)

    def read_frame(self) -> bytes | None:
        """
        Take one frame from the buffer.

        Returns None while less than a frame is buffered on an open input. A
        closed input flushes its remainder padded with silence.
        """
        if len(self._buffer) >= self._frame_bytes:
            frame = bytes(self._buffer[: self._frame_bytes])
            del self._buffer[: self._frame_bytes]
            return frame
        if self._closed and self._buffer:
            usable = len(self._buffer) - len(self._buffer) % PCM_FRAME_STRIDE
            frame = bytes(self._buffer[:usable]).ljust(self._frame_bytes, b"\x00")
            self._buffer.clear()
            return frame
        return None

    def close(self) -> None:
        """Stop accepting data."""
        self._closed = True

    def discard(self) -> None:
        """Close the input and drop anything still buffered."""
        self._closed = True
        self._buffer.clear()


class KeepaliveGenerator:
    """Produce frames of very low amplitude noise (or silence)."""

    def __init__(self, frame_bytes: int, amplitude: int = 1, *, seed: int | None = None) -> None:
        """
        Initialize the generator.

        Args:
            frame_bytes: Size of every produced frame.
            amplitude: Peak amplitude in LSB; 0 produces digital silence.
            seed: Optional seed for reproducible noise.
        """
        self._frame_bytes = frame_bytes
        self._amplitude = amplitude
        self._rng = np.random.default_rng(seed)
        self._silence = bytes(frame_bytes)

    @property
    def frame_bytes(self) -> int:
        """Size of every produced frame."""
        return self._frame_bytes

    def next_frame(self) -> bytes:
        """Return the next keepalive frame."""
        if self._amplitude == 0:
            return self._silence
        samples = self._rng.integers(
            -self._amplitude,
            self._amplitude,
            size=self._frame_bytes // 2,
            endpoint=True,
        )
        return samples.astype("<i2").tobytes()


class Mixer:
    """
    Combine active speaker sessions into one continuous PCM stream.

    A clock task running on the event loop emits exactly one frame per frame
    duration, so downstream consumers see a fixed-rate stream whether zero or
    many speakers are talking.
    """

    _sessions: dict[str, SpeakerSession]
    """Live sessions by speaker id, at most one per speaker."""
    _inputs: list[MixerInput]
    """Speaker inputs, including closed ones that are still draining."""
    _keepalive_input: MixerInput
    _clock_task: asyncio.Task[None] | None = None
    _running: bool = False
    _closed: bool = False
    _frames_emitted: int = 0

    def __init__(
        self,
        on_pcm: PCMCallback,
        *,
        config: MixerConfig | None = None,
        decoder_factory: DecoderFactory = SpeakerDecoder,
    ) -> None:
        """
        Initialize the mixer; call start() to run its clock.

        Args:
            on_pcm: Receives every mixed frame.
            config: Mixer settings, defaults apply when None.
            decoder_factory: Builds the per-speaker decoder.
        """
        self._on_pcm = on_pcm
        self._config = config or MixerConfig()
        self._decoder_factory = decoder_factory
        self._frame_bytes = frame_byte_size(PCM_SAMPLE_RATE, self._config.frame_duration_ms)
        self._max_input_bytes = frame_byte_size(PCM_SAMPLE_RATE, self._config.max_input_buffer_ms)
        self._sessions = {}
        self._inputs = []
        self._keepalive = KeepaliveGenerator(self._frame_bytes, self._config.keepalive_amplitude)
        self._keepalive_input = MixerInput(
            KEEPALIVE_INPUT_NAME,
            frame_bytes=self._frame_bytes,
            max_buffer_bytes=self._frame_bytes,
        )

    @property
    def frame_bytes(self) -> int:
        """Size of every emitted frame."""
        return self._frame_bytes

    @property
    def frame_duration_ms(self) -> int:
        """Duration of every emitted frame."""
        return self._config.frame_duration_ms

    @property
    def frames_emitted(self) -> int:
        """Total frames handed to the PCM callback."""
        return self._frames_emitted

    @property
    def running(self) -> bool:
        """Return True while the clock task runs."""
        return self._running

    @property
    def sessions(self) -> dict[str, SpeakerSession]:
        """Snapshot of the live sessions by speaker id."""
        return dict(self._sessions)

    @property
    def active_inputs(self) -> list[MixerInput]:
        """Speaker inputs still accepting data (the keepalive input excluded)."""
        return [mixer_input for mixer_input in self._inputs if not mixer_input.closed]

    def start(self) -> None:
        """Start the mixing clock."""
        if self._running or self._closed:
            return
        self._running = True
        self._clock_task = asyncio.get_running_loop().create_task(
            self._run_clock(), name="mixer-clock"
        )
        logger.info(
            "Mixer started: %d ms frames of %d bytes", self.frame_duration_ms, self._frame_bytes
        )

    def attach_speaker(self, source: AsyncIterator[bytes], speaker_id: str) -> SpeakerSession | None:
        """
        Attach a speaker stream to the mixer.

        Attaching a speaker that already has a live session is a no-op.

        Args:
            source: Async iterator of compressed packets.
            speaker_id: Stable identifier of the speaker.

        Returns:
            The new session, or None if nothing was attached.
        """
        if self._closed:
            logger.warning("Mixer is shut down, ignoring speaker %s", speaker_id)
            return None
        if speaker_id in self._sessions:
            logger.debug("Speaker %s already attached, ignoring", speaker_id)
            return None

        decoder = self._decoder_factory(
            channels=PCM_CHANNELS,
            sample_rate=PCM_SAMPLE_RATE,
            frame_size=SPEAKER_FRAME_SAMPLES,
        )
        mixer_input = MixerInput(
            speaker_id,
            frame_bytes=self._frame_bytes,
            max_buffer_bytes=self._max_input_bytes,
        )
        session = SpeakerSession(
            speaker_id,
            source,
            decoder=decoder,
            mixer_input=mixer_input,
            on_teardown=self._forget_session,
        )
        self._inputs.append(mixer_input)
        self._sessions[speaker_id] = session
        session.start(asyncio.get_running_loop())
        logger.info("Speaker %s attached", speaker_id)
        return session

    def detach_speaker(self, speaker_id: str) -> bool:
        """
        Deliver the close signal for a speaker.

        Returns:
            True if a live session was torn down.
        """
        session = self._sessions.get(speaker_id)
        if session is None:
            return False
        return session.handle_event(SessionEvent.CLOSE)

    def _forget_session(self, session: SpeakerSession) -> None:
        if self._sessions.get(session.speaker_id) is session:
            del self._sessions[session.speaker_id]
            logger.info("Speaker %s detached", session.speaker_id)

    def mix_frame(self) -> bytes:
        """
        Produce and emit exactly one frame.

        Feeds one keepalive frame, then sums one frame from every input that
        has one buffered. Drained closed inputs are dropped.
        """
        self._keepalive_input.write(self._keepalive.next_frame())
        mixed = np.zeros(self._frame_bytes // 2, dtype=np.int32)
        for mixer_input in (self._keepalive_input, *self._inputs):
            frame = mixer_input.read_frame()
            if frame is not None:
                mixed += np.frombuffer(frame, dtype="<i2")
        self._inputs = [
            mixer_input
            for mixer_input in self._inputs
            if not (mixer_input.closed and mixer_input.buffered_bytes == 0)
        ]

        output = np.clip(mixed, -32768, 32767).astype("<i2").tobytes()
        self._frames_emitted += 1
        try:
            self._on_pcm(output)
        except Exception:
            logger.exception("Error in PCM callback %s", self._on_pcm)
        return output

    async def _run_clock(self) -> None:
        loop = asyncio.get_running_loop()
        frame_s = self.frame_duration_ms / 1000
        next_tick = loop.time()
        while self._running:
            self.mix_frame()
            next_tick += frame_s
            delay = next_tick - loop.time()
            if delay < -MAX_CLOCK_LAG_S:
                logger.warning("Mixer fell %.0f ms behind, resetting clock", -delay * 1000)
                next_tick = loop.time()
                delay = 0.0
            await asyncio.sleep(max(delay, 0.0))

    async def shutdown(self) -> None:
        """Stop the clock, tear down every session and release all inputs."""
        if self._closed:
            return
        self._closed = True
        self._running = False

        if self._clock_task is not None:
            self._clock_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._clock_task
            self._clock_task = None

        sessions = list(self._sessions.values())
        for session in sessions:
            session.handle_event(SessionEvent.CLOSE)
        for session in sessions:
            try:
                await session.wait_closed()
            except Exception:
                logger.exception("Error while closing session %s", session.speaker_id)

        for mixer_input in self._inputs:
            mixer_input.discard()
        self._inputs.clear()
        self._keepalive_input.discard()
        logger.info("Mixer shut down after %d frames", self._frames_emitted)
