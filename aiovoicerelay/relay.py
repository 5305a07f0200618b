"""Relay wiring the mixer, the encoder supervisor and a sink together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Protocol

from .mixer import DecoderFactory, Mixer, SpeakerDecoder, SpeakerSession
from .models import OutputKind, RelayConfig
from .sink import FileSink, NetworkSink
from .transcoder import CommandFactory, Transcoder, build_encoder_command

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Destination of the encoded stream."""

    def start(self) -> None:
        """Open the destination."""

    def write(self, chunk: bytes) -> bool:
        """Hand over one encoded chunk."""

    def close(self) -> None:
        """Release the destination."""

    async def wait_closed(self) -> None:
        """Wait until close() has fully completed."""


class VoiceRelay:
    """
    Relay live speakers of a voice call into one encoded output stream.

    Speaker streams attached to the relay are decoded and mixed into a
    continuous PCM stream, encoded by a supervised ffmpeg process and written
    to the network or file output selected by the configuration.

    Usage::

        async with VoiceRelay(config) as relay:
            relay.attach_speaker(packets, "1234")
            await relay.wait()
    """

    _started: bool = False
    _closed: bool = False
    _fatal_error: BaseException | None = None

    def __init__(
        self,
        config: RelayConfig,
        *,
        decoder_factory: DecoderFactory = SpeakerDecoder,
        command_factory: CommandFactory = build_encoder_command,
    ) -> None:
        """
        Build the pipeline; call start() to run it.

        Args:
            config: Complete relay configuration.
            decoder_factory: Builds the per-speaker decoder.
            command_factory: Builds the encoder command line.

        Raises:
            ConfigurationError: If the configuration is unusable.
            ValueError: If the network URL cannot be parsed.
        """
        self._config = config
        target = config.transcoder.output_target
        self._sink: OutputSink
        if target.kind is OutputKind.NETWORK:
            assert target.network_url is not None
            self._sink = NetworkSink(target.network_url, config=config.sink)
        else:
            assert target.file_path is not None
            self._sink = FileSink(target.file_path)
        self._transcoder = Transcoder(
            config.transcoder,
            on_output=self._sink.write,
            on_fatal=self._on_fatal,
            command_factory=command_factory,
        )
        self._mixer = Mixer(
            self._transcoder.submit_audio,
            config=config.mixer,
            decoder_factory=decoder_factory,
        )
        self._stopped = asyncio.Event()

    @property
    def mixer(self) -> Mixer:
        """The speaker mixer."""
        return self._mixer

    @property
    def transcoder(self) -> Transcoder:
        """The encoder supervisor."""
        return self._transcoder

    @property
    def sink(self) -> OutputSink:
        """The selected output."""
        return self._sink

    @property
    def closed(self) -> bool:
        """Return True once close() was called."""
        return self._closed

    @property
    def fatal_error(self) -> BaseException | None:
        """The error that stopped the relay, if any."""
        return self._fatal_error

    async def start(self) -> None:
        """
        Start the output, the encoder and the mixing clock.

        Raises:
            EncoderSpawnError: If the encoder cannot be started.
            OSError: If the output file cannot be opened.
        """
        if self._closed:
            raise RuntimeError("VoiceRelay was closed")
        if self._started:
            return
        self._started = True
        try:
            self._sink.start()
            await self._transcoder.start()
        except Exception:
            await self.close()
            raise
        self._mixer.start()
        logger.info("Relay started")

    def attach_speaker(self, source: AsyncIterator[bytes], speaker_id: str) -> SpeakerSession | None:
        """Attach a speaker's packet stream to the mix."""
        return self._mixer.attach_speaker(source, speaker_id)

    def detach_speaker(self, speaker_id: str) -> bool:
        """Detach a speaker; returns True if a live session was closed."""
        return self._mixer.detach_speaker(speaker_id)

    def _on_fatal(self, err: BaseException) -> None:
        if self._fatal_error is None:
            self._fatal_error = err
        logger.error("Relay stopping after fatal error: %s", err)
        self._stopped.set()

    async def wait(self) -> None:
        """
        Block until the relay is closed or fails.

        Raises:
            EncoderSpawnError: If the encoder could not be restarted.
        """
        await self._stopped.wait()
        if self._fatal_error is not None:
            raise self._fatal_error

    async def close(self) -> None:
        """Shut down the mixer, the encoder and the output, in that order."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._mixer.shutdown()
        except Exception:
            logger.exception("Error while shutting down the mixer")
        try:
            await self._transcoder.shutdown()
        except Exception:
            logger.exception("Error while shutting down the encoder")
        try:
            self._sink.close()
            await self._sink.wait_closed()
        except Exception:
            logger.exception("Error while closing the output")
        self._stopped.set()
        logger.info("Relay closed")

    async def __aenter__(self) -> VoiceRelay:
        """Start the relay."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the relay."""
        await self.close()
