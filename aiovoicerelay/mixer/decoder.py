"""Opus decoding for speaker streams."""

from __future__ import annotations

import logging
import types
from typing import TYPE_CHECKING, Protocol

from aiovoicerelay.models import (
    PCM_CHANNELS,
    PCM_FRAME_STRIDE,
    PCM_SAMPLE_RATE,
    SPEAKER_FRAME_SAMPLES,
)

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


class PacketDecoder(Protocol):
    """Anything that turns compressed speaker packets into PCM."""

    def decode(self, data: bytes) -> list[bytes]:
        """Decode one packet into zero or more PCM chunks."""

    def close(self) -> None:
        """Release codec resources."""


class DecoderFactory(Protocol):
    """Builds a decoder for one speaker."""

    def __call__(self, *, channels: int, sample_rate: int, frame_size: int) -> PacketDecoder:
        """Create a decoder fixed to the call format."""


class SpeakerDecoder:
    """Decode Opus packets into s16le stereo 48 kHz PCM bytes."""

    def __init__(
        self,
        *,
        channels: int = PCM_CHANNELS,
        sample_rate: int = PCM_SAMPLE_RATE,
        frame_size: int = SPEAKER_FRAME_SAMPLES,
    ) -> None:
        self._channels = channels
        self._sample_rate = sample_rate
        self._frame_size = frame_size
        self._decoder: av.AudioCodecContext | None = None
        self._resampler: av.AudioResampler | None = None
        self._errors = 0
        self._setup()

    def _setup(self) -> None:
        av = _get_av()
        decoder: av.AudioCodecContext = av.AudioCodecContext.create("opus", "r")
        decoder.sample_rate = self._sample_rate
        decoder.layout = "stereo" if self._channels == 2 else "mono"
        decoder.open()
        resampler: av.AudioResampler = av.AudioResampler(
            format="s16",
            layout="stereo",
            rate=PCM_SAMPLE_RATE,
        )
        self._decoder = decoder
        self._resampler = resampler

    @property
    def errors(self) -> int:
        """Number of packets that failed to decode."""
        return self._errors

    def decode(self, data: bytes) -> list[bytes]:
        """Decode a compressed packet into PCM chunks.

        Malformed packets are logged and skipped; an empty list is returned.
        """
        if self._decoder is None or self._resampler is None or not data:
            return []
        av = _get_av()
        packet = av.Packet(data)
        output: list[bytes] = []
        try:
            for frame in self._decoder.decode(packet):
                if frame.samples != self._frame_size:
                    logger.debug(
                        "Decoded %d samples, expected %d per frame", frame.samples, self._frame_size
                    )
                for out_frame in self._resampler.resample(frame):
                    expected = PCM_FRAME_STRIDE * out_frame.samples
                    pcm_bytes = bytes(out_frame.planes[0])[:expected]
                    if pcm_bytes:
                        output.append(pcm_bytes)
        except av.error.FFmpegError as err:
            self._errors += 1
            logger.warning("Opus decoder error: %s", err)
            return []
        return output

    def close(self) -> None:
        """Release the codec context and resampler."""
        self._decoder = None
        self._resampler = None
