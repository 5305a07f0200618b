"""Models and constants for the relay pipeline."""

from __future__ import annotations

__all__ = [
    "PCM_BYTES_PER_SAMPLE",
    "PCM_CHANNELS",
    "PCM_SAMPLE_RATE",
    "PCM_FRAME_STRIDE",
    "SPEAKER_FRAME_SAMPLES",
    "ConnectionEvent",
    "ConnectionState",
    "MixerConfig",
    "NetworkSinkConfig",
    "OutputKind",
    "OutputTarget",
    "RelayConfig",
    "SessionEvent",
    "SessionState",
    "TranscoderConfig",
    "config",
    "frame_byte_size",
    "next_connection_state",
    "next_session_state",
    "types",
]

from . import config, types
from .config import MixerConfig, NetworkSinkConfig, OutputTarget, RelayConfig, TranscoderConfig
from .types import (
    ConnectionEvent,
    ConnectionState,
    OutputKind,
    SessionEvent,
    SessionState,
    next_connection_state,
    next_session_state,
)

# Internal PCM contract between mixer and encoder: s16le, stereo, 48 kHz
PCM_SAMPLE_RATE = 48000
PCM_CHANNELS = 2
PCM_BYTES_PER_SAMPLE = 2
PCM_FRAME_STRIDE = PCM_CHANNELS * PCM_BYTES_PER_SAMPLE

# Opus frames delivered by the voice provider are 20 ms at 48 kHz
SPEAKER_FRAME_SAMPLES = 960


def frame_byte_size(sample_rate: int, frame_duration_ms: int) -> int:
    """
    Return the size in bytes of one PCM frame of the given duration.

    Args:
        sample_rate: Sample rate in Hz.
        frame_duration_ms: Frame duration in milliseconds.

    Returns:
        Byte count, always a whole number of stereo 16-bit samples.

    Raises:
        ValueError: If the duration does not map to a whole number of samples.
    """
    samples, remainder = divmod(sample_rate * frame_duration_ms, 1000)
    if remainder or samples <= 0:
        raise ValueError(
            f"{frame_duration_ms} ms at {sample_rate} Hz is not a whole number of samples"
        )
    return samples * PCM_FRAME_STRIDE
