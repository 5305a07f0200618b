"""Relay live voice call speakers into one continuous encoded stream."""

from .errors import ConfigurationError, EncoderSpawnError, RelayError
from .models import MixerConfig, NetworkSinkConfig, OutputTarget, RelayConfig, TranscoderConfig
from .relay import OutputSink, VoiceRelay

__all__ = [
    "ConfigurationError",
    "EncoderSpawnError",
    "MixerConfig",
    "NetworkSinkConfig",
    "OutputSink",
    "OutputTarget",
    "RelayConfig",
    "RelayError",
    "TranscoderConfig",
    "VoiceRelay",
]
