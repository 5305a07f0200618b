"""
Configuration records for the relay pipeline.

All records are plain dataclasses that can be loaded from and dumped to JSON,
so the host application can keep them wherever it keeps its settings.
Validation happens on construction: an unusable configuration never reaches
the running pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiovoicerelay.errors import ConfigurationError

from .types import OutputKind


@dataclass
class OutputTarget(DataClassORJSONMixin):
    """Destination of the encoded stream. Exactly one field must be set."""

    network_url: str | None = None
    """Icecast-style URL, credentials in the user-info part."""
    file_path: str | None = None
    """Local file the stream is appended to."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True

    @property
    def kind(self) -> OutputKind:
        """Return which output is configured."""
        self.validate()
        return OutputKind.NETWORK if self.network_url else OutputKind.FILE

    def validate(self) -> None:
        """Raise ConfigurationError unless exactly one target is set."""
        has_url = bool(self.network_url)
        has_path = bool(self.file_path)
        if not has_url and not has_path:
            raise ConfigurationError("No output specified: set network_url or file_path")
        if has_url and has_path:
            raise ConfigurationError("Only one of network_url and file_path may be set")


@dataclass
class TranscoderConfig(DataClassORJSONMixin):
    """Settings of the external encoder process."""

    output_target: OutputTarget
    """Where the encoded stream goes."""
    sample_rate: int = 48000
    """Output sample rate in Hz."""
    compression_kbps: int = 0
    """Target bitrate in kbit/s, 0 leaves the encoder default."""
    min_bitrate_kbps: int | None = None
    """Lower bitrate bound in kbit/s."""
    volume_multiplier: float = 1.0
    """Gain applied by the encoder."""
    diagnostics_visible: bool = False
    """Log every encoder diagnostic line at info level instead of debug."""
    encoder_binary: str = "ffmpeg"
    """Executable used for encoding."""
    restart_delay_ms: int = 1000
    """Delay before respawning the encoder after it exited."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True

    def __post_init__(self) -> None:
        """Validate field values."""
        self.output_target.validate()
        if self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.compression_kbps < 0:
            raise ConfigurationError(
                f"compression_kbps must not be negative, got {self.compression_kbps}"
            )
        if self.min_bitrate_kbps is not None and self.min_bitrate_kbps <= 0:
            raise ConfigurationError(
                f"min_bitrate_kbps must be positive, got {self.min_bitrate_kbps}"
            )
        if self.volume_multiplier < 0:
            raise ConfigurationError(
                f"volume_multiplier must not be negative, got {self.volume_multiplier}"
            )
        if self.restart_delay_ms < 0:
            raise ConfigurationError(
                f"restart_delay_ms must not be negative, got {self.restart_delay_ms}"
            )


@dataclass
class MixerConfig(DataClassORJSONMixin):
    """Settings of the speaker mixer."""

    frame_duration_ms: int = 20
    """Duration of one mixed PCM frame."""
    keepalive_amplitude: int = 1
    """Peak amplitude of the keepalive noise in LSB, 0 for digital silence."""
    max_input_buffer_ms: int = 1000
    """Audio a single speaker input may buffer before its oldest frames are dropped."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.frame_duration_ms <= 0:
            raise ConfigurationError(
                f"frame_duration_ms must be positive, got {self.frame_duration_ms}"
            )
        if not 0 <= self.keepalive_amplitude <= 32767:
            raise ConfigurationError(
                f"keepalive_amplitude must be within 0..32767, got {self.keepalive_amplitude}"
            )
        if self.max_input_buffer_ms < self.frame_duration_ms:
            raise ConfigurationError("max_input_buffer_ms must hold at least one frame")


@dataclass
class NetworkSinkConfig(DataClassORJSONMixin):
    """Settings of the Icecast-style upload client."""

    max_buffer_bytes: int = 1024 * 1024
    """Upper bound of audio queued while disconnected."""
    base_backoff_ms: int = 1000
    """First reconnect delay, restored after every successful connection."""
    max_backoff_ms: int = 30000
    """Reconnect delay cap."""
    timeout_s: float = 30.0
    """Bound for connecting, the handshake and every drain wait."""
    stream_name: str = "Voice Relay"
    """Sent as Ice-Name."""
    stream_description: str = "Live voice channel relay"
    """Sent as Ice-Description."""
    user_agent: str = "aiovoicerelay"
    """Sent as User-Agent."""
    headers: dict[str, str] = field(default_factory=dict)
    """Extra request headers, override the defaults."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.max_buffer_bytes <= 0:
            raise ConfigurationError(
                f"max_buffer_bytes must be positive, got {self.max_buffer_bytes}"
            )
        if self.base_backoff_ms <= 0 or self.max_backoff_ms < self.base_backoff_ms:
            raise ConfigurationError(
                "backoff must satisfy 0 < base_backoff_ms <= max_backoff_ms, got "
                f"{self.base_backoff_ms}/{self.max_backoff_ms}"
            )
        if self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be positive, got {self.timeout_s}")


@dataclass
class RelayConfig(DataClassORJSONMixin):
    """Complete configuration of a relay."""

    transcoder: TranscoderConfig
    mixer: MixerConfig = field(default_factory=MixerConfig)
    sink: NetworkSinkConfig = field(default_factory=NetworkSinkConfig)
