"""Per-speaker decoding and mixing."""

from .decoder import DecoderFactory, PacketDecoder, SpeakerDecoder
from .mixer import KeepaliveGenerator, Mixer, MixerInput, PCMCallback
from .session import SpeakerSession

__all__ = [
    "DecoderFactory",
    "KeepaliveGenerator",
    "Mixer",
    "MixerInput",
    "PCMCallback",
    "PacketDecoder",
    "SpeakerDecoder",
    "SpeakerSession",
]
