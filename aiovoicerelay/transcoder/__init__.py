"""Encoder process supervision."""

from .buffer import IntermediateBuffer
from .diagnostics import DiagnosticKind, classify_diagnostic, log_diagnostic
from .transcoder import (
    CommandFactory,
    FatalErrorCallback,
    OutputCallback,
    Transcoder,
    build_encoder_command,
)

__all__ = [
    "CommandFactory",
    "DiagnosticKind",
    "FatalErrorCallback",
    "IntermediateBuffer",
    "OutputCallback",
    "Transcoder",
    "build_encoder_command",
    "classify_diagnostic",
    "log_diagnostic",
]
