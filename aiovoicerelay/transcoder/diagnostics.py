"""Classification of encoder diagnostic output."""

from __future__ import annotations

import logging
from enum import Enum

# Messages ffmpeg prints while a downstream pipe or socket goes away. They
# precede a restart and are expected.
TRANSIENT_MARKERS: tuple[str, ...] = (
    "Broken pipe",
    "av_interleaved_write_frame()",
    "Error writing trailer",
    "Error muxing a packet",
    "Conversion failed!",
)


class DiagnosticKind(Enum):
    """Kinds of encoder diagnostic lines."""

    TRANSIENT = "transient"
    """Known pre-recovery noise, logged as a warning."""
    INFO = "info"
    """Anything else."""


def classify_diagnostic(line: str) -> DiagnosticKind:
    """Return the kind of an encoder diagnostic line."""
    if any(marker in line for marker in TRANSIENT_MARKERS):
        return DiagnosticKind.TRANSIENT
    return DiagnosticKind.INFO


def log_diagnostic(line: str, *, visible: bool, logger: logging.Logger) -> DiagnosticKind:
    """
    Log an encoder diagnostic line at the level its kind calls for.

    Args:
        line: One line of encoder stderr, without the line terminator.
        visible: Log ordinary lines verbatim at info level instead of debug.
        logger: Logger to write to.

    Returns:
        The kind of the line.
    """
    kind = classify_diagnostic(line)
    if kind is DiagnosticKind.TRANSIENT:
        logger.warning("Encoder reported a transient failure: %s", line)
    elif visible:
        logger.info("%s", line)
    else:
        logger.debug("encoder: %s", line)
    return kind
