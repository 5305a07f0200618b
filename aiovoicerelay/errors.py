"""Exceptions raised by aiovoicerelay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all aiovoicerelay errors."""


class ConfigurationError(RelayError, ValueError):
    """Raised when the relay configuration cannot work, e.g. no output target."""


class EncoderSpawnError(RelayError, RuntimeError):
    """Raised when the external encoder process could not be started.

    This points at a broken environment (missing binary, permissions) and is
    never retried.
    """
