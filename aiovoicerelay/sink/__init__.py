"""Destinations for the encoded stream."""

from .backoff import Backoff
from .file import FileSink
from .network import NetworkSink
from .queue import DropOldestQueue

__all__ = [
    "Backoff",
    "DropOldestQueue",
    "FileSink",
    "NetworkSink",
]
