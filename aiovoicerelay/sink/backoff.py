"""Reconnect backoff for the network sink."""

from __future__ import annotations


class Backoff:
    """
    Exponential reconnect delay.

    Each call to next_delay() returns the current delay and doubles it for
    the following attempt, up to the maximum. reset() restores the base
    delay after a successful connection.
    """

    def __init__(self, base_ms: int = 1000, max_ms: int = 30000) -> None:
        """Initialize the backoff at its base delay."""
        if base_ms <= 0 or max_ms < base_ms:
            raise ValueError(f"Invalid backoff bounds {base_ms}/{max_ms}")
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.current_ms = base_ms

    def next_delay(self) -> int:
        """Return the delay for this attempt in milliseconds and advance."""
        delay = self.current_ms
        self.current_ms = min(self.current_ms * 2, self.max_ms)
        return delay

    def reset(self) -> None:
        """Return to the base delay."""
        self.current_ms = self.base_ms
