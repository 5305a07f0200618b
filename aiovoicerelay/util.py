"""Utility functions for aiovoicerelay."""

from __future__ import annotations

from yarl import URL


def normalize_stream_url(raw_url: str) -> URL:
    """Normalize a broadcast URL into an http(s) URL.

    Accepts ``icecast://host/mount`` (mapped to http), ``icecast+https://...``
    (prefix stripped) and bare ``host:port/mount`` (http assumed).

    Raises:
        ValueError: If the URL is empty or has no host.
    """
    if not raw_url:
        raise ValueError("Stream URL is missing")
    normalized = raw_url.strip()
    if not normalized:
        raise ValueError("Stream URL is empty")

    if normalized.startswith("icecast+"):
        normalized = normalized[len("icecast+") :]
    elif normalized.startswith("icecast://"):
        normalized = "http://" + normalized[len("icecast://") :]

    if not normalized.lower().startswith(("http://", "https://")):
        normalized = "http://" + normalized

    url = URL(normalized)
    if not url.host:
        raise ValueError(f"Stream URL has no host: {redact_url(url)}")
    return url


def redact_url(url: URL | str) -> str:
    """Return the URL without its user-info, safe for logging."""
    if isinstance(url, str):
        url = URL(url)
    return str(url.with_user(None))
