"""Helpers for safe debug logging.

Inbound frames are logged at DEBUG level when they are dropped. Server
addresses may carry access keys in their query string. This module redacts
those values and bounds the size of what reaches the log.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "key",
        "apikey",
        "api_key",
        "token",
        "accesstoken",
        "access_token",
        "authorization",
        "password",
        "secret",
        "cookie",
    }
)


_MAX_DEPTH = 8


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...<{len(text) - limit} more chars>"


def redact_for_log(value: Any, *, max_string: int = 512) -> Any:
    """Return a copy of a decoded frame payload that is safe to log.

    Sensitive keys are masked at any depth. Strings longer than
    *max_string* are clipped. Anything that is not a JSON value is shown
    by its ``repr``.
    """
    return _redact(value, max_string, 0)


def _redact(value: Any, limit: int, depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _clip(value, limit)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, (dict, list, tuple)) and depth >= _MAX_DEPTH:
        return "<nested>"
    if isinstance(value, dict):
        return {
            str(key): "<redacted>" if str(key).lower() in _SENSITIVE_VALUE_KEYS else _redact(item, limit, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, limit, depth + 1) for item in value]
    return _clip(repr(value), limit)


def redact_url(url: str) -> str:
    """Mask sensitive query parameters and credentials in *url*."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"<redacted>@{netloc.rsplit('@', 1)[1]}"
    query = parts.query
    if query:
        pairs = [
            (name, "<redacted>" if name.lower() in _SENSITIVE_VALUE_KEYS else val)
            for name, val in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="<>")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))
