"""Helpers for safe debug logging.

Request headers and some observations carry cookies and credentials.
This module masks those, and truncates oversized values, before
observations are written to DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

_SENSITIVE_NAMES: frozenset[str] = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-auth-token",
        "x-csrf-token",
        "password",
        "token",
    }
)

_REDACTED = "<redacted>"


def _is_sensitive(name: str) -> bool:
    return name.strip().lower() in _SENSITIVE_NAMES


def _clip(value: Any, max_string: int) -> str:
    text = value if isinstance(value, str) else repr(value)
    if len(text) > max_string:
        return f"{text[:max_string]}…<truncated>"
    return text


def redact_observation(key: str, value: Any, *, max_string: int = 256) -> str:
    """Printable form of one observation value, masked when *key* is sensitive."""
    if _is_sensitive(key):
        return _REDACTED
    return _clip(value, max_string)


def redact_headers(headers: Iterable[tuple[str, str]] | None, *, max_string: int = 256) -> list[tuple[str, str]]:
    """Redact an ordered header list, keeping names and order intact."""
    return [(name, redact_observation(name, value, max_string=max_string)) for name, value in headers or []]
