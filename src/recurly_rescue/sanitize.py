"""Redaction of credential-like substrings from error text."""

from __future__ import annotations

import re

REDACTED = "[REDACTED]"

_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"api[-_]?key[=:]\s*\S+", re.IGNORECASE), f"api_key={REDACTED}"),
    (re.compile(r"Bearer\s+\S+", re.IGNORECASE), f"Bearer {REDACTED}"),
    (
        re.compile(r"Authorization[=:]\s*(?:(?:Basic|Bearer)\s+)?\S+", re.IGNORECASE),
        f"Authorization={REDACTED}",
    ),
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), f"password={REDACTED}"),
    (re.compile(r"\btoken[=:]\s*\S+", re.IGNORECASE), f"token={REDACTED}"),
    (re.compile(r"://[^:/\s]+:[^@\s]+@", re.IGNORECASE), f"://{REDACTED}@"),
    (re.compile(r"secret[=:]\s*\S+", re.IGNORECASE), f"secret={REDACTED}"),
)


def sanitize_error_message(message: str | None) -> str:
    """Replace credential-looking fragments with a fixed marker.

    Args:
        message: Raw error text, possibly containing secrets.

    Returns:
        The redacted text, or ``"Unknown error"`` for empty input.
    """
    if not message:
        return "Unknown error"

    sanitized = str(message)
    for pattern, replacement in _PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def sanitize_optional(message: str | None) -> str | None:
    """Like :func:`sanitize_error_message` but keeps ``None`` as ``None``."""
    if message is None:
        return None
    return sanitize_error_message(message)
