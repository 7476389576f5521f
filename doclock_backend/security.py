from __future__ import annotations

from typing import Iterable, Optional


ALLOWED_METHODS = "POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type"


def parse_allowed_origins(raw: str | Iterable[str] | None) -> frozenset[str]:
    """Normalize an allow-list given as a comma-separated string or iterable.

    Origins are compared as exact strings, so only surrounding whitespace is
    stripped (no lowercasing, no trailing slash handling).
    """
    if raw is None:
        return frozenset()
    items = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(o.strip() for o in items if o and o.strip())


def cors_headers(origin: Optional[str], allowed_origins: frozenset[str]) -> dict[str, str]:
    """Return the CORS header bundle for a request origin.

    Same-origin and server-to-server callers send no Origin header (or one we
    don't know) and get an empty bundle; they are unaffected.
    """
    if origin and origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": origin,
            "Vary": "Origin",
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        }
    return {}


def check_tool_argument(value: str) -> str:
    """Make sure a user supplied value can be passed as a process argument.

    argv entries are C strings; an embedded NUL would make process creation
    fail (or silently truncate the password on some platforms).
    """
    if not isinstance(value, str):
        raise ValueError("Invalid argument")
    if "\x00" in value:
        raise ValueError("Invalid argument")
    return value
