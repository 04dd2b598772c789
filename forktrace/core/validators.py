"""Input validation helpers.

The ``is_*`` predicates return booleans; the ``require_*`` variants raise
:class:`~forktrace.core.errors.ValidationError` so callers can fail fast
before allocating any resource.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

from forktrace.core.errors import ValidationError

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
API_KEY_RE = re.compile(r"^[A-Za-z0-9]{28,40}$")

EXPORT_FORMATS = ("json", "md", "trace", "all")


def is_tx_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(TX_HASH_RE.match(value))


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_RE.match(value))


def is_api_key(value: Any) -> bool:
    return isinstance(value, str) and bool(API_KEY_RE.match(value.strip()))


def is_http_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_port(value: Any) -> bool:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return False
    return 0 < port <= 65535


def require_tx_hash(value: Any) -> str:
    if not is_tx_hash(value):
        raise ValidationError(
            f"Invalid transaction hash: {value!r} (expected 0x followed by 64 hex characters)"
        )
    return value


def require_api_key(value: Any) -> str:
    if not is_api_key(value):
        raise ValidationError("Invalid Etherscan API key format")
    return value.strip()


def require_http_url(value: Any, name: str = "URL") -> str:
    if not is_http_url(value):
        raise ValidationError(f"Invalid {name}: {value!r} (expected an http(s) URL)")
    return value


def require_port(value: Any) -> int:
    if not is_port(value):
        raise ValidationError(f"Invalid port: {value!r} (expected 1-65535)")
    return int(value)


def parse_export_formats(value: str | list[str]) -> list[str]:
    """Split a comma-separated format list and reject unknown entries."""
    items = value.split(",") if isinstance(value, str) else list(value)
    formats = [f.strip().lower() for f in items if f and f.strip()]
    invalid = [f for f in formats if f not in EXPORT_FORMATS]
    if invalid:
        raise ValidationError(
            f"Invalid export format(s): {', '.join(invalid)} "
            f"(valid: {', '.join(EXPORT_FORMATS)})"
        )
    return formats
