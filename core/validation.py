"""
core/validation.py -- Eager validators for connection and tuning parameters.

Each helper raises StoreConfigError with the offending field name in
`details`, so a misconfigured deployment fails at construction time rather
than on the first query.

Layer rule: core/ is the kernel. No imports from db/ or auth/.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from core.errors import StoreConfigError

# Plain UUID, or a UUID behind a lowercase prefix such as "app_".
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_PREFIXED_UUID_RE = re.compile(
    r"^[a-z]+_[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def validate_url(value: str, field_name: str = "url") -> str:
    """Require an absolute http(s) URL with a host."""
    parsed = urlparse(value or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise StoreConfigError(
            f"Invalid {field_name}: {value!r} is not a valid URL",
            details={"field": field_name},
        )
    return value


def validate_uuid(value: str, field_name: str = "id") -> str:
    if not value or not (_UUID_RE.fullmatch(value) or _PREFIXED_UUID_RE.fullmatch(value)):
        raise StoreConfigError(
            f"Invalid {field_name}: {value!r} is not a valid UUID",
            details={"field": field_name},
        )
    return value


def validate_non_empty(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise StoreConfigError(f"{field_name} is required and cannot be empty", details={"field": field_name})
    return value


def validate_positive(value: float, field_name: str = "value") -> float:
    if value <= 0:
        raise StoreConfigError(f"{field_name} must be positive, got {value}", details={"field": field_name})
    return value


def validate_range(value: float, minimum: float, maximum: float, field_name: str = "value") -> float:
    if value < minimum or value > maximum:
        raise StoreConfigError(
            f"{field_name} must be between {minimum} and {maximum}, got {value}",
            details={"field": field_name, "min": minimum, "max": maximum},
        )
    return value
