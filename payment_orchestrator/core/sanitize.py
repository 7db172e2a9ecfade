"""
Redaction of secrets and PII from structured data.

One sanitizer is shared by the logging pipeline, error detail bags and
webhook payload snapshots, so redaction rules live in a single place.
"""
import re
from typing import Any, Mapping

REDACTED = "[REDACTED]"
MAX_STRING_LENGTH = 300
MAX_DEPTH = 3
MAX_ITEMS = 25

SENSITIVE_KEY_PATTERN = re.compile(
    r"secret|token|password|authorization|cookie|api_key|private_key|email|phone|address|signature",
    re.IGNORECASE,
)


def is_sensitive_key(key: object) -> bool:
    """Check whether a mapping key names a secret or PII field."""
    return bool(SENSITIVE_KEY_PATTERN.search(str(key)))


def _truncate(value: str) -> str:
    if len(value) <= MAX_STRING_LENGTH:
        return value
    return value[:MAX_STRING_LENGTH] + "...[truncated]"


def sanitize(value: Any, depth: int = 0) -> Any:
    """
    Return a copy of ``value`` that is safe to log or return to a caller.

    Args:
        value: Arbitrary JSON-like value
        depth: Current nesting depth (callers leave the default)

    Returns:
        Any: Value with sensitive keys redacted, long strings truncated and
        nesting and sequence sizes capped
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        return _truncate(value)
    if isinstance(value, Mapping):
        if depth >= MAX_DEPTH:
            return "[MaxDepth]"
        return {
            str(key): REDACTED if is_sensitive_key(key) else sanitize(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        if depth >= MAX_DEPTH:
            return "[MaxDepth]"
        items = list(value)
        sanitized = [sanitize(item, depth + 1) for item in items[:MAX_ITEMS]]
        if len(items) > MAX_ITEMS:
            sanitized.append(f"...[{len(items) - MAX_ITEMS} more]")
        return sanitized
    return _truncate(str(value))


def sanitize_mapping(values: Mapping[str, Any]) -> dict:
    """Sanitize a top-level mapping, always returning a dict."""
    result = sanitize(dict(values))
    return result if isinstance(result, dict) else {}
