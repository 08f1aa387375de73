"""Request-data sanitizer for safe logging.

Payloads that reach the logs (auth proxy bodies, client log lines,
analytics properties) can carry credentials and personal data. Keys that
look secret are redacted outright; emails and phone numbers are masked
so logs stay useful for debugging without exposing the user.
Matching is a case-insensitive substring test on dict keys.
"""

import re
from typing import Any

_DEFAULT_REDACT_PATTERNS = frozenset({
    "password", "token", "secret", "key", "authorization", "cookie",
    "credential",
})

_DEFAULT_MASK_PATTERNS = frozenset({"email", "phone"})

_REDACTED = "[REDACTED]"

_EMAIL_LOCAL_PART = re.compile(r"^(.{2}).*@")


def mask_email(email: str) -> str:
    """Keep the first two characters of the local part.

    Example: "test@example.com" -> "te***@example.com"
    """
    if "@" not in email:
        return email
    return _EMAIL_LOCAL_PART.sub(r"\1***@", email)


def mask_value(value: str) -> str:
    """Mask all but the last two characters."""
    if len(value) <= 2:
        return value
    return "*" * (len(value) - 2) + value[-2:]


def _matches(key: str, patterns: frozenset[str]) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in patterns)


def sanitize_request_data(
    data: Any,
    redact_patterns: frozenset[str] = _DEFAULT_REDACT_PATTERNS,
    mask_patterns: frozenset[str] = _DEFAULT_MASK_PATTERNS,
) -> Any:
    """Return a sanitized copy of request data; the input is not mutated.

    Args:
        data: Dict, list or scalar to sanitize.
        redact_patterns: Key substrings whose values become "[REDACTED]".
        mask_patterns: Key substrings whose string values are masked.

    Returns:
        Sanitized copy. Nested dicts and lists are handled recursively.
    """
    if isinstance(data, list):
        return [sanitize_request_data(item, redact_patterns, mask_patterns) for item in data]
    if not isinstance(data, dict):
        return data

    result: dict[str, Any] = {}
    for key, value in data.items():
        key_str = str(key)
        if _matches(key_str, redact_patterns):
            result[key] = _REDACTED
        elif _matches(key_str, mask_patterns) and isinstance(value, str):
            result[key] = mask_email(value) if "email" in key_str.lower() else mask_value(value)
        elif isinstance(value, (dict, list)):
            result[key] = sanitize_request_data(value, redact_patterns, mask_patterns)
        else:
            result[key] = value
    return result


_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_key|authorization|credential"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 500) -> str | None:
    """Redact secret-looking fragments from free text and truncate it.

    Args:
        msg: Error text (None passes through).
        max_length: Maximum length of the result.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
