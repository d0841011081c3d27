"""
Secret redaction for log events.

Strips credentials from log lines before they are pushed to live
subscribers.
"""

import re
from typing import Any, Dict

REDACTED = "[REDACTED]"

SENSITIVE_PATTERNS = [
    # key=value / key: value secret assignments
    re.compile(r"(?:api[_-]?key|apikey|secret|password|token)\s*[:=]\s*['\"]?[^\s'\"]+", re.IGNORECASE),
    # authorization header value, rest of line
    re.compile(r"authorization\s*[:=]\s*['\"]?.+", re.IGNORECASE),
    re.compile(r"bearer\s+[^\s'\"]+", re.IGNORECASE),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"ghp_[a-zA-Z0-9]{36}"),
    # JWTs
    re.compile(r"eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"),
]


def sanitize_log_content(content: str) -> str:
    """Replace every sensitive substring of ``content`` with a redaction marker."""
    result = content
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_log_content(value)
    if isinstance(value, dict):
        return {key: _sanitize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    return value


def sanitize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``event`` with every string sanitized.

    Nested dicts and lists are copied and sanitized too; other values are
    kept as is and the input is not mutated.
    """
    return _sanitize_value(event)
