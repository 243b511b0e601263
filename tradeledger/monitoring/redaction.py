"""
Credential redaction for structlog events.

Portfolio credentials travel as `apiKey` / `apiSecret` dicts; any event
field whose name looks like one is masked before rendering.
"""
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEY_FRAGMENTS = (
    "apikey",
    "api_key",
    "x-api-key",
    "secret",
    "password",
    "authorization",
    "credentials",
)


def is_sensitive_key(key: Any) -> bool:
    k = str(key).lower()
    return any(frag in k for frag in SENSITIVE_KEY_FRAGMENTS)


def redact(obj: Any) -> Any:
    """Recursively mask sensitive dict keys."""
    if isinstance(obj, dict):
        return {k: REDACTED if is_sensitive_key(k) else redact(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(v) for v in obj]
    return obj


def redaction_processor(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    return redact(event_dict)
