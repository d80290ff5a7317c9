import re
from typing import Any

# ─── Masking ───────────────────────────────────────────
SENSITIVE_FIELDS = (
    "apikey",
    "api_key",
    "token",
    "password",
    "secret",
    "authorization",
    "accountnumber",
    "account_number",
    "routingnumber",
    "routing_number",
)

_REDACTIONS = [
    (re.compile(r"secret-token:[A-Za-z0-9_\-]+"), "[REDACTED_TOKEN]"),
    (re.compile(r"Bearer [A-Za-z0-9_\-:.]+"), "Bearer [REDACTED]"),
    (re.compile(r"api[_-]?key[:\s=]+[A-Za-z0-9_\-]+", re.IGNORECASE), "api_key: [REDACTED]"),
    (re.compile(r"password[:\s=]+\S+", re.IGNORECASE), "password: [REDACTED]"),
]


def mask_token(token: str | None) -> str:
    """Show the first 8 characters of an API token, e.g. ``secret-t...``."""
    if not token:
        return "[missing]"
    if len(token) <= 8:
        return "[redacted]"
    return token[:8] + "..."


def mask_account_number(number: str | None) -> str | None:
    """Keep the last 4 digits, e.g. ``****7890``; short values pass through."""
    if not number or len(number) <= 4:
        return number
    return "*" * min(len(number) - 4, 4) + number[-4:]


def sanitize_for_log(obj: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``obj`` with sensitive string fields masked (recursive)."""
    clean: dict[str, Any] = {}
    for key, value in obj.items():
        lowered = key.lower()
        if isinstance(value, str) and any(f in lowered for f in SENSITIVE_FIELDS):
            clean[key] = mask_token(value)
        elif isinstance(value, dict):
            clean[key] = sanitize_for_log(value)
        else:
            clean[key] = value
    return clean


def redact_error_message(message: str) -> str:
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message
