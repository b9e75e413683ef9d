from __future__ import annotations

import re

MAX_RELAY_LENGTH = 4000

_SENSITIVE_PATTERNS = (
    re.compile(r"token=[A-Za-z0-9._-]+", re.IGNORECASE),
    re.compile(r"api_?key=[\w-]+", re.IGNORECASE),
    re.compile(r"password=\w+", re.IGNORECASE),
    re.compile(r"secret=[\w-]+", re.IGNORECASE),
    re.compile(r"authorization: Bearer [A-Za-z0-9._-]+", re.IGNORECASE),
    re.compile(r"[A-Za-z0-9_-]{24}\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27}"),
    re.compile(r"mfa\.[A-Za-z0-9_-]{84}"),
)

_WEBHOOK_PATTERN = re.compile(r"^https://(discord\.com|discordapp\.com)/api/webhooks/\d+/[\w-]+$")
_MASS_MENTION = re.compile(r"@(everyone|here)")


def sanitize_content(content: str | None, max_length: int = MAX_RELAY_LENGTH) -> str:
    if not content:
        return ""
    cleaned = _MASS_MENTION.sub("@\u200b\\1", content.strip())
    if len(cleaned) > max_length:
        cleaned = cleaned[: max_length - 3] + "..."
    return cleaned


def redact_sensitive(message: str | None) -> str:
    if not message:
        return "An unknown error occurred"
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[REDACTED]", sanitized)
    return sanitized


def is_valid_webhook_url(url: str | None) -> bool:
    if not url:
        return False
    return _WEBHOOK_PATTERN.match(url) is not None
