"""Secret redaction for log records, error payloads and audit details."""

from __future__ import annotations

import logging
import re
from typing import Any

REDACTED = "[REDACTED]"

# Order matters: provider key shapes go first so the generic `key=` rules do not
# leave a partial key behind.
_SENSITIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"sk-ant-[A-Za-z0-9_-]{20,}"),
    re.compile(r"sk-[A-Za-z0-9_-]{20,}"),
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"""api[_-]?key["']?\s*[:=]\s*["']?[A-Za-z0-9._-]+""", re.IGNORECASE),
    re.compile(r"""password["']?\s*[:=]\s*["']?[^"'\s,}]+""", re.IGNORECASE),
    re.compile(r"""token["']?\s*[:=]\s*["']?[A-Za-z0-9._-]+""", re.IGNORECASE),
    re.compile(r"""secret["']?\s*[:=]\s*["']?[^"'\s,}]+""", re.IGNORECASE),
)


def redact(text: str) -> str:
    """Replace every credential-shaped substring with a placeholder."""
    redacted = text
    for pattern in _SENSITIVE_PATTERNS:
        redacted = pattern.sub(REDACTED, redacted)
    return redacted


def redact_payload(payload: Any) -> Any:
    """Recursively redact string values inside JSON-like payloads."""
    if isinstance(payload, str):
        return redact(payload)
    if isinstance(payload, dict):
        return {key: redact_payload(value) for key, value in payload.items()}
    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]
    return payload


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs the fully formatted message before any handler sees it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        if record.exc_info and record.exc_info[1] is not None:
            # Formatted tracebacks embed str(exc); pre-render and scrub them.
            record.exc_text = redact(logging.Formatter().formatException(record.exc_info))
            record.exc_info = None
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once and make sure every handler redacts."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        root.setLevel(level.upper())
    for handler in root.handlers:
        if not any(isinstance(item, RedactingFilter) for item in handler.filters):
            handler.addFilter(RedactingFilter())
