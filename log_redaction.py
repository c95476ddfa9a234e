"""
Logging setup with credential redaction.

stdout carries the MCP protocol, so all log output goes to stderr. Every
record passes through RedactingFilter before it is formatted.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

REDACTED = "[REDACTED]"

_SENSITIVE_KEY_PARTS = ("key", "secret", "password", "authorization", "signature")
# "token" alone names a token address here, so only credential-style token keys count.
_SENSITIVE_TOKEN_KEY_RE = re.compile(r"(access|refresh|auth|bearer|session|api|id)[_-]?token", re.IGNORECASE)

_BEARER_RE = re.compile(r"(Bearer\s+)[^\s'\",]+", re.IGNORECASE)
_ASSIGNMENT_RE = re.compile(
    r"\b(api[_-]?key|secret|password|(?:access|refresh|auth)_token)=([^&\s'\",]+)", re.IGNORECASE
)
_HEX_KEY_RE = re.compile(r"\b[0-9a-fA-F]{64}\b")


def _is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    if any(part in lowered for part in _SENSITIVE_KEY_PARTS):
        return True
    return bool(_SENSITIVE_TOKEN_KEY_RE.search(lowered))


def redact_sensitive(value: Any) -> Any:
    """
    Return a copy of value with secrets masked.

    Mapping values whose key looks sensitive are replaced outright; strings
    have bearer tokens, key=value secrets and 64-char hex keys masked.
    """
    if isinstance(value, str):
        value = _BEARER_RE.sub(rf"\1{REDACTED}", value)
        value = _ASSIGNMENT_RE.sub(rf"\1={REDACTED}", value)
        return _HEX_KEY_RE.sub("[REDACTED_KEY]", value)
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive_key(k) else redact_sensitive(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact_sensitive(v) for v in value)
    return value


class RedactingFilter(logging.Filter):
    """Mask credentials in a record's message and arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_sensitive(record.msg)
        if isinstance(record.args, dict):
            record.args = redact_sensitive(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(
                redact_sensitive(a) if isinstance(a, (str, dict, list, tuple)) else a
                for a in record.args
            )
        return True


def configure_logging(debug: bool = False) -> logging.Handler:
    """Route logging (and warnings) to stderr through RedactingFilter."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(RedactingFilter())
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )
    logging.captureWarnings(True)
    return handler
