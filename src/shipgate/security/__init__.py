"""Credential redaction helpers."""

from shipgate.security.redaction import (
    REDACTED_VALUE,
    is_sensitive_key,
    literal_redactor,
    redact_structure,
    redact_text,
)

__all__ = [
    "REDACTED_VALUE",
    "is_sensitive_key",
    "literal_redactor",
    "redact_structure",
    "redact_text",
]
