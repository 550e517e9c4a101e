"""
shipgate — redaction of credentials in logs, tool output and config dumps

Purpose
- Keep tool credentials (SonarQube tokens, Dependency-Track API keys, ZAP API
  keys, registry passwords) out of logs, stage raw output and persisted runs.

Normative behavior
- Text rules replace only the sensitive part of a match, so surrounding
  context stays readable (``Authorization: Bearer ***REDACTED***``).
- Mapping keys that look sensitive (``token``, ``*_api_key``, ``password``...)
  have their whole value replaced.
- ``literal_redactor`` scrubs exact secret values resolved at runtime, which
  pattern rules cannot know about.
- Redaction is deterministic and idempotent.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

TextRedactor = Callable[[str], str]

DEFAULT_SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "bearer_token",
        "client_secret",
        "credential",
        "credentials",
        "password",
        "passwd",
        "private_key",
        "secret",
        "secret_key",
        "token",
        "x_api_key",
        "x_zap_api_key",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_access_token",
    "_auth_token",
    "_client_secret",
    "_private_key",
    "_password",
    "_passwd",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_header",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*(?:bearer|basic|token)\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="api_key_header",
        pattern=re.compile(r"(?i)(\bx-(?:zap-)?api-key\s*:\s*)(\S{6,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|token|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="url_credentials",
        pattern=re.compile(r"(\b[a-z][a-z0-9+.-]*://[^\s:/@]+:)([^\s@/]+)(@)"),
        sensitive_group=2,
    ),
    _TextRule(name="sonar_token", pattern=re.compile(r"\bsq[upa]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


def is_sensitive_key(key: str, *, allowlist: Iterable[str] = ()) -> bool:
    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in {_normalize_key(item) for item in allowlist}:
        return False
    if normalized in DEFAULT_SENSITIVE_KEY_DENYLIST:
        return True
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Apply every text rule to ``text``."""
    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in _TEXT_RULES:
        redacted = rule.pattern.sub(_replacer(rule, replacement), redacted)
    return redacted


def redact_structure(
    value: object,
    *,
    replacement: str = REDACTED_VALUE,
    allowlist: Iterable[str] = (),
) -> object:
    """Return a deep-redacted copy of nested mappings and sequences."""
    allowed = tuple(allowlist)
    return _redact(value, replacement=replacement, allowlist=allowed, seen=set())


def literal_redactor(
    secrets: Iterable[str],
    *,
    replacement: str = REDACTED_VALUE,
    min_length: int = 4,
) -> TextRedactor:
    """Build a redactor that also replaces each exact value in ``secrets``."""
    literals = sorted({item for item in secrets if len(item) >= min_length}, key=len, reverse=True)

    def redactor(text: str) -> str:
        for literal in literals:
            text = text.replace(literal, replacement)
        return redact_text(text, replacement=replacement)

    return redactor


def _redact(
    value: object,
    *,
    replacement: str,
    allowlist: tuple[str, ...],
    seen: set[int],
) -> object:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            out: dict[object, object] = {}
            for key in sorted(value, key=str):
                item = value[key]
                if isinstance(key, str) and is_sensitive_key(key, allowlist=allowlist):
                    out[key] = replacement
                else:
                    out[key] = _redact(item, replacement=replacement, allowlist=allowlist, seen=seen)
            return out
        finally:
            seen.discard(id(value))
    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            return replacement
        seen.add(id(value))
        try:
            items = [
                _redact(item, replacement=replacement, allowlist=allowlist, seen=seen)
                for item in value
            ]
        finally:
            seen.discard(id(value))
        return items if isinstance(value, list) else tuple(items)
    return value


def _replacer(rule: _TextRule, replacement: str) -> Callable[[re.Match[str]], str]:
    def repl(match: re.Match[str]) -> str:
        if rule.sensitive_group is None:
            return replacement
        full = match.group(0)
        start, end = match.span(rule.sensitive_group)
        offset_start = start - match.start(0)
        offset_end = end - match.start(0)
        return f"{full[:offset_start]}{replacement}{full[offset_end:]}"

    return repl


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "DEFAULT_SENSITIVE_KEY_DENYLIST",
    "REDACTED_VALUE",
    "TextRedactor",
    "is_sensitive_key",
    "literal_redactor",
    "redact_structure",
    "redact_text",
]
