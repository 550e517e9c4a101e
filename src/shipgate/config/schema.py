"""
shipgate — configuration schema and validation.

Purpose
- Define the authoritative defaults of ``shipgate.toml`` and the strict rules
  every effective configuration must satisfy.

Normative behavior
- Validation collects every problem as a ``ConfigValidationIssue`` (dotted
  field path + message) and raises them together.
- Unknown keys are rejected; unknown keys that look like credentials get a
  dedicated message, since credentials never live in the config file.
- Profiles are partial overlays validated with the same section rules.
- Gate thresholds are operator input: ``gates.default_policy`` goes through
  the same parser as pipeline-file policies.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from shipgate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RETRY_COUNT,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
)
from shipgate.gating.policies import PolicyError, parse_policy

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "local")
PERSISTENCE_BACKENDS: Final[tuple[str, ...]] = ("memory", "sqlite")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("persistence", "state_db"),
    ("observability", "log_dir"),
)

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = (
    "executor",
    "gates",
    "observability",
    "paths",
    "persistence",
)


class MetaConfig(TypedDict):
    schema_version: int


class ExecutorConfig(TypedDict):
    max_concurrency: int
    default_timeout_seconds: float
    default_retry_count: int
    backoff_base_seconds: float
    backoff_max_seconds: float


class GatesConfig(TypedDict):
    default_policy: dict[str, object]


class PersistenceConfig(TypedDict):
    backend: Literal["memory", "sqlite"]
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class PathsConfig(TypedDict):
    workspace_root: str


class ProfileOverlay(TypedDict, total=False):
    executor: dict[str, object]
    gates: dict[str, object]
    observability: dict[str, object]
    paths: dict[str, object]
    persistence: dict[str, object]


class ShipgateConfig(TypedDict):
    meta: MetaConfig
    executor: ExecutorConfig
    gates: GatesConfig
    persistence: PersistenceConfig
    observability: ObservabilityConfig
    paths: PathsConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ShipgateConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "executor": {
        "max_concurrency": DEFAULT_MAX_CONCURRENCY,
        "default_timeout_seconds": DEFAULT_STAGE_TIMEOUT_SECONDS,
        "default_retry_count": DEFAULT_RETRY_COUNT,
        "backoff_base_seconds": DEFAULT_BACKOFF_BASE_SECONDS,
        "backoff_max_seconds": DEFAULT_BACKOFF_MAX_SECONDS,
    },
    "gates": {"default_policy": {"kind": "pass-through"}},
    "persistence": {"backend": "sqlite", "state_db": "state/shipgate.sqlite"},
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "paths": {"workspace_root": "."},
    "profiles": {
        "ci": {
            "executor": {"default_retry_count": 1},
            "observability": {"log_to_stdout": True},
        },
        "local": {
            "persistence": {"backend": "memory"},
            "observability": {"log_level": "DEBUG", "log_format": "text"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> ShipgateConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade shipgate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade shipgate"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``; mappings merge, everything else replaces."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if profile else ""
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Deterministic redacted representation for logs and ``shipgate config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    required = {"meta", *_OVERLAY_SECTIONS}
    _reject_unknown_keys(payload, required | {"profiles"}, "", issues)
    _require_keys(payload, required, "", issues)

    out: dict[str, Any] = {}
    meta = _section_object(payload, "meta", "", issues)
    if meta is not None:
        out["meta"] = _validate_meta(meta, "meta", issues)
    for name in _OVERLAY_SECTIONS:
        section = _section_object(payload, name, "", issues)
        if section is not None:
            out[name] = _SECTION_VALIDATORS[name](section, name, issues, False)

    profiles = payload.get("profiles")
    if profiles is not None:
        profiles_obj = _as_object(profiles, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)

    executor = out.get("executor")
    if isinstance(executor, Mapping):
        base = executor.get("backoff_base_seconds")
        cap = executor.get("backoff_max_seconds")
        if isinstance(base, float) and isinstance(cap, float) and cap < base:
            issues.add("executor.backoff_max_seconds", "must be >= executor.backoff_base_seconds")
    return out


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_executor(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "max_concurrency",
        "default_timeout_seconds",
        "default_retry_count",
        "backoff_base_seconds",
        "backoff_max_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("max_concurrency", "default_retry_count"):
        if key in payload:
            parsed_int = _as_int(
                payload[key], _join(path, key), issues, minimum=1 if key == "max_concurrency" else 0
            )
            if parsed_int is not None:
                out[key] = parsed_int
    if "default_timeout_seconds" in payload:
        parsed = _as_float(payload["default_timeout_seconds"], _join(path, "default_timeout_seconds"), issues)
        if parsed is not None:
            if parsed <= 0:
                issues.add(_join(path, "default_timeout_seconds"), "must be > 0")
            else:
                out["default_timeout_seconds"] = parsed
    for key in ("backoff_base_seconds", "backoff_max_seconds"):
        if key in payload:
            parsed = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_gates(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"default_policy"}, path, issues)
    if not partial:
        _require_keys(payload, {"default_policy"}, path, issues)
    out: dict[str, Any] = {}
    if "default_policy" in payload:
        policy_path = _join(path, "default_policy")
        raw = _as_object(payload["default_policy"], policy_path, issues)
        if raw is not None:
            try:
                out["default_policy"] = parse_policy(raw).to_dict()
            except PolicyError as exc:
                issues.add(policy_path, str(exc))
    return out


def _validate_persistence(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"backend", "state_db"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "backend" in payload:
        backend = _as_enum(payload["backend"], _join(path, "backend"), issues, allowed_values=PERSISTENCE_BACKENDS)
        if backend is not None:
            out["backend"] = backend
    if "state_db" in payload:
        state_db = _as_path_text(payload["state_db"], _join(path, "state_db"), issues)
        if state_db is not None:
            out["state_db"] = state_db
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if level is not None:
            out["log_level"] = level
    if "log_format" in payload:
        log_format = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=("json", "text")
        )
        if log_format is not None:
            out["log_format"] = log_format
    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"workspace_root"}, path, issues)
    if not partial:
        _require_keys(payload, {"workspace_root"}, path, issues)
    out: dict[str, Any] = {}
    if "workspace_root" in payload:
        parsed = _as_path_text(payload["workspace_root"], _join(path, "workspace_root"), issues)
        if parsed is not None:
            out["workspace_root"] = parsed
    return out


_SECTION_VALIDATORS: Final[Mapping[str, _SectionValidator]] = {
    "executor": _validate_executor,
    "gates": _validate_gates,
    "observability": _validate_observability,
    "paths": _validate_paths,
    "persistence": _validate_persistence,
}


def _validate_profiles(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        _reject_unknown_keys(overlay, set(_OVERLAY_SECTIONS), profile_path, issues)
        validated: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            section_obj = _section_object(overlay, section, profile_path, issues)
            if section_obj is not None:
                validated[section] = _SECTION_VALIDATORS[section](
                    section_obj, _join(profile_path, section), issues, True
                )
        out[profile_name] = validated
    return out


def _section_object(
    payload: Mapping[str, object], key: str, path: str, issues: _IssueCollector
) -> dict[str, object] | None:
    raw = payload.get(key)
    if raw is None:
        return None
    return _as_object(raw, _join(path, key), issues)


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object, path: str, issues: _IssueCollector, *, minimum: float | None = None
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; reference them as env:NAME in pipeline params",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object], required: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value) if isinstance(key, str)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            out[key] = "<redacted>" if _looks_sensitive_key(key) else _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PERSISTENCE_BACKENDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ProfileOverlay",
    "ShipgateConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
