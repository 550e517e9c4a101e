"""Gate policies: operator-configured thresholds, pure data tagged by ``kind``.

``parse_policy`` accepts the config / pipeline-file form::

    {"kind": "severity-threshold", "minimum": "high"}
    {"kind": "count-threshold", "minimum": "medium", "max_count": 5}
    {"kind": "metric-threshold", "metric": "coverage_percent", "minimum": 80}
    {"kind": "pass-through"}
    {"kind": "advisory"}

and ``policy.to_dict()`` returns exactly that form.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import ClassVar, Final

from shipgate.domain.errors import DefinitionError
from shipgate.domain.models import Severity


class PolicyError(DefinitionError):
    """Raised for malformed policy mappings."""


@dataclass(frozen=True, slots=True)
class GatePolicy:
    kind: ClassVar[str] = ""

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind}

    def describe(self) -> str:
        return self.kind


@dataclass(frozen=True, slots=True)
class PassThroughPolicy(GatePolicy):
    """Tool exit status decides."""

    kind: ClassVar[str] = "pass-through"


@dataclass(frozen=True, slots=True)
class AdvisoryPolicy(GatePolicy):
    """Always pass; findings are recorded for visibility."""

    kind: ClassVar[str] = "advisory"


@dataclass(frozen=True, slots=True)
class SeverityThresholdPolicy(GatePolicy):
    """Fail iff any finding has severity >= ``minimum``."""

    kind: ClassVar[str] = "severity-threshold"
    minimum: Severity = Severity.HIGH

    def __post_init__(self) -> None:
        object.__setattr__(self, "minimum", _parse_severity(self.minimum, "minimum"))

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "minimum": self.minimum.value}

    def describe(self) -> str:
        return f"{self.kind}(minimum={self.minimum.value})"


@dataclass(frozen=True, slots=True)
class CountThresholdPolicy(GatePolicy):
    """Fail iff more than ``max_count`` findings have severity >= ``minimum``."""

    kind: ClassVar[str] = "count-threshold"
    minimum: Severity = Severity.MEDIUM
    max_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "minimum", _parse_severity(self.minimum, "minimum"))
        if isinstance(self.max_count, bool) or not isinstance(self.max_count, int):
            raise PolicyError(f"{self.kind}: max_count must be an integer")
        if self.max_count < 0:
            raise PolicyError(f"{self.kind}: max_count must be >= 0")

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "minimum": self.minimum.value, "max_count": self.max_count}

    def describe(self) -> str:
        return f"{self.kind}(minimum={self.minimum.value}, max_count={self.max_count})"


@dataclass(frozen=True, slots=True)
class MetricThresholdPolicy(GatePolicy):
    """Fail iff ``metric`` is missing from the result or below ``minimum``."""

    kind: ClassVar[str] = "metric-threshold"
    metric: str = "coverage_percent"
    minimum: float = 0.0

    def __post_init__(self) -> None:
        if not isinstance(self.metric, str) or not self.metric.strip():
            raise PolicyError(f"{self.kind}: metric must be a non-empty string")
        object.__setattr__(self, "metric", self.metric.strip())
        if isinstance(self.minimum, bool) or not isinstance(self.minimum, (int, float)):
            raise PolicyError(f"{self.kind}: minimum must be a number")
        if not math.isfinite(self.minimum):
            raise PolicyError(f"{self.kind}: minimum must be finite")
        object.__setattr__(self, "minimum", float(self.minimum))

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "metric": self.metric, "minimum": self.minimum}

    def describe(self) -> str:
        return f"{self.kind}({self.metric} >= {self.minimum:g})"


POLICY_TYPES: Final[Mapping[str, type[GatePolicy]]] = {
    policy_type.kind: policy_type
    for policy_type in (
        PassThroughPolicy,
        AdvisoryPolicy,
        SeverityThresholdPolicy,
        CountThresholdPolicy,
        MetricThresholdPolicy,
    )
}

_ALLOWED_KEYS: Final[Mapping[str, frozenset[str]]] = {
    "pass-through": frozenset({"kind"}),
    "advisory": frozenset({"kind"}),
    "severity-threshold": frozenset({"kind", "minimum"}),
    "count-threshold": frozenset({"kind", "minimum", "max_count"}),
    "metric-threshold": frozenset({"kind", "metric", "minimum"}),
}


def parse_policy(raw: Mapping[str, object] | GatePolicy | None) -> GatePolicy:
    """Build a policy from its mapping form; ``None`` means pass-through."""
    if raw is None:
        return PassThroughPolicy()
    if isinstance(raw, GatePolicy):
        return raw
    if not isinstance(raw, Mapping):
        raise PolicyError(f"policy must be a mapping, got {type(raw).__name__}")

    raw_kind = raw.get("kind")
    if not isinstance(raw_kind, str):
        raise PolicyError("policy.kind must be a string")
    kind = raw_kind.strip().lower().replace("_", "-")
    policy_type = POLICY_TYPES.get(kind)
    if policy_type is None:
        allowed = ", ".join(sorted(POLICY_TYPES))
        raise PolicyError(f"unknown policy kind {raw_kind!r}; expected one of: {allowed}")

    unknown = sorted(str(key) for key in raw if key not in _ALLOWED_KEYS[kind])
    if unknown:
        raise PolicyError(f"policy {kind!r}: unknown key(s): {', '.join(unknown)}")

    kwargs = {str(key): value for key, value in raw.items() if key != "kind"}
    try:
        return policy_type(**kwargs)
    except PolicyError:
        raise
    except (TypeError, ValueError) as exc:
        raise PolicyError(f"policy {kind!r}: {exc}") from exc


def _parse_severity(value: object, field_name: str) -> Severity:
    try:
        return Severity.parse(value)
    except ValueError as exc:
        raise PolicyError(f"{field_name}: {exc}") from exc


__all__ = [
    "POLICY_TYPES",
    "AdvisoryPolicy",
    "CountThresholdPolicy",
    "GatePolicy",
    "MetricThresholdPolicy",
    "PassThroughPolicy",
    "PolicyError",
    "SeverityThresholdPolicy",
    "parse_policy",
]
