"""Policy parsing from config and pipeline-file mappings."""

from __future__ import annotations

import pytest

from shipgate.domain.models import Severity
from shipgate.gating.policies import (
    POLICY_TYPES,
    AdvisoryPolicy,
    CountThresholdPolicy,
    MetricThresholdPolicy,
    PassThroughPolicy,
    PolicyError,
    SeverityThresholdPolicy,
    parse_policy,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "pass-through"},
        {"kind": "advisory"},
        {"kind": "severity-threshold", "minimum": "high"},
        {"kind": "count-threshold", "minimum": "medium", "max_count": 5},
        {"kind": "metric-threshold", "metric": "coverage_percent", "minimum": 80.0},
    ],
)
def test_to_dict_reproduces_the_parsed_mapping(raw: dict[str, object]) -> None:
    assert parse_policy(raw).to_dict() == raw


@pytest.mark.unit
def test_kind_is_normalized() -> None:
    assert parse_policy({"kind": "Severity_Threshold", "minimum": "CRITICAL"}) == (
        SeverityThresholdPolicy(minimum=Severity.CRITICAL)
    )


@pytest.mark.unit
def test_none_means_pass_through_and_instances_pass_unchanged() -> None:
    policy = CountThresholdPolicy(minimum="low", max_count=1)

    assert parse_policy(None) == PassThroughPolicy()
    assert parse_policy(policy) is policy


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("severity", "must be a mapping"),
        ({"minimum": "high"}, "kind must be a string"),
        ({"kind": "strict"}, "unknown policy kind"),
        ({"kind": "advisory", "minimum": "high"}, "unknown key"),
        ({"kind": "severity-threshold", "minimum": "blocker"}, "invalid severity"),
        ({"kind": "count-threshold", "max_count": -1}, "max_count must be >= 0"),
        ({"kind": "count-threshold", "max_count": "3"}, "max_count must be an integer"),
        ({"kind": "metric-threshold", "metric": " "}, "metric must be"),
        ({"kind": "metric-threshold", "minimum": float("inf")}, "must be finite"),
    ],
)
def test_malformed_policies_raise_policy_error(raw: object, message: str) -> None:
    with pytest.raises(PolicyError, match=message):
        parse_policy(raw)  # type: ignore[arg-type]


@pytest.mark.unit
def test_registry_covers_every_variant() -> None:
    assert set(POLICY_TYPES.values()) == {
        PassThroughPolicy,
        AdvisoryPolicy,
        SeverityThresholdPolicy,
        CountThresholdPolicy,
        MetricThresholdPolicy,
    }
    assert MetricThresholdPolicy(minimum=80).describe() == "metric-threshold(coverage_percent >= 80)"
