"""Gate policies and the evaluator that turns stage results into verdicts."""

from shipgate.gating.evaluator import GateEvaluator
from shipgate.gating.policies import (
    AdvisoryPolicy,
    CountThresholdPolicy,
    GatePolicy,
    MetricThresholdPolicy,
    PassThroughPolicy,
    PolicyError,
    SeverityThresholdPolicy,
    parse_policy,
)

__all__ = [
    "AdvisoryPolicy",
    "CountThresholdPolicy",
    "GateEvaluator",
    "GatePolicy",
    "MetricThresholdPolicy",
    "PassThroughPolicy",
    "PolicyError",
    "SeverityThresholdPolicy",
    "parse_policy",
]
