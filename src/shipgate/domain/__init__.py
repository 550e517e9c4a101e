"""
shipgate domain layer.

Purpose
- Findings, stage results, verdicts and the sealed pipeline-run record, plus
  the error taxonomy and identifier helpers shared by every other package.

Non-functional requirements
- No IO side effects; only the standard library.
"""

from shipgate.domain.errors import (
    ArtifactConflictError,
    ArtifactNotFoundError,
    CyclicDependencyError,
    DefinitionError,
    DuplicateStageError,
    RunNotFoundError,
    SecretResolutionError,
    ShipgateError,
    ToolError,
    UnknownDependencyError,
)
from shipgate.domain.models import (
    SEVERITY_ORDER,
    ArtifactDescriptor,
    ExitStatus,
    Finding,
    PipelineRun,
    RunOutcome,
    Severity,
    StageResult,
    StageState,
    TriggerMetadata,
    Verdict,
    VerdictOutcome,
)

__all__ = [
    "SEVERITY_ORDER",
    "ArtifactConflictError",
    "ArtifactDescriptor",
    "ArtifactNotFoundError",
    "CyclicDependencyError",
    "DefinitionError",
    "DuplicateStageError",
    "ExitStatus",
    "Finding",
    "PipelineRun",
    "RunNotFoundError",
    "RunOutcome",
    "SecretResolutionError",
    "Severity",
    "ShipgateError",
    "StageResult",
    "StageState",
    "ToolError",
    "TriggerMetadata",
    "UnknownDependencyError",
    "Verdict",
    "VerdictOutcome",
]
