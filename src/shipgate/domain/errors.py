"""Error taxonomy for pipeline definition, stage execution and run lookup.

Only ``DefinitionError`` (and its subclasses) ever escapes ``submit_run``.
Everything raised while a run executes is folded into a stage ``Verdict``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class ShipgateError(Exception):
    """Base class for shipgate errors."""


class DefinitionError(ShipgateError, ValueError):
    """Invalid pipeline definition, rejected before any stage runs."""


class DuplicateStageError(DefinitionError):
    """Raised when two stages share one name."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"stage {stage!r} is already defined")


class UnknownDependencyError(DefinitionError):
    """Raised when a stage depends on a stage that is not defined."""

    def __init__(self, stage: str, dependency: str) -> None:
        self.stage = stage
        self.dependency = dependency
        super().__init__(f"stage {stage!r} depends on undefined stage {dependency!r}")


class CyclicDependencyError(DefinitionError):
    """Raised when stage dependencies form at least one cycle."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles = tuple(tuple(path) for path in cycles)
        if not self.cycles:
            message = "stage graph contains at least one cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in self.cycles[:3])
            suffix = "..." if len(self.cycles) > 3 else ""
            message = f"stage graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class ToolError(ShipgateError):
    """Adapter-level failure distinct from "findings present".

    ``transient=True`` lets the executor retry the stage within its retry budget;
    ``transient=False`` fails the stage immediately.
    """

    def __init__(self, message: str, *, transient: bool = False, tool: str | None = None) -> None:
        self.message = message
        self.transient = transient
        self.tool = tool
        super().__init__(message)

    def __str__(self) -> str:
        prefix = f"{self.tool}: " if self.tool else ""
        return f"{prefix}{self.message}"


class ArtifactConflictError(ShipgateError):
    """Raised on a second write to one ``(stage, artifact_type)`` key."""

    def __init__(self, stage: str, artifact_type: str) -> None:
        self.stage = stage
        self.artifact_type = artifact_type
        super().__init__(f"artifact {artifact_type!r} of stage {stage!r} was already written")


class ArtifactNotFoundError(ShipgateError, KeyError):
    """Raised when a stage reads an artifact nobody published."""

    def __init__(self, stage: str, artifact_type: str) -> None:
        self.stage = stage
        self.artifact_type = artifact_type
        super().__init__(f"artifact {artifact_type!r} of stage {stage!r} does not exist")

    def __str__(self) -> str:
        return str(self.args[0])


class RunNotFoundError(ShipgateError, KeyError):
    """Raised by run lookups for unknown run ids."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id!r} not found")

    def __str__(self) -> str:
        return str(self.args[0])


class SecretResolutionError(ShipgateError):
    """Raised when a credential reference cannot be resolved."""

    def __init__(self, reference: str, detail: str) -> None:
        self.reference = reference
        super().__init__(f"cannot resolve secret reference {reference!r}: {detail}")


__all__ = [
    "ArtifactConflictError",
    "ArtifactNotFoundError",
    "CyclicDependencyError",
    "DefinitionError",
    "DuplicateStageError",
    "RunNotFoundError",
    "SecretResolutionError",
    "ShipgateError",
    "ToolError",
    "UnknownDependencyError",
]
