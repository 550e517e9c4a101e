"""
shipgate — stage definitions and the validated stage DAG

Purpose
- ``StageDefinition`` describes one pipeline step: which adapter runs it, what
  it depends on, how its result is gated and how much time and how many
  retries it gets.
- ``PipelineDefinition`` is the mutable builder; ``build()`` validates it and
  returns an immutable ``StageGraph``.

Normative behavior
- Stage names are unique; a second ``add_stage`` with the same name raises
  ``DuplicateStageError`` and leaves the builder unchanged.
- ``build()`` rejects dependencies on undefined stages and any cycle. Cycles
  are detected by iterative depth-first traversal tracking the active
  recursion stack and are reported as canonical closed paths.
- Every ordering the graph exposes is deterministic: definition order, with
  topological order ties broken by definition order.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence, Set
from dataclasses import dataclass, field
from enum import StrEnum
from heapq import heapify, heappop, heappush
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from shipgate.constants import DEFAULT_RETRY_COUNT, DEFAULT_STAGE_TIMEOUT_SECONDS
from shipgate.domain.errors import (
    CyclicDependencyError,
    DefinitionError,
    DuplicateStageError,
    UnknownDependencyError,
)
from shipgate.gating.policies import GatePolicy, PassThroughPolicy

if TYPE_CHECKING:
    from shipgate.adapters.base import ToolAdapter


class Criticality(StrEnum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """Static description of one stage; identity is ``name``."""

    name: str
    adapter: ToolAdapter
    dependencies: tuple[str, ...] = ()
    policy: GatePolicy = field(default_factory=PassThroughPolicy)
    timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS
    retry_count: int = DEFAULT_RETRY_COUNT
    criticality: Criticality = Criticality.BLOCKING
    params: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise DefinitionError("stage name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())

        if not hasattr(self.adapter, "execute"):
            raise DefinitionError(f"stage {self.name!r}: adapter must define execute()")

        ordered: dict[str, None] = {}
        for dependency in self.dependencies:
            if not isinstance(dependency, str) or not dependency.strip():
                raise DefinitionError(
                    f"stage {self.name!r}: dependency names must be non-empty strings"
                )
            ordered[dependency.strip()] = None
        object.__setattr__(self, "dependencies", tuple(ordered))

        if not isinstance(self.policy, GatePolicy):
            raise DefinitionError(f"stage {self.name!r}: policy must be a GatePolicy")

        if isinstance(self.timeout_seconds, bool) or not isinstance(
            self.timeout_seconds, (int, float)
        ):
            raise DefinitionError(f"stage {self.name!r}: timeout_seconds must be a number")
        if self.timeout_seconds <= 0:
            raise DefinitionError(f"stage {self.name!r}: timeout_seconds must be > 0")
        object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))

        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int):
            raise DefinitionError(f"stage {self.name!r}: retry_count must be an integer")
        if self.retry_count < 0:
            raise DefinitionError(f"stage {self.name!r}: retry_count must be >= 0")

        try:
            object.__setattr__(self, "criticality", Criticality(self.criticality))
        except ValueError as exc:
            raise DefinitionError(
                f"stage {self.name!r}: criticality must be 'blocking' or 'advisory'"
            ) from exc
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def adapter_id(self) -> str:
        return str(getattr(self.adapter, "adapter_id", type(self.adapter).__name__))

    @property
    def blocking(self) -> bool:
        return self.criticality is Criticality.BLOCKING

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "adapter": self.adapter_id,
            "dependencies": list(self.dependencies),
            "criticality": self.criticality.value,
            "timeout_seconds": self.timeout_seconds,
            "retry_count": self.retry_count,
            "policy": self.policy.to_dict(),
            "params": dict(self.params),
        }


class PipelineDefinition:
    """Builder collecting stage definitions before validation."""

    def __init__(self, name: str = "pipeline") -> None:
        if not isinstance(name, str) or not name.strip():
            raise DefinitionError("pipeline name must be a non-empty string")
        self._name = name.strip()
        self._stages: dict[str, StageDefinition] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def stages(self) -> tuple[StageDefinition, ...]:
        return tuple(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, stage_name: object) -> bool:
        return stage_name in self._stages

    def add_stage(self, definition: StageDefinition) -> PipelineDefinition:
        if not isinstance(definition, StageDefinition):
            raise DefinitionError(
                f"expected StageDefinition, got {type(definition).__name__}"
            )
        if definition.name in self._stages:
            raise DuplicateStageError(definition.name)
        self._stages[definition.name] = definition
        return self

    def stage(
        self,
        name: str,
        adapter: ToolAdapter,
        *,
        depends_on: Iterable[str] = (),
        policy: GatePolicy | None = None,
        timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        retry_count: int = DEFAULT_RETRY_COUNT,
        criticality: Criticality | str = Criticality.BLOCKING,
        params: Mapping[str, Any] | None = None,
    ) -> PipelineDefinition:
        """Keyword shorthand for ``add_stage(StageDefinition(...))``."""
        return self.add_stage(
            StageDefinition(
                name=name,
                adapter=adapter,
                dependencies=tuple(depends_on),
                policy=policy if policy is not None else PassThroughPolicy(),
                timeout_seconds=timeout_seconds,
                retry_count=retry_count,
                criticality=Criticality(criticality),
                params=params or {},
            )
        )

    def build(self) -> StageGraph:
        """Validate references and acyclicity, then freeze into a ``StageGraph``."""
        for definition in self._stages.values():
            for dependency in definition.dependencies:
                if dependency not in self._stages:
                    raise UnknownDependencyError(definition.name, dependency)

        graph = StageGraph(self._name, tuple(self._stages.values()))
        cycles = graph.detect_cycles()
        if cycles:
            raise CyclicDependencyError(cycles)
        return graph


class StageGraph:
    """Immutable, validated DAG of stage definitions."""

    __slots__ = ("_name", "_definitions", "_index", "_dependents")

    def __init__(self, name: str, definitions: Sequence[StageDefinition]) -> None:
        self._name = name
        self._definitions: dict[str, StageDefinition] = {}
        for definition in definitions:
            if definition.name in self._definitions:
                raise DuplicateStageError(definition.name)
            self._definitions[definition.name] = definition
        self._index: dict[str, int] = {
            stage_name: index for index, stage_name in enumerate(self._definitions)
        }
        dependents: dict[str, list[str]] = {stage_name: [] for stage_name in self._definitions}
        for definition in self._definitions.values():
            for dependency in definition.dependencies:
                if dependency not in dependents:
                    raise UnknownDependencyError(definition.name, dependency)
                dependents[dependency].append(definition.name)
        self._dependents: dict[str, tuple[str, ...]] = {
            stage_name: tuple(children) for stage_name, children in dependents.items()
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def stage_names(self) -> tuple[str, ...]:
        """Stage names in definition order."""
        return tuple(self._definitions)

    @property
    def definitions(self) -> tuple[StageDefinition, ...]:
        return tuple(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, stage_name: object) -> bool:
        return stage_name in self._definitions

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self._definitions.values())

    def stage(self, name: str) -> StageDefinition:
        self._assert_stage_exists(name)
        return self._definitions[name]

    def definition_index(self, name: str) -> int:
        self._assert_stage_exists(name)
        return self._index[name]

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self.stage(name).dependencies

    def dependents(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Direct or transitive consumers of ``name`` in definition order."""
        self._assert_stage_exists(name)
        if not transitive:
            return self._dependents[name]

        visited: set[str] = set()
        pending: list[str] = list(self._dependents[name])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(child for child in self._dependents[node] if child not in visited)
        return tuple(sorted(visited, key=self._index.__getitem__))

    def topological_order(self) -> tuple[str, ...]:
        """Kahn's algorithm with ties broken by definition order."""
        indegree: dict[str, int] = {
            stage_name: len(definition.dependencies)
            for stage_name, definition in self._definitions.items()
        }
        ready: list[tuple[int, str]] = [
            (self._index[stage_name], stage_name)
            for stage_name, degree in indegree.items()
            if degree == 0
        ]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, stage_name = heappop(ready)
            order.append(stage_name)
            for child in self._dependents[stage_name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (self._index[child], child))

        if len(order) != len(self._definitions):
            raise CyclicDependencyError(self.detect_cycles())
        return tuple(order)

    def ready_stages(
        self,
        completed: Set[str],
        *,
        started: Set[str] | Iterable[str] = (),
    ) -> tuple[str, ...]:
        """Stages whose dependencies are all in ``completed`` and that have not begun."""
        done = set(completed)
        excluded = done | set(started)
        return tuple(
            stage_name
            for stage_name, definition in self._definitions.items()
            if stage_name not in excluded and all(dep in done for dep in definition.dependencies)
        )

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Return every cycle found as a closed path, e.g. ``("a", "b", "a")``."""
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._definitions:
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [
                (start, iter(self._definitions[start].dependencies))
            ]

            while frames:
                node, dep_iter = frames[-1]
                try:
                    dependency = next(dep_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                dependency_state = state.get(dependency, 0)
                if dependency_state == 0:
                    state[dependency] = 1
                    stack_index[dependency] = len(stack)
                    stack.append(dependency)
                    frames.append((dependency, iter(self._definitions[dependency].dependencies)))
                elif dependency_state == 1:
                    # Stack holds consumers before their dependencies; reverse to
                    # report the cycle in execution direction.
                    loop = list(reversed(stack[stack_index[dependency] :]))
                    cycles[_canonicalize_cycle([*loop, loop[0]])] = None

        return tuple(sorted(cycles))

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self._name,
            "stages": [definition.to_dict() for definition in self._definitions.values()],
            "topological_order": list(self.topological_order()),
        }

    def _assert_stage_exists(self, name: str) -> None:
        if name not in self._definitions:
            raise KeyError(f"unknown stage: {name}")


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = [
    "Criticality",
    "PipelineDefinition",
    "StageDefinition",
    "StageGraph",
]
