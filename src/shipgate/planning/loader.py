"""
shipgate — pipeline file loader

Purpose
- Read a pipeline description (YAML or TOML) into a ``PipelineDefinition``.

Normative behavior
- ``.yaml``/``.yml`` files are parsed with ``yaml.safe_load``; ``.toml`` with
  ``tomllib``. Other suffixes are rejected.
- Top level: ``name`` (string), ``stages`` (non-empty sequence), optional
  ``schema_version``. Unknown keys are errors at every level.
- Stage fields: ``name``, ``adapter`` (required), ``depends_on``,
  ``criticality``, ``timeout_seconds``, ``retry_count``, ``policy``,
  ``params``. Missing timeout, retry count and policy come from config.
- Every problem raises ``PipelineFileError`` naming the offending location.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Final, cast

import yaml

from shipgate.adapters import DEFAULT_ADAPTER_REGISTRY
from shipgate.adapters.base import AdapterRegistry
from shipgate.config.schema import default_config
from shipgate.constants import PIPELINE_FILE_SCHEMA_VERSION
from shipgate.domain.errors import DefinitionError
from shipgate.gating.policies import PolicyError, parse_policy
from shipgate.planning.stage_graph import Criticality, PipelineDefinition, StageDefinition

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"schema_version", "name", "stages"})
_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "adapter",
        "depends_on",
        "criticality",
        "timeout_seconds",
        "retry_count",
        "policy",
        "params",
    }
)
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


class PipelineFileError(DefinitionError):
    """A pipeline file could not be read or describes an invalid pipeline."""


def load_pipeline_file(
    path: str | Path,
    *,
    config: Mapping[str, Any] | None = None,
    registry: AdapterRegistry | None = None,
) -> PipelineDefinition:
    source = Path(path).expanduser()
    suffix = source.suffix.lower()
    try:
        if suffix in _YAML_SUFFIXES:
            with source.open("r", encoding="utf-8") as handle:
                payload = cast("object", yaml.safe_load(handle))
        elif suffix == ".toml":
            with source.open("rb") as handle:
                payload = tomllib.load(handle)
        else:
            raise PipelineFileError(
                f"{source}: unsupported pipeline file type {suffix or '<none>'!r}; "
                "use .yaml, .yml or .toml"
            )
    except OSError as exc:
        raise PipelineFileError(f"{source}: cannot read pipeline file ({exc})") from exc
    except yaml.YAMLError as exc:
        raise PipelineFileError(f"{source}: invalid YAML ({exc})") from exc
    except tomllib.TOMLDecodeError as exc:
        raise PipelineFileError(f"{source}: invalid TOML ({exc})") from exc
    return parse_pipeline(payload, config=config, registry=registry, source=source.name)


def parse_pipeline(
    payload: object,
    *,
    config: Mapping[str, Any] | None = None,
    registry: AdapterRegistry | None = None,
    source: str = "<pipeline>",
) -> PipelineDefinition:
    """Build a ``PipelineDefinition`` from an already-decoded mapping."""
    document = _as_mapping(payload, source)
    _reject_unknown(document, _TOP_LEVEL_KEYS, source)

    version = document.get("schema_version", PIPELINE_FILE_SCHEMA_VERSION)
    if version != PIPELINE_FILE_SCHEMA_VERSION:
        raise PipelineFileError(
            f"{source}.schema_version: unsupported version {version!r} "
            f"(expected {PIPELINE_FILE_SCHEMA_VERSION})"
        )

    name = document.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PipelineFileError(f"{source}.name: must be a non-empty string")

    stages = document.get("stages")
    if not isinstance(stages, Sequence) or isinstance(stages, (str, bytes)) or not stages:
        raise PipelineFileError(f"{source}.stages: must be a non-empty list")

    defaults = _StageDefaults.from_config(config if config is not None else default_config())
    adapters = registry or DEFAULT_ADAPTER_REGISTRY
    definition = PipelineDefinition(name)
    for index, raw_stage in enumerate(stages):
        location = f"{source}.stages[{index}]"
        stage = _parse_stage(raw_stage, location, defaults=defaults, registry=adapters)
        try:
            definition.add_stage(stage)
        except DefinitionError as exc:
            raise PipelineFileError(f"{location}: {exc}") from exc
    return definition


class _StageDefaults:
    __slots__ = ("policy", "retry_count", "timeout_seconds")

    def __init__(self, *, timeout_seconds: float, retry_count: int, policy: object) -> None:
        self.timeout_seconds = timeout_seconds
        self.retry_count = retry_count
        self.policy = policy

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> _StageDefaults:
        executor = config.get("executor") or {}
        gates = config.get("gates") or {}
        return cls(
            timeout_seconds=float(executor.get("default_timeout_seconds", 900.0)),
            retry_count=int(executor.get("default_retry_count", 0)),
            policy=gates.get("default_policy"),
        )


def _parse_stage(
    raw: object,
    location: str,
    *,
    defaults: _StageDefaults,
    registry: AdapterRegistry,
) -> StageDefinition:
    stage = _as_mapping(raw, location)
    _reject_unknown(stage, _STAGE_KEYS, location)

    name = stage.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PipelineFileError(f"{location}.name: must be a non-empty string")
    location = f"{location}({name})"

    adapter_id = stage.get("adapter")
    if not isinstance(adapter_id, str) or not adapter_id.strip():
        raise PipelineFileError(f"{location}.adapter: must be a non-empty string")
    try:
        adapter = registry.create(adapter_id)
    except ValueError as exc:
        raise PipelineFileError(f"{location}.adapter: {exc}") from exc

    depends_on = stage.get("depends_on", [])
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, Sequence) or not all(
        isinstance(item, str) for item in depends_on
    ):
        raise PipelineFileError(f"{location}.depends_on: must be a list of stage names")

    params = stage.get("params", {})
    if not isinstance(params, Mapping):
        raise PipelineFileError(f"{location}.params: must be a mapping")

    raw_policy = stage.get("policy", defaults.policy)
    try:
        policy = parse_policy(cast("Mapping[str, object] | None", raw_policy))
    except PolicyError as exc:
        raise PipelineFileError(f"{location}.policy: {exc}") from exc

    try:
        return StageDefinition(
            name=name,
            adapter=adapter,
            dependencies=tuple(depends_on),
            policy=policy,
            timeout_seconds=stage.get("timeout_seconds", defaults.timeout_seconds),
            retry_count=stage.get("retry_count", defaults.retry_count),
            criticality=Criticality(str(stage.get("criticality", Criticality.BLOCKING.value))),
            params={str(key): value for key, value in params.items()},
        )
    except ValueError as exc:
        # DefinitionError is a ValueError; so is an unknown criticality.
        raise PipelineFileError(f"{location}: {exc}") from exc


def _as_mapping(value: object, location: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise PipelineFileError(f"{location}: expected a mapping, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            raise PipelineFileError(f"{location}: keys must be strings, got {key!r}")
    return cast("Mapping[str, object]", value)


def _reject_unknown(value: Mapping[str, object], allowed: frozenset[str], location: str) -> None:
    unknown = sorted(set(value) - allowed)
    if unknown:
        raise PipelineFileError(
            f"{location}: unexpected field(s) {unknown}; allowed: {sorted(allowed)}"
        )


__all__ = ["PipelineFileError", "load_pipeline_file", "parse_pipeline"]
