"""Pipeline file loading (YAML and TOML)."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipgate.adapters.base import AdapterRegistry
from shipgate.config.schema import default_config
from shipgate.domain.errors import DefinitionError
from shipgate.gating.policies import PassThroughPolicy, SeverityThresholdPolicy
from shipgate.planning.loader import PipelineFileError, load_pipeline_file, parse_pipeline
from shipgate.planning.stage_graph import Criticality
from tests.fakes import FakeAdapter

_RELEASE_YAML = """
schema_version: 1
name: release
stages:
  - name: build
    adapter: command
    params:
      command: ["make", "build"]
  - name: test
    adapter: junit
    depends_on: [build]
    timeout_seconds: 120
    retry_count: 2
    policy: {kind: severity-threshold, minimum: high}
  - name: lint
    adapter: ruff
    depends_on: build
    criticality: advisory
  - name: sast
    adapter: sonarqube
    depends_on: [test, lint]
"""

_RELEASE_TOML = """
name = "release"

[[stages]]
name = "build"
adapter = "command"

[[stages]]
name = "scan"
adapter = "gitleaks"
depends_on = ["build"]
policy = { kind = "count-threshold", minimum = "medium", max_count = 3 }
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
def test_yaml_pipeline_builds_expected_graph(tmp_path: Path) -> None:
    definition = load_pipeline_file(_write(tmp_path, "pipeline.yaml", _RELEASE_YAML))
    graph = definition.build()

    assert graph.name == "release"
    assert graph.stage_names == ("build", "test", "lint", "sast")
    test = graph.stage("test")
    assert test.adapter_id == "junit"
    assert test.timeout_seconds == 120.0
    assert test.retry_count == 2
    assert test.policy == SeverityThresholdPolicy(minimum="high")
    assert graph.stage("lint").criticality is Criticality.ADVISORY
    assert graph.stage("lint").dependencies == ("build",)
    assert graph.stage("build").params["command"] == ["make", "build"]


@pytest.mark.unit
def test_missing_fields_fall_back_to_config_defaults(tmp_path: Path) -> None:
    config = default_config()
    config["executor"]["default_timeout_seconds"] = 45.0
    config["executor"]["default_retry_count"] = 1
    config["gates"]["default_policy"] = {"kind": "severity-threshold", "minimum": "critical"}

    graph = load_pipeline_file(_write(tmp_path, "p.yml", _RELEASE_YAML), config=config).build()

    sast = graph.stage("sast")
    assert sast.timeout_seconds == 45.0
    assert sast.retry_count == 1
    assert sast.policy == SeverityThresholdPolicy(minimum="critical")


@pytest.mark.unit
def test_toml_pipeline_is_supported(tmp_path: Path) -> None:
    graph = load_pipeline_file(_write(tmp_path, "pipeline.toml", _RELEASE_TOML)).build()

    assert graph.stage_names == ("build", "scan")
    assert graph.stage("build").policy == PassThroughPolicy()
    assert graph.stage("scan").policy.to_dict() == {
        "kind": "count-threshold",
        "minimum": "medium",
        "max_count": 3,
    }


@pytest.mark.unit
def test_custom_registry_resolves_adapters() -> None:
    registry = AdapterRegistry()
    registry.register("fake", lambda: FakeAdapter())

    definition = parse_pipeline(
        {"name": "p", "stages": [{"name": "only", "adapter": "FAKE"}]},
        registry=registry,
    )

    assert definition.stages[0].adapter_id == "fake"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ([], "expected a mapping"),
        ({"name": "p", "stages": [], "extra": 1}, "unexpected field"),
        ({"name": "", "stages": [{"name": "a", "adapter": "command"}]}, "name: must be"),
        ({"name": "p", "stages": []}, "non-empty list"),
        ({"name": "p", "schema_version": 9, "stages": [{}]}, "unsupported version"),
        ({"name": "p", "stages": [{"name": "a"}]}, "adapter: must be"),
        ({"name": "p", "stages": [{"name": "a", "adapter": "nope"}]}, "unknown adapter"),
        (
            {"name": "p", "stages": [{"name": "a", "adapter": "command", "timeout": 3}]},
            "unexpected field",
        ),
        (
            {"name": "p", "stages": [{"name": "a", "adapter": "command", "depends_on": [1]}]},
            "depends_on",
        ),
        (
            {"name": "p", "stages": [{"name": "a", "adapter": "command", "params": []}]},
            "params: must be a mapping",
        ),
        (
            {"name": "p", "stages": [{"name": "a", "adapter": "command", "policy": {"kind": "x"}}]},
            "unknown policy kind",
        ),
        (
            {
                "name": "p",
                "stages": [{"name": "a", "adapter": "command", "criticality": "sometimes"}],
            },
            "(?i)criticality",
        ),
        (
            {
                "name": "p",
                "stages": [
                    {"name": "a", "adapter": "command"},
                    {"name": "a", "adapter": "command"},
                ],
            },
            "already defined",
        ),
    ],
)
def test_invalid_documents_raise_with_location(payload: object, message: str) -> None:
    with pytest.raises(PipelineFileError, match=message):
        parse_pipeline(payload, source="pipeline.yaml")


@pytest.mark.unit
def test_cycles_surface_at_build_time(tmp_path: Path) -> None:
    text = """
name: loop
stages:
  - {name: a, adapter: command, depends_on: [b]}
  - {name: b, adapter: command, depends_on: [a]}
"""
    definition = load_pipeline_file(_write(tmp_path, "loop.yaml", text))

    with pytest.raises(DefinitionError, match="cycle"):
        definition.build()


@pytest.mark.unit
def test_unreadable_or_unsupported_files(tmp_path: Path) -> None:
    with pytest.raises(PipelineFileError, match="unsupported pipeline file type"):
        load_pipeline_file(_write(tmp_path, "pipeline.json", "{}"))
    with pytest.raises(PipelineFileError, match="cannot read"):
        load_pipeline_file(tmp_path / "missing.yaml")
    with pytest.raises(PipelineFileError, match="invalid YAML"):
        load_pipeline_file(_write(tmp_path, "bad.yaml", "name: [unclosed"))
    with pytest.raises(PipelineFileError, match="invalid TOML"):
        load_pipeline_file(_write(tmp_path, "bad.toml", "name = "))
