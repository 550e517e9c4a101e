"""CLI commands end to end against a temporary config, run store and workspace."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

from shipgate.main import ExitCode, cli_entrypoint
from shipgate.ui.cli import run_cli


def _command(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _write_pipeline(tmp_path: Path, *, package_exit: int = 0, criticality: str = "blocking") -> Path:
    document = {
        "schema_version": 1,
        "name": "release",
        "stages": [
            {"name": "build", "adapter": "command", "params": {"command": _command("print('built')")}},
            {
                "name": "package",
                "adapter": "command",
                "depends_on": ["build"],
                "criticality": criticality,
                "params": {"command": _command(f"import sys; sys.exit({package_exit})")},
            },
            {
                "name": "publish",
                "adapter": "command",
                "depends_on": ["package"],
                "params": {"command": _command("print('published')")},
            },
        ],
    }
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    return path


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "shipgate.toml"
    path.write_text("[executor]\nmax_concurrency = 2\n", encoding="utf-8")
    return path


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert isinstance(payload, dict)
    return payload


# ---------------------------------------------------------------------------
# run / show / runs
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_run_passes_and_is_persisted(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path)

    code = run_cli(
        [
            "run",
            str(pipeline),
            "--config",
            str(config_path),
            "--commit",
            "0123456789abcdef",
            "--branch",
            "main",
            "--label",
            "pr=42",
            "--json",
        ]
    )

    assert code == 0
    payload = _json_output(capsys)
    run = payload["run"]
    assert isinstance(run, dict)
    assert run["outcome"] == "pass"
    assert [item["stage_name"] for item in run["verdicts"]] == ["build", "package", "publish"]
    assert run["trigger"]["labels"] == {"pr": "42"}
    assert Path(str(payload["log_path"])).is_file()
    assert (tmp_path / "state" / "shipgate.sqlite").is_file()

    assert run_cli(["show", str(run["run_id"]), "--config", str(config_path), "--json"]) == 0
    assert _json_output(capsys)["run"] == run

    assert run_cli(["runs", "--config", str(config_path), "--json"]) == 0
    (row,) = _json_output(capsys)["runs"]  # type: ignore[misc]
    assert row["run_id"] == run["run_id"]
    assert row["outcome"] == "pass"


@pytest.mark.unit
def test_blocking_failure_rejects_the_commit(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path, package_exit=3)

    code = run_cli(
        ["run", str(pipeline), "--config", str(config_path), "--commit", "abc", "--branch", "main", "--no-color"]
    )

    out = capsys.readouterr().out
    assert code == int(ExitCode.GATE_REJECTED)
    assert "Outcome: FAIL" in out
    assert "Rejected by:" in out
    assert "dependency 'package' did not pass" in out
    assert "shipgate show run-" in out


@pytest.mark.unit
def test_advisory_failure_does_not_reject(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path, package_exit=1, criticality="advisory")

    code = run_cli(
        ["run", str(pipeline), "--config", str(config_path), "--commit", "abc", "--branch", "main", "--json"]
    )

    run = _json_output(capsys)["run"]
    assert code == 0
    assert isinstance(run, dict)
    assert [item["outcome"] for item in run["verdicts"]] == ["pass", "fail", "pass"]


@pytest.mark.unit
def test_show_unknown_run_and_bad_limit_are_usage_errors(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["show", "run-missing", "--config", str(config_path)]) == 2
    assert "run-missing" in capsys.readouterr().err
    assert run_cli(["runs", "--limit", "0", "--config", str(config_path)]) == 2
    assert "limit must be in [1, 1000]" in capsys.readouterr().err


@pytest.mark.unit
def test_runs_reports_an_empty_store(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["runs", "--config", str(config_path)]) == 0
    assert "No runs recorded." in capsys.readouterr().out


@pytest.mark.unit
def test_invalid_label_is_rejected(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path)

    code = run_cli(
        ["run", str(pipeline), "--config", str(config_path), "--commit", "a", "--branch", "b", "--label", "oops"]
    )

    assert code == 2
    assert "expected KEY=VALUE" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# validate / config
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_validate_prints_execution_order(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path)

    assert run_cli(["validate", str(pipeline), "--config", str(config_path)]) == 0

    out = capsys.readouterr().out
    assert "Pipeline: release" in out
    assert "Stages: 3" in out
    lines = [line.split() for line in out.splitlines() if line.strip()[:1].isdigit()]
    assert [line[1] for line in lines] == ["build", "package", "publish"]


@pytest.mark.unit
def test_validate_json_and_definition_errors(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    pipeline = _write_pipeline(tmp_path)
    assert run_cli(["validate", str(pipeline), "--config", str(config_path), "--json"]) == 0
    assert _json_output(capsys)["pipeline"]["name"] == "release"  # type: ignore[index]

    cyclic = tmp_path / "cyclic.yaml"
    cyclic.write_text(
        yaml.safe_dump(
            {
                "name": "loop",
                "stages": [
                    {"name": "a", "adapter": "command", "depends_on": ["b"]},
                    {"name": "b", "adapter": "command", "depends_on": ["a"]},
                ],
            }
        ),
        encoding="utf-8",
    )
    assert run_cli(["validate", str(cyclic), "--config", str(config_path)]) == 2
    assert "cycle" in capsys.readouterr().err.lower()

    assert run_cli(["validate", str(tmp_path / "absent.yaml"), "--config", str(config_path)]) == 2
    assert "pipeline file not found" in capsys.readouterr().err


@pytest.mark.unit
def test_config_command_shows_profile_and_redacted_config(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert run_cli(["config", "--config", str(config_path), "--profile", "local", "--json"]) == 0

    payload = _json_output(capsys)
    assert payload["active_profile"] == "local"
    assert payload["config"]["executor"]["max_concurrency"] == 2  # type: ignore[index]
    assert payload["config"]["persistence"]["backend"] == "memory"  # type: ignore[index]

    assert run_cli(["config", "--config", str(config_path)]) == 0
    assert "Active profile: (default)" in capsys.readouterr().out


@pytest.mark.unit
def test_config_errors_exit_with_usage_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    broken = tmp_path / "broken.toml"
    broken.write_text("[executor]\nmax_concurrency = 0\n", encoding="utf-8")

    assert run_cli(["config", "--config", str(broken)]) == 2
    assert "executor.max_concurrency: must be >= 1" in capsys.readouterr().err
    assert run_cli(["config", "--config", str(tmp_path / "missing.toml")]) == 2


# ---------------------------------------------------------------------------
# Process entrypoint
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_entrypoint_help_and_usage_errors(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == int(ExitCode.SUCCESS)
    assert "shipgate validate pipeline.yaml" in capsys.readouterr().out
    assert cli_entrypoint(["deploy"]) == int(ExitCode.CONFIG_ERROR)
    assert cli_entrypoint([]) == int(ExitCode.CONFIG_ERROR)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ValueError("bad value"), ExitCode.CONFIG_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
        (KeyboardInterrupt(), ExitCode.GATE_REJECTED),
    ],
)
def test_entrypoint_routes_unexpected_errors(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    error: BaseException,
    expected: ExitCode,
) -> None:
    def explode(argv: object) -> int:
        raise error

    monkeypatch.setattr("shipgate.ui.cli.run_cli", explode)

    assert cli_entrypoint(["runs"]) == int(expected)
    assert capsys.readouterr().err.strip()
