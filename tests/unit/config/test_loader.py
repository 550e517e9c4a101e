"""Config loading: layering precedence, env coercion and path normalization."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shipgate.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    load_config,
    normalize_paths,
)
from shipgate.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
def test_precedence_defaults_file_env_cli(tmp_path: Path) -> None:
    empty = _write_config(tmp_path / "empty.toml", "")
    config_path = _write_config(tmp_path / "shipgate.toml", "[executor]\nmax_concurrency = 3\n")
    env = {"SHIPGATE_EXECUTOR_MAX_CONCURRENCY": "6"}

    assert load_config(empty, environ={})["executor"]["max_concurrency"] == 4
    assert load_config(config_path, environ={})["executor"]["max_concurrency"] == 3
    assert load_config(config_path, environ=env)["executor"]["max_concurrency"] == 6
    assert (
        load_config(
            config_path, environ=env, cli_overrides={"executor.max_concurrency": 8}
        )["executor"]["max_concurrency"]
        == 8
    )


@pytest.mark.unit
def test_profile_sits_between_file_and_env(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "shipgate.toml",
        "[executor]\ndefault_retry_count = 5\n\n[profiles.ci.executor]\ndefault_retry_count = 2\n",
    )

    profiled = load_config(config_path, profile="ci", environ={})
    env_wins = load_config(
        config_path, profile="ci", environ={"SHIPGATE_EXECUTOR_DEFAULT_RETRY_COUNT": "3"}
    )

    assert profiled["executor"]["default_retry_count"] == 2
    assert env_wins["executor"]["default_retry_count"] == 3


@pytest.mark.unit
def test_profile_selection_order(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shipgate.toml", "")
    env = {"SHIPGATE_PROFILE": "local"}

    from_env = load_config(config_path, environ=env)
    from_cli = load_config(config_path, environ=env, cli_overrides={"profile": "ci"})
    explicit = load_config(config_path, profile="ci", environ=env, cli_overrides={"profile": "local"})

    assert from_env["persistence"]["backend"] == "memory"
    assert from_cli["persistence"]["backend"] == "sqlite"
    assert from_cli["observability"]["log_to_stdout"] is True
    assert explicit["observability"]["log_to_stdout"] is True
    with pytest.raises(ConfigLoadError, match="must be a string"):
        load_config(config_path, environ={}, cli_overrides={"profile": 1})


@pytest.mark.unit
def test_env_values_are_coerced_to_the_default_type(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shipgate.toml", "")

    loaded = load_config(
        config_path,
        environ={
            "SHIPGATE_EXECUTOR_DEFAULT_TIMEOUT_SECONDS": "30",
            "SHIPGATE_OBSERVABILITY_LOG_TO_STDOUT": " yes ",
            "SHIPGATE_OBSERVABILITY_LOG_LEVEL": "warning",
            "SHIPGATE_GATES_DEFAULT_POLICY_KIND": "advisory",
            "SHIPGATE_UNRELATED": "ignored",
        },
    )

    assert loaded["executor"]["default_timeout_seconds"] == 30.0
    assert loaded["observability"]["log_to_stdout"] is True
    assert loaded["observability"]["log_level"] == "WARNING"
    assert loaded["gates"]["default_policy"] == {"kind": "advisory"}


@pytest.mark.unit
@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("SHIPGATE_EXECUTOR_MAX_CONCURRENCY", "four", "must be an integer"),
        ("SHIPGATE_EXECUTOR_BACKOFF_BASE_SECONDS", "soon", "must be a number"),
        ("SHIPGATE_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_uncoercible_env_values_fail_loudly(
    tmp_path: Path, name: str, value: str, message: str
) -> None:
    config_path = _write_config(tmp_path / "shipgate.toml", "")

    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={name: value})


@pytest.mark.unit
def test_paths_are_resolved_against_the_config_directory(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "shipgate.toml",
        '[paths]\nworkspace_root = ".."\n\n[persistence]\nstate_db = "/var/lib/shipgate/state.sqlite"\n',
    )
    base = (tmp_path / "conf").resolve()

    loaded = load_config(config_path, environ={})

    assert loaded["paths"]["workspace_root"] == base.parent.as_posix()
    assert loaded["persistence"]["state_db"] == "/var/lib/shipgate/state.sqlite"
    assert loaded["observability"]["log_dir"] == (base / "logs").as_posix()


@pytest.mark.unit
def test_normalize_paths_leaves_input_untouched(tmp_path: Path) -> None:
    config = {"paths": {"workspace_root": "repo"}, "executor": {"max_concurrency": 1}}

    normalized = normalize_paths(config, base_dir=tmp_path)

    assert normalized["paths"]["workspace_root"] == (tmp_path / "repo").as_posix()
    assert config["paths"]["workspace_root"] == "repo"


@pytest.mark.unit
def test_missing_default_file_falls_back_to_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["executor"]["max_concurrency"] == 4
    assert loaded["persistence"]["state_db"] == (tmp_path.resolve() / "state" / "shipgate.sqlite").as_posix()


@pytest.mark.unit
def test_explicit_missing_or_invalid_file_is_an_error(tmp_path: Path) -> None:
    broken = _write_config(tmp_path / "broken.toml", "[executor\n")

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


@pytest.mark.unit
def test_invalid_overrides_are_rejected(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shipgate.toml", "")

    with pytest.raises(ConfigValidationError, match="executor.max_concurrency: must be >= 1"):
        load_config(config_path, environ={}, cli_overrides={"executor.max_concurrency": 0})
    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(config_path, environ={}, cli_overrides={".": 1})
    with pytest.raises(ConfigValidationError, match="profile 'staging' is not defined"):
        load_config(config_path, profile="staging", environ={})


@pytest.mark.unit
def test_effective_config_dump_is_deterministic_and_redacted(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "shipgate.toml", "")
    loaded = load_config(config_path, environ={})

    first = dump_effective_config(loaded)
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    assert json.loads(first) == effective_config(loaded)
    assert "\n" not in first
    assert dump_effective_config(loaded, indent=2).startswith("{\n  ")
    assert effective_config({"sonar": {"token": "abc"}}) == {"sonar": {"token": "<redacted>"}}
