"""Packaging and entry point smoke checks."""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

import shipgate
from shipgate.main import ExitCode, cli_entrypoint

REPO_ROOT = Path(__file__).resolve().parents[2]


@pytest.mark.smoke
def test_import_has_no_side_effects() -> None:
    probe = (
        "import logging, sys, shipgate; "
        "print(len(logging.getLogger('shipgate').handlers), 'shipgate.config' in sys.modules)"
    )

    completed = subprocess.run(
        [sys.executable, "-c", probe], capture_output=True, text=True, check=False, timeout=60
    )

    assert shipgate.__version__ == "0.1.0"
    assert completed.returncode == 0, completed.stderr
    assert completed.stdout.split() == ["0", "False"]


@pytest.mark.smoke
def test_help_exits_cleanly(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == int(ExitCode.SUCCESS)
    assert "usage:" in capsys.readouterr().out


@pytest.mark.smoke
def test_module_entrypoint_validates_the_sample_pipeline(tmp_path: Path) -> None:
    env = {**os.environ, "SHIPGATE_PROFILE": "ci"}
    env.pop("NO_COLOR", None)

    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "shipgate",
            "validate",
            str(REPO_ROOT / "pipelines" / "release.yaml"),
            "--config",
            str(REPO_ROOT / "shipgate.toml"),
            "--json",
        ],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
        timeout=60,
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout.strip().splitlines()[-1])
    assert payload["pipeline"]["topological_order"] == ["build", "test", "lint", "sast"]
