"""Command-line interface router for shipgate."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shipgate.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    effective_config,
    load_config,
)
from shipgate.domain.errors import DefinitionError, RunNotFoundError
from shipgate.domain.ids import generate_run_id
from shipgate.domain.models import PipelineRun, RunOutcome, TriggerMetadata
from shipgate.execution.aggregator import summary
from shipgate.execution.executor import ExecutorSettings
from shipgate.execution.service import PipelineService
from shipgate.observability.logging import setup_logging
from shipgate.persistence import RunStore, run_store_from_config
from shipgate.persistence.state_db import StateDBError
from shipgate.planning.loader import load_pipeline_file
from shipgate.planning.stage_graph import StageGraph
from shipgate.ui.render import CLIRenderer, create_renderer


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipgate",
        description=(
            "shipgate: pipeline orchestration and quality-gate evaluation.\n\n"
            "Common workflows:\n"
            "  shipgate validate pipeline.yaml                  Check a pipeline file\n"
            "  shipgate run pipeline.yaml --commit SHA --branch main\n"
            "  shipgate show RUN_ID                             Inspect a stored run\n"
            "  shipgate config                                  Print effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to shipgate TOML config (default: ./shipgate.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Config profile overlay name.")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a pipeline for one commit",
        description="Execute every stage of PIPELINE and gate the commit on the result.",
    )
    run_parser.add_argument("pipeline", help="Pipeline file (.yaml, .yml or .toml)")
    run_parser.add_argument("--commit", required=True, help="Commit SHA being gated")
    run_parser.add_argument("--branch", required=True, help="Branch name")
    run_parser.add_argument("--version", default=None, help="Precomputed version, if any")
    run_parser.add_argument(
        "--label",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Trigger label (repeatable)",
    )
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate a pipeline file",
        description="Build the stage DAG of PIPELINE and print its execution order.",
    )
    validate_parser.add_argument("pipeline", help="Pipeline file (.yaml, .yml or .toml)")
    validate_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    validate_parser.set_defaults(handler=_cmd_validate)

    show_parser = subparsers.add_parser(
        "show",
        parents=[common],
        help="Show a stored run",
        description="Print the sealed record of RUN_ID from the configured run store.",
    )
    show_parser.add_argument("run_id", help="Run ID")
    show_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    show_parser.set_defaults(handler=_cmd_show)

    runs_parser = subparsers.add_parser(
        "runs",
        parents=[common],
        help="List recent runs",
        description="List the most recent runs in the configured run store, newest first.",
    )
    runs_parser.add_argument("--limit", type=int, default=20, help="Maximum runs to list")
    runs_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    runs_parser.set_defaults(handler=_cmd_runs)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration",
        description="Print the merged, validated and redacted configuration.",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    graph = _load_graph(args.pipeline, config)
    trigger = TriggerMetadata(
        commit_sha=args.commit,
        branch=args.branch,
        version=args.version,
        labels=_parse_labels(args.label),
    )
    run_id = generate_run_id()

    logging_handle = setup_logging(
        config.get("observability"),
        run_id=run_id,
        level="DEBUG" if args.verbose else None,
    )
    try:
        service = PipelineService(
            ExecutorSettings.from_config(config),
            run_store=_open_run_store(config),
            workspace=config["paths"]["workspace_root"],
        )
        run = asyncio.run(_execute(service, graph, trigger, run_id))
    finally:
        logging_handle.shutdown()

    exit_code = 0 if run.outcome is RunOutcome.PASS else 1
    if args.json:
        _emit_json(
            {"command": "run", "run": run.to_dict(), "log_path": str(logging_handle.log_path)}
        )
        return exit_code

    renderer = _get_renderer(args)
    renderer.run(run, summary(run))
    renderer.section("Next steps:")
    renderer.text(f"  $ shipgate show {run.run_id}")
    return exit_code


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    graph = _load_graph(args.pipeline, config)
    order = graph.topological_order()

    if args.json:
        _emit_json({"command": "validate", "pipeline": graph.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", graph.name)
    renderer.kv("Stages", len(graph))
    renderer.section("Execution order:")
    rows = [
        [
            str(position),
            name,
            graph.stage(name).adapter_id,
            ", ".join(graph.dependencies(name)) or "-",
            graph.stage(name).criticality.value,
            graph.stage(name).policy.kind,
        ]
        for position, name in enumerate(order, start=1)
    ]
    renderer.table(("#", "STAGE", "ADAPTER", "DEPENDS ON", "GATE", "POLICY"), rows)
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = _open_run_store(config)
    try:
        run = store.get(args.run_id)
    except RunNotFoundError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    except StateDBError as exc:
        raise CLIError(str(exc), exit_code=4) from exc

    if args.json:
        _emit_json({"command": "show", "run": run.to_dict()})
        return 0
    _get_renderer(args).run(run, summary(run))
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        runs = _open_run_store(config).list_recent(args.limit)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    if args.json:
        _emit_json({"command": "runs", "runs": [_run_row(run) for run in runs]})
        return 0

    renderer = _get_renderer(args)
    if not runs:
        renderer.text("No runs recorded.")
        return 0
    renderer.table(
        ("RUN ID", "PIPELINE", "OUTCOME", "COMMIT", "BRANCH", "STARTED"),
        [
            [
                run.run_id,
                run.pipeline_name,
                renderer.outcome(run.outcome.value),
                run.trigger.commit_sha[:12],
                run.trigger.branch,
                run.started_at.isoformat(timespec="seconds"),
            ]
            for run in runs
        ],
    )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = args.profile

    if args.json:
        _emit_json(
            {"command": "config", "active_profile": profile, "config": effective_config(config)}
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _execute(
    service: PipelineService,
    graph: StageGraph,
    trigger: TriggerMetadata,
    run_id: str,
) -> PipelineRun:
    handle = service.submit_run(graph, trigger, run_id=run_id)
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        # Not every platform supports loop signal handlers.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, handle.cancel, f"received {signum.name}")
            installed.append(signum)
    try:
        return await handle.wait()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(args.no_color), verbose=bool(args.verbose))


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(args.config_path, profile=args.profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_graph(pipeline_arg: str, config: Mapping[str, Any]) -> StageGraph:
    path = Path(pipeline_arg).expanduser()
    if not path.is_file():
        raise CLIError(f"pipeline file not found: {path}", exit_code=2)
    try:
        return load_pipeline_file(path, config=config).build()
    except DefinitionError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _open_run_store(config: Mapping[str, Any]) -> RunStore:
    try:
        return run_store_from_config(config)
    except StateDBError as exc:
        raise CLIError(f"cannot open run store: {exc}", exit_code=4) from exc


def _parse_labels(raw: Sequence[str]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"invalid --label {item!r}; expected KEY=VALUE", exit_code=2)
        labels[key.strip()] = value.strip()
    return labels


def _run_row(run: PipelineRun) -> dict[str, object]:
    return {
        "run_id": run.run_id,
        "pipeline_name": run.pipeline_name,
        "outcome": run.outcome.value,
        "cancelled": run.cancelled,
        "aborted": run.aborted,
        "commit_sha": run.trigger.commit_sha,
        "branch": run.trigger.branch,
        "started_at": run.started_at.isoformat(),
        "duration_ms": run.duration_ms,
    }


__all__ = ["CLIError", "build_parser", "run_cli"]
