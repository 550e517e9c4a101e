"""
shipgate — tool adapter contract and shared command machinery

Purpose
- Define the ``ToolAdapter`` protocol every stage implementation satisfies and
  the ``AdapterContext`` it receives.
- Provide the command-execution layer (``CommandSpec`` / ``CommandResult`` /
  ``LocalSubprocessExecutor``) and the ``CommandAdapter`` base class used by
  every CLI-backed tool.
- Keep a deterministic registry from adapter id to factory so pipeline files
  can name adapters.

Functional requirements
- Adapters raise ``ToolError`` for failures distinct from "findings present";
  ``transient=True`` marks failures worth retrying.
- Launch failures (missing binary, bad cwd) are never transient.
- Command output is truncated and passed through redaction before it can
  reach a ``StageResult``.

Non-functional requirements
- No ambient globals: everything an adapter touches arrives on the context.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import os
import shlex
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn, Protocol, TypeVar, runtime_checkable

from shipgate.adapters.secrets import EnvSecretProvider, SecretProvider
from shipgate.domain.errors import SecretResolutionError, ToolError
from shipgate.domain.models import ExitStatus, Finding, StageResult, TriggerMetadata
from shipgate.security.redaction import TextRedactor, literal_redactor, redact_text
from shipgate.utils.concurrency import CancellationToken, SleepFn

if TYPE_CHECKING:
    import httpx

    from shipgate.execution.artifacts import ArtifactView

_MAX_OUTPUT_CHARS = 200_000

AdapterFactory = Callable[[], "ToolAdapter"]


@runtime_checkable
class ToolAdapter(Protocol):
    """Uniform contract over heterogeneous external tools."""

    adapter_id: str

    async def execute(self, context: AdapterContext) -> StageResult: ...


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation contract."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        argv = tuple(str(item) for item in self.argv)
        if not argv or not argv[0].strip():
            _fail("CommandSpec.argv", "must not be empty")
        self.argv = argv
        self.env = {str(key): str(self.env[key]) for key in sorted(self.env)}
        if self.timeout_seconds is not None:
            self.timeout_seconds = _positive_float(self.timeout_seconds, "CommandSpec.timeout_seconds")
        codes = tuple(sorted({int(code) for code in self.allowed_exit_codes}))
        if not codes:
            _fail("CommandSpec.allowed_exit_codes", "must not be empty")
        self.allowed_exit_codes = codes

    def build_env(self) -> dict[str, str] | None:
        if not self.inherit_env:
            return dict(self.env)
        if not self.env:
            return None
        env = dict(os.environ)
        env.update(self.env)
        return env

    def display(self) -> str:
        return shlex.join(self.argv)


@dataclass(slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        self.argv = tuple(self.argv)
        if self.timed_out and self.exit_code is not None:
            _fail("CommandResult.exit_code", "must be None when timed_out is true")
        if self.duration_ms < 0:
            _fail("CommandResult.duration_ms", "must be >= 0")

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        if spec is None:
            return self.exit_code == 0
        return self.exit_code in spec.allowed_exit_codes

    @property
    def combined_output(self) -> str:
        parts = [part for part in (self.stdout, self.stderr) if part.strip()]
        return "\n".join(parts)


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor:
    """Runs commands as local asyncio subprocesses.

    The process is killed when the command timeout elapses or when the awaiting
    task is cancelled (stage timeout or run cancellation).
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = None,
        max_output_chars: int | None = _MAX_OUTPUT_CHARS,
        redactor: TextRedactor | None = None,
    ) -> None:
        self._default_timeout_seconds = (
            None
            if default_timeout_seconds is None
            else _positive_float(default_timeout_seconds, "default_timeout_seconds")
        )
        self._max_output_chars = max_output_chars
        self._redactor: TextRedactor = redactor if redactor is not None else redact_text

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = spec.timeout_seconds or self._default_timeout_seconds

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=self._redactor(str(exc)),
            )

        stdin_bytes = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                stdin_bytes=stdin_bytes,
                timeout_seconds=timeout,
            )
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            error_text = f"command timed out after {timeout or 0.0:.3f}s"
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._clean(stdout_bytes),
            stderr=self._clean(stderr_bytes),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            error=error_text,
        )

    def _clean(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n").replace("\r", "\n")
        return self._redactor(_truncate_text(text, self._max_output_chars))


@dataclass(slots=True)
class AdapterContext:
    """Run context handed to an adapter for one attempt."""

    run_id: str
    stage_name: str
    trigger: TriggerMetadata
    artifacts: ArtifactView
    params: Mapping[str, Any] = field(default_factory=dict)
    workspace: Path = field(default_factory=Path.cwd)
    dependencies: tuple[str, ...] = ()
    secrets: SecretProvider = field(default_factory=EnvSecretProvider)
    command_executor: CommandExecutor | None = None
    cancel_token: CancellationToken | None = None
    http_transport: httpx.AsyncBaseTransport | None = None
    sleep: SleepFn = asyncio.sleep
    logger: logging.Logger | logging.LoggerAdapter[logging.Logger] = field(
        default_factory=lambda: logging.getLogger("shipgate.adapters")
    )
    attempt: int = 1
    _resolved_secrets: list[str] = field(default_factory=list, init=False, repr=False)

    def require_executor(self) -> CommandExecutor:
        if self.command_executor is None:
            raise ToolError("no command executor configured", transient=False)
        return self.command_executor

    def resolve_secret(self, reference: str, *, tool: str | None = None) -> str:
        try:
            value = self.secrets.resolve(reference)
        except SecretResolutionError as exc:
            raise ToolError(str(exc), transient=False, tool=tool) from exc
        self._resolved_secrets.append(value)
        return value

    def secret_param(self, key: str, *, tool: str | None = None, required: bool = True) -> str | None:
        """Resolve the credential reference stored under ``params[key]``."""
        reference = self.params.get(key)
        if reference is None:
            if required:
                raise ToolError(f"parameter {key!r} is required", transient=False, tool=tool)
            return None
        if not isinstance(reference, str) or not reference.strip():
            raise ToolError(f"parameter {key!r} must be a secret reference", tool=tool)
        return self.resolve_secret(reference.strip(), tool=tool)

    def resolve_path(self, value: str | os.PathLike[str]) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.workspace / path
        return path

    def redact(self, text: str) -> str:
        """Scrub secrets resolved during this attempt plus pattern-detected ones."""
        return literal_redactor(self._resolved_secrets)(text)

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()


class CommandAdapter:
    """Shared implementation for adapters that wrap one CLI invocation.

    Parameters read from the stage ``params``:

    - ``command``: argv list or shell-style string (defaults to ``default_command``)
    - ``cwd``: working directory relative to the workspace
    - ``env``: extra environment; values of the form ``env:NAME`` are resolved
      through the secret provider
    - ``allowed_exit_codes``: exit codes that count as success
    - ``transient_exit_codes``: exit codes that raise a retryable ``ToolError``
    - ``command_timeout_seconds``: per-invocation limit inside the stage budget
    """

    adapter_id: str = "command"
    tool_name: str = "command"
    default_command: tuple[str, ...] = ()
    default_allowed_exit_codes: tuple[int, ...] = (0,)

    def build_command(self, context: AdapterContext) -> tuple[str, ...]:
        return to_command(context.params.get("command"), default=self.default_command, tool=self.tool_name)

    def build_env(self, context: AdapterContext) -> dict[str, str]:
        raw = context.params.get("env") or {}
        if not isinstance(raw, Mapping):
            raise ToolError("parameter 'env' must be a mapping", tool=self.tool_name)
        env: dict[str, str] = {}
        for key in sorted(raw):
            value = str(raw[key])
            if value.startswith("env:"):
                value = context.resolve_secret(value, tool=self.tool_name)
            env[str(key)] = value
        return env

    def build_spec(self, context: AdapterContext) -> CommandSpec:
        params = context.params
        return CommandSpec(
            argv=self.build_command(context),
            cwd=str(context.resolve_path(str_param(params, "cwd", default=".", tool=self.tool_name))),
            env=self.build_env(context),
            timeout_seconds=optional_float_param(params, "command_timeout_seconds", tool=self.tool_name),
            allowed_exit_codes=int_tuple_param(
                params, "allowed_exit_codes", default=self.default_allowed_exit_codes, tool=self.tool_name
            ),
        )

    async def run_command(self, context: AdapterContext, spec: CommandSpec) -> CommandResult:
        context.check_cancelled()
        context.logger.debug("running %s", spec.display())
        result = await context.require_executor().run(spec)

        if result.timed_out:
            raise TimeoutError(result.error or f"{spec.argv[0]} timed out")
        if result.error is not None:
            raise ToolError(
                f"failed to launch {spec.argv[0]!r}: {result.error}",
                transient=False,
                tool=self.tool_name,
            )
        transient_codes = int_tuple_param(
            context.params, "transient_exit_codes", default=(), tool=self.tool_name
        )
        if result.exit_code in transient_codes:
            raise ToolError(
                f"{spec.argv[0]!r} exited with transient code {result.exit_code}",
                transient=True,
                tool=self.tool_name,
            )
        return result

    async def execute(self, context: AdapterContext) -> StageResult:
        spec = self.build_spec(context)
        result = await self.run_command(context, spec)
        return self.normalize(context, spec, result)

    def normalize(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
    ) -> StageResult:
        return self.stage_result(context, spec, result)

    def stage_result(
        self,
        context: AdapterContext,
        spec: CommandSpec,
        result: CommandResult,
        *,
        findings: Sequence[Finding] = (),
        metrics: Mapping[str, float] | None = None,
        exit_status: ExitStatus | None = None,
    ) -> StageResult:
        if exit_status is None:
            exit_status = ExitStatus.SUCCESS if result.is_success(spec) else ExitStatus.FAILURE
        return StageResult(
            stage_name=context.stage_name,
            exit_status=exit_status,
            findings=tuple(findings),
            raw_output=context.redact(result.combined_output),
            duration_ms=result.duration_ms,
            metrics=metrics or {},
        )


@dataclass(frozen=True, slots=True)
class AdapterRegistration:
    adapter_id: str
    factory: AdapterFactory
    builtin: bool


class AdapterRegistry:
    """Deterministic adapter-id to factory registry."""

    def __init__(self) -> None:
        self._registrations: dict[str, AdapterRegistration] = {}

    def register(self, adapter_id: str, factory: AdapterFactory, *, builtin: bool = False) -> None:
        normalized_id = _normalize_id(adapter_id)
        if not callable(factory):
            _fail("factory", "must be callable")
        if normalized_id in self._registrations:
            _fail("adapter_id", f"{normalized_id!r} is already registered")
        self._registrations[normalized_id] = AdapterRegistration(
            adapter_id=normalized_id, factory=factory, builtin=builtin
        )

    def contains(self, adapter_id: str) -> bool:
        return _normalize_id(adapter_id) in self._registrations

    def create(self, adapter_id: str) -> ToolAdapter:
        normalized_id = _normalize_id(adapter_id)
        registration = self._registrations.get(normalized_id)
        if registration is None:
            known = ", ".join(self.registered_ids())
            _fail("adapter_id", f"unknown adapter {normalized_id!r}; registered: [{known}]")
        adapter = registration.factory()
        if not isinstance(adapter, ToolAdapter):
            _fail("factory", f"{normalized_id!r} factory did not return a ToolAdapter")
        return adapter

    def registered_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._registrations))


AdapterType = TypeVar("AdapterType")

DEFAULT_ADAPTER_REGISTRY = AdapterRegistry()


def register_builtin_adapter(
    adapter_id: str,
    *,
    registry: AdapterRegistry | None = None,
) -> Callable[[type[AdapterType]], type[AdapterType]]:
    """Class decorator registering a zero-argument adapter class."""

    target = registry if registry is not None else DEFAULT_ADAPTER_REGISTRY
    normalized_id = _normalize_id(adapter_id)

    def decorator(adapter_cls: type[AdapterType]) -> type[AdapterType]:
        _validate_zero_arg_constructor(adapter_cls, adapter_id=normalized_id)
        target.register(normalized_id, lambda: adapter_cls(), builtin=True)  # type: ignore[arg-type,return-value]
        return adapter_cls

    return decorator


def to_command(value: object, *, default: Sequence[str] = (), tool: str | None = None) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(part for part in shlex.split(value) if part.strip())
        if parts:
            return parts
    elif isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        parts = tuple(str(item).strip() for item in value if str(item).strip())
        if parts:
            return parts
    elif value is not None:
        raise ToolError("parameter 'command' must be a string or list", tool=tool)

    fallback = tuple(item for item in default if item.strip())
    if not fallback:
        raise ToolError("parameter 'command' is required", tool=tool)
    return fallback


def str_param(
    params: Mapping[str, Any],
    key: str,
    *,
    default: str | None = None,
    tool: str | None = None,
) -> str:
    value = params.get(key, default)
    if value is None:
        raise ToolError(f"parameter {key!r} is required", tool=tool)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(f"parameter {key!r} must be a non-empty string", tool=tool)
    return value.strip()


def optional_str_param(params: Mapping[str, Any], key: str, *, tool: str | None = None) -> str | None:
    if params.get(key) is None:
        return None
    return str_param(params, key, tool=tool)


def float_param(
    params: Mapping[str, Any],
    key: str,
    *,
    default: float,
    minimum: float | None = None,
    tool: str | None = None,
) -> float:
    value = params.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ToolError(f"parameter {key!r} must be a finite number", tool=tool)
    if minimum is not None and value < minimum:
        raise ToolError(f"parameter {key!r} must be >= {minimum}", tool=tool)
    return float(value)


def optional_float_param(params: Mapping[str, Any], key: str, *, tool: str | None = None) -> float | None:
    if params.get(key) is None:
        return None
    value = float_param(params, key, default=0.0, tool=tool)
    if value <= 0:
        raise ToolError(f"parameter {key!r} must be > 0", tool=tool)
    return value


def int_param(
    params: Mapping[str, Any],
    key: str,
    *,
    default: int,
    minimum: int | None = None,
    tool: str | None = None,
) -> int:
    value = params.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ToolError(f"parameter {key!r} must be an integer", tool=tool)
    if minimum is not None and value < minimum:
        raise ToolError(f"parameter {key!r} must be >= {minimum}", tool=tool)
    return value


def int_tuple_param(
    params: Mapping[str, Any],
    key: str,
    *,
    default: Sequence[int],
    tool: str | None = None,
) -> tuple[int, ...]:
    value = params.get(key)
    if value is None:
        return tuple(default)
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ToolError(f"parameter {key!r} must be a list of integers", tool=tool)
    parsed: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ToolError(f"parameter {key!r} must be a list of integers", tool=tool)
        parsed.append(item)
    return tuple(parsed)


def bool_param(params: Mapping[str, Any], key: str, *, default: bool, tool: str | None = None) -> bool:
    value = params.get(key, default)
    if not isinstance(value, bool):
        raise ToolError(f"parameter {key!r} must be a boolean", tool=tool)
    return value


def read_text_file(path: Path, *, tool: str, description: str) -> str:
    """Read a tool report; a missing report is a non-transient tool error."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ToolError(f"{description} not found at {path}", transient=False, tool=tool) from exc
    except OSError as exc:
        raise ToolError(f"cannot read {description} at {path}: {exc}", transient=False, tool=tool) from exc


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    stdin_bytes: bytes | None,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate(stdin_bytes)
        return await asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _elapsed_ms(started_ns: int) -> int:
    return max(time.monotonic_ns() - started_ns, 0) // 1_000_000


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


def _validate_zero_arg_constructor(adapter_cls: type[object], *, adapter_id: str) -> None:
    signature = inspect.signature(adapter_cls)
    for parameter in signature.parameters.values():
        if (
            parameter.kind
            in {
                inspect.Parameter.POSITIONAL_ONLY,
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
                inspect.Parameter.KEYWORD_ONLY,
            }
            and parameter.default is inspect.Signature.empty
        ):
            _fail(
                "adapter_cls",
                f"{adapter_id!r} requires a zero-arg constructor; "
                f"parameter '{parameter.name}' is required",
            )


def _normalize_id(adapter_id: str) -> str:
    if not isinstance(adapter_id, str) or not adapter_id.strip():
        _fail("adapter_id", "must be a non-empty string")
    return adapter_id.strip().lower()


def _positive_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        _fail(path, "must be a finite number > 0")
    return parsed


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


__all__ = [
    "DEFAULT_ADAPTER_REGISTRY",
    "AdapterContext",
    "AdapterFactory",
    "AdapterRegistration",
    "AdapterRegistry",
    "CommandAdapter",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "ToolAdapter",
    "bool_param",
    "float_param",
    "int_param",
    "int_tuple_param",
    "optional_float_param",
    "optional_str_param",
    "read_text_file",
    "register_builtin_adapter",
    "str_param",
    "to_command",
]
