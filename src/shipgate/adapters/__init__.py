"""Tool adapters. Importing this package registers every builtin adapter."""

from shipgate.adapters.base import (
    DEFAULT_ADAPTER_REGISTRY,
    AdapterContext,
    AdapterRegistry,
    CommandAdapter,
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
    ToolAdapter,
    register_builtin_adapter,
)
from shipgate.adapters.build import BuildCommandAdapter
from shipgate.adapters.dast import ZapScanAdapter
from shipgate.adapters.dependency_track import DependencyTrackAdapter
from shipgate.adapters.http import ServiceClient, poll_until
from shipgate.adapters.linter import RuffLintAdapter
from shipgate.adapters.sast import SonarQubeAdapter
from shipgate.adapters.sbom import CycloneDxSbomAdapter
from shipgate.adapters.secret_scanner import GitleaksAdapter
from shipgate.adapters.secrets import EnvSecretProvider, SecretProvider, StaticSecretProvider
from shipgate.adapters.test_runner import JUnitTestAdapter
from shipgate.adapters.version_calculator import GitVersionAdapter

__all__ = [
    "DEFAULT_ADAPTER_REGISTRY",
    "AdapterContext",
    "AdapterRegistry",
    "BuildCommandAdapter",
    "CommandAdapter",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "CycloneDxSbomAdapter",
    "DependencyTrackAdapter",
    "EnvSecretProvider",
    "GitVersionAdapter",
    "GitleaksAdapter",
    "JUnitTestAdapter",
    "LocalSubprocessExecutor",
    "RuffLintAdapter",
    "SecretProvider",
    "ServiceClient",
    "SonarQubeAdapter",
    "StaticSecretProvider",
    "ToolAdapter",
    "ZapScanAdapter",
    "poll_until",
    "register_builtin_adapter",
]
