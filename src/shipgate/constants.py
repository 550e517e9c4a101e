"""Stable constants shared across shipgate packages."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_RECORD_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
PIPELINE_FILE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Executor defaults; operators override them in ``shipgate.toml``.
DEFAULT_MAX_CONCURRENCY: Final[int] = 4
DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 900.0
DEFAULT_RETRY_COUNT: Final[int] = 0
DEFAULT_BACKOFF_BASE_SECONDS: Final[float] = 1.0
DEFAULT_BACKOFF_MAX_SECONDS: Final[float] = 60.0

# Well-known artifact types exchanged between stages.
ARTIFACT_VERSION: Final[str] = "version"
ARTIFACT_BUILD_OUTPUT: Final[str] = "build-output"
ARTIFACT_SBOM: Final[str] = "sbom"
ARTIFACT_TEST_REPORT: Final[str] = "test-report"
ARTIFACT_INSPECTION_REPORT: Final[str] = "inspection-report"

# Verdict reason prefixes; audit consumers match on them.
REASON_TOOL_ERROR: Final[str] = "ToolError"
REASON_TIMEOUT: Final[str] = "Timeout"
REASON_CANCELLED: Final[str] = "Cancelled"
REASON_ARTIFACT_CONFLICT: Final[str] = "ArtifactConflict"

__all__ = [
    "ARTIFACT_BUILD_OUTPUT",
    "ARTIFACT_INSPECTION_REPORT",
    "ARTIFACT_SBOM",
    "ARTIFACT_TEST_REPORT",
    "ARTIFACT_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BACKOFF_BASE_SECONDS",
    "DEFAULT_BACKOFF_MAX_SECONDS",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_RETRY_COUNT",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "LOG_DIR",
    "PIPELINE_FILE_SCHEMA_VERSION",
    "REASON_ARTIFACT_CONFLICT",
    "REASON_CANCELLED",
    "REASON_TIMEOUT",
    "REASON_TOOL_ERROR",
    "RUN_RECORD_SCHEMA_VERSION",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
