"""Public observability primitives: structured logging and pipeline events."""

from shipgate.observability.events import (
    DispatchError,
    EventBus,
    PipelineEvent,
    PipelineEventType,
    Subscriber,
)
from shipgate.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LogRedactor",
    "LoggingConfig",
    "PipelineEvent",
    "PipelineEventType",
    "StructuredLoggingHandle",
    "Subscriber",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
