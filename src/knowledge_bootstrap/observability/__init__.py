"""Observability: structured logging and progress events."""

from knowledge_bootstrap.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_console_logging,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from knowledge_bootstrap.observability.progress import (
    DispatchError,
    EventProgressSink,
    ProgressEvent,
    ProgressKind,
)

__all__ = [
    "DispatchError",
    "EventProgressSink",
    "LoggingConfig",
    "ProgressEvent",
    "ProgressKind",
    "StructuredLoggingHandle",
    "configure_console_logging",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
