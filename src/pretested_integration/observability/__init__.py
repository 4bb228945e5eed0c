"""Public observability primitives: structured logging and event streaming."""

from pretested_integration.observability.events import DispatchError, EventBus, Subscriber
from pretested_integration.observability.logging import (
    LogRedactor,
    LogSession,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LogRedactor",
    "LogSession",
    "Subscriber",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "shutdown_logging",
]
