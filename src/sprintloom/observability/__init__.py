"""JSON-lines logging with sprint/phase correlation."""

from sprintloom.observability.logging import (
    LoggingConfig,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)

__all__ = ["LoggingConfig", "correlation_scope", "setup_logging", "shutdown_logging"]
