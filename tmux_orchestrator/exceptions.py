"""Custom exception hierarchy for tmux-orchestrator.

This module provides a structured exception hierarchy that enables:
- A stable error ``kind`` for every externally visible failure
- Rich error context for debugging
- User-friendly error messages
- Error categorization for different handling strategies
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class OrchestratorError(Exception):
    """Base exception for all tmux-orchestrator errors.

    Attributes:
        kind: Stable machine-readable error category.
        message: Human-readable error description.
        context: Additional context for debugging.
        timestamp: When the error occurred.
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now()
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(OrchestratorError):
    """Base class for errors about absent sessions, windows, panes or patterns."""

    kind = "not_found"


class SessionNotFoundError(NotFoundError):
    """Raised when a session name does not denote a live session."""

    def __init__(
        self,
        session: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        ctx["session"] = session
        super().__init__(f"Session not found: {session}", context=ctx, cause=cause)


class WindowNotFoundError(NotFoundError):
    """Raised when a window address does not resolve."""

    def __init__(
        self,
        window: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        ctx["window"] = window
        super().__init__(f"Window not found: {window}", context=ctx, cause=cause)


class PaneNotFoundError(NotFoundError):
    """Raised when a pane address does not resolve."""

    def __init__(
        self,
        pane: str,
        *,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        ctx["pane"] = pane
        super().__init__(f"Pane not found: {pane}", context=ctx, cause=cause)


class PatternNotFoundError(NotFoundError):
    """Raised when an error pattern name is unknown."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Error pattern not found: {name}", context={"pattern": name})


class RuleNotFoundError(NotFoundError):
    """Raised when a trigger rule id is unknown."""

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Trigger rule not found: {rule_id}", context={"rule_id": rule_id})


class InvalidAddressError(OrchestratorError):
    """Raised when a pane or window address cannot be parsed."""

    kind = "invalid_address"

    def __init__(self, address: str, *, expected: str = "session:window.index") -> None:
        super().__init__(
            f"Invalid address: {address!r}",
            context={"expected": expected},
        )
        self.address = address


class InvalidPatternError(OrchestratorError):
    """Raised when an error pattern's regular expression does not compile."""

    kind = "invalid_pattern"

    def __init__(
        self,
        name: str,
        *,
        regex: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx: dict[str, Any] = {"pattern": name}
        if regex is not None:
            ctx["regex"] = regex[:100]
        if cause is not None:
            ctx["error"] = str(cause)
        super().__init__("Invalid error pattern", context=ctx, cause=cause)


# =============================================================================
# Topology Errors
# =============================================================================


class DuplicateNameError(OrchestratorError):
    """Raised when a name collides with a live session or window."""

    kind = "duplicate"

    def __init__(
        self,
        name: str,
        *,
        entity: str = "session",
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx[entity] = name
        super().__init__(f"Duplicate {entity} name: {name}", context=ctx)
        self.name = name


# =============================================================================
# Execution Errors
# =============================================================================


class UnsafeCommandError(OrchestratorError):
    """Raised when a command is rejected by the command safety policy.

    This is the only input-trust boundary of the orchestrator: the
    command is never executed.
    """

    kind = "unsafe_command"

    def __init__(
        self,
        message: str = "Command rejected by safety policy",
        *,
        attempted_command: str | None = None,
        reason: str | None = None,
    ) -> None:
        ctx: dict[str, Any] = {}
        if attempted_command is not None:
            ctx["command"] = attempted_command[:200]
        if reason:
            ctx["reason"] = reason
        super().__init__(message, context=ctx)
        self.attempted_command = attempted_command
        self.reason = reason


class ExecutorError(OrchestratorError):
    """Raised when the underlying tmux invocation fails."""

    kind = "executor"

    def __init__(
        self,
        message: str = "tmux command failed",
        *,
        tmux_args: list[str] | None = None,
        stderr: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if tmux_args:
            ctx["args"] = " ".join(tmux_args)
        if stderr:
            ctx["stderr"] = stderr.strip()[:200]
        super().__init__(message, context=ctx, cause=cause)


class TerminationTimeoutError(OrchestratorError):
    """Raised (and logged) when graceful termination exceeds its timeout.

    The pane is force-killed afterwards; this error never fails the
    destroy operation that caused it.
    """

    kind = "timeout"

    def __init__(
        self,
        pane: str,
        *,
        timeout: float,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["pane"] = pane
        ctx["timeout"] = timeout
        super().__init__("Graceful termination timed out", context=ctx)


# =============================================================================
# Persistence Errors
# =============================================================================


class PersistenceError(OrchestratorError):
    """Raised when the session store cannot be read or written."""

    kind = "persistence"

    def __init__(
        self,
        message: str = "Session store operation failed",
        *,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if file_path:
            ctx["file_path"] = file_path
        super().__init__(message, context=ctx, cause=cause)


class RecoveryDiscardedError(OrchestratorError):
    """Raised (and logged) when a persisted record cannot be revalidated."""

    kind = "recovery_discarded"

    def __init__(
        self,
        session: str,
        *,
        reason: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["session"] = session
        ctx["reason"] = reason
        super().__init__("Persisted session discarded", context=ctx)
        self.session = session
        self.reason = reason


# =============================================================================
# Trigger Errors
# =============================================================================


class SinkUnavailableError(OrchestratorError):
    """Raised when a trigger could not be delivered to its sink.

    Swallowed at the coordinator boundary after logging.
    """

    kind = "sink_unavailable"

    def __init__(
        self,
        sink_id: str,
        *,
        reason: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx: dict[str, Any] = {"sink_id": sink_id}
        if reason:
            ctx["reason"] = reason
        super().__init__("Trigger sink unavailable", context=ctx, cause=cause)
        self.sink_id = sink_id


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(OrchestratorError):
    """Base class for configuration-related errors."""

    kind = "config"


class ConfigLoadError(ConfigError):
    """Raised when configuration file fails to load."""

    def __init__(
        self,
        message: str = "Failed to load configuration",
        *,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if file_path:
            ctx["file_path"] = file_path
        super().__init__(message, context=ctx, cause=cause)


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    def __init__(
        self,
        message: str = "Configuration validation failed",
        *,
        field: str | None = None,
        value: Any = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if field:
            ctx["field"] = field
        if value is not None:
            ctx["value"] = str(value)[:100]  # Truncate long values
        super().__init__(message, context=ctx, cause=cause)


class ConfigSaveError(ConfigError):
    """Raised when configuration fails to save."""

    def __init__(
        self,
        message: str = "Failed to save configuration",
        *,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        ctx = context or {}
        if file_path:
            ctx["file_path"] = file_path
        super().__init__(message, context=ctx, cause=cause)


# =============================================================================
# Error Registry for Categorization
# =============================================================================


@dataclass
class ErrorStats:
    """Track error statistics for monitoring."""

    total_count: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_kind: dict[str, int] = field(default_factory=dict)
    recent_errors: list[tuple[datetime, str, str]] = field(default_factory=list)
    max_recent: int = 100

    def record(self, error: Exception) -> None:
        """Record an error occurrence."""
        self.total_count += 1
        type_name = type(error).__name__
        self.by_type[type_name] = self.by_type.get(type_name, 0) + 1
        kind = getattr(error, "kind", None)
        if kind is not None:
            self.by_kind[kind] = self.by_kind.get(kind, 0) + 1

        self.recent_errors.append((datetime.now(), type_name, str(error)[:200]))
        if len(self.recent_errors) > self.max_recent:
            self.recent_errors.pop(0)

    def reset(self) -> None:
        """Forget all recorded errors."""
        self.total_count = 0
        self.by_type.clear()
        self.by_kind.clear()
        self.recent_errors.clear()


# Global error stats tracker
error_stats = ErrorStats()


def record_error(error: Exception) -> None:
    """Record an error to global stats."""
    error_stats.record(error)
