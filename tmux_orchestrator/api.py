"""Typed operation boundary for agents and external tools.

Every operation is named by a closed ``OperationKind`` and takes a typed
params dataclass built from plain JSON-like data with dacite. ``call`` never
raises: failures come back as ``APIResult`` with an ``ErrorInfo`` carrying a
stable error kind.

Usage:
    from tmux_orchestrator import Orchestrator
    from tmux_orchestrator.api import OperationKind, OrchestratorAPI

    async def main():
        async with Orchestrator() as orchestrator:
            api = OrchestratorAPI(orchestrator)
            result = await api.call(
                OperationKind.CREATE_SESSION,
                {"name": "dev", "working_dir": ".", "windows": [{"name": "main", "command": "npm start"}]},
            )
            await api.call(OperationKind.ERRORS_WATCH, {"pane": "dev:main.0"})
            summary = await api.call(OperationKind.ERRORS_SUMMARY, {"pane": "dev:main.0"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import dacite

from .exceptions import OrchestratorError, record_error
from .models import (
    ErrorPattern,
    Pane,
    Session,
    Severity,
    TriggerRule,
    WindowSpec,
    model_to_dict,
)

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

# Params reject unknown keys so typos surface as invalid_params
PARAMS_CONFIG = dacite.Config(cast=[Enum], strict=True)

# Failures a caller may retry without side effects piling up
RETRYABLE_KINDS = frozenset({"not_found", "executor", "timeout", "persistence", "sink_unavailable"})


class OperationKind(Enum):
    """Every operation the boundary accepts."""

    CREATE_SESSION = "create_session"
    ADD_WINDOW = "add_window"
    CREATE_PANE = "create_pane"
    REMOVE_PANE = "remove_pane"
    EXECUTE_COMMAND = "execute_command"
    DESTROY_SESSION = "destroy_session"
    LIST_SESSIONS = "list_sessions"
    ERRORS_WATCH = "errors_watch"
    ERRORS_UNWATCH = "errors_unwatch"
    ERRORS_ADD_PATTERN = "errors_add_pattern"
    ERRORS_REMOVE_PATTERN = "errors_remove_pattern"
    ERRORS_SUMMARY = "errors_summary"
    ERRORS_ANALYZE = "errors_analyze"
    ADD_TRIGGER_RULE = "add_trigger_rule"
    REMOVE_TRIGGER_RULE = "remove_trigger_rule"
    STATUS = "status"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class ErrorInfo:
    """Structured failure: stable kind plus human-readable detail."""

    kind: str
    detail: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


@dataclass
class APIResult:
    """Result of an operation."""

    success: bool
    data: Any = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, data: Any = None) -> APIResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: str, detail: str, context: dict[str, Any] | None = None) -> APIResult:
        return cls(success=False, error=ErrorInfo(kind=kind, detail=detail, context=context or {}))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.success:
            result["data"] = self.data
        elif self.error is not None:
            result["error"] = {
                "kind": self.error.kind,
                "detail": self.error.detail,
                "retryable": self.error.retryable,
                "context": {k: str(v) for k, v in self.error.context.items()},
            }
        return result


# =============================================================================
# Params
# =============================================================================


@dataclass
class NoParams:
    pass


@dataclass
class CreateSessionParams:
    name: str | None = None
    working_dir: str = "."
    windows: list[WindowSpec] = field(default_factory=list)


@dataclass
class AddWindowParams:
    session: str
    window: str
    command: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class CreatePaneParams:
    window: str  # session:window
    command: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)


@dataclass
class PaneParams:
    pane: str


@dataclass
class ExecuteCommandParams:
    pane: str
    command: str
    env: dict[str, str] = field(default_factory=dict)
    replace: bool = False


@dataclass
class DestroySessionParams:
    name: str


@dataclass
class ErrorsWatchParams:
    pane: str
    languages: list[str] = field(default_factory=list)
    duration: float | None = None


@dataclass
class ErrorsAddPatternParams:
    name: str
    regex: str
    severity: Severity = Severity.ERROR
    language: str | None = None
    fields: dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass
class ErrorsRemovePatternParams:
    name: str


@dataclass
class ErrorsSummaryParams:
    pane: str
    recent: int = 10


@dataclass
class RemoveTriggerRuleParams:
    rule_id: str


PARAMS: dict[OperationKind, type] = {
    OperationKind.CREATE_SESSION: CreateSessionParams,
    OperationKind.ADD_WINDOW: AddWindowParams,
    OperationKind.CREATE_PANE: CreatePaneParams,
    OperationKind.REMOVE_PANE: PaneParams,
    OperationKind.EXECUTE_COMMAND: ExecuteCommandParams,
    OperationKind.DESTROY_SESSION: DestroySessionParams,
    OperationKind.LIST_SESSIONS: NoParams,
    OperationKind.ERRORS_WATCH: ErrorsWatchParams,
    OperationKind.ERRORS_UNWATCH: PaneParams,
    OperationKind.ERRORS_ADD_PATTERN: ErrorsAddPatternParams,
    OperationKind.ERRORS_REMOVE_PATTERN: ErrorsRemovePatternParams,
    OperationKind.ERRORS_SUMMARY: ErrorsSummaryParams,
    OperationKind.ERRORS_ANALYZE: PaneParams,
    OperationKind.ADD_TRIGGER_RULE: TriggerRule,
    OperationKind.REMOVE_TRIGGER_RULE: RemoveTriggerRuleParams,
    OperationKind.STATUS: NoParams,
}


# =============================================================================
# Serialization
# =============================================================================


def pane_to_dict(pane: Pane) -> dict[str, Any]:
    return {
        "address": pane.address,
        "command": pane.command,
        "pid": pane.pid,
        "log_path": pane.log_path,
        "ports": list(pane.ports),
        "created_at": pane.created_at.isoformat(),
    }


def session_to_dict(session: Session) -> dict[str, Any]:
    return {
        "name": session.name,
        "working_dir": session.working_dir,
        "created_at": session.created_at.isoformat(),
        "uptime_seconds": round(session.uptime_seconds, 1),
        "windows": [
            {
                "name": window.name,
                "active_pane": window.active_pane,
                "panes": [pane_to_dict(p) for _, p in sorted(window.panes.items())],
            }
            for window in session.windows.values()
        ],
    }


# =============================================================================
# API
# =============================================================================


class OrchestratorAPI:
    """Dispatches typed operations to an Orchestrator."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self._handlers: dict[OperationKind, Callable[[Any], Awaitable[Any]]] = {
            OperationKind.CREATE_SESSION: self._create_session,
            OperationKind.ADD_WINDOW: self._add_window,
            OperationKind.CREATE_PANE: self._create_pane,
            OperationKind.REMOVE_PANE: self._remove_pane,
            OperationKind.EXECUTE_COMMAND: self._execute_command,
            OperationKind.DESTROY_SESSION: self._destroy_session,
            OperationKind.LIST_SESSIONS: self._list_sessions,
            OperationKind.ERRORS_WATCH: self._errors_watch,
            OperationKind.ERRORS_UNWATCH: self._errors_unwatch,
            OperationKind.ERRORS_ADD_PATTERN: self._errors_add_pattern,
            OperationKind.ERRORS_REMOVE_PATTERN: self._errors_remove_pattern,
            OperationKind.ERRORS_SUMMARY: self._errors_summary,
            OperationKind.ERRORS_ANALYZE: self._errors_analyze,
            OperationKind.ADD_TRIGGER_RULE: self._add_trigger_rule,
            OperationKind.REMOVE_TRIGGER_RULE: self._remove_trigger_rule,
            OperationKind.STATUS: self._status,
        }

    async def call(
        self, kind: OperationKind | str, params: dict[str, Any] | None = None
    ) -> APIResult:
        """Run one operation. Never raises."""
        try:
            operation = OperationKind(kind)
        except ValueError:
            return APIResult.fail("invalid_operation", f"Unknown operation: {kind}")

        try:
            typed = dacite.from_dict(
                data_class=PARAMS[operation], data=params or {}, config=PARAMS_CONFIG
            )
        except (dacite.DaciteError, ValueError, TypeError) as e:
            return APIResult.fail("invalid_params", str(e), {"operation": operation.value})

        try:
            data = await self._handlers[operation](typed)
        except OrchestratorError as e:
            logger.info("%s failed: %s", operation.value, e)
            return APIResult.fail(e.kind, e.message, e.context)
        except ValueError as e:
            return APIResult.fail("invalid_params", str(e), {"operation": operation.value})
        except Exception as e:
            logger.exception("Unexpected error in %s", operation.value)
            record_error(e)
            return APIResult.fail("internal", str(e), {"operation": operation.value})
        return APIResult.ok(data)

    async def _create_session(self, params: CreateSessionParams) -> dict[str, Any]:
        session = await self.orchestrator.create_session(
            params.name, params.working_dir, params.windows or None
        )
        return session_to_dict(session)

    async def _add_window(self, params: AddWindowParams) -> dict[str, Any]:
        window = await self.orchestrator.add_window(
            params.session, params.window, params.command, params.env
        )
        return {
            "address": window.address,
            "panes": [pane_to_dict(p) for _, p in sorted(window.panes.items())],
        }

    async def _create_pane(self, params: CreatePaneParams) -> dict[str, Any]:
        pane = await self.orchestrator.create_pane(
            params.window, params.command, params.env, params.ports
        )
        return pane_to_dict(pane)

    async def _remove_pane(self, params: PaneParams) -> dict[str, Any]:
        result = await self.orchestrator.remove_pane(params.pane)
        return model_to_dict(result)

    async def _execute_command(self, params: ExecuteCommandParams) -> dict[str, Any]:
        pane = await self.orchestrator.execute_command(
            params.pane, params.command, env=params.env or None, replace=params.replace
        )
        return pane_to_dict(pane)

    async def _destroy_session(self, params: DestroySessionParams) -> dict[str, Any]:
        results = await self.orchestrator.destroy_session(params.name)
        return {
            "name": params.name,
            "panes": [model_to_dict(r) for r in results],
        }

    async def _list_sessions(self, params: NoParams) -> list[dict[str, Any]]:
        return [session_to_dict(s) for s in await self.orchestrator.list_sessions()]

    async def _errors_watch(self, params: ErrorsWatchParams) -> dict[str, Any]:
        watch = await self.orchestrator.errors_watch(
            params.pane, params.languages or None, params.duration
        )
        return watch.to_dict()

    async def _errors_unwatch(self, params: PaneParams) -> dict[str, Any]:
        return {"pane": params.pane, "stopped": await self.orchestrator.errors_unwatch(params.pane)}

    async def _errors_add_pattern(self, params: ErrorsAddPatternParams) -> dict[str, Any]:
        pattern = ErrorPattern(
            name=params.name,
            regex=params.regex,
            severity=params.severity,
            language=params.language,
            fields=params.fields,
            description=params.description,
        )
        replaced = self.orchestrator.errors_add_pattern(pattern)
        return {"pattern": pattern.to_dict(), "replaced": replaced}

    async def _errors_remove_pattern(self, params: ErrorsRemovePatternParams) -> dict[str, Any]:
        return {"name": params.name, "removed": self.orchestrator.errors_remove_pattern(params.name)}

    async def _errors_summary(self, params: ErrorsSummaryParams) -> dict[str, Any]:
        summary = await self.orchestrator.errors_summary(params.pane, recent=params.recent)
        return summary.to_dict()

    async def _errors_analyze(self, params: PaneParams) -> dict[str, Any]:
        analysis = await self.orchestrator.errors_analyze(params.pane)
        return analysis.to_dict()

    async def _add_trigger_rule(self, rule: TriggerRule) -> dict[str, Any]:
        replaced = self.orchestrator.add_trigger_rule(rule)
        return {"rule": model_to_dict(rule), "replaced": replaced}

    async def _remove_trigger_rule(self, params: RemoveTriggerRuleParams) -> dict[str, Any]:
        rule = self.orchestrator.remove_trigger_rule(params.rule_id)
        return {"rule": model_to_dict(rule)}

    async def _status(self, params: NoParams) -> dict[str, Any]:
        return await self.orchestrator.status()
