"""tmux session orchestrator.

Manages long-lived tmux sessions as addressable panes (``session:window.index``),
watches pane output for errors, turns error bursts and process exits into
outbound triggers, and persists session topology so it survives a restart.

Public API Usage:
    from tmux_orchestrator import Orchestrator, WindowSpec, TriggerRule, CallbackSink

    async def main():
        async with Orchestrator(sinks=[CallbackSink("agent", print)]) as orchestrator:
            await orchestrator.create_session("dev", ".", [WindowSpec("main", "npm start")])
            orchestrator.add_trigger_rule(TriggerRule("node-errors", "agent", min_count=3))
            await orchestrator.errors_watch("dev:main.0", languages=["node"])

    # Typed operation boundary that never raises
    from tmux_orchestrator import OperationKind, OrchestratorAPI

    result = await OrchestratorAPI(orchestrator).call(OperationKind.ERRORS_SUMMARY, {"pane": "dev:main.0"})
"""

__version__ = "0.1.0"

# =============================================================================
# Main API Classes
# =============================================================================

from tmux_orchestrator.orchestrator import Orchestrator, PaneWatch
from tmux_orchestrator.api import (
    APIResult,
    ErrorInfo,
    OperationKind,
    OrchestratorAPI,
)

# =============================================================================
# Core Components
# =============================================================================

from tmux_orchestrator.registry import SessionRegistry
from tmux_orchestrator.executor import TmuxExecutor
from tmux_orchestrator.ports import CommandExecutor, PaneStatus, TerminationResult
from tmux_orchestrator.log_watcher import LineBuffer, LogWatcher, WatcherState
from tmux_orchestrator.classifier import ErrorAnalysis, ErrorClassifier, ErrorSummary
from tmux_orchestrator.coordinator import EventCoordinator, RollingCounter
from tmux_orchestrator.persistence import RecoveryReport, SessionPersistence, SessionStore
from tmux_orchestrator.process_monitor import ProcessMonitor
from tmux_orchestrator.sinks import CallbackSink, JsonlSink, LoggingSink, TriggerSink, WebhookSink

# =============================================================================
# Data Models
# =============================================================================

from tmux_orchestrator.models import (
    ErrorEntry,
    ErrorPattern,
    LogLine,
    LogSettings,
    OrchestratorConfig,
    Pane,
    PaneAddress,
    ProcessEvent,
    ProcessEventKind,
    Session,
    Severity,
    TriggerEvent,
    TriggerRule,
    Window,
    WindowSpec,
)

# =============================================================================
# Configuration
# =============================================================================

from tmux_orchestrator.config import (
    load_global_config,
    load_merged_config,
    load_project_config,
    save_global_config,
    save_project_config,
)
from tmux_orchestrator.logging_config import setup_logging, setup_logging_from_settings

__all__ = [
    "__version__",
    # Main API
    "Orchestrator",
    "PaneWatch",
    "APIResult",
    "ErrorInfo",
    "OperationKind",
    "OrchestratorAPI",
    # Components
    "SessionRegistry",
    "TmuxExecutor",
    "CommandExecutor",
    "PaneStatus",
    "TerminationResult",
    "LineBuffer",
    "LogWatcher",
    "WatcherState",
    "ErrorAnalysis",
    "ErrorClassifier",
    "ErrorSummary",
    "EventCoordinator",
    "RollingCounter",
    "RecoveryReport",
    "SessionPersistence",
    "SessionStore",
    "ProcessMonitor",
    "CallbackSink",
    "JsonlSink",
    "LoggingSink",
    "TriggerSink",
    "WebhookSink",
    # Models
    "ErrorEntry",
    "ErrorPattern",
    "LogLine",
    "LogSettings",
    "OrchestratorConfig",
    "Pane",
    "PaneAddress",
    "ProcessEvent",
    "ProcessEventKind",
    "Session",
    "Severity",
    "TriggerEvent",
    "TriggerRule",
    "Window",
    "WindowSpec",
    # Configuration
    "load_global_config",
    "load_merged_config",
    "load_project_config",
    "save_global_config",
    "save_project_config",
    "setup_logging",
    "setup_logging_from_settings",
]
