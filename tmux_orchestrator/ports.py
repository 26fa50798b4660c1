"""Command executor abstraction layer.

This module defines the protocol the orchestrator uses to drive panes,
allowing the registry and persistence store to work with the real tmux
adapter (``executor.TmuxExecutor``) or the in-memory double used in tests
(``testing.MockExecutor``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from tmux_orchestrator.models import Pane, ProcessHandle


@dataclass
class PaneStatus:
    """Liveness of the process behind a pane."""

    exists: bool
    """Whether the pane still exists in the multiplexer."""

    dead: bool = False
    """Whether the pane's process has exited (pane kept by remain-on-exit)."""

    exit_status: int | None = None
    """Exit status of a dead pane's process, if known."""

    pid: int | None = None
    """PID currently reported for the pane."""

    @property
    def alive(self) -> bool:
        return self.exists and not self.dead


@dataclass
class TerminationResult:
    """Result of terminating a pane's process."""

    pane: str
    """Address of the terminated pane."""

    success: bool
    """Whether the process is gone."""

    force_required: bool = False
    """Whether a forced kill was needed after the grace timeout."""

    error: str | None = None
    """Error message if termination failed."""


@runtime_checkable
class CommandExecutor(Protocol):
    """Runs commands inside named, addressable panes."""

    async def create_session(self, name: str, working_dir: str, window: str) -> ProcessHandle:
        """Create a detached session whose first window holds one idle pane."""
        ...

    async def create_window(self, session: str, window: str, working_dir: str) -> ProcessHandle:
        """Create a window holding one idle pane."""
        ...

    async def split_pane(self, session: str, window: str, working_dir: str) -> ProcessHandle:
        """Add a pane to an existing window."""
        ...

    async def spawn(
        self, pane: Pane, command: str, env: dict[str, str] | None = None
    ) -> ProcessHandle:
        """Run a command in a pane, replacing whatever ran there before."""
        ...

    async def send_input(self, pane: Pane, data: str, enter: bool = True) -> None:
        """Type text into the pane's running process."""
        ...

    async def terminate(self, pane: Pane, grace_timeout: float) -> TerminationResult:
        """Stop the pane's process gracefully, force-killing after the timeout."""
        ...

    async def kill_session(self, name: str) -> None:
        """Remove a session and everything in it."""
        ...

    async def kill_pane(self, handle: ProcessHandle) -> None:
        """Remove a single pane."""
        ...

    async def has_session(self, name: str) -> bool:
        """Check whether the multiplexer still knows a session."""
        ...

    async def pane_status(self, handle: ProcessHandle) -> PaneStatus:
        """Report whether the pane and its process are still alive."""
        ...

    async def start_capture(self, handle: ProcessHandle, log_path: str) -> None:
        """Append everything the pane prints to ``log_path``."""
        ...
