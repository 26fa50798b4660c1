"""Session registry: the authoritative map of sessions, windows and panes.

The registry exclusively owns Session/Window/Pane objects. Everything else
refers to panes by their structured address (``session:window.index``) and
looks them up through ``resolve``.

Mutations take the writer side of an asyncio reader/writer lock and emit a
``TopologyChange`` to subscribers (the persistence store); lookups take the
reader side so they can proceed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from .exceptions import (
    DuplicateNameError,
    ExecutorError,
    InvalidAddressError,
    OrchestratorError,
    PaneNotFoundError,
    SessionNotFoundError,
    WindowNotFoundError,
    record_error,
)
from .models import (
    Pane,
    PaneAddress,
    ProcessHandle,
    Session,
    TopologyChange,
    TopologyChangeKind,
    Window,
    WindowSpec,
    parse_window_address,
)
from .ports import CommandExecutor, TerminationResult
from .security import CommandPolicy, validate_command, validate_env, validate_name

logger = logging.getLogger(__name__)

TopologyListener = Callable[[TopologyChange], None]


class RWLock:
    """Writer-preferring reader/writer lock for asyncio tasks."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def locked(self) -> bool:
        return self._writer or self._readers > 0

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class SessionRegistry:
    """In-memory authoritative session topology."""

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        log_dir: str | Path,
        grace_timeout: float = 5.0,
        policy: CommandPolicy | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            executor: Executor that performs the tmux side effects.
            log_dir: Directory receiving one capture file per pane.
            grace_timeout: Seconds to wait for a pane's process to exit
                before it is force-killed.
            policy: Command safety policy used to pre-validate commands.
        """
        self.executor = executor
        self.log_dir = Path(log_dir).expanduser()
        self.grace_timeout = grace_timeout
        self.policy = policy
        self._sessions: dict[str, Session] = {}
        self._panes: dict[str, Pane] = {}
        self._lock = RWLock()
        self._listeners: list[TopologyListener] = []

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, listener: TopologyListener) -> None:
        """Register a callback invoked after every topology mutation."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: TopologyListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: TopologyChangeKind, session: str, target: str | None = None) -> None:
        change = TopologyChange(kind=kind, session=session, target=target)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error("Error in topology listener: %s", e)
                record_error(e)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def resolve(self, pane_addr: str) -> Pane:
        """Look up a pane by address.

        Raises:
            PaneNotFoundError: If the address is malformed or unknown.
        """
        try:
            key = str(PaneAddress.parse(pane_addr))
        except InvalidAddressError as e:
            raise PaneNotFoundError(pane_addr, cause=e) from e

        async with self._lock.reader():
            pane = self._panes.get(key)
        if pane is None:
            raise PaneNotFoundError(pane_addr)
        return pane

    def find_pane(self, pane_addr: str) -> Pane | None:
        """Lock-free lookup for callers already on the event loop."""
        return self._panes.get(pane_addr)

    async def get_session(self, name: str) -> Session:
        async with self._lock.reader():
            session = self._sessions.get(name)
        if session is None:
            raise SessionNotFoundError(name)
        return session

    async def list_sessions(self) -> list[Session]:
        async with self._lock.reader():
            return list(self._sessions.values())

    def has_session(self, name: str) -> bool:
        return name in self._sessions

    def pane_addresses(self, session: str | None = None) -> list[str]:
        if session is None:
            return list(self._panes)
        return [addr for addr in self._panes if addr.startswith(f"{session}:")]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _generate_name(self) -> str:
        while True:
            name = f"session-{uuid.uuid4().hex[:8]}"
            if name not in self._sessions:
                return name

    def log_path_for(self, address: PaneAddress) -> Path:
        return self.log_dir / address.session / f"{address.window}.{address.index}.log"

    async def _attach_pane(
        self,
        window: Window,
        handle: ProcessHandle,
        command: str | None,
        env: dict[str, str] | None,
        ports: list[int] | None = None,
    ) -> Pane:
        """Give a freshly created tmux pane its address, capture file and command."""
        address = PaneAddress(window.session, window.name, window.allocate_index())
        log_path = self.log_path_for(address)
        log_path.unlink(missing_ok=True)

        pane = Pane(
            address=str(address),
            command=command or "",
            env=dict(env or {}),
            handle=handle,
            log_path=str(log_path),
            ports=list(ports or []),
        )
        await self.executor.start_capture(handle, str(log_path))
        if command:
            pane.handle = await self.executor.spawn(pane, command, env)

        window.panes[address.index] = pane
        window.active_pane = address.index
        return pane

    async def create_session(
        self,
        name: str | None = None,
        working_dir: str | Path = ".",
        initial_windows: list[WindowSpec] | None = None,
    ) -> Session:
        """Create a session with one pane per initial window.

        Raises:
            DuplicateNameError: If ``name`` already denotes a live session.
            UnsafeCommandError: If a name or command is rejected.
        """
        windows = initial_windows or [WindowSpec(name="main")]
        seen: set[str] = set()
        for spec in windows:
            validate_name(spec.name, entity="window")
            if spec.name in seen:
                raise DuplicateNameError(spec.name, entity="window")
            seen.add(spec.name)
            if spec.command:
                validate_command(spec.command, self.policy)
            validate_env(spec.env)

        working = str(Path(working_dir).expanduser().resolve())

        async with self._lock.writer():
            if name is None:
                name = self._generate_name()
            else:
                name = validate_name(name)
            if name in self._sessions:
                raise DuplicateNameError(name)

            handle = await self.executor.create_session(name, working, windows[0].name)
            session = Session(name=name, working_dir=working)
            try:
                for position, spec in enumerate(windows):
                    if position > 0:
                        handle = await self.executor.create_window(name, spec.name, working)
                    window = Window(name=spec.name, session=name)
                    session.windows[spec.name] = window
                    await self._attach_pane(window, handle, spec.command, spec.env)
            except Exception:
                await self._discard_tmux_session(name)
                raise

            self._sessions[name] = session
            for pane in session.iter_panes():
                self._panes[pane.address] = pane
            logger.info("Created session %s with %d window(s)", name, len(windows))
            self._emit(TopologyChangeKind.SESSION_CREATED, name)
        return session

    async def add_window(
        self,
        session_name: str,
        window_name: str,
        command: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Window:
        """Add a window (with one pane) to a live session."""
        validate_name(window_name, entity="window")
        if command:
            validate_command(command, self.policy)

        async with self._lock.writer():
            session = self._sessions.get(session_name)
            if session is None:
                raise SessionNotFoundError(session_name)
            if window_name in session.windows:
                raise DuplicateNameError(window_name, entity="window")

            handle = await self.executor.create_window(session_name, window_name, session.working_dir)
            window = Window(name=window_name, session=session_name)
            session.windows[window_name] = window
            pane = await self._attach_pane(window, handle, command, env)
            self._panes[pane.address] = pane
            self._emit(TopologyChangeKind.WINDOW_ADDED, session_name, window.address)
        return window

    async def add_pane(
        self,
        window_addr: str,
        command: str | None = None,
        env: dict[str, str] | None = None,
        ports: list[int] | None = None,
    ) -> Pane:
        """Split a new pane into a window.

        The pane index is the window's next monotonic index; indices are
        never reused, even after panes are removed.

        Raises:
            WindowNotFoundError: If the window address does not resolve.
        """
        try:
            session_name, window_name = parse_window_address(window_addr)
        except InvalidAddressError as e:
            raise WindowNotFoundError(window_addr, cause=e) from e
        if command:
            validate_command(command, self.policy)

        async with self._lock.writer():
            session = self._sessions.get(session_name)
            window = session.windows.get(window_name) if session else None
            if session is None or window is None:
                raise WindowNotFoundError(window_addr)

            handle = await self.executor.split_pane(session_name, window_name, session.working_dir)
            pane = await self._attach_pane(window, handle, command, env, ports)
            self._panes[pane.address] = pane
            logger.info("Added pane %s", pane.address)
            self._emit(TopologyChangeKind.PANE_ADDED, session_name, pane.address)
        return pane

    async def remove_pane(self, pane_addr: str) -> TerminationResult:
        """Terminate a pane's process and forget the pane.

        The tmux pane itself is only removed when its window keeps other
        panes, so the window survives for later ``add_pane`` calls.
        """
        async with self._lock.writer():
            pane = self._panes.get(pane_addr)
            if pane is None:
                raise PaneNotFoundError(pane_addr)
            address = pane.parsed_address
            window = self._sessions[address.session].windows[address.window]

            result = await self._terminate(pane)
            if len(window.panes) > 1 and pane.handle is not None:
                try:
                    await self.executor.kill_pane(pane.handle)
                except ExecutorError as e:
                    logger.warning("Failed to kill tmux pane for %s: %s", pane_addr, e)

            del window.panes[address.index]
            del self._panes[pane_addr]
            if window.active_pane == address.index:
                window.active_pane = max(window.panes) if window.panes else None
            self._emit(TopologyChangeKind.PANE_REMOVED, address.session, pane_addr)
        return result

    async def run_command(
        self,
        pane_addr: str,
        command: str,
        *,
        env: dict[str, str] | None = None,
        replace: bool = False,
    ) -> Pane:
        """Execute a command in a pane.

        By default the command line is typed into the pane's shell; with
        ``replace=True`` the pane's process is replaced by the command.
        """
        command = validate_command(command, self.policy)
        async with self._lock.writer():
            pane = self._panes.get(pane_addr)
            if pane is None:
                raise PaneNotFoundError(pane_addr)
            if replace:
                pane.handle = await self.executor.spawn(pane, command, env or pane.env)
            else:
                await self.executor.send_input(pane, command, enter=True)
            pane.command = command
            self._emit(TopologyChangeKind.COMMAND_CHANGED, pane.parsed_address.session, pane_addr)
        return pane

    async def destroy_session(self, name: str) -> list[TerminationResult]:
        """Destroy a session, terminating every pane's process.

        Termination timeouts escalate to a forced kill inside the executor
        and never fail this call.

        Raises:
            SessionNotFoundError: If no live session has this name.
        """
        async with self._lock.writer():
            session = self._sessions.get(name)
            if session is None:
                raise SessionNotFoundError(name)

            results = list(
                await asyncio.gather(*(self._terminate(pane) for pane in session.iter_panes()))
            )
            await self._discard_tmux_session(name)

            for pane in session.iter_panes():
                self._panes.pop(pane.address, None)
            del self._sessions[name]
            session.is_alive = False
            forced = sum(1 for r in results if r.force_required)
            logger.info("Destroyed session %s (%d pane(s), %d forced)", name, len(results), forced)
            self._emit(TopologyChangeKind.SESSION_DESTROYED, name)
        return results

    async def adopt(self, session: Session) -> None:
        """Insert a session rebuilt by recovery.

        Raises:
            DuplicateNameError: If a live session already has the name.
        """
        async with self._lock.writer():
            if session.name in self._sessions:
                raise DuplicateNameError(session.name)
            self._sessions[session.name] = session
            for pane in session.iter_panes():
                self._panes[pane.address] = pane
            self._emit(TopologyChangeKind.SESSION_ADOPTED, session.name)

    async def _terminate(self, pane: Pane) -> TerminationResult:
        try:
            return await self.executor.terminate(pane, self.grace_timeout)
        except OrchestratorError as e:
            logger.warning("Failed to terminate %s: %s", pane.address, e)
            record_error(e)
            return TerminationResult(pane=pane.address, success=False, error=str(e))

    async def _discard_tmux_session(self, name: str) -> None:
        try:
            await self.executor.kill_session(name)
        except ExecutorError as e:
            logger.warning("Failed to kill tmux session %s: %s", name, e)
