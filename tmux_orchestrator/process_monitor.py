"""Process-lifecycle polling for watched panes.

Polls each watched pane's process status and, optionally, the TCP ports it
is expected to serve. Transitions become ``ProcessEvent`` items for the
event coordinator:

- alive -> dead (or pane gone): ``process_exited``
- port open -> closed: ``port_closed``
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .exceptions import record_error
from .logging_config import PaneLoggerAdapter, log_exception
from .models import MonitorSettings, Pane, ProcessEvent, ProcessEventKind
from .ports import CommandExecutor

logger = logging.getLogger(__name__)

EventHandler = Callable[[ProcessEvent], Awaitable[None]]
ExitHandler = Callable[[str], Awaitable[None]]


@dataclass
class _PaneState:
    alive: bool = True
    ports: dict[int, bool] = field(default_factory=dict)


class ProcessMonitor:
    """Detects process exits and closed ports for watched panes."""

    def __init__(
        self,
        executor: CommandExecutor,
        resolve: Callable[[str], Pane | None],
        on_event: EventHandler,
        *,
        settings: MonitorSettings | None = None,
        on_exit: ExitHandler | None = None,
        host: str = "127.0.0.1",
    ) -> None:
        """Initialize the monitor.

        Args:
            executor: Used to query pane status.
            resolve: Looks up the registry's current Pane for an address.
            on_event: Receives every ProcessEvent.
            settings: Poll interval and port probe timeout.
            on_exit: Called with the pane address before ``process_exited``
                is emitted (used to flush the pane's partial log line).
            host: Host probed for pane ports.
        """
        self.executor = executor
        self.resolve = resolve
        self.on_event = on_event
        self.on_exit = on_exit
        self.settings = settings or MonitorSettings()
        self.host = host
        self._panes: dict[str, _PaneState] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def watched(self) -> list[str]:
        return list(self._panes)

    def watch(self, pane_addr: str) -> None:
        if pane_addr not in self._panes:
            self._panes[pane_addr] = _PaneState()

    def unwatch(self, pane_addr: str) -> None:
        self._panes.pop(pane_addr, None)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="process-monitor")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.check_all()
            except Exception as e:
                log_exception(logger, e, "Process monitor poll failed")
                record_error(e)
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def check_all(self) -> list[ProcessEvent]:
        events: list[ProcessEvent] = []
        for pane_addr in list(self._panes):
            events.extend(await self.check(pane_addr))
        return events

    async def check(self, pane_addr: str) -> list[ProcessEvent]:
        """Poll one pane and emit events for any transitions."""
        state = self._panes.get(pane_addr)
        pane = self.resolve(pane_addr)
        if state is None or pane is None or pane.handle is None:
            return []

        log = PaneLoggerAdapter(logger, pane_addr)
        events: list[ProcessEvent] = []
        status = await self.executor.pane_status(pane.handle)
        if state.alive and not status.alive:
            state.alive = False
            log.info(
                "Process exited (status %s)",
                status.exit_status if status.exists else "pane gone",
            )
            if self.on_exit is not None:
                await self.on_exit(pane_addr)
            events.append(
                ProcessEvent(
                    pane=pane_addr,
                    kind=ProcessEventKind.PROCESS_EXITED,
                    detail={
                        "exit_status": status.exit_status,
                        "pane_exists": status.exists,
                        "command": pane.command,
                    },
                )
            )
        elif not state.alive and status.alive:
            log.debug("Process is running again")
            state.alive = True

        for port in pane.ports:
            is_open = await self.probe_port(port)
            was_open = state.ports.get(port)
            state.ports[port] = is_open
            if was_open and not is_open:
                log.info("Port %d closed", port)
                events.append(
                    ProcessEvent(
                        pane=pane_addr,
                        kind=ProcessEventKind.PORT_CLOSED,
                        detail={"port": port},
                    )
                )

        for event in events:
            await self.on_event(event)
        return events

    async def probe_port(self, port: int) -> bool:
        """Check whether something accepts TCP connections on the port."""
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port),
                timeout=self.settings.port_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
