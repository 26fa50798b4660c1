"""tmux implementation of the CommandExecutor protocol.

Every tmux invocation runs as a subprocess through ``asyncio`` so the event
loop never blocks. Commands are validated by ``security.validate_command``
before they are handed to ``respawn-pane``; panes keep ``remain-on-exit``
so exit status stays observable after the process ends.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ExecutorError, TerminationTimeoutError, record_error
from .models import Pane, ProcessHandle, TmuxSettings
from .ports import PaneStatus, TerminationResult
from .security import CommandPolicy, validate_command, validate_env, validate_input, validate_name

logger = logging.getLogger(__name__)


@dataclass
class TmuxResult:
    """Result of a tmux invocation."""

    success: bool
    output: str = ""
    error: str = ""


class TmuxExecutor:
    """Drives panes through the tmux command line client."""

    POLL_INTERVAL = 0.1  # Seconds between liveness polls while terminating
    HANDLE_FORMAT = "#{pane_id}|#{pane_pid}"
    STATUS_FORMAT = "#{pane_dead}|#{pane_dead_status}|#{pane_pid}"

    def __init__(
        self,
        settings: TmuxSettings | None = None,
        policy: CommandPolicy | None = None,
    ) -> None:
        self.settings = settings or TmuxSettings()
        self.policy = policy

    def _base_cmd(self) -> list[str]:
        """Base tmux command with optional dedicated socket."""
        if self.settings.socket_path:
            return [self.settings.binary, "-S", self.settings.socket_path]
        return [self.settings.binary]

    async def _run(self, args: list[str], timeout: float | None = None) -> TmuxResult:
        """Run a tmux command, never raising."""
        cmd = self._base_cmd() + args
        timeout = timeout or self.settings.command_timeout

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return TmuxResult(success=False, error=f"{self.settings.binary} not found")
        except OSError as e:
            return TmuxResult(success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return TmuxResult(success=False, error="Operation timed out")

        return TmuxResult(
            success=proc.returncode == 0,
            output=stdout.decode("utf-8", errors="replace"),
            error=stderr.decode("utf-8", errors="replace"),
        )

    async def _check(self, args: list[str]) -> TmuxResult:
        """Run a tmux command, raising ExecutorError on failure."""
        result = await self._run(args)
        if not result.success:
            error = ExecutorError(tmux_args=args, stderr=result.error)
            record_error(error)
            raise error
        return result

    @staticmethod
    def _parse_handle(output: str) -> ProcessHandle:
        line = output.strip().splitlines()[0] if output.strip() else ""
        pane_id, _, pid = line.partition("|")
        if not pane_id:
            raise ExecutorError("tmux did not report a pane id", stderr=output)
        return ProcessHandle(pane_id=pane_id, pid=int(pid) if pid.isdigit() else None)

    async def _keep_on_exit(self, handle: ProcessHandle) -> None:
        await self._run(["set-option", "-w", "-t", handle.pane_id, "remain-on-exit", "on"])

    # -------------------------------------------------------------------------
    # Topology
    # -------------------------------------------------------------------------

    async def create_session(self, name: str, working_dir: str, window: str) -> ProcessHandle:
        validate_name(name)
        validate_name(window, entity="window")
        if not Path(working_dir).is_dir():
            raise ExecutorError(
                "Working directory does not exist",
                context={"working_dir": working_dir},
            )

        # history-limit is fixed at pane creation time, so set it first
        result = await self._check([
            "set-option", "-g", "history-limit", str(self.settings.history_limit),
            ";",
            "new-session", "-d", "-P", "-F", self.HANDLE_FORMAT,
            "-s", name, "-n", window, "-c", working_dir,
        ])
        handle = self._parse_handle(result.output)
        await self._keep_on_exit(handle)
        logger.debug("Created tmux session %s (pane %s)", name, handle.pane_id)
        return handle

    async def create_window(self, session: str, window: str, working_dir: str) -> ProcessHandle:
        validate_name(window, entity="window")
        result = await self._check([
            "new-window", "-d", "-P", "-F", self.HANDLE_FORMAT,
            "-t", f"{session}:", "-n", window, "-c", working_dir,
        ])
        handle = self._parse_handle(result.output)
        await self._keep_on_exit(handle)
        return handle

    async def split_pane(self, session: str, window: str, working_dir: str) -> ProcessHandle:
        result = await self._check([
            "split-window", "-d", "-P", "-F", self.HANDLE_FORMAT,
            "-t", f"{session}:{window}", "-c", working_dir,
        ])
        return self._parse_handle(result.output)

    async def kill_session(self, name: str) -> None:
        await self._check(["kill-session", "-t", name])

    async def kill_pane(self, handle: ProcessHandle) -> None:
        await self._check(["kill-pane", "-t", handle.pane_id])

    async def has_session(self, name: str) -> bool:
        result = await self._run(["has-session", "-t", name])
        return result.success

    # -------------------------------------------------------------------------
    # Processes
    # -------------------------------------------------------------------------

    def _require_handle(self, pane: Pane) -> ProcessHandle:
        if pane.handle is None:
            raise ExecutorError("Pane has no process handle", context={"pane": pane.address})
        return pane.handle

    async def spawn(
        self, pane: Pane, command: str, env: dict[str, str] | None = None
    ) -> ProcessHandle:
        """Run a validated command in the pane via respawn-pane."""
        command = validate_command(command, self.policy)
        env = validate_env(env)
        handle = self._require_handle(pane)

        args = ["respawn-pane", "-k", "-t", handle.pane_id]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(command)
        await self._check(args)

        status = await self.pane_status(handle)
        new_handle = ProcessHandle(pane_id=handle.pane_id, pid=status.pid)
        logger.info("Spawned %r in %s (pid %s)", command, pane.address, new_handle.pid)
        return new_handle

    async def send_input(self, pane: Pane, data: str, enter: bool = True) -> None:
        data = validate_input(data, self.policy)
        handle = self._require_handle(pane)
        if data:
            await self._check(["send-keys", "-t", handle.pane_id, "-l", data])
        if enter:
            await self._check(["send-keys", "-t", handle.pane_id, "Enter"])

    async def pane_status(self, handle: ProcessHandle) -> PaneStatus:
        result = await self._run(["display-message", "-p", "-t", handle.pane_id, self.STATUS_FORMAT])
        if not result.success or not result.output.strip():
            return PaneStatus(exists=False)

        dead, _, rest = result.output.strip().partition("|")
        exit_status, _, pid = rest.partition("|")
        return PaneStatus(
            exists=True,
            dead=dead == "1",
            exit_status=int(exit_status) if exit_status.lstrip("-").isdigit() else None,
            pid=int(pid) if pid.isdigit() else None,
        )

    async def terminate(self, pane: Pane, grace_timeout: float) -> TerminationResult:
        """Stop a pane's process.

        1. Send Ctrl+C to interrupt the running process
        2. Wait up to ``grace_timeout`` for the process to exit
        3. Kill the process if the timeout is exceeded
        """
        if pane.handle is None:
            return TerminationResult(pane=pane.address, success=True)

        status = await self.pane_status(pane.handle)
        if not status.alive:
            return TerminationResult(pane=pane.address, success=True)

        await self._run(["send-keys", "-t", pane.handle.pane_id, "C-c"])
        try:
            await asyncio.wait_for(self._wait_for_exit(pane.handle), timeout=grace_timeout)
            logger.debug("Pane %s exited gracefully", pane.address)
            return TerminationResult(pane=pane.address, success=True)
        except asyncio.TimeoutError:
            error = TerminationTimeoutError(pane.address, timeout=grace_timeout)
            logger.warning("%s, forcing kill", error)
            record_error(error)

        pid = status.pid or pane.handle.pid
        if pid:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                logger.error("Cannot kill pid %s for pane %s: %s", pid, pane.address, e)
                return TerminationResult(
                    pane=pane.address, success=False, force_required=True, error=str(e)
                )
        return TerminationResult(pane=pane.address, success=True, force_required=True)

    async def _wait_for_exit(self, handle: ProcessHandle) -> None:
        while True:
            status = await self.pane_status(handle)
            if not status.alive:
                return
            await asyncio.sleep(self.POLL_INTERVAL)

    async def start_capture(self, handle: ProcessHandle, log_path: str) -> None:
        """Pipe everything the pane prints into ``log_path`` (append)."""
        try:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExecutorError(
                f"Cannot create capture directory: {e}",
                context={"pane": handle.pane_id, "log_path": log_path},
                cause=e,
            ) from e
        await self._check([
            "pipe-pane", "-t", handle.pane_id, f"cat >> {shlex.quote(log_path)}",
        ])
