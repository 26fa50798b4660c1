"""Incremental pane log watching.

Each watched pane gets a ``LogWatcher`` that follows the pane's capture file
using watchfiles, reads newly appended bytes from its last offset and turns
them into ``LogLine`` items on a bounded asyncio queue. A full queue blocks
the watcher (lines are never dropped).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from watchfiles import awatch

from .exceptions import record_error
from .logging_config import PaneLoggerAdapter
from .models import LogLine, WatcherSettings

logger = logging.getLogger(__name__)

# CSI sequences, OSC sequences (BEL or ST terminated) and two-byte escapes
ANSI_ESCAPE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def clean_line(raw: bytes) -> str:
    """Decode a raw line and strip terminal noise.

    A carriage return inside a line means the terminal overwrote what came
    before it, so only the text after the last one is kept.
    """
    text = ANSI_ESCAPE_RE.sub("", raw.decode("utf-8", errors="replace"))
    text = text.rstrip("\r")
    if "\r" in text:
        text = text.rsplit("\r", 1)[-1]
    return text


class LineBuffer:
    """Accumulates byte chunks and yields complete lines."""

    def __init__(self) -> None:
        self._partial = b""

    @property
    def pending(self) -> bool:
        return bool(self._partial)

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk, returning every line it completed."""
        data = self._partial + chunk
        *complete, self._partial = data.split(b"\n")
        return [clean_line(raw) for raw in complete]

    def flush(self) -> list[str]:
        """Return the buffered partial line, if any, as a final line."""
        if not self._partial:
            return []
        line = clean_line(self._partial)
        self._partial = b""
        return [line]

    def clear(self) -> None:
        self._partial = b""


class WatcherState(Enum):
    """Lifecycle of a log watcher."""

    IDLE = "idle"
    WATCHING = "watching"
    STOPPED = "stopped"


class _LogDiscontinuity(Exception):
    """The log file no longer extends past the last read offset."""


class LogWatcher:
    """Follows one pane's log file and emits its lines in order.

    Truncation and rotation are recoverable: the watcher reopens the file
    at its last stable offset and, after ``reopen_attempts`` consecutive
    failures, starts over from offset 0.
    """

    def __init__(
        self,
        pane: str,
        log_path: str | Path,
        queue: asyncio.Queue[LogLine],
        *,
        settings: WatcherSettings | None = None,
        start_offset: int = 0,
    ) -> None:
        self.pane = pane
        self.log_path = Path(log_path)
        self.queue = queue
        self.settings = settings or WatcherSettings()
        self.state = WatcherState.IDLE
        self.lines_emitted = 0
        self.log = PaneLoggerAdapter(logger, pane)

        self._offset = start_offset
        self._inode: int | None = None
        self._failed_reopens = 0
        self._buffer = LineBuffer()
        self._io_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._deadline: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def offset(self) -> int:
        """Byte offset up to which the file has been consumed."""
        return self._offset

    @property
    def is_watching(self) -> bool:
        return self.state is WatcherState.WATCHING

    def start(self, duration: float | None = None) -> None:
        """Start following the log file.

        Args:
            duration: Stop automatically after this many seconds.
        """
        if self.state is WatcherState.STOPPED:
            raise RuntimeError(f"Watcher for {self.pane} has already stopped")
        if self.state is WatcherState.WATCHING:
            return

        if duration is not None:
            self._deadline = asyncio.get_running_loop().time() + duration
        self.state = WatcherState.WATCHING
        self._task = asyncio.create_task(self._watch_loop(), name=f"log-watcher:{self.pane}")
        self.log.debug("Watching %s", self.log_path)

    def request_stop(self) -> None:
        """Ask the watch loop to exit after its current read."""
        self._stop_event.set()
        if self.state is WatcherState.IDLE:
            self.state = WatcherState.STOPPED

    async def stop(self) -> None:
        """Stop watching and wait for the loop to finish."""
        self.request_stop()
        await self.wait()

    async def wait(self) -> None:
        """Wait until the watch loop has exited."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def poll(self) -> int:
        """Read whatever has been appended since the last read.

        Returns:
            Number of lines emitted.
        """
        before = self.lines_emitted
        async with self._io_lock:
            while True:
                try:
                    chunk = await asyncio.to_thread(self._read_chunk)
                except (OSError, _LogDiscontinuity) as e:
                    self._handle_discontinuity(e)
                    break
                self._failed_reopens = 0
                if not chunk:
                    break
                self._offset += len(chunk)
                for text in self._buffer.feed(chunk):
                    await self._emit(text)
                if len(chunk) < self.settings.read_chunk_bytes:
                    break
        return self.lines_emitted - before

    async def flush(self) -> int:
        """Read remaining output and emit the trailing partial line.

        Called when the pane's process exits, so an unterminated last line
        is not lost.
        """
        emitted = await self.poll()
        async with self._io_lock:
            for text in self._buffer.flush():
                await self._emit(text)
                emitted += 1
        return emitted

    async def _emit(self, text: str) -> None:
        if not text.strip():
            return
        await self.queue.put(
            LogLine(pane=self.pane, text=text, timestamp=datetime.now(), offset=self._offset)
        )
        self.lines_emitted += 1

    def _read_chunk(self) -> bytes:
        try:
            st = os.stat(self.log_path)
        except FileNotFoundError:
            return b""

        if self._inode is not None and st.st_ino != self._inode:
            self.log.warning("Log file was replaced, reopening at offset %d", self._offset)
        self._inode = st.st_ino

        if st.st_size < self._offset:
            raise _LogDiscontinuity(f"file is {st.st_size} bytes, expected at least {self._offset}")
        if st.st_size == self._offset:
            return b""

        with open(self.log_path, "rb") as f:
            f.seek(self._offset)
            return f.read(self.settings.read_chunk_bytes)

    def _handle_discontinuity(self, error: Exception) -> None:
        self._failed_reopens += 1
        if self._failed_reopens >= self.settings.reopen_attempts:
            self.log.warning(
                "Log still unreadable at offset %d after %d attempt(s) (%s); "
                "restarting from the beginning",
                self._offset,
                self._failed_reopens,
                error,
            )
            self._offset = 0
            self._inode = None
            self._failed_reopens = 0
            self._buffer.clear()
        else:
            self.log.warning("Log discontinuous (%s), reopening at offset %d", error, self._offset)

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and asyncio.get_running_loop().time() >= self._deadline

    async def _watch_loop(self) -> None:
        """Main loop: catch up, then read on every change or poll timeout."""
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            await self.poll()
            async for _changes in awatch(
                self.log_path.parent,
                stop_event=self._stop_event,
                debounce=self.settings.debounce_ms,
                rust_timeout=self.settings.poll_timeout_ms,
                yield_on_timeout=True,
                recursive=False,
            ):
                if self._stop_event.is_set():
                    break
                await self.poll()
                if self._deadline_passed():
                    self.log.info("Watch duration elapsed")
                    break
        except Exception as e:
            self.log.error("Log watcher failed: %s", e)
            record_error(e)
        finally:
            self.state = WatcherState.STOPPED
            self.log.debug("Stopped watching (%d lines)", self.lines_emitted)
