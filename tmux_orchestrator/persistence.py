"""Session persistence and crash recovery.

Session topology is written to a flat keyed store (one JSON file per session
name, replaced atomically). The store follows registry topology changes:
mutations schedule a debounced, coalesced write, and destroying a session
deletes its record immediately. ``recover`` revalidates each record against
the live tmux server and adopts only sessions whose panes are all alive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import dacite

from .exceptions import (
    PersistenceError,
    RecoveryDiscardedError,
    SessionNotFoundError,
    record_error,
)
from .models import (
    Pane,
    PersistedPane,
    PersistedSessionRecord,
    PersistedWindow,
    PersistenceSettings,
    ProcessHandle,
    Session,
    TopologyChange,
    TopologyChangeKind,
    Window,
    model_from_dict,
    model_to_dict,
)
from .ports import CommandExecutor

if TYPE_CHECKING:
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)

RECORD_FORMAT_VERSION = 1


# =============================================================================
# Snapshots
# =============================================================================


def snapshot(session: Session, now: datetime | None = None) -> PersistedSessionRecord:
    """Capture a session's topology as a persistable record."""
    now = now or datetime.now()
    windows = []
    for window in session.windows.values():
        panes = [
            PersistedPane(
                address=pane.address,
                command=pane.command,
                env=dict(pane.env),
                pane_id=pane.handle.pane_id if pane.handle else None,
                pid=pane.pid,
                log_path=pane.log_path,
                ports=list(pane.ports),
                created_at=pane.created_at,
            )
            for _, pane in sorted(window.panes.items())
        ]
        windows.append(
            PersistedWindow(
                name=window.name,
                active_pane=window.active_pane,
                next_pane_index=window.next_pane_index,
                panes=panes,
            )
        )
    return PersistedSessionRecord(
        name=session.name,
        working_dir=session.working_dir,
        created_at=session.created_at,
        saved_at=now,
        uptime_seconds=(now - session.created_at).total_seconds(),
        pane_count=session.pane_count,
        windows=windows,
        format_version=RECORD_FORMAT_VERSION,
    )


def restore_session(record: PersistedSessionRecord) -> Session:
    """Rebuild a live Session from a record."""
    session = Session(name=record.name, working_dir=record.working_dir, created_at=record.created_at)
    for saved in record.windows:
        window = Window(
            name=saved.name,
            session=record.name,
            active_pane=saved.active_pane,
            next_pane_index=saved.next_pane_index,
        )
        for saved_pane in saved.panes:
            pane = Pane(
                address=saved_pane.address,
                command=saved_pane.command,
                env=dict(saved_pane.env),
                handle=(
                    ProcessHandle(pane_id=saved_pane.pane_id, pid=saved_pane.pid)
                    if saved_pane.pane_id
                    else None
                ),
                log_path=saved_pane.log_path,
                ports=list(saved_pane.ports),
                created_at=saved_pane.created_at or record.created_at,
            )
            window.panes[pane.parsed_address.index] = pane
        window.next_pane_index = max([window.next_pane_index, *(i + 1 for i in window.panes)])
        session.windows[window.name] = window
    return session


# =============================================================================
# Store
# =============================================================================


class SessionStore:
    """Directory of ``<session>.json`` records."""

    SUFFIX = ".json"

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir).expanduser()

    def path_for(self, name: str) -> Path:
        return self.state_dir / f"{name}{self.SUFFIX}"

    def names(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(p.stem for p in self.state_dir.glob(f"*{self.SUFFIX}") if not p.name.startswith("."))

    def save(self, record: PersistedSessionRecord) -> Path:
        """Write a record atomically (temp file + rename).

        Raises:
            PersistenceError: If the record cannot be written.
        """
        path = self.path_for(record.name)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(model_to_dict(record), indent=2)
            fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{record.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to save session record %s: %s", record.name, e)
            record_error(e)
            raise PersistenceError(
                "Failed to save session record", file_path=str(path), cause=e
            ) from e
        logger.debug("Saved session record %s", path)
        return path

    def load(self, name: str) -> PersistedSessionRecord:
        """Read one record.

        Raises:
            PersistenceError: If the record is missing, unreadable or malformed.
        """
        path = self.path_for(name)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            record = model_from_dict(PersistedSessionRecord, data)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                f"Invalid JSON at line {e.lineno}", file_path=str(path), cause=e
            ) from e
        except OSError as e:
            raise PersistenceError("Failed to read session record", file_path=str(path), cause=e) from e
        except (dacite.DaciteError, ValueError, TypeError) as e:
            raise PersistenceError(
                f"Malformed session record: {e}", file_path=str(path), cause=e
            ) from e

        if record.name != name:
            raise PersistenceError(
                "Record name does not match its key",
                file_path=str(path),
                context={"record_name": record.name},
            )
        return record

    def delete(self, name: str) -> bool:
        """Delete a record; missing records are a no-op.

        Raises:
            PersistenceError: If an existing record cannot be deleted.
        """
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError("Failed to delete session record", file_path=str(path), cause=e) from e
        logger.debug("Deleted session record %s", path)
        return True


# =============================================================================
# Registry-following persistence
# =============================================================================


@dataclass
class RecoveryReport:
    """Outcome of a recovery pass."""

    recovered: list[str] = field(default_factory=list)
    discarded: dict[str, str] = field(default_factory=dict)  # name -> reason
    skipped: list[str] = field(default_factory=list)  # already live

    @property
    def total(self) -> int:
        return len(self.recovered) + len(self.discarded) + len(self.skipped)


class SessionPersistence:
    """Keeps the store in step with the registry and recovers from it."""

    def __init__(
        self,
        store: SessionStore,
        registry: SessionRegistry,
        executor: CommandExecutor,
        settings: PersistenceSettings | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.executor = executor
        self.settings = settings or PersistenceSettings()
        self._dirty: set[str] = set()
        self._flush_task: asyncio.Task[None] | None = None
        self._snapshot_task: asyncio.Task[None] | None = None
        self._attached = False

    def attach(self) -> None:
        """Subscribe to registry topology changes."""
        if not self._attached:
            self.registry.subscribe(self.on_topology_change)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self.registry.unsubscribe(self.on_topology_change)
            self._attached = False

    @property
    def dirty(self) -> set[str]:
        return set(self._dirty)

    def on_topology_change(self, change: TopologyChange) -> None:
        if change.kind is TopologyChangeKind.SESSION_DESTROYED:
            self._dirty.discard(change.session)
            try:
                self.store.delete(change.session)
            except PersistenceError as e:
                logger.error("Failed to delete record for %s: %s", change.session, e)
                record_error(e)
            return

        self._dirty.add(change.session)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._debounced_flush())

    async def _debounced_flush(self) -> None:
        await asyncio.sleep(self.settings.save_debounce_seconds)
        await self.flush()

    async def flush(self) -> int:
        """Write every dirty session now.

        Returns:
            Number of records written.
        """
        names, self._dirty = self._dirty, set()
        written = 0
        for name in sorted(names):
            try:
                session = await self.registry.get_session(name)
            except SessionNotFoundError:
                continue
            try:
                await asyncio.to_thread(self.store.save, snapshot(session))
            except PersistenceError as e:
                logger.warning("Session %s not persisted: %s", name, e)
                self._dirty.add(name)
                continue
            written += 1
            # Destroyed while the write was in flight
            if not self.registry.has_session(name):
                try:
                    self.store.delete(name)
                except PersistenceError as e:
                    logger.error("Failed to delete record for %s: %s", name, e)
                    record_error(e)
        return written

    async def save_all(self) -> int:
        for session in await self.registry.list_sessions():
            self._dirty.add(session.name)
        return await self.flush()

    def start(self) -> None:
        """Attach to the registry and start the periodic snapshot loop."""
        self.attach()
        if self._snapshot_task is None:
            self._snapshot_task = asyncio.create_task(self._snapshot_loop(), name="session-snapshots")

    async def stop(self) -> None:
        """Stop background work and write a final snapshot."""
        for task in (self._snapshot_task, self._flush_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._snapshot_task = None
        self._flush_task = None
        await self.save_all()
        self.detach()

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.snapshot_interval_seconds)
            try:
                count = await self.save_all()
                logger.debug("Periodic snapshot wrote %d session(s)", count)
            except Exception as e:
                logger.error("Periodic snapshot failed: %s", e)
                record_error(e)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover(self) -> RecoveryReport:
        """Adopt every persisted session whose panes are all still alive.

        Records that fail revalidation are deleted and reported as
        discarded; recovery itself never fails.
        """
        report = RecoveryReport()
        for name in self.store.names():
            try:
                record = await asyncio.to_thread(self.store.load, name)
            except PersistenceError as e:
                self._discard(report, name, f"unreadable record: {e.message}")
                continue

            if self.registry.has_session(name):
                report.skipped.append(name)
                continue

            reason = await self._revalidate(record)
            if reason is not None:
                self._discard(report, name, reason)
                continue

            await self.registry.adopt(restore_session(record))
            report.recovered.append(name)
            logger.info("Recovered session %s (%d pane(s))", name, record.pane_count)

        logger.info(
            "Recovery finished: %d recovered, %d discarded",
            len(report.recovered),
            len(report.discarded),
        )
        return report

    async def _revalidate(self, record: PersistedSessionRecord) -> str | None:
        """Return why the record cannot be adopted, or None if it can."""
        if not await self.executor.has_session(record.name):
            return "session no longer exists"

        for window in record.windows:
            for pane in window.panes:
                if not pane.pane_id:
                    return f"pane {pane.address} has no process handle"
                status = await self.executor.pane_status(ProcessHandle(pane_id=pane.pane_id, pid=pane.pid))
                if not status.alive:
                    return f"pane {pane.address} is not alive"
                if pane.pid is not None and status.pid != pane.pid:
                    return f"pane {pane.address} pid changed ({pane.pid} -> {status.pid})"
        return None

    def _discard(self, report: RecoveryReport, name: str, reason: str) -> None:
        error = RecoveryDiscardedError(name, reason=reason)
        logger.warning("%s", error)
        record_error(error)
        report.discarded[name] = reason
        try:
            self.store.delete(name)
        except PersistenceError as e:
            logger.error("Failed to delete discarded record %s: %s", name, e)
            record_error(e)
