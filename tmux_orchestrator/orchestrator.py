"""Orchestrator: wires the registry, classifier, coordinator, persistence
store and process monitor behind one async interface.

Per watched pane the data flows through two tasks and two bounded queues::

    LogWatcher task -> line queue -> classifier task -> coordinator queue

Destroying a session (or removing a pane) stops the affected watchers
cooperatively before any process is terminated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from .classifier import ErrorAnalysis, ErrorClassifier, ErrorSummary
from .coordinator import EventCoordinator
from .exceptions import SessionNotFoundError, error_stats
from .executor import TmuxExecutor
from .log_watcher import LogWatcher
from .models import (
    ErrorEntry,
    ErrorPattern,
    LogLine,
    OrchestratorConfig,
    Pane,
    Session,
    TriggerEvent,
    TriggerRule,
    Window,
    WindowSpec,
)
from .patterns import detect_languages, normalize_languages
from .persistence import RecoveryReport, SessionPersistence, SessionStore
from .ports import CommandExecutor, TerminationResult
from .process_monitor import ProcessMonitor
from .registry import SessionRegistry
from .security import CommandPolicy
from .sinks import TriggerSink

logger = logging.getLogger(__name__)


@dataclass
class PaneWatch:
    """An active log watch on one pane."""

    pane: str
    watcher: LogWatcher
    lines: asyncio.Queue[LogLine | None]
    languages: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    duration: float | None = None
    entries: int = 0
    classifier_task: asyncio.Task[None] | None = field(default=None, repr=False)
    closer_task: asyncio.Task[None] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane": self.pane,
            "languages": list(self.languages),
            "started_at": self.started_at.isoformat(),
            "duration": self.duration,
            "state": self.watcher.state.value,
            "lines": self.watcher.lines_emitted,
            "entries": self.entries,
        }


class Orchestrator:
    """High-level entry point for session orchestration and error watching."""

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        executor: CommandExecutor | None = None,
        sinks: Iterable[TriggerSink] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Complete configuration (defaults if omitted).
            executor: Command executor; a TmuxExecutor is built from the
                config if omitted.
            sinks: Trigger sinks to register up front.
            clock: Monotonic clock used by the event coordinator.
        """
        self.config = config or OrchestratorConfig()
        security = self.config.security
        self.policy = CommandPolicy.from_settings(
            security.allowed_sequences,
            security.denied_patterns,
            security.max_command_length,
        )
        self.executor: CommandExecutor = executor or TmuxExecutor(self.config.tmux, self.policy)

        self.registry = SessionRegistry(
            self.executor,
            log_dir=self.config.tmux.log_dir,
            grace_timeout=self.config.tmux.grace_timeout,
            policy=self.policy,
        )
        self.classifier = ErrorClassifier.from_settings(self.config.classifier)
        self.coordinator = EventCoordinator(self.config.coordinator, clock=clock)
        for sink in sinks:
            self.coordinator.register_sink(sink)

        self.store = SessionStore(self.config.persistence.state_dir)
        self.persistence = SessionPersistence(
            self.store, self.registry, self.executor, self.config.persistence
        )
        self.monitor = ProcessMonitor(
            self.executor,
            self.registry.find_pane,
            self.coordinator.submit,
            settings=self.config.monitor,
            on_exit=self._flush_watcher,
        )

        self._watches: dict[str, PaneWatch] = {}
        self._offsets: dict[str, int] = {}
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, recover: bool = True) -> RecoveryReport | None:
        """Start background tasks, optionally recovering persisted sessions."""
        if self._started:
            return None

        self.coordinator.start()
        report = None
        if self.config.persistence.enabled:
            if recover:
                report = await self.persistence.recover()
            self.persistence.start()
        if self.config.monitor.enabled:
            self.monitor.start()
        self._started = True
        logger.info("Orchestrator started")
        return report

    async def shutdown(self) -> None:
        """Stop watchers and background tasks; sessions keep running."""
        for pane in list(self._watches):
            await self._stop_watch(pane)
        await self.monitor.stop()
        await self.coordinator.stop()
        if self.config.persistence.enabled:
            await self.persistence.stop()
        self._started = False
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Sessions and panes
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        name: str | None = None,
        working_dir: str = ".",
        windows: list[WindowSpec] | None = None,
    ) -> Session:
        return await self.registry.create_session(name, working_dir, windows)

    async def add_window(
        self,
        session: str,
        window: str,
        command: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Window:
        return await self.registry.add_window(session, window, command, env)

    async def create_pane(
        self,
        window_addr: str,
        command: str | None = None,
        env: dict[str, str] | None = None,
        ports: list[int] | None = None,
    ) -> Pane:
        return await self.registry.add_pane(window_addr, command, env, ports)

    async def execute_command(
        self,
        pane_addr: str,
        command: str,
        *,
        env: dict[str, str] | None = None,
        replace: bool = False,
    ) -> Pane:
        """Run a command in a pane (typed into its shell, or replacing it)."""
        return await self.registry.run_command(pane_addr, command, env=env, replace=replace)

    async def remove_pane(self, pane_addr: str) -> TerminationResult:
        await self._stop_watch(pane_addr)
        result = await self.registry.remove_pane(pane_addr)
        self._forget_pane(pane_addr)
        return result

    async def destroy_session(self, name: str) -> list[TerminationResult]:
        """Destroy a session and everything attached to its panes.

        Raises:
            SessionNotFoundError: If no live session has this name. The
                call is safe to retry.
        """
        if not self.registry.has_session(name):
            raise SessionNotFoundError(name)

        panes = self.registry.pane_addresses(name)
        for pane in panes:
            await self._stop_watch(pane)
        results = await self.registry.destroy_session(name)
        for pane in panes:
            self._forget_pane(pane)
        return results

    async def list_sessions(self) -> list[Session]:
        return await self.registry.list_sessions()

    async def get_session(self, name: str) -> Session:
        return await self.registry.get_session(name)

    def _forget_pane(self, pane_addr: str) -> None:
        self.classifier.forget(pane_addr)
        self.coordinator.forget_pane(pane_addr)
        self.monitor.unwatch(pane_addr)
        self._offsets.pop(pane_addr, None)

    # -------------------------------------------------------------------------
    # Error watching
    # -------------------------------------------------------------------------

    @property
    def watches(self) -> dict[str, PaneWatch]:
        return dict(self._watches)

    async def _resolve_languages(self, pane: Pane, languages: list[str] | None) -> list[str]:
        if languages:
            return normalize_languages(languages)
        defaults = normalize_languages(self.config.classifier.default_languages)
        if defaults:
            return defaults
        if self.config.classifier.auto_detect_languages:
            session = await self.registry.get_session(pane.parsed_address.session)
            return await asyncio.to_thread(detect_languages, session.working_dir)
        return []

    async def errors_watch(
        self,
        pane_addr: str,
        languages: list[str] | None = None,
        duration: float | None = None,
    ) -> PaneWatch:
        """Start classifying a pane's output.

        Args:
            pane_addr: Pane to watch.
            languages: Restrict patterns to these languages (auto-detected
                from the session's working directory if omitted).
            duration: Stop watching after this many seconds.

        Raises:
            PaneNotFoundError: If the pane does not resolve.
            ValueError: If a language is unknown.
        """
        pane = await self.registry.resolve(pane_addr)
        resolved = await self._resolve_languages(pane, languages)
        self.classifier.set_languages(pane_addr, resolved)

        existing = self._watches.get(pane_addr)
        if existing is not None and existing.watcher.is_watching:
            existing.languages = resolved
            logger.debug("Updated languages for watched pane %s", pane_addr)
            return existing
        if existing is not None:
            await self._stop_watch(pane_addr)

        lines: asyncio.Queue[LogLine | None] = asyncio.Queue(maxsize=self.config.watcher.queue_size)
        watcher = LogWatcher(
            pane_addr,
            pane.log_path or self.registry.log_path_for(pane.parsed_address),
            lines,  # type: ignore[arg-type]
            settings=self.config.watcher,
            start_offset=self._offsets.get(pane_addr, 0),
        )
        watch = PaneWatch(
            pane=pane_addr, watcher=watcher, lines=lines, languages=resolved, duration=duration
        )
        self._watches[pane_addr] = watch

        watch.classifier_task = asyncio.create_task(
            self._classify_loop(watch), name=f"classifier:{pane_addr}"
        )
        watcher.start(duration)
        watch.closer_task = asyncio.create_task(self._close_when_stopped(watch))
        self.monitor.watch(pane_addr)
        logger.info(
            "Watching %s for errors (languages: %s)", pane_addr, ", ".join(resolved) or "all"
        )
        return watch

    async def errors_unwatch(self, pane_addr: str) -> bool:
        """Stop watching a pane. Returns False if it was not watched."""
        return await self._stop_watch(pane_addr)

    async def _close_when_stopped(self, watch: PaneWatch) -> None:
        await watch.watcher.wait()
        await watch.lines.put(None)

    async def _classify_loop(self, watch: PaneWatch) -> None:
        try:
            while True:
                line = await watch.lines.get()
                if line is None:
                    break
                entry = self.classifier.classify(watch.pane, line)
                if entry is not None:
                    watch.entries += 1
                    await self.coordinator.submit(entry)
        finally:
            self._offsets[watch.pane] = watch.watcher.offset
            if self._watches.get(watch.pane) is watch:
                del self._watches[watch.pane]
                self.monitor.unwatch(watch.pane)
            logger.debug("Classifier for %s finished (%d entries)", watch.pane, watch.entries)

    async def _stop_watch(self, pane_addr: str) -> bool:
        watch = self._watches.get(pane_addr)
        if watch is None:
            return False
        await watch.watcher.stop()
        for task in (watch.closer_task, watch.classifier_task):
            if task is not None:
                await task
        self._watches.pop(pane_addr, None)
        self.monitor.unwatch(pane_addr)
        return True

    async def _flush_watcher(self, pane_addr: str) -> None:
        watch = self._watches.get(pane_addr)
        if watch is not None and watch.watcher.is_watching:
            await watch.watcher.flush()

    async def ingest_line(self, pane_addr: str, line: str) -> ErrorEntry | None:
        """Classify a line as if the pane had printed it."""
        entry = self.classifier.classify(pane_addr, line)
        if entry is not None:
            await self.coordinator.submit(entry)
        return entry

    # -------------------------------------------------------------------------
    # Patterns and history
    # -------------------------------------------------------------------------

    def errors_add_pattern(self, pattern: ErrorPattern) -> bool:
        """Register or replace a pattern. Returns True if one was replaced."""
        return self.classifier.add_pattern(pattern)

    def errors_remove_pattern(self, name: str) -> bool:
        return self.classifier.remove_pattern(name)

    async def errors_summary(self, pane_addr: str, recent: int = 10) -> ErrorSummary:
        await self.registry.resolve(pane_addr)
        return self.classifier.summarize(pane_addr, recent=recent)

    async def errors_analyze(self, pane_addr: str) -> ErrorAnalysis:
        await self.registry.resolve(pane_addr)
        return self.classifier.analyze(pane_addr)

    async def errors_history(self, pane_addr: str, limit: int | None = None) -> list[ErrorEntry]:
        await self.registry.resolve(pane_addr)
        return self.classifier.history(pane_addr, limit)

    async def errors_clear(self, pane_addr: str) -> None:
        await self.registry.resolve(pane_addr)
        self.classifier.clear(pane_addr)

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def add_trigger_rule(self, rule: TriggerRule) -> bool:
        return self.coordinator.add_rule(rule)

    def remove_trigger_rule(self, rule_id: str) -> TriggerRule:
        return self.coordinator.remove_rule(rule_id)

    def register_sink(self, sink: TriggerSink) -> None:
        self.coordinator.register_sink(sink)

    def trigger_history(self) -> list[TriggerEvent]:
        return list(self.coordinator.history)

    async def drain(self) -> None:
        """Wait until queued entries are evaluated and triggers delivered."""
        await self.coordinator.drain()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def recover(self) -> RecoveryReport:
        return await self.persistence.recover()

    async def status(self) -> dict[str, Any]:
        sessions = await self.registry.list_sessions()
        return {
            "sessions": [
                {"name": s.name, "panes": s.pane_count, "uptime_seconds": round(s.uptime_seconds, 1)}
                for s in sessions
            ],
            "watches": [w.to_dict() for w in self._watches.values()],
            "coordinator": self.coordinator.stats(),
            "errors": {
                "total": error_stats.total_count,
                "by_type": dict(error_stats.by_type),
                "by_kind": dict(error_stats.by_kind),
            },
        }
