"""Threshold/edge-triggered event coordination.

A single consumer task reads error entries and process events from a
bounded queue. All counter and rule state is owned by that task:

1. Each entry is recorded in a rolling counter keyed by (pane, pattern).
2. Every rule bound to the entry's pattern and severity is evaluated.
3. A rule fires only on a false -> true transition of its condition for a
   (rule, pane, pattern) key, and only if the debounce interval has passed
   since that key last fired. A suppressed transition still marks the key
   as satisfied, so another firing needs a fresh transition.

Delivery runs in background tasks, so a slow sink never stalls the loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Hashable, Union

from .exceptions import RuleNotFoundError, SinkUnavailableError, record_error
from .models import CoordinatorSettings, ErrorEntry, ProcessEvent, TriggerEvent, TriggerRule
from .sinks import TriggerSink

logger = logging.getLogger(__name__)

CoordinatorItem = Union[ErrorEntry, ProcessEvent]
EdgeKey = tuple[str, str, str]  # (rule_id, pane, pattern or event kind)


class RollingCounter:
    """Sliding-window occurrence counter keyed by arbitrary hashable keys."""

    def __init__(self) -> None:
        self._events: dict[Hashable, deque[float]] = {}

    def record(self, key: Hashable, now: float) -> None:
        self._events.setdefault(key, deque()).append(now)

    def count(self, key: Hashable, now: float, window_seconds: float) -> int:
        """Number of occurrences in ``(now - window_seconds, now]``."""
        events = self._events.get(key)
        if not events:
            return 0
        cutoff = now - window_seconds
        total = 0
        for ts in reversed(events):
            if ts <= cutoff:
                break
            total += 1
        return total

    def prune(self, now: float, retention_seconds: float) -> int:
        """Drop occurrences older than the retention window.

        Returns:
            Number of keys removed because they became empty.
        """
        cutoff = now - retention_seconds
        emptied = []
        for key, events in self._events.items():
            while events and events[0] <= cutoff:
                events.popleft()
            if not events:
                emptied.append(key)
        for key in emptied:
            del self._events[key]
        return len(emptied)

    def forget(self, predicate: Callable[[Hashable], bool]) -> None:
        for key in [k for k in self._events if predicate(k)]:
            del self._events[key]

    def __len__(self) -> int:
        return len(self._events)


class EventCoordinator:
    """Turns error entries and process events into trigger deliveries."""

    def __init__(
        self,
        settings: CoordinatorSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the coordinator.

        Args:
            settings: Window, debounce, queue and delivery tuning. Rules
                listed here are registered immediately.
            clock: Monotonic seconds source; injectable for tests.
        """
        self.settings = settings or CoordinatorSettings()
        self._clock = clock
        self._queue: asyncio.Queue[CoordinatorItem] = asyncio.Queue(maxsize=self.settings.queue_size)
        self._rules: dict[str, TriggerRule] = {}
        self._sinks: dict[str, TriggerSink] = {}
        self._counter = RollingCounter()
        self._satisfied: set[EdgeKey] = set()
        self._last_fired: dict[EdgeKey, float] = {}
        self._deliveries: set[asyncio.Task[None]] = set()
        self._consumer: asyncio.Task[None] | None = None
        self._sweeper: asyncio.Task[None] | None = None
        self.history: deque[TriggerEvent] = deque(maxlen=self.settings.history_size)
        self.fired_count = 0
        self.suppressed_count = 0
        self.failed_deliveries = 0

        for rule in self.settings.rules:
            self.add_rule(rule)

    # -------------------------------------------------------------------------
    # Rules and sinks
    # -------------------------------------------------------------------------

    @property
    def rules(self) -> list[TriggerRule]:
        return list(self._rules.values())

    def add_rule(self, rule: TriggerRule) -> bool:
        """Register a rule, replacing one with the same id.

        Returns:
            True if an existing rule was replaced.
        """
        replaced = rule.rule_id in self._rules
        if replaced:
            self._reset_rule_state(rule.rule_id)
        self._rules[rule.rule_id] = rule
        logger.debug("%s trigger rule %s -> %s", "Replaced" if replaced else "Added", rule.rule_id, rule.sink_id)
        return replaced

    def remove_rule(self, rule_id: str) -> TriggerRule:
        """Remove a rule and its edge state.

        Raises:
            RuleNotFoundError: If no rule has this id.
        """
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        self._reset_rule_state(rule_id)
        return rule

    def _reset_rule_state(self, rule_id: str) -> None:
        self._satisfied = {k for k in self._satisfied if k[0] != rule_id}
        for key in [k for k in self._last_fired if k[0] == rule_id]:
            del self._last_fired[key]

    @property
    def sinks(self) -> dict[str, TriggerSink]:
        return dict(self._sinks)

    def register_sink(self, sink: TriggerSink) -> None:
        if sink.sink_id in self._sinks:
            logger.info("Replacing trigger sink %s", sink.sink_id)
        self._sinks[sink.sink_id] = sink

    def unregister_sink(self, sink_id: str) -> TriggerSink | None:
        return self._sinks.pop(sink_id, None)

    def forget_pane(self, pane: str) -> None:
        """Drop counters and edge state for a pane that no longer exists."""
        self._counter.forget(lambda key: isinstance(key, tuple) and key[0] == pane)
        self._satisfied = {k for k in self._satisfied if k[1] != pane}
        for key in [k for k in self._last_fired if k[1] == pane]:
            del self._last_fired[key]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="event-coordinator")
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="event-coordinator-sweep")
        logger.debug("Event coordinator started with %d rule(s)", len(self._rules))

    async def stop(self) -> None:
        """Finish queued work and pending deliveries, then stop."""
        if self.running:
            await self.drain()
        for task in (self._consumer, self._sweeper):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._consumer = None
        self._sweeper = None
        await self._await_deliveries()
        for sink in list(self._sinks.values()):
            await sink.close()

    async def submit(self, item: CoordinatorItem) -> None:
        """Queue an item, waiting while the queue is full."""
        await self._queue.put(item)

    async def drain(self) -> None:
        """Wait until every queued item is processed and delivered."""
        if self.running:
            await self._queue.join()
        await self._await_deliveries()

    async def _await_deliveries(self) -> None:
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                self.process(item)
            except Exception as e:
                logger.error("Error processing %s: %s", type(item).__name__, e)
                record_error(e)
            finally:
                self._queue.task_done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            self.sweep()

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def process(self, item: CoordinatorItem) -> list[TriggerEvent]:
        """Evaluate one item. Must run on the coordinator's task.

        Returns:
            Events fired for this item.
        """
        if isinstance(item, ProcessEvent):
            return self._on_process_event(item)
        return self._on_entry(item)

    def _window_for(self, rule: TriggerRule) -> float:
        return rule.window_seconds if rule.window_seconds is not None else self.settings.window_seconds

    def _debounce_for(self, rule: TriggerRule) -> float:
        return rule.debounce_seconds if rule.debounce_seconds is not None else self.settings.debounce_seconds

    def _debounced(self, key: EdgeKey, rule: TriggerRule, now: float) -> bool:
        last = self._last_fired.get(key)
        return last is not None and now - last < self._debounce_for(rule)

    def _on_entry(self, entry: ErrorEntry) -> list[TriggerEvent]:
        now = self._clock()
        counter_key = (entry.pane, entry.pattern_name)
        self._counter.record(counter_key, now)

        fired: list[TriggerEvent] = []
        for rule in list(self._rules.values()):
            if not rule.applies_to(entry.pane, entry.pattern_name, entry.severity):
                continue

            window = self._window_for(rule)
            count = self._counter.count(counter_key, now, window)
            edge = (rule.rule_id, entry.pane, entry.pattern_name)
            satisfied = count >= rule.min_count

            if not satisfied:
                self._satisfied.discard(edge)
                continue
            if edge in self._satisfied:
                continue

            self._satisfied.add(edge)
            if self._debounced(edge, rule, now):
                self.suppressed_count += 1
                logger.debug("Trigger %s for %s suppressed by debounce", rule.rule_id, entry.pane)
                continue

            self._last_fired[edge] = now
            event = TriggerEvent(
                sink_id=rule.sink_id,
                pane=entry.pane,
                reason=f"{count} x {entry.pattern_name} within {window:g}s",
                context={
                    "pattern": entry.pattern_name,
                    "severity": entry.severity.value,
                    "count": count,
                    "window_seconds": window,
                    "line": entry.raw_line,
                    "fields": dict(entry.fields),
                },
                rule_id=rule.rule_id,
            )
            self._fire(event)
            fired.append(event)
        return fired

    def _on_process_event(self, event: ProcessEvent) -> list[TriggerEvent]:
        now = self._clock()
        fired: list[TriggerEvent] = []
        for rule in list(self._rules.values()):
            if not rule.applies_to_event(event):
                continue
            edge = (rule.rule_id, event.pane, event.kind.value)
            if self._debounced(edge, rule, now):
                self.suppressed_count += 1
                logger.debug("Trigger %s for %s suppressed by debounce", rule.rule_id, event.pane)
                continue

            self._last_fired[edge] = now
            trigger = TriggerEvent(
                sink_id=rule.sink_id,
                pane=event.pane,
                reason=event.kind.value.replace("_", " "),
                context={"event": event.kind.value, **event.detail},
                rule_id=rule.rule_id,
            )
            self._fire(trigger)
            fired.append(trigger)
        return fired

    def sweep(self, now: float | None = None) -> int:
        """Prune expired occurrences and reset conditions that became false.

        Returns:
            Number of edge keys reset.
        """
        now = self._clock() if now is None else now
        reset = 0
        for edge in list(self._satisfied):
            rule_id, pane, pattern = edge
            rule = self._rules.get(rule_id)
            if rule is None or self._counter.count((pane, pattern), now, self._window_for(rule)) < rule.min_count:
                self._satisfied.discard(edge)
                reset += 1

        windows = [self._window_for(rule) for rule in self._rules.values()]
        self._counter.prune(now, max(windows, default=self.settings.window_seconds))
        return reset

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _fire(self, event: TriggerEvent) -> None:
        self.history.append(event)
        self.fired_count += 1
        logger.info("Trigger %s fired for %s: %s", event.rule_id, event.pane, event.reason)
        task = asyncio.create_task(self._deliver(event))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, event: TriggerEvent) -> None:
        sink = self._sinks.get(event.sink_id)
        try:
            if sink is None:
                raise SinkUnavailableError(event.sink_id, reason="sink not registered")
            try:
                await asyncio.wait_for(
                    sink.deliver(event), timeout=self.settings.delivery_timeout_seconds
                )
            except asyncio.TimeoutError as e:
                raise SinkUnavailableError(
                    event.sink_id,
                    reason=f"delivery timed out after {self.settings.delivery_timeout_seconds:g}s",
                    cause=e,
                ) from e
            except SinkUnavailableError:
                raise
            except Exception as e:
                raise SinkUnavailableError(event.sink_id, reason=str(e), cause=e) from e
        except SinkUnavailableError as e:
            self.failed_deliveries += 1
            logger.warning("Trigger %s not delivered: %s", event.rule_id, e)
            record_error(e)

    def stats(self) -> dict[str, int]:
        return {
            "rules": len(self._rules),
            "sinks": len(self._sinks),
            "queued": self._queue.qsize(),
            "fired": self.fired_count,
            "suppressed": self.suppressed_count,
            "failed_deliveries": self.failed_deliveries,
            "tracked_keys": len(self._counter),
        }
