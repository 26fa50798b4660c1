"""Pattern-based error classification with per-pane history.

The active pattern set is an immutable tuple that writers replace wholesale
under a lock; ``classify`` reads one snapshot and never sees a half-updated
set. Patterns are evaluated in registration order and the first match wins.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from .exceptions import PatternNotFoundError
from .models import ClassifierSettings, ErrorEntry, ErrorPattern, LogLine, Severity, model_to_dict
from .patterns import builtin_patterns

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 500
BURST_WINDOW_SECONDS = 60.0
BURST_THRESHOLD = 10
MAX_FIELD_VALUES = 5


@dataclass
class ErrorSummary:
    """Aggregate view of a pane's error history."""

    pane: str
    total: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_pattern: dict[str, int] = field(default_factory=dict)
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    recent: list[ErrorEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return model_to_dict(self)


@dataclass
class ErrorGroup:
    """All history entries produced by one pattern."""

    pattern_name: str
    severity: Severity
    count: int
    first_seen: datetime
    last_seen: datetime
    rate_per_minute: float
    sample: str
    language: str | None = None
    fields: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ErrorAnalysis:
    """Summary plus per-pattern grouping and burst detection."""

    pane: str
    summary: ErrorSummary
    groups: list[ErrorGroup] = field(default_factory=list)
    dominant_language: str | None = None
    burst: bool = False
    peak_per_window: int = 0
    burst_window_seconds: float = BURST_WINDOW_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return model_to_dict(self)


class ErrorClassifier:
    """Turns log lines into ErrorEntry records.

    Attributes:
        capacity: Ring buffer size per pane; the oldest entries are evicted.
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CAPACITY,
        patterns: Iterable[ErrorPattern] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock
        self._lock = threading.Lock()
        self._patterns: tuple[ErrorPattern, ...] = ()
        self._languages: dict[str, frozenset[str]] = {}
        self._history: dict[str, deque[ErrorEntry]] = {}
        for pattern in patterns or ():
            self.add_pattern(pattern)

    @classmethod
    def from_settings(cls, settings: ClassifierSettings) -> ErrorClassifier:
        patterns = builtin_patterns() if settings.builtin_patterns else []
        return cls(capacity=settings.ring_capacity, patterns=patterns)

    # -------------------------------------------------------------------------
    # Pattern set
    # -------------------------------------------------------------------------

    @property
    def patterns(self) -> tuple[ErrorPattern, ...]:
        return self._patterns

    def add_pattern(self, pattern: ErrorPattern) -> bool:
        """Register a pattern.

        A pattern with an existing name takes the old one's position and
        gets the next version number.

        Returns:
            True if an existing pattern was replaced.
        """
        with self._lock:
            current = list(self._patterns)
            for position, existing in enumerate(current):
                if existing.name == pattern.name:
                    pattern.version = existing.version + 1
                    current[position] = pattern
                    self._patterns = tuple(current)
                    logger.info("Replaced error pattern %s (v%d)", pattern.name, pattern.version)
                    return True
            self._patterns = (*current, pattern)
        logger.debug("Registered error pattern %s", pattern.name)
        return False

    def remove_pattern(self, name: str) -> bool:
        """Remove a pattern by name; absent names are a no-op.

        Returns:
            True if a pattern was removed.
        """
        with self._lock:
            remaining = tuple(p for p in self._patterns if p.name != name)
            removed = len(remaining) != len(self._patterns)
            self._patterns = remaining
        if removed:
            logger.info("Removed error pattern %s", name)
        return removed

    def get_pattern(self, name: str) -> ErrorPattern:
        for pattern in self._patterns:
            if pattern.name == name:
                return pattern
        raise PatternNotFoundError(name)

    def set_languages(self, pane: str, languages: Iterable[str] | None) -> None:
        """Restrict a pane to patterns of the given languages.

        Untagged patterns always apply. ``None`` or an empty collection
        lifts the restriction.
        """
        tags = frozenset(languages or ())
        with self._lock:
            if tags:
                self._languages[pane] = tags
            else:
                self._languages.pop(pane, None)

    def languages(self, pane: str) -> frozenset[str]:
        return self._languages.get(pane, frozenset())

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(
        self,
        pane: str,
        line: str | LogLine,
        timestamp: datetime | None = None,
    ) -> ErrorEntry | None:
        """Classify one line, recording a match in the pane's history.

        Returns:
            The produced entry, or None if no active pattern matched.
        """
        if isinstance(line, LogLine):
            text = line.text
            timestamp = timestamp or line.timestamp
        else:
            text = line

        snapshot = self._patterns
        languages = self._languages.get(pane)
        for pattern in snapshot:
            if languages and pattern.language is not None and pattern.language not in languages:
                continue
            fields = pattern.extract(text)
            if fields is None:
                continue

            entry = ErrorEntry(
                pane=pane,
                timestamp=timestamp or self._clock(),
                raw_line=text,
                pattern_name=pattern.name,
                severity=pattern.severity,
                fields=fields,
                language=pattern.language,
            )
            with self._lock:
                ring = self._history.get(pane)
                if ring is None:
                    ring = self._history[pane] = deque(maxlen=self.capacity)
                ring.append(entry)
            return entry
        return None

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def history(self, pane: str, limit: int | None = None) -> list[ErrorEntry]:
        """Return a copy of the pane's history, oldest first."""
        with self._lock:
            entries = list(self._history.get(pane, ()))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def panes(self) -> list[str]:
        with self._lock:
            return list(self._history)

    def clear(self, pane: str) -> None:
        """Drop the pane's history but keep its language set."""
        with self._lock:
            ring = self._history.get(pane)
            if ring is not None:
                ring.clear()

    def forget(self, pane: str) -> None:
        """Drop everything known about a pane."""
        with self._lock:
            self._history.pop(pane, None)
            self._languages.pop(pane, None)

    def summarize(self, pane: str, recent: int = 10) -> ErrorSummary:
        entries = self.history(pane)
        summary = ErrorSummary(pane=pane, total=len(entries))
        if not entries:
            return summary

        summary.by_severity = dict(Counter(e.severity.value for e in entries))
        summary.by_pattern = dict(Counter(e.pattern_name for e in entries))
        summary.first_seen = entries[0].timestamp
        summary.last_seen = entries[-1].timestamp
        summary.recent = entries[-recent:] if recent > 0 else []
        return summary

    def analyze(
        self,
        pane: str,
        *,
        burst_window_seconds: float = BURST_WINDOW_SECONDS,
        burst_threshold: int = BURST_THRESHOLD,
    ) -> ErrorAnalysis:
        """Group a pane's history by pattern and look for bursts.

        A burst is ``burst_threshold`` or more entries inside any span of
        ``burst_window_seconds``.
        """
        entries = self.history(pane)
        analysis = ErrorAnalysis(
            pane=pane,
            summary=self.summarize(pane),
            burst_window_seconds=burst_window_seconds,
        )
        if not entries:
            return analysis

        by_pattern: dict[str, list[ErrorEntry]] = {}
        for entry in entries:
            by_pattern.setdefault(entry.pattern_name, []).append(entry)

        for name, group in by_pattern.items():
            analysis.groups.append(_build_group(name, group))
        analysis.groups.sort(key=lambda g: (-g.severity.rank, -g.count, g.pattern_name))

        languages = Counter(e.language for e in entries if e.language)
        if languages:
            analysis.dominant_language = languages.most_common(1)[0][0]

        analysis.peak_per_window = _peak_in_window(
            sorted(e.timestamp for e in entries), burst_window_seconds
        )
        analysis.burst = analysis.peak_per_window >= burst_threshold
        return analysis


def _build_group(name: str, entries: list[ErrorEntry]) -> ErrorGroup:
    first = min(e.timestamp for e in entries)
    last = max(e.timestamp for e in entries)
    minutes = max((last - first).total_seconds() / 60.0, 1.0)

    fields: dict[str, list[str]] = {}
    for entry in entries:
        for key, value in entry.fields.items():
            values = fields.setdefault(key, [])
            if value not in values and len(values) < MAX_FIELD_VALUES:
                values.append(value)

    latest = entries[-1]
    return ErrorGroup(
        pattern_name=name,
        severity=latest.severity,
        count=len(entries),
        first_seen=first,
        last_seen=last,
        rate_per_minute=round(len(entries) / minutes, 2),
        sample=latest.raw_line,
        language=latest.language,
        fields=fields,
    )


def _peak_in_window(timestamps: list[datetime], window_seconds: float) -> int:
    """Largest number of timestamps inside any window of the given width."""
    peak = 0
    start = 0
    for end, ts in enumerate(timestamps):
        while (ts - timestamps[start]).total_seconds() > window_seconds:
            start += 1
        peak = max(peak, end - start + 1)
    return peak
