"""Core dataclasses for sessions, panes, error records, triggers and config.

All persisted and configured models are designed for JSON serialization
using dacite.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import dacite

from .exceptions import InvalidAddressError, InvalidPatternError

# =============================================================================
# Addressing
# =============================================================================

_ADDRESS_RE = re.compile(r"^(?P<session>[^:.\s]+):(?P<window>[^:.\s]+)\.(?P<index>\d+)$")
_WINDOW_ADDRESS_RE = re.compile(r"^(?P<session>[^:.\s]+):(?P<window>[^:.\s]+)$")


@dataclass(frozen=True)
class PaneAddress:
    """Structured pane address: ``session:window.index``."""

    session: str
    window: str
    index: int

    @classmethod
    def parse(cls, text: str) -> PaneAddress:
        """Parse ``session:window.index``.

        Raises:
            InvalidAddressError: If the text is not a pane address.
        """
        match = _ADDRESS_RE.match(text.strip())
        if not match:
            raise InvalidAddressError(text)
        return cls(match["session"], match["window"], int(match["index"]))

    @property
    def window_address(self) -> str:
        return f"{self.session}:{self.window}"

    def __str__(self) -> str:
        return f"{self.session}:{self.window}.{self.index}"


def parse_window_address(text: str) -> tuple[str, str]:
    """Split ``session:window`` into its parts.

    Raises:
        InvalidAddressError: If the text is not a window address.
    """
    match = _WINDOW_ADDRESS_RE.match(text.strip())
    if not match:
        raise InvalidAddressError(text, expected="session:window")
    return match["session"], match["window"]


# =============================================================================
# Topology Models
# =============================================================================


@dataclass
class ProcessHandle:
    """Handle to the process backing a pane."""

    pane_id: str  # tmux pane id, e.g. "%12"
    pid: int | None = None


@dataclass
class Pane:
    """An addressable unit of command execution and log output."""

    address: str
    command: str = ""
    env: dict[str, str] = field(default_factory=dict)
    handle: ProcessHandle | None = None
    log_path: str | None = None
    ports: list[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def parsed_address(self) -> PaneAddress:
        return PaneAddress.parse(self.address)

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle else None


@dataclass
class Window:
    """A window inside a session; owns an ordered set of panes."""

    name: str
    session: str
    panes: dict[int, Pane] = field(default_factory=dict)
    active_pane: int | None = None
    # Monotonic; indices are never reused while the session lives
    next_pane_index: int = 0

    @property
    def address(self) -> str:
        return f"{self.session}:{self.name}"

    def allocate_index(self) -> int:
        index = self.next_pane_index
        self.next_pane_index += 1
        return index


@dataclass
class Session:
    """A long-lived multiplexed terminal session."""

    name: str
    working_dir: str
    created_at: datetime = field(default_factory=datetime.now)
    is_alive: bool = True
    windows: dict[str, Window] = field(default_factory=dict)

    def iter_panes(self) -> Iterator[Pane]:
        for window in self.windows.values():
            yield from window.panes.values()

    @property
    def pane_count(self) -> int:
        return sum(len(w.panes) for w in self.windows.values())

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.created_at).total_seconds()


@dataclass
class WindowSpec:
    """Initial window description used when creating a session."""

    name: str
    command: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class TopologyChangeKind(Enum):
    """Registry mutations observed by the persistence store."""

    SESSION_CREATED = "session_created"
    SESSION_DESTROYED = "session_destroyed"
    SESSION_ADOPTED = "session_adopted"
    WINDOW_ADDED = "window_added"
    PANE_ADDED = "pane_added"
    PANE_REMOVED = "pane_removed"
    COMMAND_CHANGED = "command_changed"


@dataclass(frozen=True)
class TopologyChange:
    """A single registry mutation."""

    kind: TopologyChangeKind
    session: str
    target: str | None = None  # window or pane address


# =============================================================================
# Error Classification Models
# =============================================================================


class Severity(Enum):
    """Classification severity, ordered error > warning > info."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: Severity) -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.ERROR: 2}


@dataclass
class ErrorPattern:
    """A named matching rule producing ErrorEntry records.

    ``fields`` maps capture groups (by name or number) to field names;
    named groups without a mapping keep their own name.
    """

    name: str
    regex: str
    severity: Severity = Severity.ERROR
    language: str | None = None
    fields: dict[str, str] = field(default_factory=dict)
    description: str = ""
    version: int = 1
    flags: int = 0
    _compiled: re.Pattern[str] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        try:
            self._compiled = re.compile(self.regex, self.flags)
        except re.error as e:
            raise InvalidPatternError(self.name, regex=self.regex, cause=e) from e

    @property
    def compiled(self) -> re.Pattern[str]:
        # dacite resets init=False fields after construction
        if self._compiled is None:
            self._compiled = re.compile(self.regex, self.flags)
        return self._compiled

    def extract(self, line: str) -> dict[str, str] | None:
        """Match a line and return extracted fields, or None."""
        match = self.compiled.search(line)
        if match is None:
            return None

        extracted: dict[str, str] = {}
        for group, value in match.groupdict().items():
            if value is not None:
                extracted[self.fields.get(group, group)] = value
        for group, field_name in self.fields.items():
            if group.isdigit():
                index = int(group)
                if index <= (match.re.groups or 0):
                    value = match.group(index)
                    if value is not None:
                        extracted[field_name] = value
        return extracted

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "regex": self.regex,
            "severity": self.severity.value,
            "language": self.language,
            "fields": dict(self.fields),
            "description": self.description,
            "version": self.version,
        }


@dataclass(frozen=True)
class ErrorEntry:
    """An immutable classified log line."""

    pane: str
    timestamp: datetime
    raw_line: str
    pattern_name: str
    severity: Severity
    fields: dict[str, str] = field(default_factory=dict, hash=False)
    language: str | None = None

    @property
    def message(self) -> str:
        return self.fields.get("message", self.raw_line)


@dataclass(frozen=True)
class LogLine:
    """A newline-terminated chunk of pane output."""

    pane: str
    text: str
    timestamp: datetime = field(default_factory=datetime.now)
    offset: int = 0


# =============================================================================
# Trigger Models
# =============================================================================


class ProcessEventKind(Enum):
    """Process-lifecycle events that bypass error counting."""

    PROCESS_EXITED = "process_exited"
    PORT_CLOSED = "port_closed"


@dataclass(frozen=True)
class ProcessEvent:
    """A process-lifecycle signal for a pane."""

    pane: str
    kind: ProcessEventKind
    timestamp: datetime = field(default_factory=datetime.now)
    detail: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass
class TriggerRule:
    """When to emit a trigger to a sink.

    Threshold form: at least ``min_count`` entries of severity >=
    ``min_severity`` (optionally of ``pattern`` only) within
    ``window_seconds`` for the same (pane, pattern) key.

    Lifecycle form: ``process_event`` set; fires on each such event.

    ``None`` for ``window_seconds``/``debounce_seconds`` means "use the
    coordinator defaults".
    """

    rule_id: str
    sink_id: str
    min_count: int = 1
    min_severity: Severity = Severity.ERROR
    pattern: str | None = None
    window_seconds: float | None = None
    debounce_seconds: float | None = None
    process_event: ProcessEventKind | None = None
    pane: str | None = None  # Restrict to one pane
    description: str = ""

    def __post_init__(self) -> None:
        if self.min_count < 1:
            raise ValueError("min_count must be >= 1")

    @property
    def is_lifecycle(self) -> bool:
        return self.process_event is not None

    @property
    def is_single_occurrence(self) -> bool:
        return self.process_event is None and self.min_count == 1 and self.pattern is not None

    def applies_to(self, pane: str, pattern_name: str, severity: Severity) -> bool:
        """Check whether the rule is bound to a (pane, pattern) key."""
        if self.is_lifecycle:
            return False
        if self.pane is not None and self.pane != pane:
            return False
        if self.pattern is not None and self.pattern != pattern_name:
            return False
        return severity.at_least(self.min_severity)

    def applies_to_event(self, event: ProcessEvent) -> bool:
        if self.process_event != event.kind:
            return False
        return self.pane is None or self.pane == event.pane


@dataclass
class TriggerEvent:
    """Outbound trigger delivered to a sink."""

    sink_id: str
    pane: str
    reason: str
    context: dict[str, Any] = field(default_factory=dict)
    rule_id: str = ""
    fired_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return model_to_dict(self)


# =============================================================================
# Persistence Models
# =============================================================================


@dataclass
class PersistedPane:
    """Pane snapshot."""

    address: str
    command: str = ""
    env: dict[str, str] = field(default_factory=dict)
    pane_id: str | None = None
    pid: int | None = None
    log_path: str | None = None
    ports: list[int] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class PersistedWindow:
    """Window snapshot."""

    name: str
    active_pane: int | None = None
    next_pane_index: int = 0
    panes: list[PersistedPane] = field(default_factory=list)


@dataclass
class PersistedSessionRecord:
    """Point-in-time snapshot of a session topology, keyed by name."""

    name: str
    working_dir: str
    created_at: datetime
    saved_at: datetime
    uptime_seconds: float = 0.0
    pane_count: int = 0
    windows: list[PersistedWindow] = field(default_factory=list)
    format_version: int = 1


# =============================================================================
# Configuration Models
# =============================================================================


@dataclass
class TmuxSettings:
    """How the tmux executor is invoked."""

    binary: str = "tmux"
    socket_path: str | None = None  # Dedicated server socket (-S)
    command_timeout: float = 5.0
    grace_timeout: float = 5.0
    history_limit: int = 10000
    log_dir: str = str(Path.home() / ".config" / "tmux-orchestrator" / "pane-logs")
    default_shell: str | None = None


@dataclass
class WatcherSettings:
    """Log watcher tuning."""

    queue_size: int = 1000
    debounce_ms: int = 50
    poll_timeout_ms: int = 500
    read_chunk_bytes: int = 64 * 1024
    reopen_attempts: int = 2


@dataclass
class ClassifierSettings:
    """Error classifier tuning."""

    ring_capacity: int = 500
    default_languages: list[str] = field(default_factory=list)
    auto_detect_languages: bool = True
    builtin_patterns: bool = True


@dataclass
class CoordinatorSettings:
    """Event coordinator tuning."""

    window_seconds: float = 300.0
    debounce_seconds: float = 60.0
    queue_size: int = 1000
    sweep_interval_seconds: float = 5.0
    delivery_timeout_seconds: float = 10.0
    history_size: int = 200
    rules: list[TriggerRule] = field(default_factory=list)


@dataclass
class PersistenceSettings:
    """Session store tuning."""

    state_dir: str = str(Path.home() / ".config" / "tmux-orchestrator" / "sessions")
    save_debounce_seconds: float = 0.5
    snapshot_interval_seconds: float = 60.0
    enabled: bool = True


@dataclass
class SecuritySettings:
    """Command safety policy overrides."""

    allowed_sequences: list[str] = field(default_factory=lambda: ["&&", "|"])
    denied_patterns: list[str] = field(default_factory=list)
    max_command_length: int = 4096


@dataclass
class MonitorSettings:
    """Process monitor tuning."""

    poll_interval_seconds: float = 1.0
    port_timeout_seconds: float = 0.5
    enabled: bool = True


@dataclass
class LogSettings:
    """Package logging (see logging_config.setup_logging_from_settings)."""

    level: str = "INFO"
    log_to_file: bool = True
    log_to_console: bool = False
    log_dir: str = str(Path.home() / ".config" / "tmux-orchestrator" / "logs")
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3
    debug_modules: list[str] = field(default_factory=list)


@dataclass
class OrchestratorConfig:
    """Complete orchestrator configuration."""

    tmux: TmuxSettings = field(default_factory=TmuxSettings)
    watcher: WatcherSettings = field(default_factory=WatcherSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    log: LogSettings = field(default_factory=LogSettings)


# =============================================================================
# Serialization Helpers
# =============================================================================

DACITE_CONFIG = dacite.Config(
    cast=[Enum],
    type_hooks={datetime: lambda v: v if isinstance(v, datetime) else datetime.fromisoformat(v)},
)


def _convert_values(obj: object) -> object:
    """Recursively convert Enum and datetime values to JSON-friendly values."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: _convert_values(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_convert_values(item) for item in obj]
    return obj


def model_to_dict(obj: object) -> dict:
    """Convert a dataclass model to a dictionary for JSON serialization."""
    data = asdict(obj)  # type: ignore[arg-type]
    return _convert_values(data)  # type: ignore[return-value]


def model_from_dict(data_class: type, data: dict) -> Any:
    """Load a dataclass model from a dictionary."""
    return dacite.from_dict(data_class=data_class, data=data, config=DACITE_CONFIG)
