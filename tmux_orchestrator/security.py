"""Command and name validation for tmux-orchestrator.

Every command handed to the executor passes through ``validate_command``
before it reaches a pane. This is the orchestrator's only input-trust
boundary:
- Command substitution and embedded newlines are always rejected
- Shell operator sequences (``;``, ``&&``, ``|``, ``>`` ...) are rejected
  unless the exact sequence is in the policy allow-list
- Known destructive command shapes are rejected outright

Session/window names and environment variables are validated separately so
they can be embedded safely in tmux targets.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field

from .exceptions import UnsafeCommandError

logger = logging.getLogger(__name__)


# Operators shlex reports as punctuation tokens
SHELL_OPERATORS: frozenset[str] = frozenset({
    ";",
    ";;",
    "&",
    "&&",
    "|",
    "||",
    "|&",
    ">",
    ">>",
    ">&",
    "&>",
    "<",
    "<<",
    "<&",
    "<>",
    "(",
    ")",
})

# Operators allowed unless the policy says otherwise
DEFAULT_ALLOWED_SEQUENCES: frozenset[str] = frozenset({"&&", "|"})

# Destructive command shapes, rejected even when every operator is allowed
DESTRUCTIVE_PATTERNS: tuple[str, ...] = (
    r"\brm\s+(-\S+\s+)*(--recursive|-[a-zA-Z]*[rR][a-zA-Z]*)\s+(-\S+\s+)*(/|~|\*|/\*)(\s|$)",
    r"\brm\s+(-[a-zA-Z]*\s+)*--no-preserve-root\b",
    r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",  # fork bomb
    r"\bmkfs(\.\w+)?\b",
    r"\bdd\b.*\bof=/dev/",
    r">\s*/dev/(sd|hd|nvme|disk)",
    r"\b(shutdown|reboot|halt|poweroff)\b",
    r"\bchmod\s+(-[a-zA-Z]*\s+)*-[a-zA-Z]*R[a-zA-Z]*\s+[0-7]*777\s+/(\s|$)",
    r"\bchown\s+(-[a-zA-Z]*\s+)*-[a-zA-Z]*R[a-zA-Z]*\s+\S+\s+/(\s|$)",
    r"\b(curl|wget)\b[^|]*\|\s*(sudo\s+)?(ba|z|da)?sh\b",
)

# Characters that are never valid inside a single command line
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")


@dataclass
class CommandPolicy:
    """Allow-list and deny-list for pane commands."""

    allowed_sequences: frozenset[str] = DEFAULT_ALLOWED_SEQUENCES
    denied_patterns: tuple[str, ...] = DESTRUCTIVE_PATTERNS
    max_length: int = 4096
    _compiled: list[re.Pattern[str]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.allowed_sequences = frozenset(self.allowed_sequences)
        self._compiled = [re.compile(p) for p in self.denied_patterns]

    @classmethod
    def from_settings(
        cls,
        allowed_sequences: list[str],
        extra_denied: list[str] | None = None,
        max_length: int = 4096,
    ) -> CommandPolicy:
        """Build a policy from configuration values."""
        return cls(
            allowed_sequences=frozenset(allowed_sequences),
            denied_patterns=DESTRUCTIVE_PATTERNS + tuple(extra_denied or ()),
            max_length=max_length,
        )

    def denied_match(self, command: str) -> str | None:
        """Return the deny-list pattern that matches, if any."""
        for pattern in self._compiled:
            if pattern.search(command):
                return pattern.pattern
        return None


DEFAULT_POLICY = CommandPolicy()


def _operator_tokens(command: str) -> list[str]:
    """Return the shell operator tokens of a command line.

    Raises:
        ValueError: If quoting is unbalanced.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    return [token for token in lexer if token and set(token) <= set("();<>|&")]


def validate_command(command: str, policy: CommandPolicy | None = None) -> str:
    """Validate a pane command against the safety policy.

    Args:
        command: The command line to validate.
        policy: Policy to apply (default: DEFAULT_POLICY).

    Returns:
        The validated command (stripped of surrounding whitespace).

    Raises:
        UnsafeCommandError: If the command is rejected.

    Examples:
        >>> validate_command("npm start")
        'npm start'

        >>> validate_command("make build && make test")
        'make build && make test'

        >>> validate_command("echo hi; rm -rf ~")
        Raises UnsafeCommandError
    """
    policy = policy or DEFAULT_POLICY
    command = command.strip()

    if not command:
        raise UnsafeCommandError("Command cannot be empty", attempted_command=command, reason="empty")

    if len(command) > policy.max_length:
        raise UnsafeCommandError(
            "Command exceeds maximum length",
            attempted_command=command,
            reason="too_long",
        )

    if _CONTROL_CHARS.search(command):
        logger.warning("Command contains control characters: %r", command[:80])
        raise UnsafeCommandError(
            "Command contains control characters or newlines",
            attempted_command=command,
            reason="control_chars",
        )

    if "`" in command or "$(" in command or "<(" in command or ">(" in command:
        logger.warning("Command contains substitution: %s", command)
        raise UnsafeCommandError(
            "Command substitution is not allowed",
            attempted_command=command,
            reason="substitution",
        )

    try:
        operators = _operator_tokens(command)
    except ValueError as e:
        raise UnsafeCommandError(
            "Command has unbalanced quoting",
            attempted_command=command,
            reason="quoting",
        ) from e

    for operator in operators:
        if operator not in policy.allowed_sequences:
            logger.warning("Command contains disallowed operator %r: %s", operator, command)
            raise UnsafeCommandError(
                f"Shell operator {operator!r} is not allowed",
                attempted_command=command,
                reason="operator",
            )

    denied = policy.denied_match(command)
    if denied:
        logger.warning("Command matches deny-list: %s", command)
        raise UnsafeCommandError(
            "Command matches a destructive pattern",
            attempted_command=command,
            reason="denied",
        )

    return command


def is_command_allowed(command: str, policy: CommandPolicy | None = None) -> bool:
    """Boolean wrapper around validate_command."""
    try:
        validate_command(command, policy)
        return True
    except UnsafeCommandError:
        return False


def validate_input(data: str, policy: CommandPolicy | None = None) -> str:
    """Validate text sent to a running pane.

    Plain text without operators is passed through unchanged so that
    interactive answers ("y", "q") work; anything that looks like a
    command line is held to the same rules as ``validate_command``.
    """
    if data and not _CONTROL_CHARS.search(data) and not any(c in data for c in ";&|<>`$()"):
        return data
    return validate_command(data, policy)


def validate_name(name: str, *, entity: str = "session") -> str:
    """Validate a session or window name used in tmux targets.

    Raises:
        UnsafeCommandError: If the name contains characters outside
            ``[A-Za-z0-9_-]`` (``:`` and ``.`` are address separators).
    """
    name = name.strip()
    if not _NAME_RE.match(name):
        raise UnsafeCommandError(
            f"Invalid {entity} name: {name!r}",
            attempted_command=name,
            reason="name",
        )
    return name


def validate_env(env: dict[str, str] | None) -> dict[str, str]:
    """Validate environment variables passed to a pane."""
    if not env:
        return {}
    clean: dict[str, str] = {}
    for key, value in env.items():
        if not _ENV_KEY_RE.match(key):
            raise UnsafeCommandError(
                f"Invalid environment variable name: {key!r}",
                attempted_command=key,
                reason="env",
            )
        value = str(value)
        if _CONTROL_CHARS.search(value):
            raise UnsafeCommandError(
                f"Environment variable {key} contains control characters",
                attempted_command=key,
                reason="env",
            )
        clean[key] = value
    return clean
