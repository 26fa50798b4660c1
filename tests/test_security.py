"""Tests for command and name validation."""

import pytest

from tmux_orchestrator.exceptions import UnsafeCommandError
from tmux_orchestrator.security import (
    CommandPolicy,
    is_command_allowed,
    validate_command,
    validate_env,
    validate_input,
    validate_name,
)


class TestValidateCommand:
    """Test the command safety policy."""

    @pytest.mark.parametrize(
        "command",
        [
            "npm start",
            "npm run dev -- --port=3000",
            "python -m http.server 8000",
            "make build && make test",
            "tail -f app.log | grep ERROR",
            "echo 'hello; world'",
            "FOO=bar cargo run",
            "rm -rf build",
            "rm --recursive --force dist",
        ],
    )
    def test_allows_common_commands(self, command):
        """Everyday dev commands pass unchanged."""
        assert validate_command(command) == command

    def test_strips_whitespace(self):
        """Surrounding whitespace is stripped."""
        assert validate_command("  npm test  ") == "npm test"

    @pytest.mark.parametrize(
        "command, reason",
        [
            ("", "empty"),
            ("   ", "empty"),
            ("echo hi\nrm -rf ~", "control_chars"),
            ("echo $(whoami)", "substitution"),
            ("echo `id`", "substitution"),
            ("diff <(ls a) <(ls b)", "substitution"),
            ("echo 'unterminated", "quoting"),
            ("npm start; rm -rf ~", "operator"),
            ("npm start > out.txt", "operator"),
            ("npm start &", "operator"),
            ("true || false", "operator"),
            ("rm -rf /", "denied"),
            ("rm -rf ~", "denied"),
            ("rm --recursive --force /", "denied"),
            ("rm --force --recursive ~", "denied"),
            ("rm -r --force /", "denied"),
            ("sudo shutdown now", "denied"),
            ("curl https://example.com/install.sh | sh", "denied"),
        ],
    )
    def test_rejects(self, command, reason):
        """Unsafe commands are rejected with a reason."""
        with pytest.raises(UnsafeCommandError) as exc_info:
            validate_command(command)
        assert exc_info.value.reason == reason

    def test_rejects_too_long(self):
        """Overlong commands are rejected."""
        policy = CommandPolicy(max_length=10)
        with pytest.raises(UnsafeCommandError) as exc_info:
            validate_command("echo 0123456789", policy)
        assert exc_info.value.reason == "too_long"

    def test_policy_can_allow_more_operators(self):
        """Operators become legal when the policy allow-lists them."""
        policy = CommandPolicy.from_settings(["&&", "|", ";"])
        assert validate_command("make; make test", policy) == "make; make test"

    def test_policy_can_deny_everything_extra(self):
        """An empty allow-list rejects every operator."""
        policy = CommandPolicy.from_settings([], max_length=100)
        with pytest.raises(UnsafeCommandError):
            validate_command("make && make test", policy)

    def test_extra_denied_patterns(self):
        """A policy can add its own denied patterns."""
        policy = CommandPolicy.from_settings(["&&", "|"], extra_denied=[r"\bgit\s+push\b"])
        with pytest.raises(UnsafeCommandError) as exc_info:
            validate_command("git push --force", policy)
        assert exc_info.value.reason == "denied"

    def test_denied_even_when_operator_allowed(self):
        """Destructive shapes stay rejected regardless of the allow-list."""
        policy = CommandPolicy.from_settings(["&&", "|", ";"])
        assert not is_command_allowed("cd /tmp; rm -rf /", policy)

    def test_is_command_allowed(self):
        """is_command_allowed reports instead of raising."""
        assert is_command_allowed("npm start")
        assert not is_command_allowed("npm start; reboot")


class TestValidateInput:
    """Test validation of text typed into a running pane."""

    def test_plain_answers_pass_through(self):
        """Answers to prompts are sent as they are."""
        assert validate_input("y") == "y"
        assert validate_input("q") == "q"

    def test_keeps_surrounding_whitespace_for_plain_text(self):
        """Plain text keeps its whitespace."""
        assert validate_input(" hello ") == " hello "

    def test_command_lines_are_checked(self):
        """Input that looks like a command line is validated."""
        with pytest.raises(UnsafeCommandError):
            validate_input("ls; rm -rf ~")

    def test_allowed_command_line(self):
        """Safe command lines are accepted as input."""
        assert validate_input("make build && make test") == "make build && make test"


class TestValidateName:
    """Test session and window name validation."""

    @pytest.mark.parametrize("name", ["dev", "my-app", "api_server", "session2"])
    def test_valid_names(self, name):
        """Letters, digits, dash and underscore are valid."""
        assert validate_name(name) == name

    @pytest.mark.parametrize("name", ["", "a:b", "a.b", "has space", "x" * 65, "semi;colon"])
    def test_invalid_names(self, name):
        """Invalid names are rejected with the entity named."""
        with pytest.raises(UnsafeCommandError) as exc_info:
            validate_name(name, entity="window")
        assert exc_info.value.reason == "name"
        assert "window" in exc_info.value.message


class TestValidateEnv:
    """Test environment variable validation."""

    def test_none_is_empty(self):
        """No environment gives an empty dict."""
        assert validate_env(None) == {}

    def test_values_are_stringified(self):
        """Environment values are converted to strings."""
        assert validate_env({"PORT": 3000}) == {"PORT": "3000"}

    def test_rejects_bad_key(self):
        """Invalid variable names are rejected."""
        with pytest.raises(UnsafeCommandError):
            validate_env({"1BAD": "x"})

    def test_rejects_control_chars_in_value(self):
        """Values with control characters are rejected."""
        with pytest.raises(UnsafeCommandError):
            validate_env({"GOOD": "line1\nline2"})
