"""Tests for the typed operation boundary."""

import pytest

from tmux_orchestrator.api import APIResult, ErrorInfo, OperationKind, OrchestratorAPI
from tmux_orchestrator.models import OrchestratorConfig
from tmux_orchestrator.orchestrator import Orchestrator
from tmux_orchestrator.testing import MockExecutor


@pytest.fixture
def executor() -> MockExecutor:
    return MockExecutor()


@pytest.fixture
def api(tmp_path, executor) -> OrchestratorAPI:
    config = OrchestratorConfig()
    config.tmux.log_dir = str(tmp_path / "logs")
    config.persistence.state_dir = str(tmp_path / "state")
    config.monitor.enabled = False
    return OrchestratorAPI(Orchestrator(config, executor))


async def create_dev(api, tmp_path) -> APIResult:
    return await api.call(
        OperationKind.CREATE_SESSION,
        {
            "name": "dev",
            "working_dir": str(tmp_path),
            "windows": [{"name": "main", "command": "npm start", "env": {"PORT": "3000"}}],
        },
    )


class TestResultTypes:
    """Test result serialization."""

    def test_ok_to_dict(self):
        """A successful result serializes with its data and no error."""
        assert APIResult.ok({"a": 1}).to_dict() == {"success": True, "data": {"a": 1}}

    def test_fail_to_dict(self):
        """A failed result serializes its error kind and message."""
        result = APIResult.fail("not_found", "Session not found: dev", {"session": "dev"})
        assert result.to_dict() == {
            "success": False,
            "error": {
                "kind": "not_found",
                "detail": "Session not found: dev",
                "retryable": True,
                "context": {"session": "dev"},
            },
        }

    def test_retryable_kinds(self):
        """Executor failures are retryable; validation and safety failures are not."""
        assert ErrorInfo("executor", "tmux failed").retryable
        assert not ErrorInfo("invalid_params", "bad").retryable
        assert not ErrorInfo("unsafe_command", "no").retryable


class TestDispatch:
    """Test operation and params validation."""

    @pytest.mark.asyncio
    async def test_unknown_operation(self, api):
        """An operation outside the closed set is rejected."""
        result = await api.call("reboot_server")
        assert not result.success
        assert result.error.kind == "invalid_operation"

    @pytest.mark.asyncio
    async def test_string_operation_name(self, api, tmp_path):
        """Operations can be named by their string value."""
        await create_dev(api, tmp_path)
        result = await api.call("list_sessions")
        assert result.success
        assert [s["name"] for s in result.data] == ["dev"]

    @pytest.mark.asyncio
    async def test_unknown_param_rejected(self, api):
        """Unexpected parameters fail validation."""
        result = await api.call(OperationKind.DESTROY_SESSION, {"name": "dev", "force": True})
        assert result.error.kind == "invalid_params"
        assert result.error.context == {"operation": "destroy_session"}

    @pytest.mark.asyncio
    async def test_missing_param_rejected(self, api):
        """Missing required parameters fail validation."""
        result = await api.call(OperationKind.ERRORS_SUMMARY, {})
        assert result.error.kind == "invalid_params"

    @pytest.mark.asyncio
    async def test_invalid_rule_rejected(self, api):
        """A malformed trigger rule fails validation."""
        result = await api.call(
            OperationKind.ADD_TRIGGER_RULE, {"rule_id": "r", "sink_id": "agent", "min_count": 0}
        )
        assert result.error.kind == "invalid_params"


class TestOperations:
    """Test each operation end to end."""

    @pytest.mark.asyncio
    async def test_create_session(self, api, tmp_path):
        """Creating a session returns its topology."""
        result = await create_dev(api, tmp_path)

        assert result.success
        pane = result.data["windows"][0]["panes"][0]
        assert pane["address"] == "dev:main.0"
        assert pane["command"] == "npm start"

    @pytest.mark.asyncio
    async def test_duplicate_session(self, api, tmp_path):
        """Reusing a live session name fails with a duplicate error."""
        await create_dev(api, tmp_path)
        result = await create_dev(api, tmp_path)
        assert result.error.kind == "duplicate"
        assert not result.error.retryable

    @pytest.mark.asyncio
    async def test_destroy_missing_session_is_retryable(self, api):
        """Destroying an unknown session is a retryable not_found."""
        result = await api.call(OperationKind.DESTROY_SESSION, {"name": "dev"})
        assert result.error.kind == "not_found"
        assert result.error.retryable

    @pytest.mark.asyncio
    async def test_destroy_session(self, api, executor, tmp_path):
        """Destroying a session reports per-pane termination."""
        await create_dev(api, tmp_path)
        result = await api.call(OperationKind.DESTROY_SESSION, {"name": "dev"})
        assert result.success
        assert result.data["panes"][0]["pane"] == "dev:main.0"
        assert executor.killed_sessions == ["dev"]

    @pytest.mark.asyncio
    async def test_add_window_and_pane(self, api, tmp_path):
        """Windows and panes can be added through the API."""
        await create_dev(api, tmp_path)
        window = await api.call(OperationKind.ADD_WINDOW, {"session": "dev", "window": "api"})
        assert window.data["address"] == "dev:api"

        pane = await api.call(
            OperationKind.CREATE_PANE, {"window": "dev:api", "command": "npm run api", "ports": [8080]}
        )
        assert pane.data["address"] == "dev:api.1"
        assert pane.data["ports"] == [8080]

        removed = await api.call(OperationKind.REMOVE_PANE, {"pane": "dev:api.1"})
        assert removed.success

    @pytest.mark.asyncio
    async def test_execute_command(self, api, executor, tmp_path):
        """A command is executed in the addressed pane."""
        await create_dev(api, tmp_path)
        result = await api.call(OperationKind.EXECUTE_COMMAND, {"pane": "dev:main.0", "command": "npm test"})
        assert result.success
        pane_id = next(iter(executor.panes))
        assert executor.panes[pane_id].inputs == ["npm test\n"]

    @pytest.mark.asyncio
    async def test_unsafe_command(self, api, tmp_path):
        """Unsafe commands are refused at the boundary."""
        await create_dev(api, tmp_path)
        result = await api.call(
            OperationKind.EXECUTE_COMMAND, {"pane": "dev:main.0", "command": "npm test; rm -rf /"}
        )
        assert result.error.kind == "unsafe_command"

    @pytest.mark.asyncio
    async def test_watch_and_summary(self, api, tmp_path):
        """Watching a pane makes its error summary available."""
        await create_dev(api, tmp_path)
        watch = await api.call(OperationKind.ERRORS_WATCH, {"pane": "dev:main.0", "languages": ["node"]})
        assert watch.data["state"] == "watching"

        await api.orchestrator.ingest_line("dev:main.0", "Error: Cannot find module 'express'")
        summary = await api.call(OperationKind.ERRORS_SUMMARY, {"pane": "dev:main.0"})
        analysis = await api.call(OperationKind.ERRORS_ANALYZE, {"pane": "dev:main.0"})
        unwatch = await api.call(OperationKind.ERRORS_UNWATCH, {"pane": "dev:main.0"})

        assert summary.data["total"] == 1
        assert summary.data["by_pattern"] == {"node.error": 1}
        assert analysis.data["groups"][0]["pattern_name"] == "node.error"
        assert unwatch.data == {"pane": "dev:main.0", "stopped": True}

    @pytest.mark.asyncio
    async def test_summary_for_unknown_pane(self, api):
        """Summarizing an unknown pane fails with not_found."""
        result = await api.call(OperationKind.ERRORS_SUMMARY, {"pane": "dev:main.0"})
        assert result.error.kind == "not_found"

    @pytest.mark.asyncio
    async def test_unknown_language(self, api, tmp_path):
        """An unsupported language tag is a validation failure."""
        await create_dev(api, tmp_path)
        result = await api.call(OperationKind.ERRORS_WATCH, {"pane": "dev:main.0", "languages": ["cobol"]})
        assert result.error.kind == "invalid_params"

    @pytest.mark.asyncio
    async def test_patterns(self, api):
        """Patterns can be added, rejected when invalid, and removed."""
        added = await api.call(
            OperationKind.ERRORS_ADD_PATTERN,
            {"name": "app.oops", "regex": "OOPS (?P<message>.+)", "severity": "warning"},
        )
        assert added.data["pattern"]["severity"] == "warning"
        assert added.data["replaced"] is False

        bad = await api.call(OperationKind.ERRORS_ADD_PATTERN, {"name": "bad", "regex": "("})
        assert bad.error.kind == "invalid_pattern"

        removed = await api.call(OperationKind.ERRORS_REMOVE_PATTERN, {"name": "app.oops"})
        assert removed.data["removed"] is True

    @pytest.mark.asyncio
    async def test_trigger_rules(self, api):
        """Trigger rules can be added and removed."""
        added = await api.call(
            OperationKind.ADD_TRIGGER_RULE,
            {"rule_id": "exit", "sink_id": "agent", "process_event": "process_exited"},
        )
        assert added.data["rule"]["process_event"] == "process_exited"

        removed = await api.call(OperationKind.REMOVE_TRIGGER_RULE, {"rule_id": "exit"})
        assert removed.data["rule"]["rule_id"] == "exit"

        missing = await api.call(OperationKind.REMOVE_TRIGGER_RULE, {"rule_id": "exit"})
        assert missing.error.kind == "not_found"

    @pytest.mark.asyncio
    async def test_status(self, api, tmp_path):
        """Status lists the live sessions."""
        await create_dev(api, tmp_path)
        result = await api.call(OperationKind.STATUS)
        assert result.data["sessions"][0]["name"] == "dev"
