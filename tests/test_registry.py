"""Tests for the session registry."""

import asyncio

import pytest

from tmux_orchestrator.exceptions import (
    DuplicateNameError,
    ExecutorError,
    PaneNotFoundError,
    SessionNotFoundError,
    UnsafeCommandError,
    WindowNotFoundError,
)
from tmux_orchestrator.models import Session, TopologyChangeKind, WindowSpec
from tmux_orchestrator.registry import RWLock, SessionRegistry
from tmux_orchestrator.testing import MockExecutor


@pytest.fixture
def executor() -> MockExecutor:
    return MockExecutor()


@pytest.fixture
def registry(executor, tmp_path) -> SessionRegistry:
    return SessionRegistry(executor, log_dir=tmp_path / "logs", grace_timeout=0.1)


class TestRWLock:
    """Test the reader/writer lock."""

    @pytest.mark.asyncio
    async def test_readers_share(self):
        """Readers can hold the lock together."""
        lock = RWLock()
        async with lock.reader():
            async with lock.reader():
                assert lock.locked

    @pytest.mark.asyncio
    async def test_writer_excludes_readers(self):
        """Readers wait for an active writer."""
        lock = RWLock()
        order = []

        async def read():
            async with lock.reader():
                order.append("read")

        async with lock.writer():
            task = asyncio.create_task(read())
            await asyncio.sleep(0.01)
            order.append("write-done")
        await task

        assert order == ["write-done", "read"]
        assert not lock.locked


class TestCreateSession:
    """Test session creation."""

    @pytest.mark.asyncio
    async def test_create_default_window(self, registry, executor, tmp_path):
        """A session without windows gets a main window."""
        session = await registry.create_session("dev", tmp_path)

        assert session.name == "dev"
        assert list(session.windows) == ["main"]
        pane = session.windows["main"].panes[0]
        assert pane.address == "dev:main.0"
        assert pane.log_path == str(tmp_path / "logs" / "dev" / "main.0.log")
        assert executor.panes[pane.handle.pane_id].log_path == pane.log_path
        assert "dev" in executor.sessions

    @pytest.mark.asyncio
    async def test_create_with_commands(self, registry, executor, tmp_path):
        """Each initial window runs its command."""
        session = await registry.create_session(
            "dev",
            tmp_path,
            [WindowSpec("main", "npm start", {"PORT": "3000"}), WindowSpec("tests", "npm test")],
        )

        main = session.windows["main"].panes[0]
        tests = session.windows["tests"].panes[0]
        assert main.command == "npm start"
        assert executor.panes[main.handle.pane_id].commands == ["npm start"]
        assert executor.panes[main.handle.pane_id].env == {"PORT": "3000"}
        assert tests.address == "dev:tests.0"

    @pytest.mark.asyncio
    async def test_generated_name(self, registry, tmp_path):
        """Sessions without a name get a generated one."""
        session = await registry.create_session(None, tmp_path)
        assert session.name.startswith("session-")
        assert registry.has_session(session.name)

    @pytest.mark.asyncio
    async def test_duplicate_name(self, registry, tmp_path):
        """A live session name cannot be reused."""
        await registry.create_session("dev", tmp_path)
        with pytest.raises(DuplicateNameError):
            await registry.create_session("dev", tmp_path)

    @pytest.mark.asyncio
    async def test_duplicate_window_names(self, registry, tmp_path):
        """Window names must be unique within a session."""
        with pytest.raises(DuplicateNameError):
            await registry.create_session("dev", tmp_path, [WindowSpec("a"), WindowSpec("a")])

    @pytest.mark.asyncio
    async def test_unsafe_command_creates_nothing(self, registry, executor, tmp_path):
        """A rejected command fails before any tmux side effect."""
        with pytest.raises(UnsafeCommandError):
            await registry.create_session("dev", tmp_path, [WindowSpec("main", "npm start; reboot")])
        assert executor.sessions == {}
        assert not registry.has_session("dev")

    @pytest.mark.asyncio
    async def test_failure_rolls_back_tmux_session(self, registry, executor, tmp_path):
        """A tmux failure mid-creation kills the half-built session."""
        executor.set_failure("create_window")
        with pytest.raises(ExecutorError):
            await registry.create_session("dev", tmp_path, [WindowSpec("a"), WindowSpec("b")])
        assert executor.killed_sessions == ["dev"]
        assert not registry.has_session("dev")

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back_tmux_session(self, tmp_path):
        """A non-orchestrator error while attaching panes still kills the tmux session."""

        class BrokenCapture(MockExecutor):
            async def start_capture(self, handle, log_path):
                raise PermissionError(log_path)

        broken = BrokenCapture()
        registry = SessionRegistry(broken, log_dir=tmp_path / "logs")

        with pytest.raises(PermissionError):
            await registry.create_session("dev", tmp_path)

        assert broken.killed_sessions == ["dev"]
        assert "dev" not in broken.sessions
        assert not registry.has_session("dev")

    @pytest.mark.asyncio
    async def test_emits_topology_change(self, registry, tmp_path):
        """Creating a session notifies listeners."""
        changes = []
        registry.subscribe(changes.append)
        await registry.create_session("dev", tmp_path)
        assert [c.kind for c in changes] == [TopologyChangeKind.SESSION_CREATED]
        assert changes[0].session == "dev"

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_fail_mutation(self, registry, tmp_path):
        """A failing listener does not undo the change."""
        def broken(change):
            raise RuntimeError("listener failed")

        registry.subscribe(broken)
        session = await registry.create_session("dev", tmp_path)
        assert session.name == "dev"


class TestLookup:
    """Test address resolution."""

    @pytest.mark.asyncio
    async def test_resolve(self, registry, tmp_path):
        """A pane address resolves to its pane."""
        await registry.create_session("dev", tmp_path)
        pane = await registry.resolve("dev:main.0")
        assert pane.address == "dev:main.0"
        assert registry.find_pane("dev:main.0") is pane

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, registry):
        """Unknown panes raise PaneNotFoundError."""
        with pytest.raises(PaneNotFoundError):
            await registry.resolve("dev:main.0")

    @pytest.mark.asyncio
    async def test_resolve_malformed(self, registry):
        """Malformed addresses raise PaneNotFoundError."""
        with pytest.raises(PaneNotFoundError):
            await registry.resolve("not-an-address")

    @pytest.mark.asyncio
    async def test_get_session_unknown(self, registry):
        """Unknown sessions raise SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            await registry.get_session("dev")

    @pytest.mark.asyncio
    async def test_pane_addresses_by_session(self, registry, tmp_path):
        """Pane addresses can be listed per session."""
        await registry.create_session("a", tmp_path)
        await registry.create_session("b", tmp_path)
        assert registry.pane_addresses("a") == ["a:main.0"]
        assert sorted(registry.pane_addresses()) == ["a:main.0", "b:main.0"]


class TestWindowsAndPanes:
    """Test adding and removing windows and panes."""

    @pytest.mark.asyncio
    async def test_add_window(self, registry, tmp_path):
        """A new window gets one pane."""
        await registry.create_session("dev", tmp_path)
        window = await registry.add_window("dev", "api", "python -m http.server")
        assert window.address == "dev:api"
        assert (await registry.resolve("dev:api.0")).command == "python -m http.server"

    @pytest.mark.asyncio
    async def test_add_window_duplicate(self, registry, tmp_path):
        """Window names cannot be reused."""
        await registry.create_session("dev", tmp_path)
        with pytest.raises(DuplicateNameError):
            await registry.add_window("dev", "main")

    @pytest.mark.asyncio
    async def test_add_window_unknown_session(self, registry):
        """Adding to an unknown session fails."""
        with pytest.raises(SessionNotFoundError):
            await registry.add_window("dev", "api")

    @pytest.mark.asyncio
    async def test_add_pane_indices_are_monotonic(self, registry, tmp_path):
        """Indices are never reused after a pane is removed."""
        await registry.create_session("dev", tmp_path)
        first = await registry.add_pane("dev:main", "npm test", ports=[3000])
        assert first.address == "dev:main.1"
        assert first.ports == [3000]

        await registry.remove_pane("dev:main.1")
        second = await registry.add_pane("dev:main")
        assert second.address == "dev:main.2"

    @pytest.mark.asyncio
    async def test_add_pane_unknown_window(self, registry, tmp_path):
        """Unknown or malformed window addresses fail."""
        await registry.create_session("dev", tmp_path)
        with pytest.raises(WindowNotFoundError):
            await registry.add_pane("dev:nope")
        with pytest.raises(WindowNotFoundError):
            await registry.add_pane("garbage")

    @pytest.mark.asyncio
    async def test_remove_pane(self, registry, executor, tmp_path):
        """Removing a pane terminates it and kills the tmux pane."""
        await registry.create_session("dev", tmp_path)
        pane = await registry.add_pane("dev:main", "npm test")
        pane_id = pane.handle.pane_id

        result = await registry.remove_pane("dev:main.1")

        assert result.success
        assert pane_id not in executor.panes
        window = (await registry.get_session("dev")).windows["main"]
        assert list(window.panes) == [0]
        assert window.active_pane == 0
        with pytest.raises(PaneNotFoundError):
            await registry.resolve("dev:main.1")

    @pytest.mark.asyncio
    async def test_remove_last_pane_keeps_tmux_window(self, registry, executor, tmp_path):
        """The last pane's tmux pane is kept so the window survives."""
        session = await registry.create_session("dev", tmp_path)
        pane_id = session.windows["main"].panes[0].handle.pane_id

        await registry.remove_pane("dev:main.0")

        assert pane_id in executor.panes
        assert executor.panes[pane_id].dead
        assert session.windows["main"].active_pane is None

    @pytest.mark.asyncio
    async def test_remove_unknown_pane(self, registry):
        """Removing an unknown pane raises PaneNotFoundError."""
        with pytest.raises(PaneNotFoundError):
            await registry.remove_pane("dev:main.0")


class TestRunCommand:
    """Test command execution in existing panes."""

    @pytest.mark.asyncio
    async def test_send_keys_by_default(self, registry, executor, tmp_path):
        """Commands are typed into the shell by default."""
        session = await registry.create_session("dev", tmp_path)
        pane_id = session.windows["main"].panes[0].handle.pane_id

        pane = await registry.run_command("dev:main.0", "npm test")

        assert pane.command == "npm test"
        assert executor.panes[pane_id].inputs == ["npm test\n"]

    @pytest.mark.asyncio
    async def test_replace_respawns(self, registry, executor, tmp_path):
        """With replace the pane is respawned."""
        session = await registry.create_session("dev", tmp_path, [WindowSpec("main", "npm start")])
        old_pid = session.windows["main"].panes[0].pid

        pane = await registry.run_command("dev:main.0", "npm run dev", replace=True)

        assert pane.pid != old_pid
        assert executor.panes[pane.handle.pane_id].commands == ["npm start", "npm run dev"]

    @pytest.mark.asyncio
    async def test_rejects_unsafe(self, registry, tmp_path):
        """Unsafe commands are refused."""
        await registry.create_session("dev", tmp_path)
        with pytest.raises(UnsafeCommandError):
            await registry.run_command("dev:main.0", "echo $(cat /etc/passwd)")

    @pytest.mark.asyncio
    async def test_emits_command_changed(self, registry, tmp_path):
        """Running a command notifies listeners."""
        await registry.create_session("dev", tmp_path)
        changes = []
        registry.subscribe(changes.append)
        await registry.run_command("dev:main.0", "ls")
        assert changes[-1].kind is TopologyChangeKind.COMMAND_CHANGED
        assert changes[-1].target == "dev:main.0"


class TestDestroySession:
    """Test session teardown."""

    @pytest.mark.asyncio
    async def test_destroy(self, registry, executor, tmp_path):
        """Destroying terminates every pane and kills the session."""
        session = await registry.create_session(
            "dev", tmp_path, [WindowSpec("main", "npm start"), WindowSpec("api", "npm run api")]
        )

        results = await registry.destroy_session("dev")

        assert len(results) == 2
        assert all(r.success for r in results)
        assert sorted(executor.terminated) == ["dev:api.0", "dev:main.0"]
        assert executor.killed_sessions == ["dev"]
        assert not session.is_alive
        assert not registry.has_session("dev")
        assert registry.pane_addresses() == []

    @pytest.mark.asyncio
    async def test_destroy_forced(self, registry, executor, tmp_path):
        """A process ignoring Ctrl+C is killed and the destroy still succeeds."""
        session = await registry.create_session("dev", tmp_path, [WindowSpec("main", "npm start")])
        executor.ignore_interrupt(session.windows["main"].panes[0].handle.pane_id)

        results = await registry.destroy_session("dev")

        assert results[0].success
        assert results[0].force_required

    @pytest.mark.asyncio
    async def test_destroy_terminates_panes_concurrently(self, tmp_path):
        """Slow panes are stopped together, so destroy takes about one grace period."""
        grace = 0.3

        class SlowTerminate(MockExecutor):
            async def terminate(self, pane, grace_timeout):
                await asyncio.sleep(grace_timeout)
                return await super().terminate(pane, grace_timeout)

        executor = SlowTerminate()
        registry = SessionRegistry(executor, log_dir=tmp_path / "logs", grace_timeout=grace)
        await registry.create_session(
            "dev", tmp_path, [WindowSpec(name) for name in ("a", "b", "c", "d")]
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        results = await registry.destroy_session("dev")
        elapsed = loop.time() - started

        assert len(results) == 4
        assert all(r.success for r in results)
        assert elapsed < grace * 2

    @pytest.mark.asyncio
    async def test_destroy_unknown(self, registry):
        """Destroying an unknown session raises SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            await registry.destroy_session("dev")

    @pytest.mark.asyncio
    async def test_destroy_when_server_lost_session(self, registry, executor, tmp_path):
        """A session tmux already forgot is still removed from the registry."""
        await registry.create_session("dev", tmp_path)
        executor.restart_server()

        await registry.destroy_session("dev")

        assert not registry.has_session("dev")

    @pytest.mark.asyncio
    async def test_destroy_emits_change(self, registry, tmp_path):
        """Destroying a session notifies listeners."""
        await registry.create_session("dev", tmp_path)
        changes = []
        registry.subscribe(changes.append)
        await registry.destroy_session("dev")
        assert changes[-1].kind is TopologyChangeKind.SESSION_DESTROYED


class TestAdopt:
    """Test inserting recovered sessions."""

    @pytest.mark.asyncio
    async def test_adopt(self, registry):
        """Recovered sessions become live."""
        session = Session(name="dev", working_dir="/tmp")
        await registry.adopt(session)
        assert registry.has_session("dev")

    @pytest.mark.asyncio
    async def test_adopt_duplicate(self, registry, tmp_path):
        """A recovered session cannot shadow a live one."""
        await registry.create_session("dev", tmp_path)
        with pytest.raises(DuplicateNameError):
            await registry.adopt(Session(name="dev", working_dir="/tmp"))
