"""Tests for the session and command registries."""

from mcp_ssh_broker.datastructures import (
    AsyncCommandInfo,
    CommandStatus,
    RunningCommand,
    SessionInfo,
    StatusWatch,
    utc_now,
)
from mcp_ssh_broker.registry import CommandRegistry, SessionRegistry


def make_info(session_id, agent_id=None):
    return SessionInfo(
        session_id=session_id,
        host="example.com",
        username="u",
        connected_at=utc_now(),
        default_timeout_secs=30,
        retry_attempts=0,
        compression_enabled=True,
        agent_id=agent_id,
    )


def make_command(command_id, session_id, started_at=None):
    return RunningCommand(info=AsyncCommandInfo(
        command_id=command_id,
        session_id=session_id,
        command="sleep 1",
        status=CommandStatus.RUNNING,
        started_at=started_at or utc_now(),
    ))


class TestSessionRegistry:

    def setup_method(self):
        self.registry = SessionRegistry()

    def test_insert_get_remove(self):
        transport = object()
        self.registry.insert("s1", make_info("s1"), transport)
        info, found_transport = self.registry.get("s1")
        assert info.session_id == "s1"
        assert found_transport is transport
        assert self.registry.contains("s1")

        assert self.registry.remove("s1").transport is transport
        assert self.registry.get("s1") is None
        assert self.registry.remove("s1") is None

    def test_get_returns_copy(self):
        self.registry.insert("s1", make_info("s1"), object())
        info, _ = self.registry.get("s1")
        info.healthy = False
        assert self.registry.get("s1")[0].healthy is None

    def test_update_health(self):
        self.registry.insert("s1", make_info("s1"), object())
        assert self.registry.update_health("s1", "2026-01-01T00:00:00+00:00", True)
        info, _ = self.registry.get("s1")
        assert info.healthy is True
        assert info.last_health_check == "2026-01-01T00:00:00+00:00"
        assert not self.registry.update_health("missing", utc_now(), True)

    def test_agent_teardown(self):
        for session_id in ("s1", "s2", "s3"):
            self.registry.register_agent("agent-a", session_id)
        assert self.registry.remove_agent_sessions("agent-a") == ["s1", "s2", "s3"]
        assert self.registry.get_agent_sessions("agent-a") == []
        assert self.registry.remove_agent_sessions("agent-a") == []

    def test_session_under_two_agents(self):
        self.registry.register_agent("a", "shared")
        self.registry.register_agent("b", "shared")
        assert self.registry.get_agent_sessions("a") == ["shared"]
        assert self.registry.get_agent_sessions("b") == ["shared"]

        self.registry.unregister_agent("a", "shared")
        assert self.registry.get_agent_sessions("a") == []
        assert self.registry.get_agent_sessions("b") == ["shared"]

    def test_unregister_unknown_agent_is_noop(self):
        self.registry.unregister_agent("nobody", "s1")
        assert self.registry.get_agent_sessions("nobody") == []

    def test_to_dict_omits_unset_fields(self):
        data = make_info("s1").to_dict()
        assert "agent_id" not in data
        assert "healthy" not in data
        assert data["session_id"] == "s1"
        assert data["persistent"] is False


class TestCommandRegistry:

    def setup_method(self):
        self.registry = CommandRegistry()

    def test_register_and_list_by_session(self):
        self.registry.register(make_command("c1", "s1"))
        self.registry.register(make_command("c2", "s1"))
        self.registry.register(make_command("c3", "s2"))
        assert self.registry.list_by_session("s1") == ["c1", "c2"]
        assert self.registry.count_by_session("s1") == 2
        assert self.registry.count_by_session("s2") == 1

    def test_unregister_cleans_session_index(self):
        self.registry.register(make_command("c1", "s1"))
        self.registry.register(make_command("c2", "s1"))

        self.registry.unregister("c1")
        assert self.registry.list_by_session("s1") == ["c2"]
        assert self.registry.has_session("s1")

        self.registry.unregister("c2")
        assert self.registry.list_by_session("s1") == []
        assert self.registry.count_by_session("s1") == 0
        assert not self.registry.has_session("s1")
        assert self.registry.unregister("c2") is None

    def test_count_running_ignores_terminal(self):
        done = make_command("c1", "s1")
        done.status.set(CommandStatus.COMPLETED)
        self.registry.register(done)
        self.registry.register(make_command("c2", "s1"))
        assert self.registry.count_by_session("s1") == 2
        assert self.registry.count_running_by_session("s1") == 1

    def test_list_filtered_uses_live_status(self):
        first = make_command("c1", "s1", started_at="2026-01-01T00:00:01+00:00")
        second = make_command("c2", "s2", started_at="2026-01-01T00:00:00+00:00")
        self.registry.register(first)
        self.registry.register(second)
        first.status.set(CommandStatus.CANCELLED)

        everything = self.registry.list_all()
        assert [info.command_id for info in everything] == ["c2", "c1"]
        assert everything[1].status is CommandStatus.CANCELLED

        cancelled = self.registry.list_filtered(status=CommandStatus.CANCELLED)
        assert [info.command_id for info in cancelled] == ["c1"]
        assert self.registry.list_filtered(session_id="s2", status=CommandStatus.CANCELLED) == []
        assert [info.command_id for info in self.registry.list_filtered(session_id="s2")] == ["c2"]


class TestStatusWatch:

    def test_terminal_status_is_final(self):
        watch = StatusWatch()
        assert watch.get() is CommandStatus.RUNNING
        assert watch.set(CommandStatus.COMPLETED)
        assert not watch.set(CommandStatus.RUNNING)
        assert not watch.set(CommandStatus.FAILED)
        assert watch.get() is CommandStatus.COMPLETED

    def test_wait_returns_current_value_on_timeout(self):
        watch = StatusWatch()
        assert watch.wait_while_running(0.05) is CommandStatus.RUNNING

    def test_parse(self):
        assert CommandStatus.parse("cancelled") is CommandStatus.CANCELLED
        assert CommandStatus.parse("bogus") is None
