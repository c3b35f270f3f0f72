"""Tests for tool response messages."""

from mcp_ssh_broker.message_builder import (
    build_agent_disconnect_message,
    build_cancel_message,
    build_connect_message,
    build_disconnect_message,
    build_execute_message,
    build_forward_message,
    truncate_command,
)


def test_connect_message_minimal():
    message = build_connect_message("sess-1", "root", "example.com")
    assert message.splitlines() == [
        "SSH CONNECTION ESTABLISHED. REMEMBER THESE IDENTIFIERS:",
        "• session_id: 'sess-1'",
        "• host: root@example.com",
        "",
        "Use ssh_execute with session_id 'sess-1' to run commands.",
    ]


def test_connect_message_full():
    message = build_connect_message("sess-1", "root", "example.com:2222", agent_id="agent-7",
                                    name="db", retry_attempts=2, persistent=True)
    lines = message.splitlines()
    assert lines[1] == "• agent_id: 'agent-7'"
    assert "• name: 'db'" in lines
    assert "• retry_attempts: 2" in lines
    assert "• persistent: true" in lines
    assert lines[-1] == ("Use ssh_disconnect_agent with agent_id 'agent-7' "
                         "to disconnect all sessions for this agent.")


def test_reused_session_header():
    message = build_connect_message("sess-1", "root", "example.com", reused=True)
    assert message.startswith("SESSION REUSED. REMEMBER THESE IDENTIFIERS:")
    assert "retry_attempts" not in message


def test_execute_message():
    message = build_execute_message("cmd-1", "sess-1", "ls -la", agent_id="agent-7")
    assert "• command_id: 'cmd-1'" in message
    assert "• agent_id: 'agent-7'" in message
    assert "• command: 'ls -la'" in message
    assert "Use ssh_get_command_output with command_id 'cmd-1' to poll for results." in message
    assert "Use ssh_cancel_command with command_id 'cmd-1' to cancel." in message


def test_execute_message_truncates_long_command():
    command = "find / -name '*.log' -mtime +30 -exec rm -f {} \\; 2>/dev/null"
    message = build_execute_message("cmd-1", "sess-1", command)
    assert f"• command: '{command[:47]}...'" in message


def test_truncate_command():
    assert truncate_command("short") == "short"
    assert truncate_command("x" * 50) == "x" * 50
    assert truncate_command("x" * 51) == "x" * 47 + "..."
    assert len(truncate_command("y" * 500)) == 50


def test_agent_disconnect_message():
    message = build_agent_disconnect_message("agent-7", 2, 5)
    assert message.splitlines()[:4] == [
        "AGENT CLEANUP COMPLETE. SUMMARY:",
        "• agent_id: 'agent-7'",
        "• sessions_disconnected: 2",
        "• commands_cancelled: 5",
    ]
    assert message.endswith("All sessions and commands for agent 'agent-7' have been terminated.")


def test_agent_disconnect_message_without_sessions():
    message = build_agent_disconnect_message("ghost", 0, 0)
    assert message.endswith("No sessions found for agent 'ghost'.")


def test_disconnect_message():
    assert build_disconnect_message("sess-1") == "Session sess-1 disconnected successfully"
    assert "2 running command(s) cancelled" in build_disconnect_message("sess-1", 2)


def test_cancel_message():
    assert build_cancel_message("cmd-1", True, "cancelled") == "Command cancelled successfully"
    assert build_cancel_message("cmd-1", False, "failed") == "Command cmd-1 is not running (status: failed)"


def test_forward_message():
    message = build_forward_message("sess-1", "127.0.0.1:8080", "db.internal:5432")
    assert "• local_address: 127.0.0.1:8080" in message
    assert "• remote_address: db.internal:5432" in message
    assert "sess-1" in message
