"""Tests for the MCP tool surface."""

import sys
from unittest.mock import patch

import pytest
from fastmcp.exceptions import ToolError

from mcp_ssh_broker import server
from mcp_ssh_broker.errors import NotFoundError


def test_broker_errors_become_tool_errors():
    @server._tool_errors
    def tool(session_id: str) -> str:
        raise NotFoundError(f"No active SSH session with ID: {session_id}")

    with pytest.raises(ToolError, match="No active SSH session with ID: abc"):
        tool("abc")


def test_tool_wrapper_keeps_signature_and_result():
    @server._tool_errors
    def tool(session_id: str, timeout_secs: int = 5) -> dict:
        """Doc."""
        return {"session_id": session_id, "timeout_secs": timeout_secs}

    assert tool("abc") == {"session_id": "abc", "timeout_secs": 5}
    assert tool.__name__ == "tool"
    assert tool.__doc__ == "Doc."


def test_other_errors_propagate():
    @server._tool_errors
    def tool():
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        tool()


def test_main_defaults_to_http(monkeypatch):
    monkeypatch.setenv("MCP_PORT", "9123")
    monkeypatch.setattr(sys, "argv", ["mcp-ssh-broker"])
    with patch.object(server.mcp, "run") as run:
        server.main()
    run.assert_called_once_with(transport="http", host="0.0.0.0", port=9123)


def test_main_stdio_flag(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["mcp-ssh-broker", "--transport", "stdio"])
    with patch.object(server.mcp, "run") as run:
        server.main()
    run.assert_called_once_with(transport="stdio")


def test_main_stdio_entry_point():
    with patch.object(server.mcp, "run") as run:
        server.main_stdio()
    run.assert_called_once_with(transport="stdio")
