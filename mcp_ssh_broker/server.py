"""MCP server exposing the SSH broker tools."""
import argparse
import atexit
import functools
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .config import resolve_mcp_port
from .errors import SSHBrokerError
from .session_manager import SSHSessionManager


# Initialize the MCP server
mcp = FastMCP("ssh-broker")
session_manager = SSHSessionManager()
atexit.register(session_manager.close_all_sessions)


def _tool_errors(func):
    """Report broker errors to the MCP client as tool errors with the broker's message."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SSHBrokerError as e:
            raise ToolError(str(e)) from e
    return wrapper


@mcp.tool()
@_tool_errors
def ssh_connect(
    address: str,
    username: str,
    password: Optional[str] = None,
    key_path: Optional[str] = None,
    session_id: Optional[str] = None,
    timeout_secs: Optional[int] = None,
    max_retries: Optional[int] = None,
    retry_delay_ms: Optional[int] = None,
    compress: Optional[bool] = None,
    name: Optional[str] = None,
    persistent: bool = False,
    agent_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Connect to an SSH server and return a session id for later calls.

    If session_id refers to a session that still answers a health check, that
    session is reused. Otherwise a new connection is made, retrying transient
    failures with exponential backoff. Authentication failures are not retried.
    Without password and key_path the SSH agent (SSH_AUTH_SOCK) is used.

    Args:
        address: "host" or "host:port" (default port 22)
        username: SSH username
        password: Password (optional)
        key_path: Path to a passphrase-less private key (optional)
        session_id: Existing session to reuse if it is still healthy (optional)
        timeout_secs: Connect timeout (default SSH_CONNECT_TIMEOUT or 30)
        max_retries: Retries after the first attempt (default SSH_MAX_RETRIES or 3)
        retry_delay_ms: Initial backoff delay (default SSH_RETRY_DELAY_MS or 1000)
        compress: Enable zlib compression (default SSH_COMPRESSION or true)
        name: Human readable session name (optional)
        persistent: Keep the session without an inactivity timeout
        agent_id: Owner identifier, used by ssh_disconnect_agent (optional)
    """
    return session_manager.connect(
        address=address,
        username=username,
        password=password,
        key_path=key_path,
        timeout_secs=timeout_secs,
        max_retries=max_retries,
        retry_delay_ms=retry_delay_ms,
        compress=compress,
        session_id=session_id,
        name=name,
        persistent=persistent,
        agent_id=agent_id,
    )


@mcp.tool()
@_tool_errors
def ssh_execute(session_id: str, command: str, timeout_secs: Optional[int] = None) -> Dict[str, Any]:
    """Run a command and wait for it to finish.

    A command that outlives the timeout is not an error: the output collected so
    far is returned with timed_out=true and exit_code=-1.

    Args:
        session_id: Session id from ssh_connect
        command: Command line to run
        timeout_secs: Command timeout (default SSH_COMMAND_TIMEOUT or 180)
    """
    return session_manager.execute(session_id, command, timeout_secs)


@mcp.tool()
@_tool_errors
def ssh_execute_async(session_id: str, command: str, timeout_secs: Optional[int] = None) -> Dict[str, Any]:
    """Start a command in the background and return its command id immediately.

    Poll with ssh_get_command_output and stop with ssh_cancel_command. At most
    100 commands may run concurrently per session.

    Args:
        session_id: Session id from ssh_connect
        command: Command line to run
        timeout_secs: Command timeout (default SSH_COMMAND_TIMEOUT or 180)
    """
    return session_manager.execute_async(session_id, command, timeout_secs)


@mcp.tool()
@_tool_errors
def ssh_get_command_output(
    command_id: str,
    wait: bool = False,
    wait_timeout_secs: Optional[int] = None,
) -> Dict[str, Any]:
    """Get the status and output collected so far for an async command.

    Args:
        command_id: Command id from ssh_execute_async
        wait: Block until the command finishes or wait_timeout_secs elapses
        wait_timeout_secs: Maximum wait in seconds (default 30, max 300)
    """
    return session_manager.get_command_output(command_id, wait=wait, wait_timeout_secs=wait_timeout_secs)


@mcp.tool()
@_tool_errors
def ssh_cancel_command(command_id: str) -> Dict[str, Any]:
    """Cancel a running async command and return its partial output."""
    return session_manager.cancel_command(command_id)


@mcp.tool()
@_tool_errors
def ssh_list_commands(session_id: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    """List async commands.

    Args:
        session_id: Only commands of this session (optional)
        status: Only commands in this state: running, completed, cancelled or failed (optional)
    """
    return session_manager.list_commands(session_id, status)


@mcp.tool()
@_tool_errors
def ssh_disconnect(session_id: str) -> str:
    """Close a session, cancelling its running commands and port forwards."""
    return session_manager.disconnect(session_id)


@mcp.tool()
@_tool_errors
def ssh_disconnect_agent(agent_id: str) -> Dict[str, Any]:
    """Close every session opened with this agent_id. Other agents are not affected."""
    return session_manager.disconnect_agent(agent_id)


@mcp.tool()
@_tool_errors
def ssh_list_sessions(agent_id: Optional[str] = None) -> Dict[str, Any]:
    """List active sessions after health-checking them; dead sessions are removed.

    Args:
        agent_id: Only sessions of this agent (optional)
    """
    return session_manager.list_sessions(agent_id)


@mcp.tool()
@_tool_errors
def ssh_forward(session_id: str, local_port: int, remote_address: str, remote_port: int) -> Dict[str, Any]:
    """Forward 127.0.0.1:local_port to remote_address:remote_port through the session.

    Use local_port 0 to let the OS pick a free port. The forward lives until
    the session is disconnected.

    Args:
        session_id: Session id from ssh_connect
        local_port: Local port to listen on
        remote_address: Host to connect to, as seen from the SSH server
        remote_port: Port on remote_address
    """
    return session_manager.forward(session_id, local_port, remote_address, remote_port)


def main() -> None:
    parser = argparse.ArgumentParser(description="SSH session broker MCP server")
    parser.add_argument(
        "--transport",
        choices=["http", "stdio"],
        default="http",
        help="MCP transport to use",
    )
    args = parser.parse_args()

    if args.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport="http", host="0.0.0.0", port=resolve_mcp_port())


def main_stdio() -> None:
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
