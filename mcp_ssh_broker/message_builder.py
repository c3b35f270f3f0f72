"""Human-readable tool responses.

Every identifier an agent needs for its next call is echoed on its own bullet
line under an uppercase banner, followed by hints naming the follow-up tools.
"""
from typing import Optional


def truncate_command(command: str, max_len: int = 50) -> str:
    if len(command) > max_len:
        return command[:max(max_len - 3, 0)] + "..."
    return command


def build_connect_message(session_id: str, username: str, host: str,
                          agent_id: Optional[str] = None, name: Optional[str] = None,
                          retry_attempts: int = 0, persistent: bool = False,
                          reused: bool = False) -> str:
    header = "SESSION REUSED" if reused else "SSH CONNECTION ESTABLISHED"
    lines = [f"{header}. REMEMBER THESE IDENTIFIERS:"]
    if agent_id is not None:
        lines.append(f"• agent_id: '{agent_id}'")
    lines.append(f"• session_id: '{session_id}'")
    if name is not None:
        lines.append(f"• name: '{name}'")
    lines.append(f"• host: {username}@{host}")
    if retry_attempts > 0:
        lines.append(f"• retry_attempts: {retry_attempts}")
    if persistent:
        lines.append("• persistent: true")

    lines.append("")
    lines.append(f"Use ssh_execute with session_id '{session_id}' to run commands.")
    if agent_id is not None:
        lines.append(f"Use ssh_disconnect_agent with agent_id '{agent_id}' "
                     f"to disconnect all sessions for this agent.")
    return "\n".join(lines)


def build_execute_message(command_id: str, session_id: str, command: str,
                          agent_id: Optional[str] = None) -> str:
    lines = [
        "COMMAND STARTED. REMEMBER THESE IDENTIFIERS:",
        f"• command_id: '{command_id}'",
        f"• session_id: '{session_id}'",
    ]
    if agent_id is not None:
        lines.append(f"• agent_id: '{agent_id}'")
    lines.append(f"• command: '{truncate_command(command)}'")
    lines.append("")
    lines.append(f"Use ssh_get_command_output with command_id '{command_id}' to poll for results.")
    lines.append(f"Use ssh_cancel_command with command_id '{command_id}' to cancel.")
    return "\n".join(lines)


def build_agent_disconnect_message(agent_id: str, sessions_disconnected: int,
                                   commands_cancelled: int) -> str:
    lines = [
        "AGENT CLEANUP COMPLETE. SUMMARY:",
        f"• agent_id: '{agent_id}'",
        f"• sessions_disconnected: {sessions_disconnected}",
        f"• commands_cancelled: {commands_cancelled}",
        "",
    ]
    if sessions_disconnected == 0:
        lines.append(f"No sessions found for agent '{agent_id}'.")
    else:
        lines.append(f"All sessions and commands for agent '{agent_id}' have been terminated.")
    return "\n".join(lines)


def build_disconnect_message(session_id: str, commands_cancelled: int = 0) -> str:
    message = f"Session {session_id} disconnected successfully"
    if commands_cancelled:
        message += f" ({commands_cancelled} running command(s) cancelled)"
    return message


def build_cancel_message(command_id: str, cancelled: bool, status: str) -> str:
    if cancelled:
        return "Command cancelled successfully"
    return f"Command {command_id} is not running (status: {status})"


def build_forward_message(session_id: str, local_address: str, remote_address: str) -> str:
    lines = [
        "PORT FORWARD ACTIVE. REMEMBER THESE IDENTIFIERS:",
        f"• session_id: '{session_id}'",
        f"• local_address: {local_address}",
        f"• remote_address: {remote_address}",
        "",
        f"Connect to {local_address} to reach {remote_address} through the SSH session.",
        f"The forward stops when session '{session_id}' is disconnected.",
    ]
    return "\n".join(lines)
