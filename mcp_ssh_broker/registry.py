"""Thread-safe registries for live SSH sessions and async commands.

Locks are held only for dictionary operations; callers take the transport or
command object out of the registry and do network I/O without holding them.
"""
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set, Tuple

from .datastructures import AsyncCommandInfo, CommandStatus, RunningCommand, SessionInfo, StoredSession


class SessionRegistry:
    """Session records keyed by session id, plus an agent id -> session ids index."""

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, StoredSession] = {}
        self._sessions_by_agent: Dict[str, Set[str]] = {}

    def insert(self, session_id: str, info: SessionInfo, transport: Any) -> None:
        with self._lock:
            self._sessions[session_id] = StoredSession(info=info, transport=transport)

    def get(self, session_id: str) -> Optional[Tuple[SessionInfo, Any]]:
        with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None:
                return None
            return replace(stored.info), stored.transport

    def remove(self, session_id: str) -> Optional[StoredSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def contains(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list(self) -> List[SessionInfo]:
        with self._lock:
            return [replace(stored.info) for stored in self._sessions.values()]

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def update_health(self, session_id: str, timestamp: str, healthy: bool) -> bool:
        with self._lock:
            stored = self._sessions.get(session_id)
            if stored is None:
                return False
            stored.info.last_health_check = timestamp
            stored.info.healthy = healthy
            return True

    def register_agent(self, agent_id: str, session_id: str) -> None:
        with self._lock:
            self._sessions_by_agent.setdefault(agent_id, set()).add(session_id)

    def unregister_agent(self, agent_id: str, session_id: str) -> None:
        with self._lock:
            session_ids = self._sessions_by_agent.get(agent_id)
            if session_ids is None:
                return
            session_ids.discard(session_id)
            if not session_ids:
                del self._sessions_by_agent[agent_id]

    def get_agent_sessions(self, agent_id: str) -> List[str]:
        with self._lock:
            return sorted(self._sessions_by_agent.get(agent_id, ()))

    def remove_agent_sessions(self, agent_id: str) -> List[str]:
        """Drop the agent's index entry and return the session ids it held."""
        with self._lock:
            return sorted(self._sessions_by_agent.pop(agent_id, ()))


class CommandRegistry:
    """Async command records keyed by command id, plus a session id index."""

    def __init__(self):
        self._lock = threading.RLock()
        self._commands: Dict[str, RunningCommand] = {}
        self._commands_by_session: Dict[str, Set[str]] = {}

    def register(self, command: RunningCommand) -> None:
        with self._lock:
            self._commands[command.command_id] = command
            self._commands_by_session.setdefault(command.session_id, set()).add(command.command_id)

    def unregister(self, command_id: str) -> Optional[RunningCommand]:
        with self._lock:
            command = self._commands.pop(command_id, None)
            if command is None:
                return None
            command_ids = self._commands_by_session.get(command.session_id)
            if command_ids is not None:
                command_ids.discard(command_id)
                if not command_ids:
                    del self._commands_by_session[command.session_id]
            return command

    def get(self, command_id: str) -> Optional[RunningCommand]:
        with self._lock:
            return self._commands.get(command_id)

    def list_by_session(self, session_id: str) -> List[str]:
        with self._lock:
            return sorted(self._commands_by_session.get(session_id, ()))

    def count_by_session(self, session_id: str) -> int:
        with self._lock:
            return len(self._commands_by_session.get(session_id, ()))

    def count_running_by_session(self, session_id: str) -> int:
        with self._lock:
            command_ids = list(self._commands_by_session.get(session_id, ()))
            commands = [self._commands[command_id] for command_id in command_ids]
        return sum(1 for command in commands if command.status.get() is CommandStatus.RUNNING)

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._commands_by_session

    def list_all(self) -> List[AsyncCommandInfo]:
        return self.list_filtered()

    def list_filtered(self, session_id: Optional[str] = None,
                      status: Optional[CommandStatus] = None) -> List[AsyncCommandInfo]:
        """Command infos with their live status, optionally filtered."""
        with self._lock:
            if session_id is None:
                commands = list(self._commands.values())
            else:
                commands = [self._commands[command_id]
                            for command_id in self._commands_by_session.get(session_id, ())]

        result = []
        for command in commands:
            current = command.status.get()
            if status is not None and current is not status:
                continue
            result.append(replace(command.info, status=current))
        result.sort(key=lambda info: info.started_at)
        return result
