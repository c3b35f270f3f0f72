"""SSH session broker: sessions, commands and forwards behind the MCP tools."""
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import paramiko

from .client import connect_with_retry, execute_command
from .command_executor import CommandExecutor
from .config import (
    HEALTH_CHECK_COMMAND,
    HEALTH_CHECK_TIMEOUT,
    resolve_command_timeout,
    resolve_compression,
    resolve_connect_timeout,
    resolve_max_retries,
    resolve_port_forward_enabled,
    resolve_retry_delay_ms,
)
from .datastructures import CommandStatus, SessionInfo, utc_now
from .errors import FeatureDisabledError, InvalidArgumentError, NotFoundError, SSHBrokerError
from .forward import PortForward
from .logging_manager import setup_logging
from .message_builder import (
    build_agent_disconnect_message,
    build_connect_message,
    build_disconnect_message,
    build_execute_message,
    build_forward_message,
)
from .registry import CommandRegistry, SessionRegistry


class SSHSessionManager:
    """Owns every live session, async command and port forward of the process."""

    # Upper bound on concurrent health checks in list_sessions
    MAX_HEALTH_CHECK_WORKERS = 16

    def __init__(self):
        self.logger = setup_logging()
        self.sessions = SessionRegistry()
        self.commands = CommandRegistry()
        self.command_executor = CommandExecutor(self.commands)
        self._forwards: Dict[str, List[PortForward]] = {}
        self._forwards_lock = threading.Lock()
        self.logger.info("SSHSessionManager initialized")

    def _get_session(self, session_id: str):
        found = self.sessions.get(session_id)
        if found is None:
            self.logger.getChild('lookup').error(f"Session ID not found: {session_id}")
            raise NotFoundError(f"No active SSH session with ID: {session_id}")
        return found

    def _health_check(self, session_id: str, transport: paramiko.Transport) -> bool:
        """Run the health check command; True only for a clean exit 0 within the timeout."""
        logger = self.logger.getChild('health')
        if not transport.is_active():
            logger.debug(f"Transport for session {session_id} is no longer active")
            return False
        try:
            result = execute_command(transport, HEALTH_CHECK_COMMAND, HEALTH_CHECK_TIMEOUT)
        except SSHBrokerError as e:
            logger.warning(f"Health check failed for session {session_id}: {e}")
            return False
        healthy = not result.timed_out and result.exit_code == 0
        if not healthy:
            logger.warning(f"Health check failed for session {session_id}: "
                           f"exit_code={result.exit_code}, timed_out={result.timed_out}")
        return healthy

    def connect(self, address: str, username: str, password: Optional[str] = None,
                key_path: Optional[str] = None, timeout_secs: Optional[int] = None,
                max_retries: Optional[int] = None, retry_delay_ms: Optional[int] = None,
                compress: Optional[bool] = None, session_id: Optional[str] = None,
                name: Optional[str] = None, persistent: bool = False,
                agent_id: Optional[str] = None) -> Dict[str, Any]:
        """Open a session, or reuse ``session_id`` when it still answers a health check."""
        logger = self.logger.getChild('connect')

        if session_id is not None and self.sessions.contains(session_id):
            found = self.sessions.get(session_id)
            if found is not None:
                info, transport = found
                if self._health_check(session_id, transport):
                    self.sessions.update_health(session_id, utc_now(), True)
                    logger.info(f"[CONN_REUSE] Reusing healthy session {session_id} "
                                f"({info.username}@{info.host})")
                    return {
                        "session_id": session_id,
                        "message": build_connect_message(
                            session_id, info.username, info.host,
                            agent_id=info.agent_id, name=info.name,
                            persistent=info.persistent, reused=True,
                        ),
                        "authenticated": True,
                        "retry_attempts": 0,
                        "agent_id": info.agent_id,
                    }
                logger.warning(f"[CONN_STALE] Session {session_id} is dead, evicting before reconnect")
                self._teardown(session_id, "Health check failed")

        timeout = resolve_connect_timeout(timeout_secs)
        retries = resolve_max_retries(max_retries)
        delay_ms = resolve_retry_delay_ms(retry_delay_ms)
        use_compression = resolve_compression(compress)

        logger.info(f"[CONN_START] {username}@{address}, timeout={timeout}s, "
                    f"max_retries={retries}, compression={use_compression}, persistent={persistent}")
        transport, retry_count = connect_with_retry(
            address, username, password=password, key_path=key_path,
            timeout=timeout, max_retries=retries, min_delay=delay_ms / 1000.0,
            compress=use_compression, persistent=persistent,
        )

        new_session_id = str(uuid.uuid4())
        info = SessionInfo(
            session_id=new_session_id,
            host=address,
            username=username,
            connected_at=utc_now(),
            default_timeout_secs=timeout,
            retry_attempts=retry_count,
            compression_enabled=use_compression,
            name=name,
            agent_id=agent_id,
            persistent=persistent,
        )
        self.sessions.insert(new_session_id, info, transport)
        if agent_id is not None:
            self.sessions.register_agent(agent_id, new_session_id)
        logger.info(f"[CONN_OK] session={new_session_id}, {username}@{address}, retries={retry_count}")

        return {
            "session_id": new_session_id,
            "message": build_connect_message(
                new_session_id, username, address, agent_id=agent_id, name=name,
                retry_attempts=retry_count, persistent=persistent,
            ),
            "authenticated": True,
            "retry_attempts": retry_count,
            "agent_id": agent_id,
        }

    def execute(self, session_id: str, command: str, timeout_secs: Optional[int] = None) -> Dict[str, Any]:
        logger = self.logger.getChild('execute')
        _, transport = self._get_session(session_id)
        timeout = resolve_command_timeout(timeout_secs)
        logger.info(f"[EXEC_REQ] session={session_id}, cmd={command[:100]}, timeout={timeout}")
        result = execute_command(transport, command, timeout)
        logger.info(f"[EXEC_DONE] session={session_id}, exit_code={result.exit_code}, "
                    f"timed_out={result.timed_out}")
        return result.to_dict()

    def execute_async(self, session_id: str, command: str,
                      timeout_secs: Optional[int] = None) -> Dict[str, Any]:
        info, transport = self._get_session(session_id)
        timeout = resolve_command_timeout(timeout_secs)
        command_info = self.command_executor.start(transport, session_id, command, timeout)
        return {
            "command_id": command_info.command_id,
            "session_id": session_id,
            "command": command,
            "started_at": command_info.started_at,
            "message": build_execute_message(
                command_info.command_id, session_id, command, agent_id=info.agent_id
            ),
        }

    def get_command_output(self, command_id: str, wait: bool = False,
                           wait_timeout_secs: Optional[int] = None) -> Dict[str, Any]:
        return self.command_executor.get_output(command_id, wait=wait, wait_timeout=wait_timeout_secs)

    def cancel_command(self, command_id: str) -> Dict[str, Any]:
        return self.command_executor.cancel(command_id)

    def list_commands(self, session_id: Optional[str] = None,
                      status: Optional[str] = None) -> Dict[str, Any]:
        status_filter = None
        if status is not None:
            status_filter = CommandStatus.parse(status)
            if status_filter is None:
                valid = ", ".join(s.value for s in CommandStatus)
                raise InvalidArgumentError(f"Invalid status filter: '{status}'. Expected one of: {valid}")
        commands = self.command_executor.list_commands(session_id, status_filter)
        return {
            "commands": [command.to_dict() for command in commands],
            "count": len(commands),
        }

    def _teardown(self, session_id: str, reason: str) -> Optional[int]:
        """Remove a session and release everything attached to it.

        Returns the number of running commands cancelled, or None when the
        session was already gone.
        """
        logger = self.logger.getChild('teardown')
        stored = self.sessions.remove(session_id)
        if stored is None:
            return None

        cancelled = self.command_executor.cancel_session_commands(session_id)

        with self._forwards_lock:
            forwards = self._forwards.pop(session_id, [])
        for forward in forwards:
            forward.stop()

        if stored.info.agent_id is not None:
            self.sessions.unregister_agent(stored.info.agent_id, session_id)

        # paramiko sends no reason string on close; the reason is only logged
        try:
            stored.transport.close()
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.warning(f"Error closing transport for session {session_id}: {e}")
        logger.info(f"Session {session_id} closed ({reason}), {cancelled} command(s) cancelled")
        return cancelled

    def disconnect(self, session_id: str) -> str:
        logger = self.logger.getChild('disconnect')
        logger.info(f"Request to close session: {session_id}")
        cancelled = self._teardown(session_id, "Session closed by user")
        if cancelled is None:
            raise NotFoundError(f"No active SSH session with ID: {session_id}")
        return build_disconnect_message(session_id, cancelled)

    def disconnect_agent(self, agent_id: str) -> Dict[str, Any]:
        logger = self.logger.getChild('disconnect_agent')
        session_ids = self.sessions.remove_agent_sessions(agent_id)
        logger.info(f"Disconnecting {len(session_ids)} session(s) for agent {agent_id}")

        sessions_disconnected = 0
        commands_cancelled = 0
        for session_id in session_ids:
            cancelled = self._teardown(session_id, "Agent cleanup")
            if cancelled is None:
                continue
            sessions_disconnected += 1
            commands_cancelled += cancelled

        logger.info(f"Disconnected {sessions_disconnected} sessions and cancelled "
                    f"{commands_cancelled} commands for agent {agent_id}")
        return {
            "agent_id": agent_id,
            "sessions_disconnected": sessions_disconnected,
            "commands_cancelled": commands_cancelled,
            "message": build_agent_disconnect_message(agent_id, sessions_disconnected, commands_cancelled),
        }

    def list_sessions(self, agent_id: Optional[str] = None) -> Dict[str, Any]:
        """Health-check every session, evict the dead ones and list the rest."""
        logger = self.logger.getChild('list_sessions')
        if agent_id is None:
            session_ids = self.sessions.session_ids()
        else:
            session_ids = self.sessions.get_agent_sessions(agent_id)

        targets = []
        for session_id in session_ids:
            found = self.sessions.get(session_id)
            if found is not None:
                targets.append((session_id, found[1]))

        if targets:
            workers = min(len(targets), self.MAX_HEALTH_CHECK_WORKERS)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ssh_health") as pool:
                results = list(pool.map(lambda target: self._health_check(*target), targets))
            checked_at = utc_now()
            for (session_id, _), healthy in zip(targets, results):
                if healthy:
                    self.sessions.update_health(session_id, checked_at, True)
                else:
                    logger.warning(f"Evicting unhealthy session {session_id}")
                    self._teardown(session_id, "Health check failed")

        sessions = [info for info in self.sessions.list()
                    if agent_id is None or info.agent_id == agent_id]
        sessions.sort(key=lambda info: info.connected_at)
        logger.info(f"Listing {len(sessions)} active sessions.")
        return {
            "sessions": [info.to_dict() for info in sessions],
            "count": len(sessions),
        }

    def forward(self, session_id: str, local_port: int, remote_address: str,
                remote_port: int) -> Dict[str, Any]:
        logger = self.logger.getChild('forward')
        if not resolve_port_forward_enabled():
            raise FeatureDisabledError("Port forwarding feature is not enabled")

        _, transport = self._get_session(session_id)
        forward = PortForward(transport, local_port, remote_address, remote_port)
        forward.start()

        with self._forwards_lock:
            self._forwards.setdefault(session_id, []).append(forward)
        # The session may have been torn down while the listener was starting
        if not self.sessions.contains(session_id):
            with self._forwards_lock:
                self._forwards.pop(session_id, None)
            forward.stop()
            raise NotFoundError(f"No active SSH session with ID: {session_id}")

        logger.info(f"[FORWARD_OK] session={session_id}, {forward.local_address} -> {forward.remote_address}")
        return {
            "local_address": forward.local_address,
            "remote_address": forward.remote_address,
            "active": forward.active,
            "message": build_forward_message(session_id, forward.local_address, forward.remote_address),
        }

    def close_all_sessions(self) -> None:
        """Close all sessions and cleanup resources."""
        logger = self.logger.getChild('close_all')
        session_ids = self.sessions.session_ids()
        logger.info(f"Closing {len(session_ids)} active sessions.")
        for session_id in session_ids:
            self._teardown(session_id, "Server shutdown")

        try:
            self.command_executor.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down executor: {e}", exc_info=True)
        logger.info("All sessions closed.")
