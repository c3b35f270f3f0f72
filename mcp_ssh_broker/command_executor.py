"""Background execution of commands on shared SSH transports."""
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

import paramiko

from .client import POLL_INTERVAL, ChannelReader, close_channel, open_exec_channel
from .datastructures import AsyncCommandInfo, CommandStatus, RunningCommand, utc_now
from .errors import ChannelError, NotFoundError, ResourceExhaustedError
from .logging_manager import get_logger
from .message_builder import build_cancel_message
from .registry import CommandRegistry

MAX_ASYNC_COMMANDS_PER_SESSION = 100
# Collector output is copied into the shared buffer once a local buffer reaches this size
FLUSH_THRESHOLD = 8192
CANCEL_WAIT_SECS = 2
DEFAULT_WAIT_TIMEOUT_SECS = 30
MAX_WAIT_TIMEOUT_SECS = 300


class CommandExecutor:
    """Starts, polls and cancels async commands.

    Every command runs in its own collector thread with its own channel on the
    session transport, so commands of one session never wait on each other.
    """

    def __init__(self, command_registry: Optional[CommandRegistry] = None):
        self.logger = get_logger('command_executor')
        self._registry = command_registry if command_registry is not None else CommandRegistry()
        self._lock = threading.Lock()

    @property
    def registry(self) -> CommandRegistry:
        return self._registry

    def start(self, transport: paramiko.Transport, session_id: str, command: str,
              timeout: float) -> AsyncCommandInfo:
        """Register the command and launch its collector; returns immediately."""
        logger = self.logger.getChild('start')
        logger.info(f"[ASYNC_START] session={session_id}, cmd={command[:100]}, timeout={timeout}")

        command_id = str(uuid.uuid4())
        info = AsyncCommandInfo(
            command_id=command_id,
            session_id=session_id,
            command=command,
            status=CommandStatus.RUNNING,
            started_at=utc_now(),
        )
        running_cmd = RunningCommand(info=info)

        # Check and register together so concurrent starts cannot overshoot the cap
        with self._lock:
            running = self._registry.count_running_by_session(session_id)
            if running >= MAX_ASYNC_COMMANDS_PER_SESSION:
                logger.warning(f"[ASYNC_LIMIT] session={session_id} has {running} running commands")
                raise ResourceExhaustedError(
                    f"Maximum async commands per session reached ({MAX_ASYNC_COMMANDS_PER_SESSION}). "
                    f"Cancel or wait for existing commands to complete."
                )
            self._registry.register(running_cmd)

        thread = threading.Thread(
            target=self._run_collector,
            args=(running_cmd, transport, timeout),
            name=f"ssh_cmd_{command_id[:8]}",
            daemon=True,
        )
        running_cmd.thread = thread
        thread.start()
        logger.info(f"[ASYNC_SUBMITTED] command_id={command_id}")
        return info

    def _finish(self, cmd: RunningCommand, status: CommandStatus) -> None:
        cmd.end_time = utc_now()
        cmd.status.set(status)

    def _run_collector(self, cmd: RunningCommand, transport: paramiko.Transport, timeout: float) -> None:
        logger = self.logger.getChild('collector')
        logger.debug(f"[WORKER_START] command_id={cmd.command_id}")
        try:
            self._collect(cmd, transport, timeout)
        except Exception as e:
            logger.error(f"[WORKER_ERROR] command_id={cmd.command_id}, error={e}", exc_info=True)
            cmd.error = str(e)
            self._finish(cmd, CommandStatus.FAILED)

    def _collect(self, cmd: RunningCommand, transport: paramiko.Transport, timeout: float) -> None:
        logger = self.logger.getChild('collector')
        try:
            channel = open_exec_channel(transport, cmd.info.command, timeout)
        except ChannelError as e:
            logger.error(f"[WORKER_CHANNEL] command_id={cmd.command_id}, error={e}")
            cmd.error = str(e)
            self._finish(cmd, CommandStatus.FAILED)
            return

        reader = ChannelReader(channel)
        deadline = time.monotonic() + timeout
        outcome = None
        try:
            while True:
                # Cancellation first, then the deadline, then data
                if cmd.cancel_event.is_set():
                    outcome = CommandStatus.CANCELLED
                    break
                if time.monotonic() >= deadline:
                    cmd.timed_out = True
                    outcome = CommandStatus.COMPLETED
                    break

                received = reader.pump()
                if len(reader.stdout) >= FLUSH_THRESHOLD or len(reader.stderr) >= FLUSH_THRESHOLD:
                    stdout, stderr = reader.take()
                    cmd.output.extend(stdout, stderr)

                if reader.finished():
                    reader.drain()
                    cmd.exit_code = reader.exit_code
                    outcome = CommandStatus.COMPLETED
                    break
                if not received:
                    cmd.cancel_event.wait(POLL_INTERVAL)
        except (paramiko.SSHException, OSError, EOFError) as e:
            logger.error(f"[WORKER_READ] command_id={cmd.command_id}, error={e}")
            cmd.error = f"Failed to read command output: {e}"
            outcome = CommandStatus.FAILED
        finally:
            stdout, stderr = reader.take()
            cmd.output.extend(stdout, stderr)
            close_channel(channel)

        if outcome is CommandStatus.CANCELLED:
            logger.info(f"[WORKER_CANCELLED] command_id={cmd.command_id}")
        elif outcome is CommandStatus.FAILED:
            logger.error(f"[WORKER_FAILED] command_id={cmd.command_id}, error={cmd.error}")
        elif cmd.timed_out:
            logger.warning(f"[WORKER_TIMEOUT] command_id={cmd.command_id} timed out after {timeout}s")
        else:
            logger.info(f"[WORKER_DONE] command_id={cmd.command_id}, exit_code={cmd.exit_code}")
        self._finish(cmd, outcome)

    def _get(self, command_id: str) -> RunningCommand:
        cmd = self._registry.get(command_id)
        if cmd is None:
            self.logger.getChild('lookup').error(f"Command ID not found: {command_id}")
            raise NotFoundError(f"No async command with ID: {command_id}")
        return cmd

    def get_output(self, command_id: str, wait: bool = False,
                   wait_timeout: Optional[float] = None) -> Dict[str, Any]:
        """Current status and accumulated output of an async command.

        With ``wait`` the call blocks until the command leaves ``running`` or
        ``wait_timeout`` seconds pass (default 30, at most 300).
        """
        cmd = self._get(command_id)
        if wait:
            if wait_timeout is None:
                wait_timeout = DEFAULT_WAIT_TIMEOUT_SECS
            cmd.status.wait_while_running(min(max(wait_timeout, 0), MAX_WAIT_TIMEOUT_SECS))
        return cmd.snapshot()

    def cancel(self, command_id: str) -> Dict[str, Any]:
        logger = self.logger.getChild('cancel')
        cmd = self._get(command_id)

        current = cmd.status.get()
        if current.is_terminal:
            logger.warning(f"Command {command_id} is not running (status: {current.value})")
            stdout, stderr = cmd.output.snapshot()
            return {
                "command_id": command_id,
                "cancelled": False,
                "message": build_cancel_message(command_id, False, current.value),
                "stdout": stdout,
                "stderr": stderr,
            }

        cmd.cancel_event.set()
        final = cmd.status.wait_while_running(CANCEL_WAIT_SECS)
        # Terminal without a cancel means the command finished on its own first
        cancelled = final in (CommandStatus.CANCELLED, CommandStatus.RUNNING)
        if final is CommandStatus.RUNNING:
            logger.warning(f"Command {command_id} did not stop within {CANCEL_WAIT_SECS}s")
        elif cancelled:
            logger.info(f"Cancelled async command: {command_id}")
        else:
            logger.warning(f"Command {command_id} finished before cancellation (status: {final.value})")
        stdout, stderr = cmd.output.snapshot()
        return {
            "command_id": command_id,
            "cancelled": cancelled,
            "message": build_cancel_message(command_id, cancelled, final.value),
            "stdout": stdout,
            "stderr": stderr,
        }

    def list_commands(self, session_id: Optional[str] = None,
                      status: Optional[CommandStatus] = None) -> List[AsyncCommandInfo]:
        return self._registry.list_filtered(session_id, status)

    def cancel_session_commands(self, session_id: str) -> int:
        """Cancel and unregister every command of a session; returns how many were running."""
        logger = self.logger.getChild('cancel_session')
        cancelled = 0
        for command_id in self._registry.list_by_session(session_id):
            cmd = self._registry.unregister(command_id)
            if cmd is None:
                continue
            if not cmd.status.get().is_terminal:
                cmd.cancel_event.set()
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} running command(s) for session {session_id}")
        return cancelled

    def shutdown(self) -> None:
        """Signal every collector to stop and forget all commands."""
        logger = self.logger.getChild('shutdown')
        commands = [self._registry.get(info.command_id) for info in self._registry.list_all()]
        running = 0
        for cmd in commands:
            if cmd is None:
                continue
            if not cmd.status.get().is_terminal:
                cmd.cancel_event.set()
                running += 1
            self._registry.unregister(cmd.command_id)
        logger.info(f"Shutting down command executor, {running} active command(s) cancelled")
