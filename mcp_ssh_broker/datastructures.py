"""Data structures for SSH session and command management."""
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> str:
    """Current time as an RFC3339 timestamp."""
    return datetime.now(timezone.utc).isoformat()


class CommandStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not CommandStatus.RUNNING

    @classmethod
    def parse(cls, value: str) -> Optional["CommandStatus"]:
        for status in cls:
            if status.value == value:
                return status
        return None


@dataclass
class SessionInfo:
    session_id: str
    host: str
    username: str
    connected_at: str
    default_timeout_secs: int
    retry_attempts: int
    compression_enabled: bool
    name: Optional[str] = None
    agent_id: Optional[str] = None
    persistent: bool = False
    last_health_check: Optional[str] = None
    healthy: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("name", "agent_id", "last_health_check", "healthy"):
            if data[key] is None:
                del data[key]
        return data


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AsyncCommandInfo:
    command_id: str
    session_id: str
    command: str
    status: CommandStatus
    started_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "session_id": self.session_id,
            "command": self.command,
            "status": self.status.value,
            "started_at": self.started_at,
        }


class OutputBuffer:
    """stdout/stderr bytes shared between a collector and its pollers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def extend(self, stdout: bytes = b"", stderr: bytes = b"") -> None:
        with self._lock:
            self._stdout += stdout
            self._stderr += stderr

    def snapshot(self) -> Tuple[str, str]:
        with self._lock:
            stdout = bytes(self._stdout)
            stderr = bytes(self._stderr)
        return (stdout.decode("utf-8", errors="replace"),
                stderr.decode("utf-8", errors="replace"))


class StatusWatch:
    """Latest-value status holder; only running -> terminal transitions are accepted."""

    def __init__(self, initial: CommandStatus = CommandStatus.RUNNING):
        self._value = initial
        self._cond = threading.Condition()

    def get(self) -> CommandStatus:
        with self._cond:
            return self._value

    def set(self, status: CommandStatus) -> bool:
        with self._cond:
            if self._value.is_terminal:
                return False
            self._value = status
            self._cond.notify_all()
            return True

    def wait_while_running(self, timeout: float) -> CommandStatus:
        with self._cond:
            self._cond.wait_for(lambda: self._value.is_terminal, timeout=timeout)
            return self._value


@dataclass
class RunningCommand:
    info: AsyncCommandInfo
    cancel_event: threading.Event = field(default_factory=threading.Event)
    status: StatusWatch = field(default_factory=StatusWatch)
    output: OutputBuffer = field(default_factory=OutputBuffer)
    exit_code: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False
    end_time: Optional[str] = None
    thread: Optional[threading.Thread] = None

    @property
    def command_id(self) -> str:
        return self.info.command_id

    @property
    def session_id(self) -> str:
        return self.info.session_id

    def snapshot(self) -> Dict[str, Any]:
        """Status, output and result fields as one consistent poll payload."""
        status = self.status.get()
        stdout, stderr = self.output.snapshot()
        return {
            "command_id": self.command_id,
            "status": status.value,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": self.exit_code,
            "error": self.error,
            "timed_out": self.timed_out,
        }


@dataclass
class StoredSession:
    info: SessionInfo
    transport: Any
