"""SSH connection establishment and synchronous command execution.

Connections are plain paramiko transports: a TCP socket, the SSH handshake and
an authentication chain. Transports multiplex channels and are safe to share
between threads, so one transport serves every command of a session.

Retry strategy: exponential backoff starting at the caller's minimum delay,
capped at MAX_RETRY_DELAY seconds, with random jitter. Only errors that
``is_retryable`` accepts are retried; authentication failures never are.
"""
import itertools
import random
import socket
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

import paramiko

from .auth import build_auth_chain
from .config import KEEPALIVE_INTERVAL, KEEPALIVE_MAX, MAX_RETRY_DELAY
from .datastructures import CommandResult
from .errors import (
    AuthFailureError,
    ChannelError,
    ConnectionFailedError,
    InvalidArgumentError,
    SSHBrokerError,
    is_retryable,
)
from .logging_manager import get_logger

logger = get_logger('client')

DEFAULT_SSH_PORT = 22
READ_CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05


@dataclass
class ClientConfig:
    timeout: float
    inactivity_timeout: Optional[float]
    keepalive_interval: int = KEEPALIVE_INTERVAL
    keepalive_max: int = KEEPALIVE_MAX
    compression: Tuple[str, ...] = ("zlib", "none")

    @property
    def compress(self) -> bool:
        return "zlib" in self.compression


def build_client_config(timeout: float, compress: bool, persistent: bool) -> ClientConfig:
    """Client settings for one connection; persistent sessions have no inactivity timeout."""
    return ClientConfig(
        timeout=timeout,
        inactivity_timeout=None if persistent else timeout,
        compression=("zlib", "none") if compress else ("none",),
    )


def parse_address(address: str) -> Tuple[str, int]:
    """Split "host:port" on the last colon; a bare host gets port 22.

    Bracketed IPv6 literals keep their brackets: "[::1]:22" -> ("[::1]", 22).
    """
    host, sep, port_str = address.rpartition(':')
    if not sep:
        return address, DEFAULT_SSH_PORT
    try:
        port = int(port_str)
    except ValueError:
        raise InvalidArgumentError(f"Invalid port number: {port_str!r}") from None
    if not port_str.isdigit() or not 0 <= port <= 65535:
        raise InvalidArgumentError(f"Invalid port number: {port_str!r}")
    return host, port


def backoff_delays(min_delay: float, max_delay: float = MAX_RETRY_DELAY,
                   max_times: int = 3, jitter: bool = True) -> Iterator[float]:
    """Yield up to ``max_times`` sleep durations, doubling from ``min_delay``."""
    delay = max(min_delay, 0)
    for _ in range(max(max_times, 0)):
        current = min(delay, max_delay)
        if jitter:
            current = min(current + random.uniform(0, current), max_delay)
        yield current
        delay *= 2


def open_transport(host: str, port: int, config: ClientConfig) -> paramiko.Transport:
    """TCP connect and SSH handshake, bounded by the connect timeout.

    The server host key is accepted without verification.
    """
    connect_host = host[1:-1] if host.startswith('[') and host.endswith(']') else host
    try:
        sock = socket.create_connection((connect_host, port), timeout=config.timeout)
    except socket.timeout:
        raise ConnectionFailedError(f"Connection timed out after {config.timeout}s") from None
    except OSError as exc:
        raise ConnectionFailedError(f"Failed to connect: {exc}") from exc

    transport = paramiko.Transport(sock)
    transport.use_compression(config.compress)
    transport.banner_timeout = config.timeout
    transport.handshake_timeout = config.timeout
    transport.auth_timeout = config.timeout
    try:
        transport.start_client(timeout=config.timeout)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        transport.close()
        raise ConnectionFailedError(f"Failed to connect: SSH handshake failed: {exc}") from exc

    transport.set_keepalive(config.keepalive_interval)
    return transport


def connect(host: str, port: int, username: str, password: Optional[str],
            key_path: Optional[str], config: ClientConfig) -> paramiko.Transport:
    """One connection attempt: transport plus authentication chain."""
    transport = open_transport(host, port, config)
    chain = build_auth_chain(password, key_path)
    try:
        chain.authenticate(transport, username)
    except AuthFailureError as exc:
        transport.close()
        raise AuthFailureError(f"Authentication failed: {exc}") from exc
    except BaseException:
        transport.close()
        raise
    return transport


def connect_with_retry(address: str, username: str, password: Optional[str] = None,
                       key_path: Optional[str] = None, timeout: float = 30,
                       max_retries: int = 3, min_delay: float = 1.0,
                       compress: bool = True, persistent: bool = False,
                       sleep: Callable[[float], None] = time.sleep) -> Tuple[paramiko.Transport, int]:
    """Connect with retries; returns the transport and the number of retries used."""
    log = logger.getChild('retry')
    if timeout < 0 or max_retries < 0 or min_delay < 0:
        raise InvalidArgumentError(
            f"Connection settings must be non-negative: timeout={timeout}, "
            f"max_retries={max_retries}, min_delay={min_delay}"
        )
    host, port = parse_address(address)
    config = build_client_config(timeout, compress, persistent)
    delays = backoff_delays(min_delay, MAX_RETRY_DELAY, max_retries)
    attempt_counter = itertools.count(1)
    attempts = 0
    auth_failed = False
    last_error = ""

    while True:
        attempts = next(attempt_counter)
        if attempts > 1:
            log.warning(f"[CONN_RETRY] SSH connection retry attempt {attempts - 1} to {username}@{address}")
        try:
            transport = connect(host, port, username, password, key_path, config)
        except (SSHBrokerError, paramiko.SSHException, OSError, EOFError) as exc:
            last_error = str(exc) or type(exc).__name__
            auth_failed = isinstance(exc, AuthFailureError)
            if not is_retryable(last_error):
                log.warning(f"[CONN_FATAL] SSH connection to {username}@{address} failed "
                            f"with non-retryable error: {last_error}")
                break
            delay = next(delays, None)
            if delay is None:
                break
            log.warning(f"[CONN_BACKOFF] SSH connection failed: {last_error}. Retrying in {delay:.2f}s")
            sleep(delay)
            continue

        retry_count = attempts - 1
        if retry_count > 0:
            log.info(f"[CONN_OK] SSH connection to {username}@{address} succeeded "
                     f"after {retry_count} retry attempt(s)")
        return transport, retry_count

    log.error(f"[CONN_FAILED] SSH connection to {username}@{address} failed after "
              f"{attempts} attempt(s). Last error: {last_error}")
    message = f"SSH connection failed after {attempts} attempt(s). Last error: {last_error}"
    if auth_failed:
        raise AuthFailureError(message)
    raise ConnectionFailedError(message, attempts=attempts)


class ChannelReader:
    """Accumulates stdout/stderr and the exit status of an exec channel."""

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.exit_code: Optional[int] = None

    def pump(self) -> bool:
        """Read at most one chunk per stream without blocking; True if anything arrived.

        Callers loop on this, so cancellation and deadlines are rechecked
        between chunks even when the command never stops writing.
        """
        received = False
        if self.channel.recv_ready():
            data = self.channel.recv(READ_CHUNK_SIZE)
            if data:
                self.stdout += data
                received = True
        if self.channel.recv_stderr_ready():
            data = self.channel.recv_stderr(READ_CHUNK_SIZE)
            if data:
                self.stderr += data
                received = True
        if self.exit_code is None and self.channel.exit_status_ready():
            self.exit_code = self.channel.recv_exit_status()
            received = True
        return received

    def drain(self) -> None:
        """Read everything left once the channel has finished."""
        while self.pump():
            pass

    def finished(self) -> bool:
        """Channel closed, or EOF seen after the exit status arrived."""
        if self.channel.closed:
            return True
        return self.channel.eof_received and self.exit_code is not None

    def take(self) -> Tuple[bytes, bytes]:
        stdout, stderr = bytes(self.stdout), bytes(self.stderr)
        self.stdout.clear()
        self.stderr.clear()
        return stdout, stderr


def open_exec_channel(transport: paramiko.Transport, command: str,
                      timeout: Optional[float] = None) -> paramiko.Channel:
    """Open a session channel and start ``command`` on it (no PTY, no env)."""
    try:
        channel = transport.open_session(timeout=timeout)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise ChannelError(f"Failed to open channel: {exc}") from exc
    try:
        channel.exec_command(command)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        close_channel(channel)
        raise ChannelError(f"Failed to execute command: {exc}") from exc
    return channel


def close_channel(channel: paramiko.Channel) -> None:
    """Close a channel, ignoring errors so the transport stays usable."""
    try:
        channel.close()
    except (paramiko.SSHException, OSError, EOFError) as exc:
        logger.debug(f"Ignoring channel close error: {exc}")


def execute_command(transport: paramiko.Transport, command: str, timeout: float) -> CommandResult:
    """Run ``command`` and collect its output.

    Hitting ``timeout`` is not an error: the partial output comes back with
    ``timed_out=True`` and exit code -1, and the transport stays alive.
    """
    log = logger.getChild('execute')
    channel = open_exec_channel(transport, command, timeout)
    reader = ChannelReader(channel)
    timed_out = False
    deadline = time.monotonic() + timeout
    try:
        while True:
            received = reader.pump()
            if reader.finished():
                reader.drain()
                break
            if time.monotonic() >= deadline:
                timed_out = True
                break
            if not received:
                time.sleep(POLL_INTERVAL)
    finally:
        close_channel(channel)

    if timed_out:
        log.warning(f"Command timed out after {timeout}s, returning partial output "
                    f"({len(reader.stdout)} bytes stdout, {len(reader.stderr)} bytes stderr)")

    exit_code = reader.exit_code
    if timed_out or exit_code is None:
        exit_code = -1
    return CommandResult(
        stdout=reader.stdout.decode('utf-8', errors='replace'),
        stderr=reader.stderr.decode('utf-8', errors='replace'),
        exit_code=exit_code,
        timed_out=timed_out,
    )
