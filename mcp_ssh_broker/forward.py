"""Local TCP port forwarding over an SSH session (direct-tcpip)."""
import socket
import socketserver
import threading
from typing import Optional, Tuple

import paramiko

from .errors import ChannelError
from .logging_manager import get_logger

logger = get_logger('forward')

LOCAL_BIND_HOST = "127.0.0.1"
ORIGINATOR = ("127.0.0.1", 0)
FORWARD_CHUNK_SIZE = 16384


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class PortForward:
    """127.0.0.1:<local_port> -> remote_host:remote_port through ``transport``.

    The listener runs until ``stop()``; the broker stops it when the owning
    session is disconnected.
    """

    def __init__(self, transport: paramiko.Transport, local_port: int,
                 remote_host: str, remote_port: int):
        self.local_port = local_port
        self.remote_host = remote_host
        self.remote_port = remote_port
        self._transport = transport
        self._stop_event = threading.Event()
        self._server: Optional[_ThreadedTCPServer] = None
        self._acceptor_thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._server is not None and not self._stop_event.is_set()

    @property
    def local_address(self) -> str:
        return f"{LOCAL_BIND_HOST}:{self.local_port}"

    @property
    def remote_address(self) -> str:
        return f"{self.remote_host}:{self.remote_port}"

    def start(self) -> Tuple[str, int]:
        """Bind the listener and start accepting; returns the bound address."""
        forward = self

        class ForwardHandler(socketserver.BaseRequestHandler):
            def handle(self):
                forward._handle_connection(self.request)

        try:
            self._server = _ThreadedTCPServer((LOCAL_BIND_HOST, self.local_port), ForwardHandler)
        except OSError as e:
            raise ChannelError(f"Failed to bind to local port {self.local_port}: {e}") from e

        # Port 0 asks the OS for a free port
        bound_host, bound_port = self._server.server_address[:2]
        self.local_port = bound_port

        self._acceptor_thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"ssh_forward_{self.local_port}",
            daemon=True,
        )
        self._acceptor_thread.start()
        logger.info(f"[FORWARD_START] {self.local_address} -> {self.remote_address}")
        return bound_host, bound_port

    def _handle_connection(self, sock: socket.socket) -> None:
        log = logger.getChild('connection')
        try:
            chan = self._transport.open_channel(
                "direct-tcpip", (self.remote_host, self.remote_port), ORIGINATOR
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            log.error(f"[FORWARD_CHANNEL] Failed to open direct-tcpip channel to {self.remote_address}: {e}")
            return

        log.debug(f"Forwarding connection to {self.remote_address}")
        try:
            pump(sock, chan, self._stop_event)
        except (paramiko.SSHException, OSError, EOFError) as e:
            log.debug(f"Forwarded connection to {self.remote_address} ended: {e}")
        finally:
            chan.close()

    def stop(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._acceptor_thread is not None:
            self._acceptor_thread.join(timeout=3.0)
        logger.info(f"[FORWARD_STOP] {self.local_address} -> {self.remote_address}")

    def __repr__(self):
        state = "active" if self.active else "stopped"
        return f"PortForward({self.local_address} -> {self.remote_address}, {state})"


def _copy(recv, sendall, stop_event: threading.Event, done: threading.Event) -> None:
    try:
        while not stop_event.is_set():
            data = recv(FORWARD_CHUNK_SIZE)
            if not data:
                break
            sendall(data)
    except (paramiko.SSHException, OSError, EOFError) as e:
        logger.debug(f"Forward copy ended: {e}")
    finally:
        done.set()


def pump(sock: socket.socket, chan, stop_event: threading.Event) -> None:
    """Copy bytes both ways until either direction reaches EOF or fails.

    The first direction to finish ends the connection; the socket is shut down
    so the other copier unblocks.
    """
    done = threading.Event()
    copiers = [
        threading.Thread(target=_copy, args=(sock.recv, chan.sendall, stop_event, done),
                         name="ssh_forward_up", daemon=True),
        threading.Thread(target=_copy, args=(chan.recv, sock.sendall, stop_event, done),
                         name="ssh_forward_down", daemon=True),
    ]
    for copier in copiers:
        copier.start()
    try:
        while not done.wait(1.0):
            if stop_event.is_set():
                break
    finally:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
