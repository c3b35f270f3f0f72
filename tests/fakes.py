"""Scripted stand-ins for paramiko transports and exec channels."""
import threading


class FakeChannel:
    """Exec channel whose output is decided by a handler when the command starts.

    The handler returns a dict with any of: stdout / stderr (lists of chunks,
    delivered immediately), late_stdout (delivered once ``hold`` is set),
    exit_status (None means the server never sends one), hold (a
    threading.Event; EOF and the exit status arrive only after it is set),
    exec_error (raised from exec_command), endless_stdout (a chunk that is
    always ready to read until the channel is closed), recv_error (raised from
    recv once output is read).
    """

    def __init__(self, handler=None):
        self._handler = handler or (lambda command: {})
        self._stdout = []
        self._stderr = []
        self._late_stdout = []
        self._exit_status = 0
        self._hold = None
        self._endless = None
        self._recv_error = None
        self._closed = False
        self.command = None
        self.close_calls = 0

    @staticmethod
    def _encode(chunks):
        return [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]

    def exec_command(self, command):
        self.command = command
        script = self._handler(command)
        if script.get("exec_error") is not None:
            raise script["exec_error"]
        self._stdout = self._encode(script.get("stdout", ()))
        self._stderr = self._encode(script.get("stderr", ()))
        self._late_stdout = self._encode(script.get("late_stdout", ()))
        self._exit_status = script.get("exit_status", 0)
        self._hold = script.get("hold")
        self._endless = script.get("endless_stdout")
        self._recv_error = script.get("recv_error")

    def _released(self):
        return self._hold is None or self._hold.is_set()

    def recv_ready(self):
        if (self._endless or self._recv_error) and not self._closed:
            return True
        if self._late_stdout and self._released():
            self._stdout.extend(self._late_stdout)
            self._late_stdout = []
        return bool(self._stdout)

    def recv(self, nbytes):
        if self._recv_error is not None:
            raise self._recv_error
        if self._endless and not self._closed:
            return self._endless
        return self._stdout.pop(0) if self._stdout else b""

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, nbytes):
        return self._stderr.pop(0) if self._stderr else b""

    @property
    def eof_received(self):
        if self._endless or self._recv_error:
            return False
        return self._released() and not self._stdout and not self._late_stdout and not self._stderr

    def exit_status_ready(self):
        return self.eof_received and self._exit_status is not None

    def recv_exit_status(self):
        return self._exit_status

    @property
    def closed(self):
        # A server that never sends an exit status still closes the channel
        return self._closed or (self._exit_status is None and self.eof_received)

    def close(self):
        self._closed = True
        self.close_calls += 1


class FakeTransport:
    def __init__(self, handler=None, active=True):
        self.handler = handler
        self.active = active
        self.closed = False
        self.open_error = None
        self.channels = []
        self._lock = threading.Lock()

    def open_session(self, timeout=None):
        if self.open_error is not None:
            raise self.open_error
        channel = FakeChannel(self.handler)
        with self._lock:
            self.channels.append(channel)
        return channel

    def is_active(self):
        return self.active and not self.closed

    def close(self):
        self.closed = True


def healthy_handler(command):
    if command == "echo 1":
        return {"stdout": ["1\n"], "exit_status": 0}
    return {"stdout": [f"ran {command}\n"], "exit_status": 0}
