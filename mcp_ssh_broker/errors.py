"""Error types and retry classification for SSH broker operations."""


# Credential problems never resolve by retrying, and retrying them risks
# locking the account.
AUTH_ERROR_PATTERNS = (
    "authentication failed",
    "password authentication failed",
    "key authentication failed",
    "agent authentication failed",
    "permission denied",
    "publickey",
    "auth fail",
    "no authentication",
    "all authentication methods failed",
)

RETRYABLE_ERROR_PATTERNS = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "timeout",
    "network is unreachable",
    "no route to host",
    "host is down",
    "temporary failure",
    "resource temporarily unavailable",
    "handshake failed",
    "failed to connect",
    "broken pipe",
    "would block",
)


class SSHBrokerError(Exception):
    """Base class for errors surfaced by the broker."""


class InvalidArgumentError(SSHBrokerError):
    """Malformed address, bad port number or unknown filter value."""


class NotFoundError(SSHBrokerError):
    """Unknown session id or command id."""


class ResourceExhaustedError(SSHBrokerError):
    """A per-session limit was reached."""


class AuthFailureError(SSHBrokerError):
    """The server rejected every configured authentication method."""


class ConnectionFailedError(SSHBrokerError):
    """Connecting failed after all retry attempts."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ChannelError(SSHBrokerError):
    """Opening, running or binding a channel failed."""


class FeatureDisabledError(SSHBrokerError):
    """The requested tool is switched off in this deployment."""


class AuthMethodError(SSHBrokerError):
    """A single authentication strategy could not run."""


def is_retryable(message: str) -> bool:
    """Decide whether a connection error message describes a transient failure.

    Authentication patterns are checked first and always win, so
    "Connection timeout during authentication failed" is not retried.
    Unknown errors are retried unless they look like SSH protocol errors
    that say nothing about timeouts or connecting.
    """
    lowered = message.lower()

    for pattern in AUTH_ERROR_PATTERNS:
        if pattern in lowered:
            return False

    for pattern in RETRYABLE_ERROR_PATTERNS:
        if pattern in lowered:
            return True

    if "ssh" not in lowered:
        return True
    return "timeout" in lowered or "connect" in lowered
