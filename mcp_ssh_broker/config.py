"""Runtime configuration resolved from explicit arguments, environment and defaults."""
import os
from typing import Optional

from .errors import InvalidArgumentError

DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_COMMAND_TIMEOUT = 180
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_COMPRESSION = True
DEFAULT_MCP_PORT = 8000

# Upper bound for a single backoff sleep between connection attempts (seconds)
MAX_RETRY_DELAY = 10

HEALTH_CHECK_TIMEOUT = 5
HEALTH_CHECK_COMMAND = "echo 1"
KEEPALIVE_INTERVAL = 30
KEEPALIVE_MAX = 3

CONNECT_TIMEOUT_ENV_VAR = "SSH_CONNECT_TIMEOUT"
COMMAND_TIMEOUT_ENV_VAR = "SSH_COMMAND_TIMEOUT"
MAX_RETRIES_ENV_VAR = "SSH_MAX_RETRIES"
RETRY_DELAY_MS_ENV_VAR = "SSH_RETRY_DELAY_MS"
COMPRESSION_ENV_VAR = "SSH_COMPRESSION"
MCP_PORT_ENV_VAR = "MCP_PORT"
PORT_FORWARD_ENV_VAR = "MCP_SSH_PORT_FORWARD"
LOG_DIR_ENV_VAR = "MCP_SSH_LOG_DIR"

DEFAULT_LOG_DIR = "/tmp/mcp_ssh_broker_logs"


def _env_unsigned(name: str) -> Optional[int]:
    """Read an unsigned integer from the environment, None if unset or invalid."""
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    if value < 0:
        return None
    return value


def _explicit_unsigned(name: str, value: int) -> int:
    """Reject negative values passed in by a caller."""
    if value < 0:
        raise InvalidArgumentError(f"{name} must be non-negative, got {value}")
    return value


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw == "1" or raw.lower() == "true"


def resolve_connect_timeout(timeout_secs: Optional[int] = None) -> int:
    if timeout_secs is not None:
        return _explicit_unsigned("timeout_secs", timeout_secs)
    env_value = _env_unsigned(CONNECT_TIMEOUT_ENV_VAR)
    return DEFAULT_CONNECT_TIMEOUT if env_value is None else env_value


def resolve_command_timeout(timeout_secs: Optional[int] = None) -> int:
    if timeout_secs is not None:
        return _explicit_unsigned("timeout_secs", timeout_secs)
    env_value = _env_unsigned(COMMAND_TIMEOUT_ENV_VAR)
    return DEFAULT_COMMAND_TIMEOUT if env_value is None else env_value


def resolve_max_retries(max_retries: Optional[int] = None) -> int:
    if max_retries is not None:
        return _explicit_unsigned("max_retries", max_retries)
    env_value = _env_unsigned(MAX_RETRIES_ENV_VAR)
    return DEFAULT_MAX_RETRIES if env_value is None else env_value


def resolve_retry_delay_ms(retry_delay_ms: Optional[int] = None) -> int:
    if retry_delay_ms is not None:
        return _explicit_unsigned("retry_delay_ms", retry_delay_ms)
    env_value = _env_unsigned(RETRY_DELAY_MS_ENV_VAR)
    return DEFAULT_RETRY_DELAY_MS if env_value is None else env_value


def resolve_compression(compress: Optional[bool] = None) -> bool:
    """Only "1" or a case-insensitive "true" enable compression from the environment."""
    if compress is not None:
        return compress
    env_value = _env_flag(COMPRESSION_ENV_VAR)
    return DEFAULT_COMPRESSION if env_value is None else env_value


def resolve_mcp_port(port: Optional[int] = None) -> int:
    if port is not None:
        return port
    env_value = _env_unsigned(MCP_PORT_ENV_VAR)
    if env_value is None or env_value > 65535:
        return DEFAULT_MCP_PORT
    return env_value


def resolve_port_forward_enabled() -> bool:
    env_value = _env_flag(PORT_FORWARD_ENV_VAR)
    return True if env_value is None else env_value


def resolve_log_dir() -> str:
    return os.getenv(LOG_DIR_ENV_VAR) or DEFAULT_LOG_DIR
