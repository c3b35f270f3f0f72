"""File-only logging for the broker.

stdout belongs to the MCP stdio transport, so log records go to a file and
never to a stream handler.
"""
import logging
from pathlib import Path

from .config import resolve_log_dir

LOGGER_NAME = 'ssh_broker'
LOG_FORMAT = '%(asctime)s - [%(threadName)s] - %(name)s - %(levelname)s - %(message)s'


def setup_logging() -> logging.Logger:
    """Configure the broker logger once and return it."""
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, '_ssh_broker_configured', False):
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    log_dir = Path(resolve_log_dir())
    try:
        log_dir.mkdir(exist_ok=True, parents=True)
        file_handler = logging.FileHandler(str(log_dir / 'mcp_ssh_broker.log'))
    except OSError:
        # Read-only filesystem: keep the logger silent rather than touching stdout
        logger.addHandler(logging.NullHandler())
    else:
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    logger._ssh_broker_configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(LOGGER_NAME).getChild(name)
