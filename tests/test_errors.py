"""Tests for connection error classification."""

import pytest

from mcp_ssh_broker.errors import (
    AUTH_ERROR_PATTERNS,
    RETRYABLE_ERROR_PATTERNS,
    ConnectionFailedError,
    SSHBrokerError,
    is_retryable,
)


@pytest.mark.parametrize("pattern", RETRYABLE_ERROR_PATTERNS)
def test_connection_patterns_are_retryable(pattern):
    assert is_retryable(f"Error: {pattern} while talking to host")


@pytest.mark.parametrize("pattern", AUTH_ERROR_PATTERNS)
def test_auth_patterns_are_not_retryable(pattern):
    assert not is_retryable(f"Error: {pattern}")


def test_auth_pattern_wins_over_connection_pattern():
    assert not is_retryable("Connection timeout during authentication failed")
    assert not is_retryable("Connection refused: Permission denied (publickey)")


def test_matching_is_case_insensitive():
    assert is_retryable("CONNECTION REFUSED")
    assert not is_retryable("AUTHENTICATION FAILED")


def test_unknown_errors():
    assert is_retryable("")
    assert is_retryable("something odd happened")
    assert not is_retryable("SSH protocol error")
    assert is_retryable("SSH connection timeout")
    assert is_retryable("ssh: could not connect")


def test_connection_failed_error_carries_attempts():
    error = ConnectionFailedError("SSH connection failed after 3 attempt(s). Last error: boom", attempts=3)
    assert isinstance(error, SSHBrokerError)
    assert error.attempts == 3
    assert "3 attempt(s)" in str(error)
