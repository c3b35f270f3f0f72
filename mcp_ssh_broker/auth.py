"""Authentication strategies applied to a freshly negotiated paramiko transport."""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import paramiko

from .errors import AuthFailureError, AuthMethodError
from .logging_manager import get_logger

logger = get_logger('auth')


class AuthStrategy(ABC):
    """One way of proving identity to the server.

    ``authenticate`` returns True when the server accepted the credentials and
    False when it cleanly rejected them. Problems that prevent the attempt
    itself (unreadable key, unreachable agent) raise AuthMethodError.
    """

    name = "strategy"

    @abstractmethod
    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        raise NotImplementedError


class PasswordAuth(AuthStrategy):
    name = "password"

    def __init__(self, password: str):
        self._password = password

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        try:
            transport.auth_password(username, self._password)
        except paramiko.AuthenticationException:
            return False
        except (paramiko.SSHException, OSError) as exc:
            raise AuthMethodError(f"Password authentication failed: {exc}") from exc
        return transport.is_authenticated()

    def __repr__(self):
        return "PasswordAuth(password=***)"


class KeyAuth(AuthStrategy):
    """Public key authentication with a passphrase-less private key file.

    paramiko picks rsa-sha2-512/256 for RSA keys when the server advertises
    them, so no explicit hash selection is needed here.
    """

    name = "key"

    def __init__(self, key_path: str):
        self.key_path = Path(key_path).expanduser()

    def load_key(self) -> paramiko.PKey:
        try:
            return paramiko.PKey.from_path(self.key_path)
        except Exception as exc:
            raise AuthMethodError(f"Failed to load private key from {self.key_path}: {exc}") from exc

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        key = self.load_key()
        logger.debug(f"Using {key.get_name()} key from {self.key_path}")
        try:
            transport.auth_publickey(username, key)
        except paramiko.AuthenticationException:
            return False
        except (paramiko.SSHException, OSError) as exc:
            raise AuthMethodError(f"Key authentication failed: {exc}") from exc
        return transport.is_authenticated()


class AgentAuth(AuthStrategy):
    """Try every identity held by the agent at SSH_AUTH_SOCK."""

    name = "agent"

    def _connect_agent(self) -> paramiko.Agent:
        try:
            return paramiko.Agent()
        except (paramiko.SSHException, OSError) as exc:
            raise AuthMethodError(f"Failed to connect to SSH agent: {exc}") from exc

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        agent = self._connect_agent()
        try:
            identities = agent.get_keys()
            if not identities:
                raise AuthMethodError("No identities found in SSH agent")

            for identity in identities:
                logger.debug(f"Trying SSH agent identity: {identity.get_name()} {identity.comment!r}")
                try:
                    transport.auth_publickey(username, identity)
                except paramiko.AuthenticationException:
                    logger.debug("Agent identity not accepted, trying next")
                    continue
                except (paramiko.SSHException, OSError) as exc:
                    logger.debug(f"Agent authentication error: {exc}, trying next")
                    continue
                if transport.is_authenticated():
                    logger.info("Successfully authenticated with SSH agent")
                    return True

            raise AuthMethodError("Agent authentication failed: no identities accepted")
        finally:
            agent.close()


class AuthChain:
    """Ordered strategies; the first one the server accepts wins."""

    name = "chain"

    def __init__(self, strategies: Optional[List[AuthStrategy]] = None):
        self.strategies: List[AuthStrategy] = list(strategies or [])

    def with_password(self, password: str) -> "AuthChain":
        self.strategies.append(PasswordAuth(password))
        return self

    def with_key(self, key_path: str) -> "AuthChain":
        self.strategies.append(KeyAuth(key_path))
        return self

    def with_agent(self) -> "AuthChain":
        self.strategies.append(AgentAuth())
        return self

    def is_empty(self) -> bool:
        return not self.strategies

    def __len__(self):
        return len(self.strategies)

    def authenticate(self, transport: paramiko.Transport, username: str) -> bool:
        if not self.strategies:
            raise AuthFailureError("No authentication strategies configured")

        last_error = None
        for strategy in self.strategies:
            logger.debug(f"Trying authentication strategy: {strategy.name}")
            try:
                if strategy.authenticate(transport, username):
                    logger.debug(f"Authentication succeeded with strategy: {strategy.name}")
                    return True
                last_error = f"{strategy.name} authentication rejected"
            except AuthMethodError as exc:
                last_error = str(exc)
            logger.debug(f"Strategy {strategy.name} failed: {last_error}")

        raise AuthFailureError(last_error or "All authentication methods failed")


def build_auth_chain(password: Optional[str] = None, key_path: Optional[str] = None) -> AuthChain:
    """Password, then key; the agent only when neither was supplied."""
    chain = AuthChain()
    if password is not None:
        chain.with_password(password)
    if key_path is not None:
        chain.with_key(key_path)
    if chain.is_empty():
        chain.with_agent()
    return chain
