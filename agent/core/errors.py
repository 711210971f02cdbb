"""Error taxonomy for the agent.

Only ConfigError and AuthError end the process. Registry errors are
classified by response category so each caller can decide whether to
retry on its next tick, self-heal, or give up.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for all agent errors."""


class ConfigError(AgentError):
    """Required settings are missing or invalid."""


class AuthError(AgentError):
    """The registry rejected the operator's credentials."""


class RegistryError(AgentError):
    """A registry call did not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class TransientNetworkError(RegistryError):
    """Timeout, connection failure or 5xx. Retried on the next tick."""


class NotFoundError(RegistryError):
    """The device row does not exist."""


class ConflictError(RegistryError):
    """Uniqueness violation on create. The row already exists."""


class FatalRegistryError(RegistryError):
    """A 4xx the caller must not spin on (401, 403, 400, ...)."""


class MalformedPayloadError(AgentError):
    """The shutdown request payload could not be parsed."""


class CommandExecutionError(AgentError):
    """The power-off command failed."""
