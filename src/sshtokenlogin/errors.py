"""Exception taxonomy shared across the login flow."""

from __future__ import annotations


class TokenLoginError(RuntimeError):
    """Base class for sshtokenlogin failures."""


class ConfigError(TokenLoginError):
    """Raised when the configuration file is missing, malformed or incomplete."""


class ConnectionFailedError(TokenLoginError, ConnectionError):
    """Raised when the local agent or a remote host cannot be reached."""


class HostKeyMismatchError(TokenLoginError):
    """Raised when a host presents a key that no trust anchor accepts."""


class AgentPolicyError(TokenLoginError):
    """Base for agent requests refused by the restricted proxy."""


class AgentForbiddenError(AgentPolicyError):
    def __init__(self, operation: str = "") -> None:
        super().__init__("Request forbidden" + (f": {operation}" if operation else ""))
        self.operation = operation


class AgentExtensionUnsupportedError(AgentPolicyError):
    def __init__(self, extension: str = "") -> None:
        super().__init__("agent: extension unsupported" + (f": {extension}" if extension else ""))
        self.extension = extension


class BrowserLaunchError(TokenLoginError):
    """Raised when the authorization URL could not be handed to a browser."""


class InputTerminatedError(TokenLoginError):
    """Raised when the terminal input ends before every question is answered."""


class NoBindableAddressError(TokenLoginError):
    """Raised when none of the configured callback addresses can be bound."""


class TargetError(TokenLoginError):
    """A failure scoped to a single configured server."""

    def __init__(self, name: str, cause: BaseException | str) -> None:
        super().__init__(f"server '{name}': {cause}")
        self.name = name
        self.cause = cause
