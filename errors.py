"""
Exception taxonomy for the conversation engine.

ConfigError is raised while loading configuration, before any conversation
starts. BackendError ends the current turn. ToolServerError stays isolated to
one tool server, and ToolInvocationError never leaves the tool layer: it is
turned into an error ToolResult the model can read.
"""
from enum import Enum
from typing import Optional


class EngineError(Exception):
    """Base exception for engine errors."""
    pass


class ConfigError(EngineError):
    """Raised for malformed or missing profile / tool-server configuration."""
    pass


class ProfileNotFound(ConfigError):
    """Raised when a profile name is not in the registry."""

    def __init__(self, name: str):
        super().__init__(f"Profile '{name}' not found")
        self.name = name


class BackendErrorKind(Enum):
    """Distinct failure kinds reported by backend adapters."""
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    SERVER = "server"


class BackendError(EngineError):
    """Raised when a completion backend fails; terminates the turn."""

    def __init__(
        self,
        kind: BackendErrorKind,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"[{kind.value}] {message}")
        self.kind = kind
        self.message = message
        self.status = status
        self.retry_after = retry_after


class ToolServerError(EngineError):
    """Raised for spawn failure, handshake timeout or crash of one tool server."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"Tool server '{server_name}': {message}")
        self.server_name = server_name
        self.message = message


class ToolInvocationError(EngineError):
    """Raised inside the tool layer for a single failed tool call."""
    pass


class LoopBoundExceeded(EngineError):
    """Raised when a turn requests more tool-call rounds than allowed."""

    def __init__(self, max_rounds: int):
        super().__init__(f"Exceeded tool-call round limit ({max_rounds}) without final response")
        self.max_rounds = max_rounds
