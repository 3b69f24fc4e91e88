"""
Tool-server configuration and catalog models.
"""
from dataclasses import dataclass, field
from enum import Enum


class ToolServerState(Enum):
    """Process lifecycle state of one tool server."""
    STOPPED = "stopped"
    STARTING = "starting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True)
class ToolServerConfig:
    """Fully resolved launch configuration (placeholders already expanded)."""
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ToolSchema:
    """One tool advertised by a server through tools/list."""
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=dict, hash=False)
    server_name: str = ""
