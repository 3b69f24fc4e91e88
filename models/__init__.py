"""
Data models for conversations, profiles and tool servers.
"""
from .message import Message, MessageRole, Conversation, ToolCall, ToolResult
from .profile import BackendKind, Profile
from .tool_server import ToolServerConfig, ToolServerState, ToolSchema

__all__ = [
    "Message",
    "MessageRole",
    "Conversation",
    "ToolCall",
    "ToolResult",
    "BackendKind",
    "Profile",
    "ToolServerConfig",
    "ToolServerState",
    "ToolSchema",
]
