"""
Data models for conversations, messages and tool calls.

Backends are stateless: every completion request carries the full message
history. The Conversation is the single source of that history; it only
grows by appending, and each appended message receives the next sequence
number.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from token_counter import count_messages_tokens


class MessageRole(Enum):
    """Role of the message sender."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""
    id: str
    tool_name: str
    arguments: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool invocation, successful or not."""
    tool_call_id: str
    content: str
    is_error: bool = False
    tool_name: str = ""


def new_message_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Message:
    """Represents a single message in a conversation."""
    id: str
    role: MessageRole
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)  # assistant only
    tool_call_id: Optional[str] = None  # tool only
    tool_name: Optional[str] = None  # tool only
    is_error: bool = False  # tool only
    seq: int = 0  # assigned by Conversation.add_message
    timestamp: datetime = field(default_factory=datetime.now)
    meta: Optional[dict] = None

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(id=new_message_id(), role=MessageRole.USER, content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(id=new_message_id(), role=MessageRole.SYSTEM, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Optional[list[ToolCall]] = None) -> "Message":
        return cls(
            id=new_message_id(),
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=list(tool_calls or []),
        )

    @classmethod
    def from_tool_result(cls, result: ToolResult) -> "Message":
        """Fold a ToolResult into a tool-role message tagged with its call id."""
        return cls(
            id=new_message_id(),
            role=MessageRole.TOOL,
            content=result.content,
            tool_call_id=result.tool_call_id,
            tool_name=result.tool_name or None,
            is_error=result.is_error,
        )

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict."""
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "seq": self.seq,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": tc.id, "name": tc.tool_name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
            data["is_error"] = self.is_error
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.meta is not None:
            data["meta"] = self.meta
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Deserialize a Message from a dict."""
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            tool_calls=[
                ToolCall(id=tc["id"], tool_name=tc["name"], arguments=tc.get("arguments") or {})
                for tc in data.get("tool_calls", [])
            ],
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            is_error=bool(data.get("is_error", False)),
            seq=int(data.get("seq", 0)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            meta=data.get("meta"),
        )

    def __str__(self) -> str:
        return f"{self.role.value}: {self.content[:50]}..."


@dataclass
class Conversation:
    """An ordered, append-only sequence of messages."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "New conversation"
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def add_message(self, message: Message) -> Message:
        """Append a message, assigning the next sequence number."""
        last = self.messages[-1].seq if self.messages else 0
        message.seq = last + 1
        self.messages.append(message)
        self.updated_at = datetime.now()
        return message

    def get_last_message(self) -> Optional[Message]:
        """Get the last message in the conversation."""
        return self.messages[-1] if self.messages else None

    def snapshot(self) -> tuple[Message, ...]:
        """Consistent read-only view for the presentation layer."""
        return tuple(self.messages)

    def truncate(self, length: int) -> None:
        """Drop every message after the first `length` ones."""
        del self.messages[length:]

    def needs_response(self) -> bool:
        """True when the last message is a user message or a tool result."""
        last = self.get_last_message()
        return last is not None and last.role in (MessageRole.USER, MessageRole.TOOL)

    def estimate_context_tokens(self, model: Optional[str] = None) -> int:
        """Estimate total tokens for all messages in this conversation."""
        return count_messages_tokens(self.messages, model=model)
