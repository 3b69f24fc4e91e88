"""
Incremental updates pushed from the orchestrator to the presentation layer.

The presentation collaborator never mutates a Conversation; it renders these
updates and reads `Conversation.snapshot()` when it needs the full state.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class TurnStarted:
    turn_id: str
    profile_name: str
    round: int


@dataclass(frozen=True)
class StateChanged:
    turn_id: str
    state: str


@dataclass(frozen=True)
class AssistantDelta:
    """A text fragment; deltas are append-only and never retracted."""
    turn_id: str
    text: str
    seq: int


@dataclass(frozen=True)
class ToolStarted:
    turn_id: str
    tool_call_id: str
    tool_name: str
    arguments: dict


@dataclass(frozen=True)
class ToolFinished:
    turn_id: str
    tool_call_id: str
    tool_name: str
    content: str
    is_error: bool


@dataclass(frozen=True)
class ContextSummarized:
    """Older history was folded into a summary for this request."""
    turn_id: str
    old_count: int
    new_count: int
    tokens_saved: int


@dataclass(frozen=True)
class TurnEnded:
    turn_id: str
    state: str
    error: Optional[str] = None


AgentUpdate = Union[
    TurnStarted, StateChanged, AssistantDelta, ToolStarted, ToolFinished, ContextSummarized, TurnEnded,
]
