"""
Persistence layer for conversation messages.

Stores are append-only: the orchestrator appends each message of a finished
turn once, and `read` returns them in the order they were appended.
"""
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Optional

import constants as C
from config import get_config_dir
from errors import EngineError
from models import Conversation, Message

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class ConversationStore(ABC):
    """Durable record of conversation messages."""

    @abstractmethod
    def append(self, conversation_id: str, message: Message) -> None:
        """Append one message to a conversation's record."""

    @abstractmethod
    def read(self, conversation_id: str) -> list[Message]:
        """All stored messages of a conversation, oldest first."""


class InMemoryConversationStore(ConversationStore):
    """Process-local store; used for tests and ephemeral sessions."""

    def __init__(self):
        self._messages: dict[str, list[dict]] = {}

    def append(self, conversation_id: str, message: Message) -> None:
        # Stored serialized so later mutation of the Message cannot leak in
        self._messages.setdefault(conversation_id, []).append(message.to_dict())

    def read(self, conversation_id: str) -> list[Message]:
        return [Message.from_dict(d) for d in self._messages.get(conversation_id, [])]


class JsonlConversationStore(ConversationStore):
    """One `<conversation_id>.jsonl` file per conversation, one message per line."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or os.path.join(get_config_dir(), C.CONVERSATIONS_DIR)
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, conversation_id: str) -> str:
        return os.path.join(self.directory, f"{_SAFE_ID.sub('_', conversation_id)}.jsonl")

    def append(self, conversation_id: str, message: Message) -> None:
        line = json.dumps(message.to_dict(), ensure_ascii=False)
        try:
            with open(self._path(conversation_id), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise EngineError(f"Could not persist message {message.id}: {e}") from e

    def read(self, conversation_id: str) -> list[Message]:
        """Read stored messages; undecodable lines are skipped with a warning."""
        path = self._path(conversation_id)
        if not os.path.exists(path):
            return []
        messages = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    messages.append(Message.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning("Skipping bad line %d in %s: %s", lineno, path, e)
        return messages


def load_conversation(store: ConversationStore, conversation_id: str, title: str = "New conversation") -> Conversation:
    """Rebuild a Conversation from its stored messages."""
    conv = Conversation(id=conversation_id, title=title)
    conv.messages.extend(store.read(conversation_id))
    if conv.messages:
        conv.created_at = conv.messages[0].timestamp
        conv.updated_at = conv.messages[-1].timestamp
    return conv
