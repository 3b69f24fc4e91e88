"""Tokenizer-backed token estimates for conversation history."""
from __future__ import annotations

import json
import logging
from threading import Lock

import tiktoken

logger = logging.getLogger(__name__)

_FALLBACK_ENCODING = "cl100k_base"
CHARS_PER_TOKEN_EST = 4


class TokenCounter:
    """Counts tokens with the model's encoding, falling back to a char estimate."""

    def __init__(self):
        self._lock = Lock()
        self._encodings = {}

    def _encoding_for_model(self, model: str | None):
        key = (model or "").strip() or "default"
        if key in self._encodings:
            return self._encodings[key]
        with self._lock:
            if key in self._encodings:
                return self._encodings[key]
            enc = None
            try:
                if model:
                    enc = tiktoken.encoding_for_model(model)
                else:
                    enc = tiktoken.get_encoding(_FALLBACK_ENCODING)
            except KeyError:
                # Non-OpenAI model names are unknown to tiktoken
                try:
                    enc = tiktoken.get_encoding(_FALLBACK_ENCODING)
                except Exception as e:
                    logger.warning("tiktoken encoding unavailable, using rough estimates: %s", e)
            except Exception as e:
                logger.warning("tiktoken encoding unavailable, using rough estimates: %s", e)
            self._encodings[key] = enc
            return enc

    def count_text(self, text: str, model: str | None = None) -> int:
        """Count tokens in plain text for the target model."""
        text = text or ""
        if not text:
            return 0
        enc = self._encoding_for_model(model)
        if enc is None:
            return max(1, -(-len(text) // CHARS_PER_TOKEN_EST))
        return len(enc.encode(text, disallowed_special=()))


_counter = TokenCounter()


def count_text_tokens(text: str, model: str | None = None) -> int:
    """Module-level convenience wrapper for tokenizer counting."""
    return _counter.count_text(text, model=model)


def count_message_tokens(message, model: str | None = None) -> int:
    """Tokens for one Message: content plus any tool-call names and arguments."""
    total = count_text_tokens(message.content, model=model)
    for call in message.tool_calls:
        total += count_text_tokens(call.id, model=model)
        total += count_text_tokens(call.tool_name, model=model)
        total += count_text_tokens(json.dumps(call.arguments, ensure_ascii=False), model=model)
    return total


def count_messages_tokens(messages, model: str | None = None) -> int:
    return sum(count_message_tokens(msg, model=model) for msg in messages)


def warm_up(model: str | None = None) -> None:
    """Load (and on first use download) the model's encoding ahead of time.

    tiktoken fetches BPE files synchronously; call this off the event loop.
    """
    _counter.count_text("warm up", model=model)
