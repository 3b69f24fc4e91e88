"""
History compaction for conversations that outgrow the context window.

Older messages are folded into one summary produced by a tool-less
completion; the system prompt and the most recent exchanges are sent
verbatim. Compaction only shapes what is sent to the backend, the committed
Conversation is never rewritten.
"""
from typing import Sequence

import constants as C
from models import Message, MessageRole

SUMMARY_INSTRUCTION = (
    "You compress chat history for context retention. Return a concise factual summary only. "
    "Preserve requirements, constraints, decisions, unresolved questions, and concrete values. "
    "Do not add commentary or markdown headings."
)

SUMMARY_PREFIX = "Conversation summary so far. Treat this as trusted context from earlier turns:\n\n"


def should_summarize(used_tokens: int, window: int, threshold: float) -> bool:
    if window <= 0:
        return False
    return used_tokens >= window * threshold


def split_for_summary(
    history: Sequence[Message],
    keep_recent_pairs: int = C.KEEP_RECENT_PAIRS,
) -> tuple[list[Message], list[Message]]:
    """Split history into (messages to summarize, recent messages to keep).

    A leading system prompt belongs to neither part. The recent part never
    starts with a tool result: its assistant message moves along with it.
    """
    keep_count = keep_recent_pairs * 2
    start = 1 if history and history[0].role is MessageRole.SYSTEM else 0
    cut = len(history) - keep_count
    while cut > start and history[cut].role is MessageRole.TOOL:
        cut -= 1
    if cut <= start:
        return [], list(history[start:])
    return list(history[start:cut]), list(history[cut:])


def render_for_summary(messages: Sequence[Message]) -> str:
    """Render messages as bounded plain text for the summarizer."""
    chunks = []
    for msg in messages:
        role = msg.role.value
        content = (msg.content or "").strip()
        if msg.role is MessageRole.TOOL and msg.tool_name:
            role = f"tool:{msg.tool_name}"
        if msg.tool_calls:
            called = ", ".join(tc.tool_name for tc in msg.tool_calls)
            content = f"{content}\n[called {called}]".strip()
        if not content:
            continue
        if len(content) > C.SUMMARY_MESSAGE_CHARS:
            omitted = len(content) - C.SUMMARY_MESSAGE_CHARS
            content = f"{content[:C.SUMMARY_MESSAGE_CHARS]}\n...[{omitted} chars omitted]"
        chunks.append(f"{role}: {content}")
    rendered = "\n\n".join(chunks)
    if len(rendered) > C.SUMMARY_INPUT_CHARS:
        rendered = "[Older history truncated]\n\n" + rendered[-C.SUMMARY_INPUT_CHARS:]
    return rendered


def summary_request(messages: Sequence[Message]) -> list[Message]:
    """Messages for the tool-less completion that writes the summary."""
    return [
        Message.system(SUMMARY_INSTRUCTION),
        Message.user(
            "Summarize this conversation history so the assistant can continue accurately.\n\n"
            + render_for_summary(messages)
        ),
    ]


def summary_max_tokens(window: int) -> int:
    return max(192, min(1024, int(max(window, 512) * 0.25)))


def compact_history(history: Sequence[Message], recent: Sequence[Message], summary: str) -> list[Message]:
    """System prompt (if any), then the summary, then the recent messages."""
    compacted = []
    if history and history[0].role is MessageRole.SYSTEM:
        compacted.append(history[0])
    compacted.append(Message.system(SUMMARY_PREFIX + summary))
    compacted.extend(recent)
    return compacted
