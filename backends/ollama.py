"""
Ollama native chat API (`/api/chat`).

The stream is newline-delimited JSON. Tool calls arrive as complete objects
with already-parsed arguments and usually without ids, so ids are
synthesised here.
"""
import json
import logging
import uuid
from typing import Sequence

import constants as C
from errors import BackendErrorKind
from models import BackendKind, Message, MessageRole, Profile, ToolCall, ToolResult, ToolSchema
from streaming import (
    StreamDecoder,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    TurnComplete,
    expect_list,
    expect_object,
)

from .base import BackendAdapter, error_text, provider_error_kind, tool_result_of

logger = logging.getLogger(__name__)


def synth_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class OllamaStreamDecoder(StreamDecoder):
    """Decoder for Ollama NDJSON chat chunks."""

    def __init__(self):
        self._finished = False
        self._seen_ids: set[str] = set()

    def parse_event(self, raw_chunk: str) -> list[StreamEvent]:
        if self._finished:
            return []
        try:
            chunk = json.loads(raw_chunk)
        except json.JSONDecodeError:
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Undecodable stream line: {raw_chunk[:200]}")]
        if not isinstance(chunk, dict):
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, "Stream line is not an object")]
        if chunk.get("error"):
            self._finished = True
            return [StreamError(provider_error_kind(str(chunk.get("error"))), str(chunk.get("error")))]

        events: list[StreamEvent] = []
        message = expect_object(chunk.get("message"), "message")
        text = message.get("content")
        if isinstance(text, str) and text:
            events.append(TextDelta(text))
        for tc in expect_list(message.get("tool_calls"), "tool_calls"):
            try:
                events.append(ToolCallComplete(self._tool_call(tc)))
            except ValueError as e:
                self._finished = True
                return events + [StreamError(BackendErrorKind.MALFORMED_RESPONSE, str(e))]
        if chunk.get("done"):
            self._finished = True
            events.append(TurnComplete(str(chunk.get("done_reason") or "stop")))
        return events

    def _tool_call(self, tc: object) -> ToolCall:
        if not isinstance(tc, dict):
            raise ValueError("Tool call is not an object")
        fn = expect_object(tc.get("function"), "function")
        name = fn.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("Tool call has no function name")
        args = fn.get("arguments") or {}
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid arguments for tool call '{name}': {e}") from e
        if not isinstance(args, dict):
            raise ValueError(f"Arguments for tool call '{name}' are not an object")
        call_id = tc.get("id")
        if not isinstance(call_id, str) or not call_id or call_id in self._seen_ids:
            call_id = synth_call_id()
        self._seen_ids.add(call_id)
        return ToolCall(id=call_id, tool_name=name, arguments=args)


class OllamaAdapter(BackendAdapter):
    """Adapter for a local (or remote) Ollama server."""

    kind = BackendKind.OLLAMA

    def build_url(self, profile: Profile) -> str:
        return f"{profile.endpoint or C.OLLAMA_ENDPOINT_DEFAULT}{C.OLLAMA_CHAT}"

    def build_headers(self, profile: Profile) -> dict:
        headers = {"Content-Type": "application/json"}
        # Only add authorization header if API key is provided
        if profile.api_key:
            headers["Authorization"] = f"Bearer {profile.api_key}"
        return headers

    def build_payload(self, profile: Profile, history: Sequence[Message], tools: Sequence[ToolSchema]) -> dict:
        payload = {
            "model": profile.model_id,
            "messages": self.encode_messages(history),
            "stream": True,
            "options": {
                "temperature": profile.temperature,
                "num_predict": profile.max_tokens,
            },
        }
        if tools:
            payload["tools"] = self.encode_tools(tools)
        return payload

    def encode_messages(self, history: Sequence[Message]) -> list[dict]:
        messages = []
        for msg in history:
            if msg.role is MessageRole.TOOL:
                messages.append(self.encode_tool_result(tool_result_of(msg)))
            elif msg.role is MessageRole.ASSISTANT and msg.tool_calls:
                messages.append({
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {"function": {"name": tc.tool_name, "arguments": tc.arguments}}
                        for tc in msg.tool_calls
                    ],
                })
            else:
                messages.append({"role": msg.role.value, "content": msg.content})
        return messages

    def encode_tool_result(self, result: ToolResult) -> dict:
        data = {"role": "tool", "content": error_text(result)}
        if result.tool_name:
            data["tool_name"] = result.tool_name
        return data

    def new_decoder(self) -> StreamDecoder:
        return OllamaStreamDecoder()
