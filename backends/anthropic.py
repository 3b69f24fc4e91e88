"""
Anthropic Messages API.

System prompts travel in a top-level `system` field, tool results are
`tool_result` blocks inside a user message, and consecutive messages of the
same role must be merged. The stream is typed SSE: a `tool_use` content block
opens a call, `input_json_delta` events carry argument fragments and
`content_block_stop` closes it.
"""
import json
import logging
from typing import Sequence

import constants as C
from errors import BackendErrorKind
from models import BackendKind, Message, MessageRole, Profile, ToolResult, ToolSchema
from streaming import (
    StreamDecoder,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallDelta,
    TurnComplete,
    expect_object,
    sse_data,
)

from .base import BackendAdapter, ToolCallBuffer, object_schema, provider_error_kind, tool_result_of

logger = logging.getLogger(__name__)


class AnthropicStreamDecoder(StreamDecoder):
    """Decoder for Anthropic message stream events."""

    def __init__(self):
        self._buffer = ToolCallBuffer()
        self._stop_reason = "end_turn"
        self._finished = False

    def parse_event(self, raw_chunk: str) -> list[StreamEvent]:
        # `event:` lines repeat the type that is also inside the data payload
        data = sse_data(raw_chunk)
        if data is None or self._finished:
            return []
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Undecodable stream event: {data[:200]}")]
        if not isinstance(event, dict):
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, "Stream event is not an object")]

        event_type = event.get("type")
        index = int(event.get("index", 0) or 0)

        if event_type == "content_block_start":
            block = expect_object(event.get("content_block"), "content_block")
            if block.get("type") == "tool_use":
                self._buffer.add(index, block.get("id"), block.get("name"))
                # `input` is always {} here; the arguments follow as deltas
                return [ToolCallDelta(index, block.get("id"), block.get("name"), "")]
            text = block.get("text")
            if block.get("type") == "text" and text:
                return [TextDelta(text)]
            return []

        if event_type == "content_block_delta":
            delta = expect_object(event.get("delta"), "delta")
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [TextDelta(delta["text"])]
            if delta.get("type") == "input_json_delta":
                fragment = delta.get("partial_json") or ""
                self._buffer.add(index, fragment=fragment)
                return [ToolCallDelta(index, None, None, fragment)]
            return []

        if event_type == "content_block_stop":
            if index not in self._buffer:
                return []
            try:
                return [ToolCallComplete(self._buffer.complete(index))]
            except ValueError as e:
                self._finished = True
                return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, str(e))]

        if event_type == "message_delta":
            stop_reason = expect_object(event.get("delta"), "delta").get("stop_reason")
            if stop_reason:
                self._stop_reason = str(stop_reason)
            return []

        if event_type == "message_stop":
            self._finished = True
            if self._buffer:
                return [StreamError(
                    BackendErrorKind.MALFORMED_RESPONSE,
                    f"Message ended with unfinished tool call(s): {self._buffer.describe_pending()}",
                )]
            return [TurnComplete(self._stop_reason)]

        if event_type == "error":
            self._finished = True
            error = expect_object(event.get("error"), "error")
            return [StreamError(provider_error_kind(str(error.get("type", ""))), str(error.get("message", error)))]

        # message_start, ping and unknown event types carry nothing for us
        return []

    def finish(self) -> list[StreamEvent]:
        if not self._finished and self._buffer:
            return [StreamError(
                BackendErrorKind.MALFORMED_RESPONSE,
                f"Stream ended in the middle of tool call(s): {self._buffer.describe_pending()}",
            )]
        return []


class AnthropicAdapter(BackendAdapter):
    """Adapter for the Anthropic Messages API."""

    kind = BackendKind.ANTHROPIC

    def build_url(self, profile: Profile) -> str:
        return profile.endpoint or C.ANTHROPIC_ENDPOINT_DEFAULT

    def build_headers(self, profile: Profile) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": profile.api_key,
            "anthropic-version": C.ANTHROPIC_VERSION,
        }

    def build_payload(self, profile: Profile, history: Sequence[Message], tools: Sequence[ToolSchema]) -> dict:
        system_parts = [m.content for m in history if m.role is MessageRole.SYSTEM and m.content]
        payload = {
            "model": profile.model_id,
            "max_tokens": profile.max_tokens or C.ANTHROPIC_MAX_TOKENS_DEFAULT,
            "temperature": profile.temperature,
            "stream": True,
            "messages": self.encode_messages(history),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": object_schema(tool.input_schema),
                }
                for tool in tools
            ]
            payload["tool_choice"] = {"type": "auto"}
        return payload

    def encode_messages(self, history: Sequence[Message]) -> list[dict]:
        messages: list[dict] = []
        for msg in history:
            if msg.role is MessageRole.SYSTEM:
                continue
            if msg.role is MessageRole.TOOL:
                _append_merged(messages, "user", [self.encode_tool_result(tool_result_of(msg))])
            elif msg.role is MessageRole.ASSISTANT:
                blocks = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.tool_name, "input": tc.arguments})
                if not blocks:
                    blocks.append({"type": "text", "text": "(no content)"})
                _append_merged(messages, "assistant", blocks)
            else:
                _append_merged(messages, "user", [{"type": "text", "text": msg.content}])
        return messages

    def encode_tool_result(self, result: ToolResult) -> dict:
        return {
            "type": "tool_result",
            "tool_use_id": result.tool_call_id,
            "content": result.content,
            "is_error": result.is_error,
        }

    def new_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder()


def _append_merged(messages: list[dict], role: str, blocks: list[dict]) -> None:
    """Roles must alternate, so same-role neighbours share one message."""
    if messages and messages[-1]["role"] == role:
        messages[-1]["content"].extend(blocks)
    else:
        messages.append({"role": role, "content": list(blocks)})
