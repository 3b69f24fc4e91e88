"""
OpenAI-compatible chat completions (OpenAI, LM Studio, DeepSeek, vLLM, ...).

Streaming uses SSE `data:` lines terminated by `data: [DONE]`. Tool calls
arrive as `delta.tool_calls[i]` fragments: the first fragment of a call
carries its id and name, later ones only append to `function.arguments`.
"""
import json
import logging
from typing import Sequence

import constants as C
from errors import BackendErrorKind
from models import BackendKind, Message, Profile, ToolResult, ToolSchema
from streaming import (
    StreamDecoder,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolCallDelta,
    TurnComplete,
    expect_list,
    expect_object,
    sse_data,
)

from .base import BackendAdapter, ToolCallBuffer, error_text, provider_error_kind

logger = logging.getLogger(__name__)


class OpenAIStreamDecoder(StreamDecoder):
    """Decoder for OpenAI-style SSE chunks."""

    def __init__(self):
        self._buffer = ToolCallBuffer()
        self._finished = False

    def parse_event(self, raw_chunk: str) -> list[StreamEvent]:
        data = sse_data(raw_chunk)
        if data is None or self._finished:
            return []
        if data == "[DONE]":
            return self._finalize("stop")
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Undecodable stream chunk: {data[:200]}")]
        if not isinstance(chunk, dict):
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, "Stream chunk is not an object")]

        error = chunk.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            error_type = str(error.get("type") or error.get("code") or "") if isinstance(error, dict) else ""
            return [StreamError(provider_error_kind(error_type), str(message))]

        events: list[StreamEvent] = []
        for choice in expect_list(chunk.get("choices"), "choices"):
            choice = expect_object(choice, "choice")
            delta = expect_object(choice.get("delta"), "delta")
            text = delta.get("content")
            if isinstance(text, str) and text:
                events.append(TextDelta(text))
            for tc in expect_list(delta.get("tool_calls"), "tool_calls"):
                tc = expect_object(tc, "tool call")
                index = int(tc.get("index", 0))
                fn = expect_object(tc.get("function"), "function")
                fragment = fn.get("arguments") or ""
                if not isinstance(fragment, str):
                    # Some servers send already-parsed arguments
                    fragment = json.dumps(fragment)
                self._buffer.add(index, tc.get("id"), fn.get("name"), fragment)
                events.append(ToolCallDelta(index, tc.get("id"), fn.get("name"), fragment))
            finish_reason = choice.get("finish_reason")
            if finish_reason:
                events.extend(self._finalize(str(finish_reason)))
                break
        return events

    def _finalize(self, finish_reason: str) -> list[StreamEvent]:
        self._finished = True
        try:
            calls = self._buffer.complete_all()
        except ValueError as e:
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, str(e))]
        events: list[StreamEvent] = [ToolCallComplete(call) for call in calls]
        events.append(TurnComplete(finish_reason))
        return events

    def finish(self) -> list[StreamEvent]:
        if not self._finished and self._buffer:
            return [StreamError(
                BackendErrorKind.MALFORMED_RESPONSE,
                f"Stream ended in the middle of tool call(s): {self._buffer.describe_pending()}",
            )]
        return []


class OpenAIAdapter(BackendAdapter):
    """Adapter for OpenAI-compatible `/chat/completions` endpoints."""

    kind = BackendKind.OPENAI

    def build_url(self, profile: Profile) -> str:
        return f"{profile.endpoint or C.OPENAI_ENDPOINT_DEFAULT}{C.API_CHAT_COMPLETIONS}"

    def build_headers(self, profile: Profile) -> dict:
        headers = {"Content-Type": "application/json"}
        # Local servers usually run without a key
        if profile.api_key:
            headers["Authorization"] = f"Bearer {profile.api_key}"
        return headers

    def build_payload(self, profile: Profile, history: Sequence[Message], tools: Sequence[ToolSchema]) -> dict:
        payload = {
            "model": profile.model_id,
            "messages": self.encode_messages(history),
            "stream": True,
            "temperature": profile.temperature,
            "max_tokens": profile.max_tokens,
        }
        if tools:
            payload["tools"] = self.encode_tools(tools)
            payload["tool_choice"] = "auto"
        return payload

    def encode_tool_result(self, result: ToolResult) -> dict:
        return {
            "role": "tool",
            "tool_call_id": result.tool_call_id,
            "content": error_text(result),
        }

    def new_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder()


class CustomAdapter(OpenAIAdapter):
    """Any server speaking the OpenAI wire format at a user-given endpoint."""

    kind = BackendKind.CUSTOM
