"""
Google Gemini `streamGenerateContent` (SSE mode).

Gemini names roles `user`/`model`, sends function calls as complete
`functionCall` parts, and rejects several JSON-Schema keywords in function
declarations, so tool schemas are sanitised before sending.
"""
import json
import logging
from typing import Sequence
from urllib.parse import quote

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
    sse_data,
)

from .base import BackendAdapter, object_schema, provider_error_kind, tool_result_of
from .ollama import synth_call_id

logger = logging.getLogger(__name__)

_UNSUPPORTED_SCHEMA_KEYS = {
    "additionalProperties", "$ref", "$defs", "$schema", "default", "optional",
    "maximum", "minimum", "exclusiveMaximum", "exclusiveMinimum",
    "oneOf", "anyOf", "allOf", "not", "pattern",
    "minLength", "maxLength", "minItems", "maxItems",
}


def sanitize_schema(schema: object) -> object:
    """Strip schema keywords Gemini function declarations do not accept."""
    if isinstance(schema, list):
        return [sanitize_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    cleaned = {k: v for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(cleaned.get("properties"), dict):
        cleaned["properties"] = {
            key: sanitize_schema(value) for key, value in cleaned["properties"].items()
        }
    if "items" in cleaned:
        cleaned["items"] = sanitize_schema(cleaned["items"])
    return cleaned


class GeminiStreamDecoder(StreamDecoder):
    """Decoder for Gemini SSE response chunks."""

    def __init__(self):
        self._finished = False

    def parse_event(self, raw_chunk: str) -> list[StreamEvent]:
        data = sse_data(raw_chunk)
        if data is None or self._finished:
            return []
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Undecodable stream chunk: {data[:200]}")]
        if not isinstance(chunk, dict):
            return [StreamError(BackendErrorKind.MALFORMED_RESPONSE, "Stream chunk is not an object")]

        error = chunk.get("error")
        if isinstance(error, dict):
            self._finished = True
            return [StreamError(provider_error_kind(str(error.get("status", ""))), str(error.get("message", error)))]

        candidates = expect_list(chunk.get("candidates"), "candidates")
        if not candidates:
            block_reason = expect_object(chunk.get("promptFeedback"), "promptFeedback").get("blockReason")
            if block_reason:
                self._finished = True
                return [StreamError(BackendErrorKind.SERVER, f"Prompt blocked: {block_reason}")]
            return []

        candidate = expect_object(candidates[0], "candidate")
        events: list[StreamEvent] = []
        content = expect_object(candidate.get("content"), "content")
        for part in expect_list(content.get("parts"), "parts"):
            part = expect_object(part, "part")
            if isinstance(part.get("text"), str) and part["text"] and not part.get("thought"):
                events.append(TextDelta(part["text"]))
            call = part.get("functionCall")
            if isinstance(call, dict):
                name = call.get("name")
                args = call.get("args") or {}
                if not isinstance(name, str) or not name or not isinstance(args, dict):
                    self._finished = True
                    events.append(StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Malformed functionCall: {call}"))
                    return events
                call_id = call.get("id") if isinstance(call.get("id"), str) and call.get("id") else synth_call_id()
                events.append(ToolCallComplete(ToolCall(id=call_id, tool_name=name, arguments=args)))

        finish_reason = candidate.get("finishReason")
        if finish_reason:
            self._finished = True
            events.append(TurnComplete(str(finish_reason)))
        return events


class GeminiAdapter(BackendAdapter):
    """Adapter for the Gemini generative language API."""

    kind = BackendKind.GEMINI

    def build_url(self, profile: Profile) -> str:
        endpoint = profile.endpoint or C.GEMINI_ENDPOINT_DEFAULT
        model = quote(profile.model_id, safe="")
        return f"{endpoint}/models/{model}:streamGenerateContent?alt=sse"

    def build_headers(self, profile: Profile) -> dict:
        return {"Content-Type": "application/json", "x-goog-api-key": profile.api_key}

    def build_payload(self, profile: Profile, history: Sequence[Message], tools: Sequence[ToolSchema]) -> dict:
        payload = {
            "contents": self.encode_messages(history),
            "generationConfig": {
                "temperature": profile.temperature,
                "maxOutputTokens": profile.max_tokens,
            },
        }
        system_parts = [{"text": m.content} for m in history if m.role is MessageRole.SYSTEM and m.content]
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        if tools:
            declarations = []
            for tool in tools:
                declaration = {"name": tool.name, "description": tool.description}
                params = sanitize_schema(object_schema(tool.input_schema))
                if params.get("properties"):
                    declaration["parameters"] = params
                declarations.append(declaration)
            payload["tools"] = [{"functionDeclarations": declarations}]
        return payload

    def encode_messages(self, history: Sequence[Message]) -> list[dict]:
        contents: list[dict] = []
        for msg in history:
            if msg.role is MessageRole.SYSTEM:
                continue
            if msg.role is MessageRole.TOOL:
                _append_merged(contents, "user", [self.encode_tool_result(tool_result_of(msg))])
            elif msg.role is MessageRole.ASSISTANT:
                parts = []
                if msg.content:
                    parts.append({"text": msg.content})
                for tc in msg.tool_calls:
                    parts.append({"functionCall": {"name": tc.tool_name, "args": tc.arguments}})
                if not parts:
                    parts.append({"text": ""})
                _append_merged(contents, "model", parts)
            else:
                _append_merged(contents, "user", [{"text": msg.content}])
        return contents

    def encode_tool_result(self, result: ToolResult) -> dict:
        key = "error" if result.is_error else "result"
        return {
            "functionResponse": {
                "name": result.tool_name,
                "response": {key: result.content},
            }
        }

    def new_decoder(self) -> StreamDecoder:
        return GeminiStreamDecoder()


def _append_merged(contents: list[dict], role: str, parts: list[dict]) -> None:
    if contents and contents[-1]["role"] == role:
        contents[-1]["parts"].extend(parts)
    else:
        contents.append({"role": role, "parts": list(parts)})
