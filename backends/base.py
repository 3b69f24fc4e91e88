"""
Common backend adapter contract and HTTP plumbing.

Each backend family subclasses BackendAdapter and supplies the wire
translation: URL, headers, payload, message/tool encoding and a stream
decoder. Opening the request, mapping HTTP failures to BackendError kinds
and wrapping the response in a StreamingSession happen here, once.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Sequence

import aiohttp

import constants as C
from errors import BackendError, BackendErrorKind
from models import BackendKind, Message, MessageRole, Profile, ToolCall, ToolResult, ToolSchema
from streaming import StreamDecoder, StreamingSession

logger = logging.getLogger(__name__)


class BackendAdapter:
    """Base class for completion backends."""

    kind: BackendKind = BackendKind.OPENAI

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        """Initialize the adapter.

        Args:
            session: Shared HTTP session. When omitted the adapter creates
                and owns one.
        """
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        """Asynchronously initialize the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def __aenter__(self) -> "BackendAdapter":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Wire translation, provided by each backend

    def build_url(self, profile: Profile) -> str:
        raise NotImplementedError

    def build_headers(self, profile: Profile) -> dict:
        raise NotImplementedError

    def build_payload(self, profile: Profile, history: Sequence[Message], tools: Sequence[ToolSchema]) -> dict:
        raise NotImplementedError

    def encode_tool_result(self, result: ToolResult) -> dict:
        raise NotImplementedError

    def new_decoder(self) -> StreamDecoder:
        raise NotImplementedError

    async def start_completion(
        self,
        profile: Profile,
        history: Sequence[Message],
        tools: Sequence[ToolSchema],
    ) -> StreamingSession:
        """Issue a streaming completion request.

        Args:
            profile: Backend profile for this turn.
            history: Full conversation history.
            tools: Tool catalog to declare to the model.

        Returns:
            A StreamingSession over the response.

        Raises:
            BackendError: On connection failure or a non-200 response.
        """
        await self.initialize()
        url = self.build_url(profile)
        payload = self.build_payload(profile, history, tools)
        logger.info(
            "Payload ready: backend=%s model=%s messages=%d tools=%d",
            self.kind.value,
            profile.model_id,
            len(history),
            len(tools),
        )
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=C.API_CONNECT_TIMEOUT,
            sock_read=C.API_TIMEOUT,
        )
        try:
            resp = await self.session.post(
                url,
                json=payload,
                headers=self.build_headers(profile),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise BackendError(BackendErrorKind.NETWORK, f"Request to {self.kind.value} timed out") from e
        except aiohttp.ClientError as e:
            raise BackendError(BackendErrorKind.NETWORK, f"Failed to connect to {self.kind.value}: {e}") from e

        if resp.status != 200:
            try:
                error_text = await resp.text()
            except aiohttp.ClientError:
                error_text = ""
            finally:
                resp.release()
            raise status_error(resp.status, error_text, resp.headers.get("Retry-After"))

        return StreamingSession(
            _iter_lines(resp),
            self.new_decoder(),
            release=resp.close,
            label=f"{self.kind.value}:{profile.model_id}",
        )

    # Shared helpers for the OpenAI-shaped backends

    def encode_messages(self, history: Sequence[Message]) -> list[dict]:
        """Encode history as OpenAI-style chat messages."""
        messages = []
        for msg in history:
            if msg.role is MessageRole.TOOL:
                messages.append(self.encode_tool_result(tool_result_of(msg)))
            elif msg.role is MessageRole.ASSISTANT and msg.tool_calls:
                messages.append({
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.tool_name,
                                "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                messages.append({"role": msg.role.value, "content": msg.content})
        return messages

    def encode_tools(self, tools: Sequence[ToolSchema]) -> list[dict]:
        """Tool catalog as OpenAI-compatible function tools."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": object_schema(tool.input_schema),
                },
            }
            for tool in tools
        ]


async def _iter_lines(resp: aiohttp.ClientResponse):
    async for line in resp.content:
        yield line


def tool_result_of(msg: Message) -> ToolResult:
    """Rebuild the ToolResult a tool-role message was folded from."""
    return ToolResult(
        tool_call_id=msg.tool_call_id or "",
        content=msg.content,
        is_error=msg.is_error,
        tool_name=msg.tool_name or "",
    )


def error_text(result: ToolResult) -> str:
    """Tool content as shown to backends that have no error flag."""
    return f"Error: {result.content}" if result.is_error else result.content


def object_schema(schema: object) -> dict:
    """Tool parameters must be a JSON-Schema object."""
    if not isinstance(schema, dict) or not schema:
        return {"type": "object", "properties": {}}
    if schema.get("type") != "object":
        return {
            "type": "object",
            "properties": {"input": schema},
            "required": ["input"],
        }
    return schema


def status_error(status: int, body: str, retry_after: Optional[str] = None) -> BackendError:
    """Map an HTTP error status to a BackendError kind."""
    detail = _error_detail(body) or f"HTTP {status}"
    if status in (401, 403):
        return BackendError(BackendErrorKind.AUTHENTICATION, f"Authentication failed: {detail}", status=status)
    if status == 429:
        return BackendError(
            BackendErrorKind.RATE_LIMITED,
            f"Rate limited: {detail}",
            status=status,
            retry_after=parse_retry_after(retry_after),
        )
    return BackendError(BackendErrorKind.SERVER, f"API error {status}: {detail}", status=status)


def _error_detail(body: str) -> str:
    text = (body or "").strip()
    if not text:
        return ""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return text[:500]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def provider_error_kind(error_type: str) -> BackendErrorKind:
    """Classify an in-stream provider error by its type string."""
    error_type = (error_type or "").lower()
    if "rate" in error_type or "overloaded" in error_type or "exhausted" in error_type:
        return BackendErrorKind.RATE_LIMITED
    if "auth" in error_type or "permission" in error_type:
        return BackendErrorKind.AUTHENTICATION
    return BackendErrorKind.SERVER


class ToolCallBuffer:
    """Accumulates streamed tool-call fragments, keyed by call position.

    A call is only released once its id and name are known and its
    argument text parses as a JSON object.
    """

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def __bool__(self) -> bool:
        return bool(self._calls)

    def __contains__(self, index: int) -> bool:
        return index in self._calls

    def add(self, index: int, call_id: Optional[str] = None, name: Optional[str] = None, fragment: str = "") -> None:
        for value in (call_id, name, fragment):
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Tool call fragment at index {index} has a non-text field: {value!r}")
        entry = self._calls.setdefault(index, {"id": None, "name": None, "parts": []})
        if call_id and not entry["id"]:
            entry["id"] = call_id
        if name and not entry["name"]:
            entry["name"] = name
        if fragment:
            entry["parts"].append(fragment)

    def complete(self, index: int) -> ToolCall:
        """Pop and validate one call.

        Raises:
            ValueError: If the id or name is missing or the arguments are not
                a complete JSON object.
        """
        entry = self._calls.pop(index, None)
        if entry is None:
            raise ValueError(f"No tool call at index {index}")
        if not entry["id"] or not entry["name"]:
            raise ValueError(f"Tool call at index {index} has no id or name")
        raw_args = "".join(entry["parts"]).strip()
        if not raw_args:
            return ToolCall(id=entry["id"], tool_name=entry["name"], arguments={})
        try:
            args = json.loads(raw_args)
        except json.JSONDecodeError as e:
            raise ValueError(f"Incomplete arguments for tool call '{entry['name']}': {e}") from e
        if not isinstance(args, dict):
            raise ValueError(f"Arguments for tool call '{entry['name']}' are not an object")
        return ToolCall(id=entry["id"], tool_name=entry["name"], arguments=args)

    def complete_all(self) -> list[ToolCall]:
        return [self.complete(index) for index in sorted(self._calls)]

    def describe_pending(self) -> str:
        names = [str(entry["name"] or "?") for _, entry in sorted(self._calls.items())]
        return ", ".join(names)
