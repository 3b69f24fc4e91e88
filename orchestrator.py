"""
Conversation orchestrator: the agentic turn loop.

One turn alternates model generation and tool execution until the model
answers without requesting tools:

    IDLE -> AWAITING_MODEL -> STREAMING_TEXT -> COMPLETED
                                   |
                                   v
              TOOL_CALL_DETECTED -> EXECUTING_TOOL -> INJECTING_RESULT
                                                          |
                                   AWAITING_MODEL <-------+

Before each request, history past the profile's summarize threshold is sent
with its older part folded into a summary (see `history.py`).

Any BackendError (or the round limit) moves the turn to FAILED. `cancel()`
returns the conversation to its pre-turn contents and the state to IDLE.
"""
import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import aiohttp

import constants as C
import history as history_ops
from backends import BackendAdapter, create_adapter
from errors import BackendError, BackendErrorKind, EngineError, LoopBoundExceeded, ToolServerError
from mcp_manager import ToolServerManager
from models import Conversation, Message, MessageRole, Profile, ToolCall, ToolResult
from models.updates import (
    AgentUpdate,
    AssistantDelta,
    ContextSummarized,
    StateChanged,
    ToolFinished,
    ToolStarted,
    TurnEnded,
    TurnStarted,
)
from profiles import ProfileRegistry
from storage import ConversationStore
from streaming import StreamError, StreamingSession, TextDelta, ToolCallComplete, ToolCallDelta, TurnComplete
from token_counter import count_messages_tokens
from tool_logger import ToolCallLogger

logger = logging.getLogger(__name__)


class TurnState(Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    STREAMING_TEXT = "streaming_text"
    TOOL_CALL_DETECTED = "tool_call_detected"
    EXECUTING_TOOL = "executing_tool"
    INJECTING_RESULT = "injecting_result"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of one `run`/`submit` call."""
    state: TurnState
    error: Optional[EngineError] = None
    cancelled: bool = False
    assistant_message: Optional[Message] = None
    tool_rounds: int = 0


class _TurnCancelled(Exception):
    """Internal signal: the user cancelled the running turn."""


class Orchestrator:
    """Runs turns for conversations against the active profile's backend."""

    def __init__(
        self,
        profiles: ProfileRegistry,
        tool_manager: Optional[ToolServerManager] = None,
        store: Optional[ConversationStore] = None,
        adapter_factory: Callable[..., BackendAdapter] = create_adapter,
        max_tool_rounds: int = C.MAX_TOOL_ROUNDS,
        on_update: Optional[Callable[[AgentUpdate], None]] = None,
        tool_logger: Optional[ToolCallLogger] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            profiles: Registry the turn's profile is resolved from.
            tool_manager: Source of ready tools and their invocation.
            store: Receives the messages of every completed or failed turn.
            adapter_factory: `(kind, session) -> BackendAdapter`.
            max_tool_rounds: Tool rounds allowed per turn.
            on_update: Presentation callback for incremental updates.
            tool_logger: Optional audit log of tool calls.
            http_session: Shared HTTP session passed to adapters.
        """
        self.profiles = profiles
        self.tool_manager = tool_manager
        self.store = store
        self.adapter_factory = adapter_factory
        self.max_tool_rounds = max_tool_rounds
        self.on_update = on_update
        self.tool_logger = tool_logger
        self.http_session = http_session
        self._state = TurnState.IDLE
        self._turn_id: Optional[str] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._delta_seq = 0
        self._tool_rounds = 0
        self._persisted_ids: set[str] = set()
        self._compacted: Optional[tuple[int, list[Message]]] = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._cancel_event is not None

    def cancel(self) -> bool:
        """Request cancellation of the running turn.

        Returns:
            True if a running turn will be cancelled.
        """
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        if self._state in (TurnState.COMPLETED, TurnState.FAILED):
            return False
        logger.info("Cancelling turn %s in state %s", self._turn_id, self._state.value)
        self._cancel_event.set()
        return True

    async def submit(self, conversation: Conversation, user_text: str, profile_name: Optional[str] = None) -> TurnResult:
        """Append a user message and run a turn for it."""
        if self.busy:
            raise EngineError("A turn is already running")
        conversation.add_message(Message.user(user_text))
        return await self.run(conversation, profile_name)

    async def run(self, conversation: Conversation, profile_name: Optional[str] = None) -> TurnResult:
        """Run one turn if the conversation is waiting for a response.

        A conversation that is already answered is left untouched: no
        adapter is created and the state does not change.

        Raises:
            ProfileNotFound: If `profile_name` is unknown.
            EngineError: If a turn is already running.
        """
        if not conversation.needs_response():
            logger.debug("Conversation %s needs no response; nothing to do", conversation.id)
            return TurnResult(self._state)
        if self.busy:
            raise EngineError("A turn is already running")

        # Resolved once: profile switches apply from the next turn
        profile = self.profiles.get(profile_name) if profile_name else self.profiles.get_default()
        adapter = self.adapter_factory(profile.backend_kind, self.http_session)
        base_len = len(conversation.messages)
        persist_from = base_len
        while persist_from > 0 and conversation.messages[persist_from - 1].role in (MessageRole.USER, MessageRole.SYSTEM):
            persist_from -= 1

        self._turn_id = uuid.uuid4().hex[:12]
        self._cancel_event = asyncio.Event()
        self._delta_seq = 0
        self._tool_rounds = 0
        self._compacted = None
        turn_id = self._turn_id
        logger.info("Turn %s started: profile=%s model=%s", turn_id, profile.name, profile.model_id)
        self._emit(TurnStarted(turn_id, profile.name, 1))

        try:
            assistant = await self._run_rounds(adapter, profile, conversation)
        except _TurnCancelled:
            self._rollback(conversation, base_len)
            return TurnResult(TurnState.IDLE, cancelled=True)
        except asyncio.CancelledError:
            self._rollback(conversation, base_len)
            raise
        except (BackendError, LoopBoundExceeded) as e:
            logger.error("Turn %s failed: %s", turn_id, e)
            self._set_state(TurnState.FAILED)
            self._persist(conversation, persist_from)
            self._emit(TurnEnded(turn_id, TurnState.FAILED.value, str(e)))
            return TurnResult(TurnState.FAILED, error=e, tool_rounds=self._tool_rounds)
        finally:
            self._cancel_event = None
            await adapter.close()

        self._set_state(TurnState.COMPLETED)
        self._persist(conversation, persist_from)
        logger.info("Turn %s completed after %d tool round(s)", turn_id, self._tool_rounds)
        self._emit(TurnEnded(turn_id, TurnState.COMPLETED.value))
        return TurnResult(TurnState.COMPLETED, assistant_message=assistant, tool_rounds=self._tool_rounds)

    async def _run_rounds(self, adapter: BackendAdapter, profile: Profile, conversation: Conversation):
        tool_rounds = 0
        while True:
            self._set_state(TurnState.AWAITING_MODEL)
            history = await self._prepare_history(adapter, profile, conversation)
            tools = self.tool_manager.ready_tools() if self.tool_manager is not None else []
            session = await self._until_cancelled(
                adapter.start_completion(profile, history, tools)
            )
            text, calls = await self._consume(session)

            if not calls:
                assistant = conversation.add_message(Message.assistant(text))
                return assistant

            self._set_state(TurnState.TOOL_CALL_DETECTED)
            tool_rounds += 1
            if tool_rounds > self.max_tool_rounds:
                raise LoopBoundExceeded(self.max_tool_rounds)
            self._tool_rounds = tool_rounds
            conversation.add_message(Message.assistant(text, calls))
            if self.tool_logger is not None:
                self.tool_logger.log_round(self._turn_id, tool_rounds, calls)

            results = await self._execute_tools(calls)

            self._set_state(TurnState.INJECTING_RESULT)
            for tc, result in zip(calls, results):
                conversation.add_message(Message.from_tool_result(result))
                self._emit(ToolFinished(self._turn_id, tc.id, tc.tool_name, result.content, result.is_error))
            logger.info("Turn %s: injected %d tool result(s), requesting continuation", self._turn_id, len(results))
            self._emit(TurnStarted(self._turn_id, profile.name, tool_rounds + 1))

    async def _consume(self, session: StreamingSession) -> tuple[str, list[ToolCall]]:
        """Drain one completion stream into (text, tool calls)."""
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        try:
            async with session:
                while True:
                    event = await self._until_cancelled(_next_event(session))
                    if event is None:
                        raise BackendError(BackendErrorKind.NETWORK, "Stream ended without a completion event")
                    if isinstance(event, TextDelta):
                        if self._state is not TurnState.STREAMING_TEXT:
                            self._set_state(TurnState.STREAMING_TEXT)
                        text_parts.append(event.text)
                        self._delta_seq += 1
                        self._emit(AssistantDelta(self._turn_id, event.text, self._delta_seq))
                    elif isinstance(event, ToolCallDelta):
                        continue
                    elif isinstance(event, ToolCallComplete):
                        calls.append(event.tool_call)
                    elif isinstance(event, TurnComplete):
                        break
                    elif isinstance(event, StreamError):
                        raise BackendError(event.kind, event.message)
        except _TurnCancelled:
            session.cancel()
            raise

        seen = set()
        for tc in calls:
            if tc.id in seen:
                raise BackendError(BackendErrorKind.MALFORMED_RESPONSE, f"Duplicate tool call id '{tc.id}'")
            seen.add(tc.id)
        return "".join(text_parts), calls

    async def _execute_tools(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Run every call concurrently and join them, keeping call order."""
        self._set_state(TurnState.EXECUTING_TOOL)
        for tc in calls:
            logger.info("Turn %s: calling tool %s (id=%s)", self._turn_id, tc.tool_name, tc.id)
            if self.tool_logger is not None:
                self.tool_logger.log_call(self._turn_id, tc)
            self._emit(ToolStarted(self._turn_id, tc.id, tc.tool_name, dict(tc.arguments)))
        # In-flight calls may have external side effects: they always run to
        # completion, a cancelled turn only discards their results.
        results = await self._until_cancelled(
            asyncio.gather(*(self._invoke(tc) for tc in calls)),
            let_finish=True,
        )
        if self.tool_logger is not None:
            for result in results:
                self.tool_logger.log_result(self._turn_id, result)
        return list(results)

    async def _invoke(self, tool_call: ToolCall) -> ToolResult:
        if self.tool_manager is None:
            return ToolResult(tool_call.id, f"Unknown tool '{tool_call.tool_name}'", True, tool_call.tool_name)
        try:
            result = await self.tool_manager.invoke_tool(tool_call)
        except ToolServerError as e:
            logger.warning("Tool %s failed: %s", tool_call.tool_name, e)
            result = ToolResult(tool_call.id, f"Tool execution failed: {e}", True, tool_call.tool_name)
        if result.tool_call_id != tool_call.id or not result.tool_name:
            result = dataclasses.replace(result, tool_call_id=tool_call.id, tool_name=tool_call.tool_name)
        return result

    async def _until_cancelled(self, aw: Awaitable, let_finish: bool = False):
        """Await `aw`, raising _TurnCancelled as soon as cancel() is called.

        With `let_finish`, the awaitable still runs to completion after a
        cancel and its result is dropped.
        """
        task = asyncio.ensure_future(aw)
        cancel_event = self._cancel_event
        if cancel_event is None:
            return await task
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            waiter.cancel()
            if not let_finish:
                task.cancel()
            raise
        if task in done:
            waiter.cancel()
            result = task.result()
            if cancel_event.is_set():
                if isinstance(result, StreamingSession):
                    result.cancel()
                raise _TurnCancelled()
            return result
        if let_finish:
            await asyncio.gather(task, return_exceptions=True)
        else:
            task.cancel()
            discarded = await asyncio.gather(task, return_exceptions=True)
            if isinstance(discarded[0], StreamingSession):
                discarded[0].cancel()
        raise _TurnCancelled()

    def _rollback(self, conversation: Conversation, length: int) -> None:
        dropped = len(conversation.messages) - length
        conversation.truncate(length)
        logger.info("Turn %s cancelled; discarded %d uncommitted message(s)", self._turn_id, dropped)
        self._set_state(TurnState.IDLE)
        self._emit(TurnEnded(self._turn_id, TurnState.IDLE.value, "cancelled"))

    def _persist(self, conversation: Conversation, start: int) -> None:
        if self.store is None:
            return
        for msg in conversation.messages[start:]:
            if msg.id in self._persisted_ids:
                continue
            try:
                self.store.append(conversation.id, msg)
            except EngineError as e:
                logger.error("Failed to persist message %s: %s", msg.id, e)
                return
            self._persisted_ids.add(msg.id)

    async def _prepare_history(
        self,
        adapter: BackendAdapter,
        profile: Profile,
        conversation: Conversation,
    ) -> list[Message]:
        """History for the next request, compacted under context pressure."""
        messages = conversation.snapshot()
        if self._compacted is not None:
            covered, prefix = self._compacted
            history = prefix + list(messages[covered:])
        else:
            history = list(messages)

        window = profile.get_context_window_size()
        used = await _count_tokens(history, profile.model_id)
        logger.debug("Context usage: %d / %d tokens", used, window)
        if history_ops.should_summarize(used, window, profile.summarize_threshold):
            compacted = await self._compact(adapter, profile, history, used)
            if compacted is not None:
                history, used = compacted
                self._compacted = (len(messages), history)

        if used > window * C.CONTEXT_WARN_RATIO:
            logger.warning(
                "Conversation %s uses %d of %d context tokens (%.0f%%)",
                conversation.id,
                used,
                window,
                100.0 * used / window,
            )
        return history

    async def _compact(self, adapter: BackendAdapter, profile: Profile, history: list[Message], used: int):
        """Fold older messages into a summary. Returns (history, tokens) or None."""
        older, recent = history_ops.split_for_summary(history)
        if not older:
            return None
        logger.info("Turn %s: context at %d tokens, summarizing %d older message(s)", self._turn_id, used, len(older))
        try:
            summary = await self._summarize(adapter, profile, older)
        except BackendError as e:
            logger.warning("Failed to summarize context, sending full history: %s", e)
            return None
        if not summary:
            logger.warning("Summarizer returned no text, sending full history")
            return None

        compacted = history_ops.compact_history(history, recent, summary)
        after = await _count_tokens(compacted, profile.model_id)
        saved = max(0, used - after)
        logger.info("Context summarized: %d -> %d messages, %d tokens saved", len(history), len(compacted), saved)
        self._emit(ContextSummarized(self._turn_id, len(history), len(compacted), saved))
        return compacted, after

    async def _summarize(self, adapter: BackendAdapter, profile: Profile, older: list[Message]) -> str:
        """Run one tool-less completion over `older` and return its text."""
        summary_profile = dataclasses.replace(
            profile,
            temperature=C.SUMMARY_TEMPERATURE,
            max_tokens=history_ops.summary_max_tokens(profile.get_context_window_size()),
        )
        session = await self._until_cancelled(
            adapter.start_completion(summary_profile, history_ops.summary_request(older), [])
        )
        parts: list[str] = []
        try:
            async with session:
                while True:
                    event = await self._until_cancelled(_next_event(session))
                    if event is None:
                        raise BackendError(BackendErrorKind.NETWORK, "Summary stream ended without a completion event")
                    if isinstance(event, TextDelta):
                        parts.append(event.text)
                    elif isinstance(event, TurnComplete):
                        break
                    elif isinstance(event, StreamError):
                        raise BackendError(event.kind, event.message)
        except _TurnCancelled:
            session.cancel()
            raise
        return "".join(parts).strip()

    def _set_state(self, state: TurnState) -> None:
        if state is self._state:
            return
        logger.debug("Turn %s: %s -> %s", self._turn_id, self._state.value, state.value)
        self._state = state
        self._emit(StateChanged(self._turn_id or "", state.value))

    def _emit(self, update: AgentUpdate) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(update)
        except Exception as e:
            logger.warning("Update callback failed for %s: %s", type(update).__name__, e)


async def _next_event(session: StreamingSession):
    """Next stream event, or None once the session is exhausted."""
    try:
        return await session.__anext__()
    except StopAsyncIteration:
        return None


async def _count_tokens(messages, model: str) -> int:
    """Token estimate computed off the event loop; tiktoken may load files."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, count_messages_tokens, list(messages), model)
