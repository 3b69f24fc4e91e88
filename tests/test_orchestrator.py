"""
Tests for the orchestrator turn loop with scripted backends.
"""
import asyncio
import json
import logging
import threading
from unittest.mock import MagicMock

import pytest

import constants as C
from backends.openai import OpenAIStreamDecoder
from errors import BackendError, BackendErrorKind, LoopBoundExceeded
from mcp_manager import ToolServerManager
from models import BackendKind, Conversation, Message, MessageRole, Profile, ToolResult, ToolSchema, ToolServerState
from models.updates import AssistantDelta, ContextSummarized, ToolStarted
from orchestrator import Orchestrator, TurnState
from profiles import ProfileRegistry
from storage import InMemoryConversationStore
from streaming import StreamingSession
from tool_logger import ToolCallLogger

from .helpers import echo_config


def text(t):
    return {"choices": [{"delta": {"content": t}}]}


def tool(index, call_id, name, args):
    return {"choices": [{"delta": {"tool_calls": [
        {"index": index, "id": call_id, "function": {"name": name, "arguments": json.dumps(args)}}]}}]}


def finish(reason="stop"):
    return {"choices": [{"delta": {}, "finish_reason": reason}]}


async def sse_lines(chunks, delay):
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield f"data: {json.dumps(chunk)}"


class ScriptedAdapter:
    """Backend double: each start_completion plays the next scripted round."""

    def __init__(self, *rounds, delay: float = 0.0):
        self.rounds = list(rounds)
        self.delay = delay
        self.requests = []
        self.releases = MagicMock()
        self.closed = False

    async def start_completion(self, profile, history, tools):
        self.requests.append({"profile": profile, "history": list(history), "tools": [t.name for t in tools]})
        if not self.rounds:
            raise AssertionError("unexpected completion request")
        script = self.rounds.pop(0)
        if isinstance(script, BackendError):
            raise script
        return StreamingSession(sse_lines(script, self.delay), OpenAIStreamDecoder(), release=self.releases)

    async def close(self):
        self.closed = True


class FakeToolManager:
    """In-process tool manager double."""

    def __init__(self, names=("lookup",), delay: float = 0.0):
        self.names = names
        self.delay = delay
        self.calls = []
        self.finished = []

    def ready_tools(self):
        return [ToolSchema(n, f"{n} tool", {"type": "object", "properties": {}}, "fake") for n in self.names]

    async def invoke_tool(self, tool_call):
        self.calls.append(tool_call)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.finished.append(tool_call.id)
        return ToolResult(tool_call.id, f"{tool_call.tool_name} ok", False, tool_call.tool_name)


def registry(**profile_kwargs):
    profile = Profile(name="local", backend_kind=BackendKind.OLLAMA, model_id="m1", **profile_kwargs)
    return ProfileRegistry({"local": profile}, "local")


def orchestrator(adapter, tools=None, **kwargs):
    return Orchestrator(registry(), tools, adapter_factory=lambda kind, session=None: adapter, **kwargs)


def dump(conversation):
    return json.dumps([m.to_dict() for m in conversation.messages], sort_keys=True)


def tool_round(*calls, reason="tool_calls"):
    return [tool(i, cid, name, args) for i, (cid, name, args) in enumerate(calls)] + [finish(reason)]


# =============================================================================
# Completed turns
# =============================================================================

class TestCompletion:

    @pytest.mark.asyncio
    async def test_simple_answer(self):
        adapter = ScriptedAdapter([text("4"), finish()])
        orch = orchestrator(adapter)
        conv = Conversation()
        result = await orch.submit(conv, "2+2?")

        assert result.state is TurnState.COMPLETED
        assert orch.state is TurnState.COMPLETED
        assert [m.role for m in conv.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert conv.messages[-1].content == "4"
        assert result.assistant_message is conv.messages[-1]
        assert len(adapter.requests) == 1
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_deltas_forwarded_in_order(self):
        updates = []
        adapter = ScriptedAdapter([text("a"), text("b"), text("c"), finish()])
        orch = orchestrator(adapter, on_update=updates.append)
        await orch.submit(Conversation(), "hi")
        deltas = [u for u in updates if isinstance(u, AssistantDelta)]
        assert [d.text for d in deltas] == ["a", "b", "c"]
        assert [d.seq for d in deltas] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_turn(self):
        adapter = ScriptedAdapter([text("ok"), finish()])
        orch = orchestrator(adapter, on_update=MagicMock(side_effect=RuntimeError("ui gone")))
        result = await orch.submit(Conversation(), "hi")
        assert result.state is TurnState.COMPLETED

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, tmp_path):
        tools = FakeToolManager(names=("lookup", "other"))
        adapter = ScriptedAdapter(
            tool_round(("c1", "lookup", {"q": 1}), ("c2", "other", {})),
            [text("done"), finish()],
        )
        audit = ToolCallLogger(path=str(tmp_path / "tools.log"))
        orch = orchestrator(adapter, tools, tool_logger=audit)
        conv = Conversation()
        result = await orch.submit(conv, "go")
        audit.close()

        assert result.state is TurnState.COMPLETED
        assert result.tool_rounds == 1
        roles = [m.role for m in conv.messages]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.TOOL, MessageRole.ASSISTANT]
        assert [tc.id for tc in conv.messages[1].tool_calls] == ["c1", "c2"]
        assert [m.tool_call_id for m in conv.messages[2:4]] == ["c1", "c2"]
        assert adapter.requests[0]["tools"] == ["lookup", "other"]
        assert len(adapter.requests[1]["history"]) == 4
        log_text = (tmp_path / "tools.log").read_text(encoding="utf-8")
        assert "lookup" in log_text and "c2" in log_text

    @pytest.mark.asyncio
    async def test_messages_persisted_on_completion(self):
        store = InMemoryConversationStore()
        adapter = ScriptedAdapter(tool_round(("c1", "lookup", {})), [text("ok"), finish()])
        orch = orchestrator(adapter, FakeToolManager(), store=store)
        conv = Conversation()
        await orch.submit(conv, "hi")
        stored = store.read(conv.id)
        assert [m.id for m in stored] == [m.id for m in conv.messages]
        assert stored[1].tool_calls[0].id == "c1"

    @pytest.mark.asyncio
    async def test_context_pressure_warning(self, caplog):
        adapter = ScriptedAdapter([text("ok"), finish()])
        orch = Orchestrator(
            registry(context_window_size=10),
            adapter_factory=lambda kind, session=None: adapter,
        )
        with caplog.at_level(logging.WARNING, logger="orchestrator"):
            await orch.submit(Conversation(), "word " * 200)
        assert any("context tokens" in r.getMessage() for r in caplog.records)


# =============================================================================
# Idempotence
# =============================================================================

class TestReplay:

    @pytest.mark.asyncio
    async def test_completed_conversation_is_a_no_op(self):
        adapter = ScriptedAdapter([text("4"), finish()])
        orch = orchestrator(adapter)
        conv = Conversation()
        await orch.submit(conv, "2+2?")
        before = dump(conv)

        factory = MagicMock(side_effect=AssertionError("no adapter expected"))
        orch.adapter_factory = factory
        result = await orch.run(conv)

        factory.assert_not_called()
        assert dump(conv) == before
        assert result.state is TurnState.COMPLETED
        assert orch.state is TurnState.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_conversation_is_a_no_op(self):
        orch = orchestrator(ScriptedAdapter())
        result = await orch.run(Conversation())
        assert result.state is TurnState.IDLE


# =============================================================================
# Failures
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_backend_error_keeps_committed_messages(self):
        store = InMemoryConversationStore()
        adapter = ScriptedAdapter(
            tool_round(("c1", "lookup", {})),
            BackendError(BackendErrorKind.RATE_LIMITED, "slow down", status=429),
        )
        orch = orchestrator(adapter, FakeToolManager(), store=store)
        conv = Conversation()
        result = await orch.submit(conv, "go")

        assert result.state is TurnState.FAILED
        assert result.error.kind is BackendErrorKind.RATE_LIMITED
        assert [m.role for m in conv.messages] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL]
        assert len(store.read(conv.id)) == 3

    @pytest.mark.asyncio
    async def test_stream_error_discards_partial_text(self):
        adapter = ScriptedAdapter([text("partial"), {"error": {"message": "boom", "type": "server_error"}}])
        orch = orchestrator(adapter)
        conv = Conversation()
        result = await orch.submit(conv, "go")
        assert result.state is TurnState.FAILED
        assert result.error.kind is BackendErrorKind.SERVER
        assert [m.role for m in conv.messages] == [MessageRole.USER]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("chunk", [
        {"choices": [{"delta": "oops"}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c", "function": "oops"}]}}]},
    ])
    async def test_wrong_shape_chunk_fails_turn(self, chunk):
        store = InMemoryConversationStore()
        orch = orchestrator(ScriptedAdapter([chunk]), FakeToolManager(), store=store)
        conv = Conversation()
        result = await orch.submit(conv, "go")
        assert result.state is TurnState.FAILED
        assert orch.state is TurnState.FAILED
        assert result.error.kind is BackendErrorKind.MALFORMED_RESPONSE
        assert not orch.busy
        assert len(store.read(conv.id)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_tool_call_ids(self):
        adapter = ScriptedAdapter(tool_round(("same", "lookup", {}), ("same", "lookup", {})))
        tools = FakeToolManager()
        result = await orchestrator(adapter, tools).submit(Conversation(), "go")
        assert result.state is TurnState.FAILED
        assert result.error.kind is BackendErrorKind.MALFORMED_RESPONSE
        assert tools.calls == []

    @pytest.mark.asyncio
    async def test_round_count_equal_to_limit_succeeds(self):
        rounds = [tool_round((f"c{i}", "lookup", {})) for i in range(3)]
        adapter = ScriptedAdapter(*rounds, [text("done"), finish()])
        orch = orchestrator(adapter, FakeToolManager(), max_tool_rounds=3)
        result = await orch.submit(Conversation(), "go")
        assert result.state is TurnState.COMPLETED
        assert result.tool_rounds == 3

    @pytest.mark.asyncio
    async def test_round_limit_exceeded_by_one_fails(self):
        rounds = [tool_round((f"c{i}", "lookup", {})) for i in range(4)]
        adapter = ScriptedAdapter(*rounds, [text("never"), finish()])
        tools = FakeToolManager()
        orch = orchestrator(adapter, tools, max_tool_rounds=3)
        conv = Conversation()
        result = await orch.submit(conv, "go")

        assert result.state is TurnState.FAILED
        assert isinstance(result.error, LoopBoundExceeded)
        assert len(adapter.requests) == 4
        assert len(adapter.rounds) == 1
        assert [c.id for c in tools.calls] == ["c0", "c1", "c2"]
        assert conv.messages[-1].role is MessageRole.TOOL


# =============================================================================
# Tool servers
# =============================================================================

class TestWithToolServers:

    @pytest.mark.asyncio
    async def test_ready_and_failed_servers_in_one_round(self):
        async with ToolServerManager() as manager:
            await manager.start(echo_config("a"))
            b = await manager.start(echo_config("b", "--prefix", "b_"))
            crashed = await manager.invoke(b, "b_crash", {})
            assert crashed.is_error
            deadline = asyncio.get_running_loop().time() + 10
            while b.state is not ToolServerState.STOPPED:
                assert asyncio.get_running_loop().time() < deadline
                await asyncio.sleep(0.05)

            adapter = ScriptedAdapter(
                tool_round(("ta", "echo", {"text": "hi"}), ("tb", "b_echo", {"text": "hi"})),
                [text("one tool failed"), finish()],
            )
            orch = orchestrator(adapter, manager)
            conv = Conversation()
            result = await orch.submit(conv, "use both")

        assert result.state is TurnState.COMPLETED
        tool_msgs = [m for m in conv.messages if m.role is MessageRole.TOOL]
        assert len(tool_msgs) == 2
        by_id = {m.tool_call_id: m for m in tool_msgs}
        assert by_id["ta"].is_error is False
        assert by_id["ta"].content == "hi"
        assert by_id["tb"].is_error is True
        assert "b" in by_id["tb"].content
        assert len(adapter.requests) == 2


# =============================================================================
# Cancellation
# =============================================================================

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_stream_restores_conversation(self):
        store = InMemoryConversationStore()
        adapter = ScriptedAdapter([text("a"), text("b"), text("c"), finish()], delay=0.1)
        orch = orchestrator(adapter, store=store)
        conv = Conversation()
        conv.add_message(Message.user("long answer please"))
        before = dump(conv)

        def on_update(update):
            if isinstance(update, AssistantDelta):
                orch.cancel()

        orch.on_update = on_update
        result = await orch.run(conv)

        assert result.cancelled
        assert result.state is TurnState.IDLE
        assert orch.state is TurnState.IDLE
        assert dump(conv) == before
        adapter.releases.assert_called_once()
        assert store.read(conv.id) == []
        assert not orch.busy

    @pytest.mark.asyncio
    async def test_cancel_during_tools_lets_them_finish(self):
        tools = FakeToolManager(delay=0.2)
        adapter = ScriptedAdapter(tool_round(("c1", "lookup", {})), [text("never"), finish()])
        orch = orchestrator(adapter, tools)
        conv = Conversation()
        conv.add_message(Message.user("go"))
        before = dump(conv)

        def on_update(update):
            if isinstance(update, ToolStarted):
                orch.cancel()

        orch.on_update = on_update
        result = await orch.run(conv)

        assert result.cancelled
        assert tools.finished == ["c1"]
        assert dump(conv) == before
        assert len(adapter.requests) == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_rolls_back(self):
        adapter = ScriptedAdapter([text("a"), text("b"), finish()], delay=0.2)
        orch = orchestrator(adapter)
        conv = Conversation()
        conv.add_message(Message.user("hi"))
        before = dump(conv)

        task = asyncio.ensure_future(orch.run(conv))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert dump(conv) == before
        assert orch.state is TurnState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_without_turn(self):
        orch = orchestrator(ScriptedAdapter())
        assert orch.cancel() is False


# =============================================================================
# Context pressure
# =============================================================================

def long_conversation(pairs=12):
    conv = Conversation()
    for i in range(pairs):
        conv.add_message(Message.user(f"question {i} " + "word " * 40))
        conv.add_message(Message.assistant(f"answer {i} " + "word " * 40))
    return conv


def small_window_orchestrator(adapter, tools=None, **kwargs):
    return Orchestrator(
        registry(context_window_size=1000),
        tools,
        adapter_factory=lambda kind, session=None: adapter,
        **kwargs,
    )


class TestContextSummary:

    @pytest.mark.asyncio
    async def test_older_history_is_summarized(self):
        updates = []
        store = InMemoryConversationStore()
        adapter = ScriptedAdapter([text("Earlier: questions 0 to 7."), finish()], [text("done"), finish()])
        orch = small_window_orchestrator(adapter, FakeToolManager(), store=store, on_update=updates.append)
        conv = long_conversation()
        before = [m.id for m in conv.messages]

        result = await orch.submit(conv, "latest")

        assert result.state is TurnState.COMPLETED
        summary_request = adapter.requests[0]
        assert summary_request["tools"] == []
        assert summary_request["profile"].temperature == C.SUMMARY_TEMPERATURE
        assert summary_request["history"][0].role is MessageRole.SYSTEM
        assert "question 0" in summary_request["history"][1].content
        assert "latest" not in summary_request["history"][1].content

        sent = adapter.requests[1]["history"]
        assert sent[0].role is MessageRole.SYSTEM
        assert "Earlier: questions 0 to 7." in sent[0].content
        assert [m.id for m in sent[1:]] == [m.id for m in conv.messages[15:25]]
        assert adapter.requests[1]["tools"] == ["lookup"]

        # The committed conversation is never rewritten
        assert [m.id for m in conv.messages[:24]] == before
        assert len(conv.messages) == 26
        assert all("Earlier" not in m.content for m in store.read(conv.id))

        summarized = [u for u in updates if isinstance(u, ContextSummarized)]
        assert len(summarized) == 1
        assert (summarized[0].old_count, summarized[0].new_count) == (25, 11)
        assert summarized[0].tokens_saved > 0

    @pytest.mark.asyncio
    async def test_summary_reused_across_tool_rounds(self):
        adapter = ScriptedAdapter(
            [text("Summary."), finish()],
            tool_round(("c1", "lookup", {})),
            [text("done"), finish()],
        )
        orch = small_window_orchestrator(adapter, FakeToolManager())
        conv = long_conversation()
        result = await orch.submit(conv, "latest")

        assert result.state is TurnState.COMPLETED
        assert len(adapter.requests) == 3
        continuation = adapter.requests[2]["history"]
        assert "Summary." in continuation[0].content
        assert len(continuation) == 13
        assert [m.id for m in continuation[-2:]] == [m.id for m in conv.messages[25:27]]

    @pytest.mark.asyncio
    async def test_failed_summary_sends_full_history(self, caplog):
        adapter = ScriptedAdapter(
            BackendError(BackendErrorKind.SERVER, "summarizer down", status=500),
            [text("done"), finish()],
        )
        orch = small_window_orchestrator(adapter)
        conv = long_conversation()
        with caplog.at_level(logging.WARNING, logger="orchestrator"):
            result = await orch.submit(conv, "latest")

        assert result.state is TurnState.COMPLETED
        assert len(adapter.requests[1]["history"]) == 25
        assert any("Failed to summarize" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_cancel_during_summary_restores_conversation(self):
        adapter = ScriptedAdapter([text("a"), text("b"), finish()], delay=0.2)
        orch = small_window_orchestrator(adapter)
        conv = long_conversation()
        conv.add_message(Message.user("latest"))
        before = dump(conv)

        task = asyncio.ensure_future(orch.run(conv))
        await asyncio.sleep(0.3)
        assert orch.cancel()
        result = await task
        assert result.cancelled
        assert dump(conv) == before
        assert len(adapter.requests) == 1

    @pytest.mark.asyncio
    async def test_backend_default_window_applies(self, monkeypatch, caplog):
        monkeypatch.setitem(C.CONTEXT_WINDOW_DEFAULTS, "ollama", 50)
        adapter = ScriptedAdapter([text("ok"), finish()])
        orch = orchestrator(adapter)
        with caplog.at_level(logging.WARNING, logger="orchestrator"):
            await orch.submit(Conversation(), "word " * 200)
        assert any("of 50 context tokens" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_tokens_counted_off_the_event_loop(self, monkeypatch):
        threads = []

        def counting(messages, model=None):
            threads.append(threading.current_thread())
            return 1

        monkeypatch.setattr("orchestrator.count_messages_tokens", counting)
        await orchestrator(ScriptedAdapter([text("ok"), finish()])).submit(Conversation(), "hi")
        assert threads
        assert threading.main_thread() not in threads


# =============================================================================
# System prompt
# =============================================================================

class TestSystemPrompt:

    @pytest.mark.asyncio
    async def test_system_prompt_sent_and_persisted(self):
        store = InMemoryConversationStore()
        adapter = ScriptedAdapter([text("ok"), finish()])
        orch = orchestrator(adapter, store=store)
        conv = Conversation()
        conv.add_message(Message.system("Answer briefly."))

        await orch.submit(conv, "hi")

        assert adapter.requests[0]["history"][0].content == "Answer briefly."
        stored = store.read(conv.id)
        assert [m.role for m in stored] == [MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT]
