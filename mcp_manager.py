"""MCP tool-server lifecycle, capability discovery and invocation over stdio."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from typing import Iterable, Mapping, Optional, Union

import constants as C
from errors import ToolInvocationError, ToolServerError
from models import ToolCall, ToolResult, ToolSchema, ToolServerConfig, ToolServerState

logger = logging.getLogger(__name__)

_VALID_TOOL_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")


class ToolServerHandle:
    """Runtime state of one spawned tool server.

    Owned by ToolServerManager. Lifecycle:
        STOPPED -> STARTING -> HANDSHAKING -> READY
        STARTING | HANDSHAKING -> FAILED         (spawn or handshake error)
        READY -> STOPPING -> STOPPED             (stop)
        READY -> FAILED -> STOPPED               (process exited on its own)
    """

    def __init__(self, config: ToolServerConfig, handshake_timeout: float = C.HANDSHAKE_TIMEOUT):
        self.config = config
        self.handshake_timeout = handshake_timeout
        self.state = ToolServerState.STOPPED
        self.last_error: Optional[str] = None
        self._tools: dict[str, ToolSchema] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 1
        self._stopping = False
        # Serializes start/stop so a server is never spawned or stopped twice
        self.lifecycle_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_ready(self) -> bool:
        return self.state is ToolServerState.READY

    @property
    def catalog(self) -> dict[str, ToolSchema]:
        """Discovered tools; empty unless the server is READY."""
        if not self.is_ready:
            return {}
        return dict(self._tools)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def set_state(self, state: ToolServerState) -> None:
        if state is not self.state:
            logger.info("Tool server %s: %s -> %s", self.name, self.state.value, state.value)
            self.state = state

    async def start(self) -> None:
        """Spawn the process and run the capability handshake.

        Callers hold `lifecycle_lock`.

        Raises:
            ToolServerError: If the command cannot be launched or the
                handshake fails or times out.
        """
        self.last_error = None
        self._tools = {}
        self.set_state(ToolServerState.STARTING)

        executable = shutil.which(self.config.command)
        if executable is None:
            await self._fail(f"launch command not found: {self.config.command!r}")

        env = dict(os.environ)
        env.update(self.config.env)
        logger.info("Starting tool server %s: %s %s", self.name, executable, " ".join(self.config.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                executable,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=C.STDIO_LINE_LIMIT,
            )
        except OSError as e:
            await self._fail(f"failed to spawn {self.config.command!r}: {e}")

        self._reader_task = asyncio.ensure_future(self._read_stdout())
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self.set_state(ToolServerState.HANDSHAKING)

        try:
            await asyncio.wait_for(self._handshake(), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            await self._fail(f"handshake timed out after {self.handshake_timeout}s")
        except ToolServerError as e:
            await self._fail(e.message)
        except asyncio.CancelledError:
            await self.release()
            self.set_state(ToolServerState.STOPPED)
            raise

        self.set_state(ToolServerState.READY)
        logger.info("Tool server %s ready with %d tool(s): %s", self.name, len(self._tools), ", ".join(self._tools))

    async def _fail(self, message: str) -> None:
        self.last_error = message
        await self.release()
        self.set_state(ToolServerState.FAILED)
        raise ToolServerError(self.name, message)

    async def _handshake(self) -> None:
        response = await self.request(
            "initialize",
            {
                "protocolVersion": C.MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": C.APP_NAME, "version": C.APP_VERSION},
            },
        )
        if "error" in response:
            # Some servers reject initialize but still answer tools/list
            logger.warning("Tool server %s rejected initialize: %s", self.name, response.get("error"))
        await self.notify("notifications/initialized")

        tools: dict[str, ToolSchema] = {}
        params: dict = {}
        while True:
            response = await self.request("tools/list", params)
            if "error" in response:
                raise ToolServerError(self.name, f"tools/list failed: {_rpc_error_message(response)}")
            result = response.get("result")
            if not isinstance(result, dict):
                raise ToolServerError(self.name, "tools/list returned no result object")
            for schema in self._extract_tools(result):
                tools.setdefault(schema.name, schema)
            cursor = result.get("nextCursor")
            if not cursor:
                break
            params = {"cursor": cursor}
        self._tools = tools

    def _extract_tools(self, result: dict) -> list[ToolSchema]:
        """Normalize one tools/list page into ToolSchema values."""
        raw_tools = result.get("tools")
        if not isinstance(raw_tools, list):
            return []
        schemas = []
        for tool in raw_tools:
            if not isinstance(tool, dict):
                continue
            name = str(tool.get("name") or "").strip()
            if not _VALID_TOOL_NAME.match(name) or len(name) > C.TOOL_NAME_MAX_LEN:
                logger.warning("Tool server %s: skipping tool with unusable name %r", self.name, name)
                continue
            params = tool.get("inputSchema")
            if not isinstance(params, dict):
                params = tool.get("input_schema")
            if not isinstance(params, dict):
                params = {"type": "object", "properties": {}}
            description = str(tool.get("description") or f"MCP tool '{name}' from {self.name}").strip()
            schemas.append(ToolSchema(name=name, description=description, input_schema=params, server_name=self.name))
        return schemas

    async def request(self, method: str, params: dict, timeout: Optional[float] = None) -> dict:
        """Send one JSON-RPC request and await the response with the same id.

        Raises:
            ToolServerError: If the process is gone or exits before answering.
            asyncio.TimeoutError: If `timeout` elapses first.
        """
        req_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(req_id, None)

    async def notify(self, method: str, params: Optional[dict] = None) -> None:
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: dict) -> None:
        proc = self._process
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            raise ToolServerError(self.name, "stdio pipes unavailable")
        data = (json.dumps(message) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ToolServerError(self.name, f"write failed: {e}") from e

    async def _read_stdout(self) -> None:
        """Single reader: routes each response to the request that awaits it."""
        stdout = self._process.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("[%s] non-JSON output: %s", self.name, text[:200])
                    continue
                if isinstance(data, dict):
                    await self._dispatch(data)
        except (ValueError, ConnectionResetError, ToolServerError) as e:
            logger.warning("Tool server %s: reading stdout failed: %s", self.name, e)
        finally:
            self._on_stdout_closed()

    async def _dispatch(self, data: dict) -> None:
        if "method" in data:
            if data["method"] == "ping" and "id" in data:
                await self._send({"jsonrpc": "2.0", "id": data["id"], "result": {}})
            else:
                logger.debug("[%s] server message: %s", self.name, data.get("method"))
            return
        future = self._pending.get(data.get("id"))
        if future is None or future.done():
            logger.warning("Tool server %s: discarding unmatched response id=%r", self.name, data.get("id"))
            return
        future.set_result(data)

    async def _drain_stderr(self) -> None:
        try:
            async for line in self._process.stderr:
                logger.debug("[%s stderr] %s", self.name, line.decode("utf-8", errors="replace").rstrip())
        except (ValueError, ConnectionResetError):
            pass

    def _on_stdout_closed(self) -> None:
        returncode = self._process.returncode if self._process is not None else None
        self._fail_pending(ToolServerError(self.name, f"process exited (code {returncode})"))
        if self._stopping or self.state is not ToolServerState.READY:
            return
        self.last_error = f"process exited unexpectedly (code {returncode})"
        logger.error("Tool server %s: %s", self.name, self.last_error)
        self.set_state(ToolServerState.FAILED)
        self._cleanup_task = asyncio.ensure_future(self._cleanup_after_crash())

    async def _cleanup_after_crash(self) -> None:
        async with self.lifecycle_lock:
            if self.state is ToolServerState.FAILED:
                await self.release()
                self.set_state(ToolServerState.STOPPED)

    def _fail_pending(self, error: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def release(self) -> None:
        """Terminate the process and free its pipes and reader tasks."""
        self._stopping = True
        proc = self._process
        try:
            if proc is not None:
                if proc.stdin is not None and not proc.stdin.is_closing():
                    proc.stdin.close()
                if proc.returncode is None:
                    try:
                        proc.terminate()
                    except ProcessLookupError:
                        pass
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=C.PROCESS_STOP_TIMEOUT)
                    except asyncio.TimeoutError:
                        logger.warning("Tool server %s ignored terminate, killing", self.name)
                        proc.kill()
                        await proc.wait()
            current = asyncio.current_task()
            tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None and t is not current]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._fail_pending(ToolServerError(self.name, "server stopped"))
        finally:
            if proc is not None and proc.returncode is None:
                proc.kill()
            self._process = None
            self._reader_task = None
            self._stderr_task = None
            self._tools = {}
            self._stopping = False

    async def call_tool(self, tool_name: str, arguments: dict, timeout: float, tool_call_id: str = "") -> ToolResult:
        """Invoke one tool; every failure comes back as an error ToolResult."""
        if not self.is_ready:
            return ToolResult(tool_call_id, f"Tool server '{self.name}' is not ready ({self.state.value})", True, tool_name)
        if tool_name not in self._tools:
            return ToolResult(tool_call_id, f"Unknown tool '{tool_name}' on server '{self.name}'", True, tool_name)
        try:
            response = await self.request(
                "tools/call",
                {"name": tool_name, "arguments": arguments or {}},
                timeout=timeout,
            )
            content, is_error = _parse_call_response(response)
        except asyncio.TimeoutError:
            logger.warning("Tool %s on %s timed out after %ss", tool_name, self.name, timeout)
            return ToolResult(tool_call_id, f"Tool '{tool_name}' timed out after {timeout}s", True, tool_name)
        except (ToolServerError, ToolInvocationError) as e:
            logger.warning("Tool %s on %s failed: %s", tool_name, self.name, e)
            return ToolResult(tool_call_id, f"Tool execution failed: {e}", True, tool_name)
        return ToolResult(tool_call_id, content, is_error, tool_name)


def _rpc_error_message(response: dict) -> str:
    error = response.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def _parse_call_response(response: dict) -> tuple[str, bool]:
    """Extract (content, is_error) from a tools/call response.

    Raises:
        ToolInvocationError: If the response has neither a usable result
            nor an error.
    """
    if "error" in response:
        return f"Error: {_rpc_error_message(response)}", True
    result = response.get("result")
    if isinstance(result, str):
        return result, False
    if not isinstance(result, dict):
        raise ToolInvocationError(f"Malformed tools/call response: {str(response)[:200]}")
    is_error = bool(result.get("isError", False))
    content = result.get("content")
    if isinstance(content, list):
        parts = []
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and isinstance(item.get("text"), str):
                parts.append(item["text"])
            elif item.get("type") == "resource" and isinstance(item.get("resource"), dict):
                parts.append(str(item["resource"].get("text") or item["resource"].get("uri") or ""))
            else:
                parts.append(f"[{item.get('type', 'unknown')} content]")
        return "\n".join(parts), is_error
    if "structuredContent" in result:
        return json.dumps(result["structuredContent"], ensure_ascii=False), is_error
    raise ToolInvocationError(f"Malformed tools/call result: {str(result)[:200]}")


class ToolServerManager:
    """Owns every ToolServerHandle for one application run.

    Handles run independently: one server failing never affects the others.
    Use as an async context manager to guarantee every process is stopped.
    """

    def __init__(
        self,
        handshake_timeout: float = C.HANDSHAKE_TIMEOUT,
        call_timeout: float = C.TOOL_CALL_TIMEOUT,
    ):
        self.handshake_timeout = handshake_timeout
        self.call_timeout = call_timeout
        self._handles: dict[str, ToolServerHandle] = {}
        self._tool_owner: dict[str, str] = {}  # last known server per tool
        self._disabled_tools: set[str] = set()

    @property
    def handles(self) -> dict[str, ToolServerHandle]:
        return dict(self._handles)

    def get(self, name: str) -> Optional[ToolServerHandle]:
        return self._handles.get(name)

    async def start(self, config: ToolServerConfig) -> ToolServerHandle:
        """Start (or return the already running) server for `config`.

        Raises:
            ToolServerError: If spawning or the handshake fails. The handle
                stays registered in FAILED state.
        """
        handle = self._handles.get(config.name)
        if handle is None:
            handle = ToolServerHandle(config, handshake_timeout=self.handshake_timeout)
            self._handles[config.name] = handle
        async with handle.lifecycle_lock:
            if handle.is_ready:
                return handle
            handle.config = config
            await handle.start()
            for tool_name in handle.catalog:
                owner = self._tool_owner.setdefault(tool_name, handle.name)
                if owner != handle.name and self._handles.get(owner) is not None and self._handles[owner].is_ready:
                    logger.warning("Tool %s from %s is shadowed by server %s", tool_name, handle.name, owner)
                else:
                    self._tool_owner[tool_name] = handle.name
        return handle

    async def start_all(
        self,
        configs: Union[Mapping[str, ToolServerConfig], Iterable[ToolServerConfig]],
    ) -> dict[str, ToolServerHandle]:
        """Start servers concurrently; failures are logged, not raised."""
        if isinstance(configs, Mapping):
            configs = list(configs.values())
        configs = list(configs)
        results = await asyncio.gather(*(self.start(cfg) for cfg in configs), return_exceptions=True)
        for cfg, result in zip(configs, results):
            if isinstance(result, ToolServerError):
                logger.error("Failed to start tool server %s: %s", cfg.name, result.message)
            elif isinstance(result, BaseException):
                raise result
        return self.handles

    async def stop(self, handle: ToolServerHandle) -> None:
        """Stop a server and release its process and pipes."""
        async with handle.lifecycle_lock:
            if handle.state is ToolServerState.STOPPED and handle.pid is None:
                return
            if handle.is_ready:
                handle.set_state(ToolServerState.STOPPING)
            await handle.release()
            handle.set_state(ToolServerState.STOPPED)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(h) for h in list(self._handles.values())), return_exceptions=True)

    async def restart(self, name: str) -> ToolServerHandle:
        """Explicit restart; crashed servers are never restarted automatically."""
        handle = self._handles.get(name)
        if handle is None:
            raise ToolServerError(name, "unknown tool server")
        await self.stop(handle)
        return await self.start(handle.config)

    async def invoke(
        self,
        handle: ToolServerHandle,
        tool_name: str,
        arguments: dict,
        timeout: Optional[float] = None,
        tool_call_id: str = "",
    ) -> ToolResult:
        """Call a tool on one server. Never raises for tool failures."""
        return await handle.call_tool(
            tool_name,
            arguments,
            timeout=self.call_timeout if timeout is None else timeout,
            tool_call_id=tool_call_id,
        )

    async def invoke_tool(self, tool_call: ToolCall) -> ToolResult:
        """Route a model tool call to the ready server that provides it."""
        name = tool_call.tool_name
        if name in self._disabled_tools:
            return ToolResult(tool_call.id, f"Tool '{name}' is disabled", True, name)
        handle = self.find_handle(name)
        if handle is None:
            owner = self._tool_owner.get(name)
            owner_handle = self._handles.get(owner) if owner else None
            if owner_handle is not None:
                message = f"Tool '{name}' is unavailable: server '{owner}' is {owner_handle.state.value}"
                if owner_handle.last_error:
                    message += f" ({owner_handle.last_error})"
            else:
                message = f"Unknown tool '{name}'"
            return ToolResult(tool_call.id, message, True, name)
        return await self.invoke(handle, name, tool_call.arguments, tool_call_id=tool_call.id)

    def find_handle(self, tool_name: str) -> Optional[ToolServerHandle]:
        owner = self._tool_owner.get(tool_name)
        if owner and owner in self._handles and tool_name in self._handles[owner].catalog:
            return self._handles[owner]
        for handle in self._handles.values():
            if tool_name in handle.catalog:
                return handle
        return None

    def ready_tools(self) -> list[ToolSchema]:
        """Union of the catalogs of all READY servers, minus disabled tools.

        Each name is advertised with the schema of the server `find_handle`
        routes it to.
        """
        tools = []
        for handle in self._handles.values():
            for name, schema in handle.catalog.items():
                if name in self._disabled_tools or self.find_handle(name) is not handle:
                    continue
                tools.append(schema)
        return tools

    def set_tool_enabled(self, tool_name: str, enabled: bool) -> None:
        if enabled:
            self._disabled_tools.discard(tool_name)
        else:
            self._disabled_tools.add(tool_name)

    def is_tool_enabled(self, tool_name: str) -> bool:
        return tool_name not in self._disabled_tools

    async def __aenter__(self) -> "ToolServerManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop_all()
