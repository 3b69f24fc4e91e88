"""
Minimal MCP stdio server used for local testing of tool-server handling.

Tools: echo, add, slow (sleeps), crash (exits the process).

Flags:
    --hang           never answer `initialize` (handshake timeout)
    --page-size N    split tools/list into pages of N tools (nextCursor)
    --prefix TEXT    prepend TEXT to every tool name
    --ping           ping the client before answering each tools/call
"""
import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List

TOOLS: List[Dict] = [
    {
        "name": "echo",
        "description": "Return the given text unchanged",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo"}},
            "required": ["text"],
        },
    },
    {
        "name": "add",
        "description": "Add two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    },
    {
        "name": "slow",
        "description": "Sleep for the given number of seconds, then answer",
        "inputSchema": {
            "type": "object",
            "properties": {"seconds": {"type": "number", "default": 1}},
        },
    },
    {
        "name": "crash",
        "description": "Terminate the server process immediately",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


# -----------------------------
# Utility: safe stdout response
# -----------------------------
def send_response(req_id: Any, result: Any = None, error: str = None):
    if error:
        payload = {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32000, "message": error}}
    else:
        payload = {"jsonrpc": "2.0", "id": req_id, "result": result}
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def text_result(text: str, is_error: bool = False) -> Dict:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


# -----------------------------
# MCP Tool Handlers
# -----------------------------
class EchoServer:
    def __init__(self, hang: bool = False, page_size: int = 0, prefix: str = "", ping: bool = False):
        self.hang = hang
        self.page_size = page_size
        self.prefix = prefix
        self.ping = ping
        self.ping_count = 0

    def tool_list(self) -> List[Dict]:
        return [dict(tool, name=self.prefix + tool["name"]) for tool in TOOLS]

    async def handle_initialize(self, req_id: Any):
        if self.hang:
            return
        send_response(req_id, {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "echo", "version": "1.0.0"},
        })

    async def handle_tools_list(self, req_id: Any, params: Dict):
        tools = self.tool_list()
        if not self.page_size:
            send_response(req_id, {"tools": tools})
            return
        start = int(params.get("cursor") or 0)
        end = start + self.page_size
        result = {"tools": tools[start:end]}
        if end < len(tools):
            result["nextCursor"] = str(end)
        send_response(req_id, result)

    async def handle_tools_call(self, req_id: Any, params: Dict):
        name = str(params.get("name") or "")
        args = params.get("arguments") or {}
        if name.startswith(self.prefix):
            name = name[len(self.prefix):]
        if self.ping:
            self.ping_count += 1
            sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": f"ping-{self.ping_count}", "method": "ping"}) + "\n")
            sys.stdout.flush()
        try:
            if name == "echo":
                send_response(req_id, text_result(str(args.get("text", ""))))
            elif name == "add":
                send_response(req_id, text_result(str(float(args["a"]) + float(args["b"]))))
            elif name == "slow":
                seconds = float(args.get("seconds", 1))
                await asyncio.sleep(seconds)
                send_response(req_id, text_result(f"slept {seconds}s"))
            elif name == "crash":
                sys.stdout.flush()
                os._exit(3)
            else:
                send_response(req_id, error=f"Unknown tool: {name}")
        except (KeyError, TypeError, ValueError) as e:
            send_response(req_id, text_result(f"Invalid arguments: {e}", is_error=True))

    async def dispatch(self, req: Dict):
        req_id = req.get("id")
        method = req.get("method")
        params = req.get("params") or {}
        if method is None:
            return  # reply to one of our pings
        if req_id is None:
            return  # notification
        if method == "initialize":
            await self.handle_initialize(req_id)
        elif method == "tools/list":
            await self.handle_tools_list(req_id, params)
        elif method == "tools/call":
            await self.handle_tools_call(req_id, params)
        elif method == "ping":
            send_response(req_id, {})
        else:
            send_response(req_id, error=f"Unknown method: {method}")


# -----------------------------
# Main JSON-RPC Loop
# -----------------------------
async def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--hang", action="store_true")
    parser.add_argument("--page-size", type=int, default=0)
    parser.add_argument("--prefix", default="")
    parser.add_argument("--ping", action="store_true")
    opts = parser.parse_args(argv)
    server = EchoServer(hang=opts.hang, page_size=opts.page_size, prefix=opts.prefix, ping=opts.ping)

    loop = asyncio.get_running_loop()
    pending = set()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        try:
            req = json.loads(line)
        except json.JSONDecodeError as e:
            send_response(None, error=f"Parse error: {e}")
            continue
        # Calls run concurrently so a slow tool does not block the others
        task = asyncio.ensure_future(server.dispatch(req))
        pending.add(task)
        task.add_done_callback(pending.discard)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


if __name__ == "__main__":
    asyncio.run(main())
