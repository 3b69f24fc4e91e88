"""Shared helpers for the test suite."""
import json
import os
import sys

from models import ToolServerConfig

ECHO_SERVER = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "mcp_servers", "echo_server.py")


def echo_config(name: str = "echo", *extra_args: str) -> ToolServerConfig:
    """Tool server config that runs the bundled echo server with this interpreter."""
    return ToolServerConfig(name=name, command=sys.executable, args=(ECHO_SERVER,) + tuple(extra_args))


def sse(*payloads) -> bytes:
    """Encode payloads as an SSE body; str payloads are sent as-is."""
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")
