"""
Audit log of tool calls made during agentic turns.
"""
import json
import logging
import os
from typing import Optional

from models import ToolCall, ToolResult

AUDIT_LOGGER_NAME = "deskagent.tools"


class ToolCallLogger:
    """Writes one line per tool round, call and result.

    Lines go to the `deskagent.tools` logger; pass `path` to also write them
    to a dedicated file.
    """

    def __init__(self, path: Optional[str] = None, max_content_chars: int = 500):
        self.max_content_chars = max_content_chars
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self._handler: Optional[logging.Handler] = None
        if path:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            self._handler = logging.FileHandler(path, encoding="utf-8")
            self._handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
            self.logger.addHandler(self._handler)
            self.logger.setLevel(logging.INFO)

    def log_round(self, turn_id: str, round_no: int, tool_calls: list[ToolCall]) -> None:
        self.logger.info(
            "turn=%s round=%d calls=%s",
            turn_id,
            round_no,
            ",".join(tc.tool_name for tc in tool_calls),
        )

    def log_call(self, turn_id: str, tool_call: ToolCall) -> None:
        self.logger.info(
            "turn=%s call id=%s tool=%s args=%s",
            turn_id,
            tool_call.id,
            tool_call.tool_name,
            json.dumps(tool_call.arguments, ensure_ascii=False, sort_keys=True),
        )

    def log_result(self, turn_id: str, result: ToolResult) -> None:
        content = result.content
        if len(content) > self.max_content_chars:
            content = content[: self.max_content_chars] + "..."
        self.logger.info(
            "turn=%s result id=%s tool=%s error=%s content=%r",
            turn_id,
            result.tool_call_id,
            result.tool_name,
            result.is_error,
            content,
        )

    def close(self) -> None:
        if self._handler is not None:
            self.logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
