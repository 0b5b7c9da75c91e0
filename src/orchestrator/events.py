from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from core.errors import McpChatError
from core.types import ToolCallRecord


class EventType(str, Enum):
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TEXT = "text"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One caller-facing event of a streamed turn.

    Wire forms:
    - JSON line: {"type": "<type>", "data": {...}}
    - SSE frame: "event: <type>\\ndata: <json>\\n\\n"
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def tool_call(cls, record: ToolCallRecord) -> "StreamEvent":
        return cls(
            EventType.TOOL_CALL,
            {"id": record.call_id, "name": record.name, "serverId": record.server_id, "args": dict(record.args)},
        )

    @classmethod
    def tool_result(cls, record: ToolCallRecord) -> "StreamEvent":
        data = record.to_dict()
        data["id"] = record.call_id
        return cls(EventType.TOOL_RESULT, data)

    @classmethod
    def text(cls, text: str) -> "StreamEvent":
        return cls(EventType.TEXT, {"text": text})

    @classmethod
    def error(cls, exc: BaseException) -> "StreamEvent":
        if isinstance(exc, McpChatError):
            return cls(EventType.ERROR, {"type": exc.error_type, "message": exc.message})
        return cls(EventType.ERROR, {"type": "internal_error", "message": str(exc) or type(exc).__name__})

    @classmethod
    def done(cls, records: Sequence[ToolCallRecord], *, iteration_limit_reached: bool = False) -> "StreamEvent":
        return cls(
            EventType.DONE,
            {
                "toolCalls": [r.to_dict() for r in records],
                "iterationLimitReached": iteration_limit_reached,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data}

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"

    def to_sse(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False)
        return f"event: {self.type.value}\ndata: {payload}\n\n"
