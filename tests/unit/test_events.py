from __future__ import annotations

import json

from core.errors import ModelCallError
from core.types import ToolCallRecord, ToolImage
from orchestrator.events import EventType, StreamEvent


def _record() -> ToolCallRecord:
    return ToolCallRecord(
        call_id="call_0",
        name="gen_image",
        server_id="img",
        args={"prompt": "a parrot"},
        result="",
        duration_ms=12,
        images=[ToolImage(mime_type="image/png", data="AAAA")],
    )


def test_tool_result_payload_uses_wire_keys() -> None:
    ev = StreamEvent.tool_result(_record())

    assert ev.type is EventType.TOOL_RESULT
    assert ev.data == {
        "id": "call_0",
        "name": "gen_image",
        "serverId": "img",
        "args": {"prompt": "a parrot"},
        "result": "",
        "duration": 12,
        "images": [{"mimeType": "image/png", "data": "AAAA"}],
    }


def test_done_carries_records_and_limit_flag() -> None:
    ev = StreamEvent.done([_record()], iteration_limit_reached=True)

    assert ev.data["iterationLimitReached"] is True
    assert [r["name"] for r in ev.data["toolCalls"]] == ["gen_image"]


def test_error_event_from_project_error() -> None:
    ev = StreamEvent.error(ModelCallError("model call failed: 503"))

    assert ev.data == {"type": "model_error", "message": "model call failed: 503"}


def test_json_line_and_sse_framing() -> None:
    ev = StreamEvent.text("hi")

    line = ev.to_json_line()
    assert line.endswith("\n")
    assert json.loads(line) == {"type": "text", "data": {"text": "hi"}}

    frame = ev.to_sse()
    assert frame == 'event: text\ndata: {"text": "hi"}\n\n'


def test_image_url_replaces_inline_data() -> None:
    img = ToolImage(mime_type="image/png", url="https://cdn.example/p.png")

    assert img.to_dict() == {"mimeType": "image/png", "url": "https://cdn.example/p.png"}
