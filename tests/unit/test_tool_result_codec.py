from __future__ import annotations

import json

from core.errors import ServerNotConnectedError, ToolExecutionError
from mcp_client.types import ContentItem, ToolCallResult
from tools.tool_result_codec import (
    dumps_response,
    error_text,
    function_response,
    not_found_text,
    result_images,
    result_text,
)


def test_result_text_joins_text_items_with_newlines() -> None:
    result = ToolCallResult(
        content=(
            ContentItem(type="text", text="line 1"),
            ContentItem(type="image", data="AAAA", mime_type="image/png"),
            ContentItem(type="text", text="line 2"),
        )
    )

    assert result_text(result) == "line 1\nline 2"


def test_result_images_default_mime() -> None:
    result = ToolCallResult(
        content=(
            ContentItem(type="image", data="AAAA", mime_type="image/jpeg"),
            ContentItem(type="image", data="BBBB"),
            ContentItem(type="image"),
        )
    )

    images = result_images(result)

    assert [(i.mime_type, i.data) for i in images] == [("image/jpeg", "AAAA"), ("image/png", "BBBB")]


def test_error_texts() -> None:
    assert "not found" in not_found_text("gen_image")
    assert "not found" in error_text(ServerNotConnectedError("img"))
    assert error_text(ToolExecutionError("explode", "boom")) == "Error: boom"
    assert error_text(RuntimeError()) == "Error: RuntimeError"


def test_function_response_shapes() -> None:
    assert function_response(text="ok") == {"result": "ok"}
    assert function_response(text="bad", ok=False) == {"error": "bad"}


def test_dumps_response_is_compact_json() -> None:
    s = dumps_response({"result": "héllo"})
    assert s == '{"result":"héllo"}'
    assert json.loads(s) == {"result": "héllo"}
