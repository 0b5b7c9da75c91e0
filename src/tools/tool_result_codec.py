from __future__ import annotations

import json
from typing import Any

from core.errors import McpChatError, ServerNotConnectedError
from core.types import ToolImage
from mcp_client.types import ToolCallResult

_DEFAULT_IMAGE_MIME = "image/png"


def result_text(result: ToolCallResult) -> str:
    """Human/model-readable text of a tool result: text-bearing items joined with newlines."""

    return "\n".join(item.text for item in result.content if item.type in {"text", "resource"} and item.text)


def result_images(result: ToolCallResult) -> list[ToolImage]:
    out: list[ToolImage] = []
    for item in result.content:
        if item.type == "image" and item.data:
            out.append(ToolImage(mime_type=item.mime_type or _DEFAULT_IMAGE_MIME, data=item.data))
    return out


def not_found_text(tool_name: str) -> str:
    return f"Error: tool {tool_name!r} not found on any connected server"


def error_text(exc: BaseException) -> str:
    """Result string for a failed tool call. Never empty."""

    if isinstance(exc, ServerNotConnectedError):
        return f"Error: server {exc.server_id!r} not found or not connected"
    if isinstance(exc, McpChatError):
        return f"Error: {exc.message}"
    text = str(exc)
    return f"Error: {type(exc).__name__}: {text}" if text else f"Error: {type(exc).__name__}"


def function_response(*, text: str, images: list[ToolImage] | None = None, ok: bool = True) -> dict[str, Any]:
    """The function-result payload handed back to the model.

    Image bytes are never sent back; the model only learns how many were produced.
    """

    payload: dict[str, Any] = {"result": text} if ok else {"error": text}
    if images:
        payload["images"] = len(images)
    return payload


def dumps_response(payload: dict[str, Any]) -> str:
    """Serialize a function-result payload for an OpenAI tool message.

    Content should always be a JSON string, never a Python repr.
    """

    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
