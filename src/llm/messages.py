from __future__ import annotations

import json
from typing import Any, Iterable

from core.types import FunctionCall, FunctionResult, Role, TextPart, Turn
from tools.tool_result_codec import dumps_response


def _tool_call(call: FunctionCall) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": "function",
        "function": {
            "name": call.name,
            "arguments": json.dumps(call.args, ensure_ascii=False, separators=(",", ":")),
        },
    }


def tool_message(result: FunctionResult) -> dict[str, Any]:
    """Build an OpenAI-compatible tool message from a function result.

    Note:
    - OpenAI tool message content should be a JSON string.
    - We keep `name` for compatibility with OpenAI-compat providers that match by name.
    """

    return {
        "role": "tool",
        "tool_call_id": result.id,
        "name": result.name,
        "content": dumps_response(result.response),
    }


def turn_to_messages(turn: Turn) -> list[dict[str, Any]]:
    """One conversation turn may become several chat messages (one per function result)."""

    if turn.role is Role.USER:
        return [{"role": "user", "content": turn.text}]

    if turn.role is Role.MODEL:
        calls = turn.function_calls
        if not calls:
            return [{"role": "assistant", "content": turn.text}]
        msg: dict[str, Any] = {
            "role": "assistant",
            "content": turn.text or None,
            "tool_calls": [_tool_call(c) for c in calls],
        }
        return [msg]

    out = [tool_message(r) for r in turn.function_results]
    # Stray text in a function turn is kept as context rather than dropped.
    extra = [p.text for p in turn.parts if isinstance(p, TextPart) and p.text]
    if extra:
        out.append({"role": "user", "content": "\n".join(extra)})
    return out


def build_messages(turns: Iterable[Turn], *, system_prompt: str | None = None) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in turns:
        messages.extend(turn_to_messages(turn))
    return messages
