"""Reassemble streamed function calls.

OpenAI-compatible endpoints stream a function call as a series of deltas: the
first delta of a call carries its id and name, later ones only the call's
`index` plus a fragment of the JSON arguments. Arguments are parsed once the
stream has ended; a call whose arguments do not parse is reported back instead
of raising, so one malformed call never fails the whole response.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any]
    raw_args: str


@dataclass(frozen=True)
class InvalidToolCall:
    """A tool call that could not be parsed into JSON args."""

    id: str
    name: str | None
    raw_args: str
    error: str


@dataclass
class _PendingCall:
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def raw_args(self) -> str:
        return "".join(self.fragments)


class ToolCallAccumulator:
    """Collect function-call deltas of one streamed response, in emission order."""

    def __init__(self) -> None:
        self._calls: dict[str, _PendingCall] = {}

    def _slot(self, delta: dict[str, Any]) -> _PendingCall:
        if delta.get("index") is not None:
            key = f"index:{delta['index']}"
        elif delta.get("id"):
            key = f"id:{delta['id']}"
        else:
            # Neither index nor id: the provider sent a complete call in one delta.
            key = f"pos:{len(self._calls)}"
        return self._calls.setdefault(key, _PendingCall())

    def add_chunk(self, chunk: dict[str, Any]) -> None:
        """Consume one delta: a dict with optional `index`, `id`, `name` and `args` (fragment)."""

        call = self._slot(chunk)
        if call.id is None and chunk.get("id"):
            call.id = str(chunk["id"])
        if call.name is None and chunk.get("name"):
            call.name = str(chunk["name"])
        fragment = chunk.get("args")
        if isinstance(fragment, str) and fragment:
            call.fragments.append(fragment)

    def add_chunks(self, chunks: list[dict[str, Any]]) -> None:
        for ch in chunks:
            if isinstance(ch, dict):
                self.add_chunk(ch)

    def finalize(self) -> list[ToolCall | InvalidToolCall]:
        """Parse every collected call, keeping emission order.

        Calls without a provider id get a synthetic `call_<n>` id, n being the
        emission position. Calls whose arguments do not parse stay in place as
        InvalidToolCall entries.
        """

        out: list[ToolCall | InvalidToolCall] = []

        for n, call in enumerate(self._calls.values()):
            call_id = call.id or f"call_{n}"
            raw = call.raw_args
            try:
                if not call.name:
                    raise ValueError("missing tool name")
                args = json.loads(raw) if raw.strip() else {}
                if not isinstance(args, dict):
                    raise ValueError("tool args must be a JSON object")
            except ValueError as exc:
                out.append(InvalidToolCall(id=call_id, name=call.name, raw_args=raw, error=str(exc)))
                continue
            out.append(ToolCall(id=call_id, name=call.name, args=args, raw_args=raw))

        return out
