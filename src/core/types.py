from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    USER = "user"
    MODEL = "model"
    # Synthetic role carrying function results back to the model.
    FUNCTION = "function"


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str


@dataclass(frozen=True, slots=True)
class FunctionCall:
    """A function call requested by the model."""

    id: str
    name: str
    args: dict[str, Any]


@dataclass(frozen=True, slots=True)
class FunctionResult:
    id: str
    name: str
    response: dict[str, Any]


Part = Union[TextPart, FunctionCall, FunctionResult]


@dataclass(frozen=True, slots=True)
class Turn:
    """One conversation turn. Part order is significant."""

    role: Role
    parts: tuple[Part, ...]

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(role=Role.USER, parts=(TextPart(text),))

    @classmethod
    def model(cls, text: str) -> "Turn":
        return cls(role=Role.MODEL, parts=(TextPart(text),))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p for p in self.parts if isinstance(p, FunctionCall)]

    @property
    def function_results(self) -> list[FunctionResult]:
        return [p for p in self.parts if isinstance(p, FunctionResult)]

    def to_dict(self) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        for p in self.parts:
            if isinstance(p, TextPart):
                parts.append({"text": p.text})
            elif isinstance(p, FunctionCall):
                parts.append({"functionCall": {"id": p.id, "name": p.name, "args": dict(p.args)}})
            else:
                parts.append({"functionResponse": {"id": p.id, "name": p.name, "response": dict(p.response)}})
        return {"role": self.role.value, "parts": parts}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Turn":
        """Parse the transcript shape `{"role": ..., "parts": [{"text": ...}]}`."""

        try:
            role = Role(str(raw.get("role", "")))
        except ValueError as e:
            raise ValueError(f"unknown turn role: {raw.get('role')!r}") from e

        raw_parts = raw.get("parts")
        if not isinstance(raw_parts, list):
            raise ValueError("turn parts must be a list")

        parts: list[Part] = []
        for item in raw_parts:
            if not isinstance(item, dict):
                raise ValueError("turn part must be a mapping")
            if "text" in item:
                parts.append(TextPart(str(item["text"])))
            elif isinstance(item.get("functionCall"), dict):
                fc = item["functionCall"]
                parts.append(FunctionCall(id=str(fc.get("id", "")), name=str(fc["name"]), args=dict(fc.get("args") or {})))
            elif isinstance(item.get("functionResponse"), dict):
                fr = item["functionResponse"]
                parts.append(
                    FunctionResult(id=str(fr.get("id", "")), name=str(fr["name"]), response=dict(fr.get("response") or {}))
                )
            else:
                raise ValueError(f"unsupported turn part: {sorted(item.keys())}")

        return cls(role=role, parts=tuple(parts))


@dataclass(frozen=True, slots=True)
class ToolImage:
    """An image returned by a tool: inline base64 data or a resolved URL."""

    mime_type: str
    data: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if self.data is None and self.url is None:
            raise ValueError("ToolImage needs either data or url")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mimeType": self.mime_type}
        if self.url is not None:
            out["url"] = self.url
        else:
            out["data"] = self.data
        return out


@dataclass(slots=True)
class ToolCallRecord:
    """One tool invocation within a turn.

    Created when the call is dispatched; `result`, `duration_ms` and `images`
    are filled in once it returns or fails.
    """

    call_id: str
    name: str
    server_id: str | None
    args: dict[str, Any]
    result: str | None = None
    duration_ms: int | None = None
    images: list[ToolImage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "serverId": self.server_id,
            "args": dict(self.args),
        }
        if self.result is not None:
            out["result"] = self.result
        if self.duration_ms is not None:
            out["duration"] = self.duration_ms
        if self.images:
            out["images"] = [img.to_dict() for img in self.images]
        return out
