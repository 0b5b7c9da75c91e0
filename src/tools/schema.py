from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mcp_client.types import ToolDescriptor

_SCALARS = {"string", "number", "integer", "boolean"}


@dataclass(frozen=True, slots=True)
class FunctionDeclaration:
    """A model-facing function declaration.

    `to_openai()` returns the OpenAI-compatible tool spec:
    {
      "type": "function",
      "function": {"name": ..., "description": ..., "parameters": {...}}
    }
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _node_type(node: dict[str, Any]) -> str | None:
    t = node.get("type")
    if isinstance(t, list):
        # ["string", "null"] and friends: first non-null member wins.
        t = next((x for x in t if x != "null"), None)
    if isinstance(t, str):
        return t
    if "properties" in node:
        return "object"
    if "items" in node:
        return "array"
    return None


def translate_schema(node: Any) -> dict[str, Any]:
    """Translate one tool-protocol schema node into a function-parameter schema node.

    - object: `properties` recursively, `required` kept
    - array: `items` recursively
    - string/number/integer/boolean: kept; string `enum` lists kept
    - anything else degrades to string
    - `description` is preserved at every level
    """

    if not isinstance(node, dict):
        return {"type": "string"}

    t = _node_type(node)
    out: dict[str, Any]

    if t == "object":
        props = node.get("properties")
        out = {
            "type": "object",
            "properties": {
                str(k): translate_schema(v) for k, v in (props.items() if isinstance(props, dict) else [])
            },
        }
        required = node.get("required")
        if isinstance(required, list):
            req = [r for r in required if isinstance(r, str)]
            if req:
                out["required"] = req
    elif t == "array":
        out = {"type": "array", "items": translate_schema(node.get("items", {"type": "string"}))}
    elif t in _SCALARS:
        out = {"type": t}
        enum = node.get("enum")
        if t == "string" and isinstance(enum, list) and enum:
            out["enum"] = [str(v) for v in enum]
    else:
        out = {"type": "string"}

    desc = node.get("description")
    if isinstance(desc, str) and desc:
        out["description"] = desc
    return out


def translate_parameters(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Top-level parameters: always an object schema, even when the tool declares none."""

    if not schema:
        return {"type": "object", "properties": {}}
    out = translate_schema(schema)
    if out.get("type") != "object":
        return {"type": "object", "properties": {}}
    return out


def tool_to_declaration(tool: ToolDescriptor) -> FunctionDeclaration:
    return FunctionDeclaration(
        name=tool.name,
        description=tool.description or "",
        parameters=translate_parameters(tool.input_schema),
    )
