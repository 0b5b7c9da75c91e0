from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.errors import ConfigError


def now_ms() -> int:
    return int(time.time() * 1000)


class TransportKind(str, Enum):
    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"

    @classmethod
    def parse(cls, value: Any, *, path: str = "transport") -> "TransportKind":
        raw = str(value or "").strip().lower()
        # Accept the spellings used by other MCP clients.
        if raw in {"streamable_http", "http"}:
            raw = cls.STREAMABLE_HTTP.value
        try:
            return cls(raw)
        except ValueError:
            raise ConfigError(f"unsupported transport: {value!r}", path=path) from None


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Configuration for one tool server.

    Transport parameters must match the transport kind: stdio needs `command`,
    streamable-http and sse need `url`. Validation runs on construction, so an
    invalid config never reaches a connect attempt.
    """

    id: str
    name: str
    transport: TransportKind
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    url: str | None = None
    headers: dict[str, str] | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        base = f"servers.{self.id}" if self.id else "servers"
        if not isinstance(self.id, str) or not self.id.strip():
            raise ConfigError("server id must be a non-empty string", path="servers")
        if not isinstance(self.transport, TransportKind):
            raise ConfigError(f"unsupported transport: {self.transport!r}", path=f"{base}.transport")

        if self.transport is TransportKind.STDIO:
            if not isinstance(self.command, str) or not self.command.strip():
                raise ConfigError("stdio transport requires command", path=f"{base}.command")
            if not all(isinstance(a, str) for a in self.args):
                raise ConfigError("must be a list of strings", path=f"{base}.args")
            if self.env is not None and not all(
                isinstance(k, str) and isinstance(v, str) for k, v in self.env.items()
            ):
                raise ConfigError("must be a dict[str, str]", path=f"{base}.env")
        else:
            if not isinstance(self.url, str) or not self.url.strip():
                raise ConfigError(f"{self.transport.value} transport requires url", path=f"{base}.url")
            if not self.url.startswith(("http://", "https://")):
                raise ConfigError("url must be http(s)", path=f"{base}.url")

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, server_id: str | None = None) -> "ServerConfig":
        """Build a config from a mapping.

        Both the stored wire keys (`transportType`, `createdAt`, `updatedAt`)
        and snake_case keys are accepted.
        """

        sid = server_id if server_id is not None else raw.get("id")
        if not isinstance(sid, str) or not sid.strip():
            raise ConfigError("server id must be a non-empty string", path="servers")
        base = f"servers.{sid}"

        transport = TransportKind.parse(
            raw.get("transport", raw.get("transportType", raw.get("transport_type"))),
            path=f"{base}.transport",
        )

        args = raw.get("args") or []
        if not isinstance(args, list):
            raise ConfigError("must be a list of strings", path=f"{base}.args")
        env = raw.get("env")
        if env is not None and not isinstance(env, dict):
            raise ConfigError("must be a dict[str, str]", path=f"{base}.env")
        headers = raw.get("headers")
        if headers is not None and not isinstance(headers, dict):
            raise ConfigError("must be a dict[str, str]", path=f"{base}.headers")

        created = raw.get("created_at", raw.get("createdAt"))
        updated = raw.get("updated_at", raw.get("updatedAt"))
        stamp = now_ms()

        return cls(
            id=sid,
            name=str(raw.get("name") or sid),
            transport=transport,
            command=raw.get("command"),
            args=tuple(args),
            env=dict(env) if env is not None else None,
            url=raw.get("url"),
            headers={str(k): str(v) for k, v in headers.items()} if headers else None,
            created_at=int(created) if created is not None else stamp,
            updated_at=int(updated) if updated is not None else stamp,
        )

    def revise(self, **changes: Any) -> "ServerConfig":
        """Return a new validated version of this config with `changes` applied."""

        if "id" in changes and changes["id"] != self.id:
            raise ConfigError("server id is immutable", path=f"servers.{self.id}.id")
        changes.setdefault("updated_at", max(now_ms(), self.updated_at + 1))
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "transportType": self.transport.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.transport is TransportKind.STDIO:
            out["command"] = self.command
            out["args"] = list(self.args)
            if self.env:
                out["env"] = dict(self.env)
        else:
            out["url"] = self.url
            if self.headers:
                out["headers"] = dict(self.headers)
        return out


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    server_id: str
    connected: bool
    error: str | None = None
    connected_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"serverId": self.server_id, "connected": self.connected}
        if self.error is not None:
            out["error"] = self.error
        if self.connected_at is not None:
            out["connectedAt"] = self.connected_at
        return out


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PromptArgument:
    name: str
    description: str | None = None
    required: bool = False


@dataclass(frozen=True, slots=True)
class PromptDescriptor:
    name: str
    description: str | None = None
    arguments: tuple[PromptArgument, ...] = ()


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    uri: str
    name: str | None = None
    description: str | None = None
    mime_type: str | None = None


@dataclass(frozen=True, slots=True)
class ContentItem:
    """One item of a tool result: `text`, `image` or `resource`."""

    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None


@dataclass(frozen=True, slots=True)
class ToolCallResult:
    content: tuple[ContentItem, ...]
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class PromptMessage:
    role: str
    content_type: str
    text: str | None = None


@dataclass(frozen=True, slots=True)
class PromptResult:
    messages: tuple[PromptMessage, ...]
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ResourceContent:
    uri: str
    mime_type: str | None = None
    text: str | None = None
    blob: str | None = None
