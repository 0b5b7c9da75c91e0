"""MCP (Model Context Protocol) client-side integration.

This package intentionally avoids the top-level name `mcp` to prevent shadowing
the upstream MCP Python SDK module (`import mcp`).
"""

from __future__ import annotations

from .manager import ConnectionManager
from .session import SessionState, ToolServerSession
from .transport import Channel, SseTransport, StdioTransport, StreamableHttpTransport, Transport, build_transport
from .types import (
    ConnectionStatus,
    ContentItem,
    PromptArgument,
    PromptDescriptor,
    PromptMessage,
    PromptResult,
    ResourceContent,
    ResourceDescriptor,
    ServerConfig,
    ToolCallResult,
    ToolDescriptor,
    TransportKind,
)

__all__ = [
    "Channel",
    "ConnectionManager",
    "ConnectionStatus",
    "ContentItem",
    "PromptArgument",
    "PromptDescriptor",
    "PromptMessage",
    "PromptResult",
    "ResourceContent",
    "ResourceDescriptor",
    "ServerConfig",
    "SessionState",
    "SseTransport",
    "StdioTransport",
    "StreamableHttpTransport",
    "ToolCallResult",
    "ToolDescriptor",
    "ToolServerSession",
    "Transport",
    "TransportKind",
    "build_transport",
]
