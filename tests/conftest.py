from __future__ import annotations

import base64
import sys
from pathlib import Path
from typing import Any

import pytest
from mcp.server.fastmcp import FastMCP, Image

# 1x1 transparent PNG.
PNG_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="


def pytest_configure() -> None:
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if src.exists():
        sys.path.insert(0, str(src))


def _build_demo_server() -> FastMCP:
    # FastMCP resolves tool annotations against this module's globals.
    server = FastMCP("demo")

    @server.tool(description="Echo the given text back.")
    def echo(text: str) -> str:
        return text

    @server.tool(description="Generate an image from a prompt.")
    def gen_image(prompt: str) -> Image:
        _ = prompt
        return Image(data=base64.b64decode(PNG_B64), format="png")

    @server.tool(description="Always fails.")
    def explode() -> str:
        raise ValueError("boom")

    @server.prompt(description="Greet someone by name.")
    def greet(name: str) -> str:
        return f"Hello, {name}!"

    @server.resource("memo://note", name="note", description="A short note.", mime_type="text/plain")
    def note() -> str:
        return "remember the milk"

    return server


@pytest.fixture
def demo_server() -> Any:
    """A FastMCP server with echo/gen_image/explode tools, one prompt and one resource."""

    return _build_demo_server()


@pytest.fixture
def memory_transport() -> Any:
    """Factory for transports that talk to an in-process FastMCP server over memory streams."""

    import anyio
    from mcp.shared.memory import create_client_server_memory_streams

    from mcp_client.transport import Transport
    from mcp_client.types import TransportKind

    class MemoryTransport(Transport):
        kind = TransportKind.STDIO

        def __init__(self, server: Any, *, timeout_s: float = 30.0) -> None:
            super().__init__(timeout_s=timeout_s)
            self.server = server
            self.opened = 0
            self.closed = 0

        def describe(self) -> str:
            return f"memory://{self.server.name}"

        async def _enter(self, stack: Any) -> tuple[Any, Any]:
            client_streams, server_streams = await stack.enter_async_context(create_client_server_memory_streams())
            tg = await stack.enter_async_context(anyio.create_task_group())
            stack.callback(self._count_close)
            stack.callback(tg.cancel_scope.cancel)

            lowlevel = self.server._mcp_server
            server_read, server_write = server_streams

            async def run_server() -> None:
                await lowlevel.run(
                    server_read,
                    server_write,
                    lowlevel.create_initialization_options(),
                    raise_exceptions=False,
                )

            tg.start_soon(run_server)
            self.opened += 1
            return client_streams

        def _count_close(self) -> None:
            self.closed += 1

    return MemoryTransport
