"""Transport adapters for MCP tool servers.

Each adapter opens a duplex message channel to one tool server:

- StdioTransport: child process, messages over stdin/stdout
- StreamableHttpTransport: MCP "Streamable HTTP"
- SseTransport: HTTP + server-sent events

The message framing itself is delegated to the upstream MCP Python SDK
transport clients. The adapter picks one of them, owns the resulting streams
and tears them down on close. A failure to establish the channel is always
reported as TransportError, before any session exists.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Any, cast

import httpx

from core.errors import TransportError
from observability.logging import get_logger

from .types import ServerConfig, TransportKind


def exception_summary(exc: BaseException) -> str:
    """Readable one-line description of `exc`.

    Failures inside the SDK's task groups arrive wrapped in exception groups;
    the first leaf is the interesting one.
    """

    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class Channel:
    """An open duplex message channel.

    `receive()` yields SDK session messages (or exceptions raised by the
    transport); `send()` writes one message. `close()` releases everything the
    transport acquired, including the child process for stdio.
    """

    def __init__(self, *, read_stream: Any, write_stream: Any, stack: AsyncExitStack, label: str) -> None:
        self.read_stream = read_stream
        self.write_stream = write_stream
        self.label = label
        self._stack = stack
        self._closed = False

    @property
    def streams(self) -> tuple[Any, Any]:
        """The (read, write) SDK streams, for handing the channel to a protocol client."""

        return self.read_stream, self.write_stream

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: Any) -> None:
        await self.write_stream.send(message)

    async def receive(self) -> Any:
        return await self.read_stream.receive()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()


class Transport(ABC):
    """Opens channels of one transport kind."""

    kind: TransportKind

    def __init__(self, *, timeout_s: float = 30.0) -> None:
        self.timeout_s = float(timeout_s)
        self._log = get_logger("mcpchat.transport")

    @abstractmethod
    async def _enter(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        """Enter the SDK transport context on `stack`; return (read, write) streams."""

    @abstractmethod
    def describe(self) -> str:
        ...

    async def open(self) -> Channel:
        stack = AsyncExitStack()
        try:
            read_stream, write_stream = await self._enter(stack)
        except asyncio.CancelledError:
            await stack.aclose()
            raise
        except Exception as e:  # noqa: BLE001
            try:
                await stack.aclose()
            except Exception:  # noqa: BLE001
                self._log.warning("transport_cleanup_failed", transport=self.kind.value, target=self.describe())
            raise TransportError(
                f"failed to open {self.kind.value} transport to {self.describe()}: {exception_summary(e)}",
                details={"transport": self.kind.value, "exc": type(e).__name__},
            ) from e

        self._log.debug("transport_open", transport=self.kind.value, target=self.describe())
        return Channel(read_stream=read_stream, write_stream=write_stream, stack=stack, label=self.describe())


class StdioTransport(Transport):
    """Spawn the tool server as a child process and talk over its stdin/stdout.

    The SDK terminates the process when the channel is closed.
    """

    kind = TransportKind.STDIO

    def __init__(
        self,
        *,
        command: str,
        args: list[str] | tuple[str, ...] = (),
        env: dict[str, str] | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.command = command
        self.args = list(args)
        self.env = dict(env) if env else None

    def describe(self) -> str:
        return " ".join([self.command, *self.args])

    async def _enter(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        from mcp.client.stdio import StdioServerParameters, stdio_client

        params = StdioServerParameters(command=self.command, args=self.args, env=self.env)
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
        return read_stream, write_stream


class StreamableHttpTransport(Transport):
    """MCP Streamable HTTP transport (long-lived HTTP streaming)."""

    kind = TransportKind.STREAMABLE_HTTP

    def __init__(
        self,
        *,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float = 30.0,
        sse_read_timeout_s: float = 300.0,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.url = url
        self.headers = dict(headers or {})
        self.sse_read_timeout_s = float(sse_read_timeout_s)

    def describe(self) -> str:
        return self.url

    async def _enter(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        from mcp.client.streamable_http import streamable_http_client

        http_client = await stack.enter_async_context(
            httpx.AsyncClient(
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout_s, read=self.sse_read_timeout_s),
                follow_redirects=True,
            )
        )
        read_stream, write_stream, _get_session_id = await stack.enter_async_context(
            streamable_http_client(self.url, http_client=http_client)
        )
        return read_stream, write_stream


class SseTransport(Transport):
    """Legacy MCP HTTP+SSE transport."""

    kind = TransportKind.SSE

    def __init__(
        self,
        *,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float = 30.0,
        sse_read_timeout_s: float = 300.0,
    ) -> None:
        super().__init__(timeout_s=timeout_s)
        self.url = url
        self.headers = dict(headers or {})
        self.sse_read_timeout_s = float(sse_read_timeout_s)

    def describe(self) -> str:
        return self.url

    async def _enter(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        from mcp.client.sse import sse_client

        read_stream, write_stream = await stack.enter_async_context(
            sse_client(
                self.url,
                headers=self.headers or None,
                timeout=self.timeout_s,
                sse_read_timeout=self.sse_read_timeout_s,
            )
        )
        return read_stream, write_stream


def build_transport(cfg: ServerConfig, *, timeout_s: float = 30.0) -> Transport:
    """Select the transport for `cfg`. This is the only place that branches on the kind."""

    if cfg.transport is TransportKind.STDIO:
        return StdioTransport(command=cast(str, cfg.command), args=cfg.args, env=cfg.env, timeout_s=timeout_s)

    # ServerConfig guarantees the url for both HTTP kinds.
    url = cast(str, cfg.url)
    if cfg.transport is TransportKind.STREAMABLE_HTTP:
        return StreamableHttpTransport(url=url, headers=cfg.headers, timeout_s=timeout_s)
    return SseTransport(url=url, headers=cfg.headers, timeout_s=timeout_s)
