from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import anyio
from mcp import ClientSession
from mcp import types as mcp_types
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from core.errors import (
    ProtocolError,
    SessionClosedError,
    SessionStateError,
    SessionTimeoutError,
    ToolExecutionError,
    TransportError,
)
from observability.logging import get_logger

from .transport import Transport, exception_summary
from .types import (
    ContentItem,
    PromptArgument,
    PromptDescriptor,
    PromptMessage,
    PromptResult,
    ResourceContent,
    ResourceDescriptor,
    ToolCallResult,
    ToolDescriptor,
)

T = TypeVar("T")

# JSON-RPC error code the SDK reports when the underlying channel closed.
_CONNECTION_CLOSED = -32000

_CHANNEL_GONE = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class SessionState(str, Enum):
    NEW = "new"
    READY = "ready"
    CLOSED = "closed"


def _content_item(block: Any) -> ContentItem:
    kind = str(getattr(block, "type", "") or "unknown")
    if kind == "text":
        return ContentItem(type="text", text=str(getattr(block, "text", "") or ""))
    if kind == "image":
        return ContentItem(type="image", data=getattr(block, "data", None), mime_type=getattr(block, "mimeType", None))
    if kind == "resource":
        resource = getattr(block, "resource", None)
        dump = getattr(resource, "model_dump", None)
        text = json.dumps(dump(mode="json"), ensure_ascii=False) if callable(dump) else str(resource)
        return ContentItem(type="resource", text=text)
    return ContentItem(type=kind)


def _prompt_message(msg: Any) -> PromptMessage:
    content = getattr(msg, "content", None)
    if isinstance(content, str):
        return PromptMessage(role=str(msg.role), content_type="text", text=content)
    kind = str(getattr(content, "type", "text"))
    text = getattr(content, "text", None)
    if not isinstance(text, str):
        dump = getattr(content, "model_dump", None)
        text = json.dumps(dump(mode="json"), ensure_ascii=False) if callable(dump) else None
    return PromptMessage(role=str(msg.role), content_type=kind, text=text)


class ToolServerSession:
    """A live, handshaken connection to one tool server.

    The channel is opened, used and closed by a single owner task: the SDK's
    transport contexts must be exited by the task that entered them, while
    sessions are connected and disconnected from arbitrary request tasks.
    `close()` therefore only signals the owner task and waits for it.

    Every request is individually correlated by the SDK's request ids, so
    concurrent operations on one session are safe.
    """

    def __init__(
        self,
        *,
        server_id: str,
        transport: Transport,
        request_timeout_s: float = 60.0,
        close_timeout_s: float = 5.0,
        client_name: str = "mcp-chat-client",
        client_version: str = "1.0.0",
    ) -> None:
        self.server_id = server_id
        self._transport = transport
        self._request_timeout_s = float(request_timeout_s)
        self._close_timeout_s = float(close_timeout_s)
        self._client_info = mcp_types.Implementation(name=client_name, version=client_version)
        self._log = get_logger("mcpchat.session")

        self._state = SessionState.NEW
        self._client: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._closing = asyncio.Event()
        self._close_error: BaseException | None = None
        self.server_info: Any = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def transport(self) -> Transport:
        return self._transport

    async def start(self, *, timeout_s: float = 30.0) -> None:
        """Open the channel and perform the protocol handshake.

        Raises:
            TransportError: the channel could not be opened or the handshake failed.
            SessionTimeoutError: the handshake did not finish within `timeout_s`.
        """

        if self._state is not SessionState.NEW or self._runner is not None:
            raise SessionStateError(f"session {self.server_id!r} already started")

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(ready), name=f"mcp-session:{self.server_id}")

        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=timeout_s)
        except TimeoutError:
            await self._abort()
            raise SessionTimeoutError(operation="connect", timeout_s=timeout_s) from None
        except asyncio.CancelledError:
            await self._abort()
            raise

        self._log.info(
            "session_ready",
            server_id=self.server_id,
            transport=self._transport.kind.value,
            server_name=getattr(self.server_info, "name", None),
        )

    async def _run(self, ready: asyncio.Future[None]) -> None:
        channel = None
        try:
            channel = await self._transport.open()
            read_stream, write_stream = channel.streams
            async with ClientSession(read_stream, write_stream, client_info=self._client_info) as client:
                init = await client.initialize()
                self.server_info = getattr(init, "serverInfo", None)
                self._client = client
                self._state = SessionState.READY
                ready.set_result(None)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:  # noqa: BLE001
            if not ready.done():
                err = e if isinstance(e, TransportError) else TransportError(
                    f"handshake with {self._transport.describe()} failed: {exception_summary(e)}",
                    details={"exc": type(e).__name__},
                )
                ready.set_exception(err)
            else:
                self._close_error = e
                self._log.warning("session_lost", server_id=self.server_id, error=exception_summary(e))
        finally:
            self._client = None
            self._state = SessionState.CLOSED
            if channel is not None:
                try:
                    await channel.close()
                except Exception as e:  # noqa: BLE001
                    if self._close_error is None:
                        self._close_error = e

    async def _abort(self) -> None:
        self._closing.set()
        runner = self._runner
        if runner is None or runner.done():
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except Exception as e:  # noqa: BLE001
            self._log.warning("session_abort_failed", server_id=self.server_id, error=exception_summary(e))

    async def close(self) -> None:
        """Close the channel. Further operations raise SessionClosedError.

        Raises:
            TransportError: teardown did not complete cleanly.
        """

        self._closing.set()
        runner = self._runner
        if runner is None:
            self._state = SessionState.CLOSED
            return

        if not runner.done():
            try:
                await asyncio.wait_for(asyncio.shield(runner), timeout=self._close_timeout_s)
            except TimeoutError:
                await self._abort()
                raise SessionTimeoutError(operation="close", timeout_s=self._close_timeout_s) from None

        err, self._close_error = self._close_error, None
        if err is not None:
            raise TransportError(
                f"error while closing session {self.server_id!r}: {exception_summary(err)}",
                details={"exc": type(err).__name__},
            ) from err

    def _require_client(self) -> ClientSession:
        if self._state is SessionState.NEW:
            raise SessionStateError(f"session {self.server_id!r} has not completed the handshake")
        if self._state is SessionState.CLOSED or self._client is None:
            raise SessionClosedError(f"session {self.server_id!r} is closed", details={"server_id": self.server_id})
        return self._client

    async def _request(
        self,
        operation: str,
        fn: Callable[[ClientSession], Awaitable[T]],
        *,
        timeout_s: float | None = None,
    ) -> T:
        client = self._require_client()
        limit = self._request_timeout_s if timeout_s is None else float(timeout_s)
        try:
            return await asyncio.wait_for(fn(client), timeout=limit)
        except TimeoutError:
            raise SessionTimeoutError(operation=operation, timeout_s=limit) from None
        except _CHANNEL_GONE as e:
            raise SessionClosedError(
                f"channel to {self.server_id!r} closed during {operation}",
                details={"server_id": self.server_id, "exc": type(e).__name__},
            ) from e
        except McpError as e:
            if e.error.code == _CONNECTION_CLOSED:
                raise SessionClosedError(
                    f"channel to {self.server_id!r} closed during {operation}: {e.error.message}",
                    details={"server_id": self.server_id},
                ) from e
            raise
        except ValidationError as e:
            raise ProtocolError(
                f"malformed {operation} response from {self.server_id!r}: {e.error_count()} validation error(s)",
                details={"server_id": self.server_id},
            ) from e

    async def list_tools(self) -> list[ToolDescriptor]:
        try:
            result = await self._request("tools/list", lambda c: c.list_tools())
        except McpError as e:
            raise ProtocolError(f"tools/list failed: {e.error.message}", details={"code": str(e.error.code)}) from e

        return [
            ToolDescriptor(
                name=t.name,
                description=t.description,
                input_schema=dict(t.inputSchema or {}),
            )
            for t in result.tools
        ]

    async def call_tool(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> ToolCallResult:
        """Call one tool.

        `timeout_s` overrides the session's request timeout for this call.

        Raises:
            ToolExecutionError: the tool is unknown, rejected its arguments, or reported an error.
            TransportError: the server is unreachable or timed out.
        """

        arguments = dict(args or {})
        try:
            result = await self._request(
                "tools/call",
                lambda c: c.call_tool(name, arguments=arguments),
                timeout_s=timeout_s,
            )
        except McpError as e:
            raise ToolExecutionError(name, e.error.message, details={"code": str(e.error.code)}) from e
        except RuntimeError as e:
            # The SDK rejects results that break the tool's output schema with a bare RuntimeError.
            raise ToolExecutionError(name, str(e) or type(e).__name__, details={"exc": type(e).__name__}) from e

        items = tuple(_content_item(block) for block in (result.content or []))
        if result.isError:
            message = "\n".join(i.text for i in items if i.text) or f"tool {name!r} reported an error"
            raise ToolExecutionError(name, message)
        return ToolCallResult(content=items, is_error=False)

    async def list_prompts(self) -> list[PromptDescriptor]:
        try:
            result = await self._request("prompts/list", lambda c: c.list_prompts())
        except McpError as e:
            raise ProtocolError(f"prompts/list failed: {e.error.message}", details={"code": str(e.error.code)}) from e

        return [
            PromptDescriptor(
                name=p.name,
                description=p.description,
                arguments=tuple(
                    PromptArgument(name=a.name, description=a.description, required=bool(a.required))
                    for a in (p.arguments or [])
                ),
            )
            for p in result.prompts
        ]

    async def get_prompt(self, name: str, args: dict[str, str] | None = None) -> PromptResult:
        arguments = {str(k): str(v) for k, v in (args or {}).items()}
        try:
            result = await self._request("prompts/get", lambda c: c.get_prompt(name, arguments=arguments))
        except McpError as e:
            raise ProtocolError(f"prompts/get failed: {e.error.message}", details={"code": str(e.error.code)}) from e

        return PromptResult(
            description=result.description,
            messages=tuple(_prompt_message(m) for m in result.messages),
        )

    async def list_resources(self) -> list[ResourceDescriptor]:
        try:
            result = await self._request("resources/list", lambda c: c.list_resources())
        except McpError as e:
            raise ProtocolError(f"resources/list failed: {e.error.message}", details={"code": str(e.error.code)}) from e

        return [
            ResourceDescriptor(uri=str(r.uri), name=r.name, description=r.description, mime_type=r.mimeType)
            for r in result.resources
        ]

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        try:
            result = await self._request("resources/read", lambda c: c.read_resource(uri))  # type: ignore[arg-type]
        except McpError as e:
            raise ProtocolError(f"resources/read failed: {e.error.message}", details={"code": str(e.error.code)}) from e

        return [
            ResourceContent(
                uri=str(c.uri),
                mime_type=c.mimeType,
                text=getattr(c, "text", None),
                blob=getattr(c, "blob", None),
            )
            for c in result.contents
        ]
