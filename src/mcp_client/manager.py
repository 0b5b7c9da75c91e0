from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from core.errors import McpChatError, ServerNotConnectedError, SessionTimeoutError, TransportError
from observability.logging import get_logger

from .session import ToolServerSession
from .transport import Transport, build_transport, exception_summary
from .types import (
    ConnectionStatus,
    PromptDescriptor,
    PromptResult,
    ResourceContent,
    ResourceDescriptor,
    ServerConfig,
    ToolCallResult,
    ToolDescriptor,
    now_ms,
)

T = TypeVar("T")

TransportFactory = Callable[..., Transport]


class ConnectionManager:
    """Registry of live tool-server sessions, keyed by server id.

    Responsibilities:
    - Own at most one session per id, from a successful connect until disconnect.
    - Keep the last known ConnectionStatus for every id ever seen.
    - Serialize connect/disconnect per id (other ids are unaffected).
    - Delegate list/call operations to the owning session.

    Map mutations never span an await, so readers on the event loop always see
    a consistent (session, status) pair.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory = build_transport,
        connect_timeout_s: float = 30.0,
        request_timeout_s: float = 60.0,
        close_timeout_s: float = 5.0,
    ) -> None:
        self._transport_factory = transport_factory
        self._connect_timeout_s = float(connect_timeout_s)
        self._request_timeout_s = float(request_timeout_s)
        self._close_timeout_s = float(close_timeout_s)
        self._log = get_logger("mcpchat.mcp")

        self._sessions: dict[str, ToolServerSession] = {}
        self._statuses: dict[str, ConnectionStatus] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    async def connect(self, cfg: ServerConfig) -> ConnectionStatus:
        """Connect `cfg.id`, replacing any existing session for it.

        Never raises for transport or handshake failures: the failure is
        recorded and returned as a disconnected status.
        """

        async with self._lock_for(cfg.id):
            await self._drop(cfg.id, reason="reconnect")

            try:
                transport = self._transport_factory(cfg, timeout_s=self._connect_timeout_s)
                session = ToolServerSession(
                    server_id=cfg.id,
                    transport=transport,
                    request_timeout_s=self._request_timeout_s,
                    close_timeout_s=self._close_timeout_s,
                )
                await session.start(timeout_s=self._connect_timeout_s)
            except asyncio.CancelledError:
                raise
            except McpChatError as e:
                return self._record_failure(cfg, e.message, error_type=e.error_type)
            except Exception as e:  # noqa: BLE001
                return self._record_failure(cfg, exception_summary(e), error_type="transport_error")

            status = ConnectionStatus(server_id=cfg.id, connected=True, connected_at=now_ms())
            self._sessions[cfg.id] = session
            self._statuses[cfg.id] = status

        self._log.info("mcp_connected", server_id=cfg.id, transport=cfg.transport.value)
        return status

    def _record_failure(self, cfg: ServerConfig, message: str, *, error_type: str) -> ConnectionStatus:
        status = ConnectionStatus(server_id=cfg.id, connected=False, error=message)
        self._statuses[cfg.id] = status
        self._log.warning(
            "mcp_connect_failed",
            server_id=cfg.id,
            transport=cfg.transport.value,
            error_type=error_type,
            error=message,
        )
        return status

    async def connect_all(self, configs: Iterable[ServerConfig]) -> list[ConnectionStatus]:
        return list(await asyncio.gather(*(self.connect(cfg) for cfg in configs)))

    async def disconnect(self, server_id: str) -> ConnectionStatus:
        """Close and forget the session for `server_id`. Unknown ids are a no-op."""

        async with self._lock_for(server_id):
            had_session = await self._drop(server_id, reason="disconnect")
            status = ConnectionStatus(server_id=server_id, connected=False)
            if server_id in self._statuses:
                self._statuses[server_id] = status

        if had_session:
            self._log.info("mcp_disconnected", server_id=server_id)
        return status

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(self.disconnect(sid) for sid in list(self._sessions)))

    async def _drop(self, server_id: str, *, reason: str) -> bool:
        """Remove the session for `server_id` and close it best-effort. Caller holds the lock."""

        session = self._sessions.pop(server_id, None)
        if session is None:
            return False
        try:
            await session.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            self._log.warning("mcp_close_failed", server_id=server_id, reason=reason, error=exception_summary(e))
        return True

    async def _mark_lost(self, server_id: str, session: ToolServerSession, err: TransportError) -> None:
        async with self._lock_for(server_id):
            if self._sessions.get(server_id) is not session:
                return
            self._sessions.pop(server_id, None)
            self._statuses[server_id] = ConnectionStatus(server_id=server_id, connected=False, error=err.message)
            try:
                await session.close()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self._log.warning("mcp_close_failed", server_id=server_id, reason="lost", error=exception_summary(e))

        self._log.warning("mcp_session_lost", server_id=server_id, error_type=err.error_type, error=err.message)

    def get_status(self, server_id: str) -> ConnectionStatus | None:
        return self._statuses.get(server_id)

    def get_all_statuses(self) -> list[ConnectionStatus]:
        return list(self._statuses.values())

    def get_connected_ids(self) -> list[str]:
        return list(self._sessions.keys())

    async def _delegate(self, server_id: str, fn: Callable[[ToolServerSession], Awaitable[T]]) -> T:
        session = self._sessions.get(server_id)
        if session is None:
            raise ServerNotConnectedError(server_id)
        try:
            return await fn(session)
        except SessionTimeoutError:
            # A slow request does not mean the channel is gone.
            raise
        except TransportError as e:
            await self._mark_lost(server_id, session, e)
            raise

    async def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        return await self._delegate(server_id, lambda s: s.list_tools())

    async def call_tool(
        self,
        server_id: str,
        name: str,
        args: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> ToolCallResult:
        return await self._delegate(server_id, lambda s: s.call_tool(name, args, timeout_s=timeout_s))

    async def list_prompts(self, server_id: str) -> list[PromptDescriptor]:
        return await self._delegate(server_id, lambda s: s.list_prompts())

    async def get_prompt(self, server_id: str, name: str, args: dict[str, str] | None = None) -> PromptResult:
        return await self._delegate(server_id, lambda s: s.get_prompt(name, args))

    async def list_resources(self, server_id: str) -> list[ResourceDescriptor]:
        return await self._delegate(server_id, lambda s: s.list_resources())

    async def read_resource(self, server_id: str, uri: str) -> list[ResourceContent]:
        return await self._delegate(server_id, lambda s: s.read_resource(uri))
