from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from langgraph.graph import END, START, StateGraph
from langgraph.types import StreamWriter

from core.config import ToolsConfig
from core.errors import McpChatError
from core.types import FunctionCall, FunctionResult, Part, Role, TextPart, ToolCallRecord, ToolImage, Turn
from llm.client import ModelClient, ModelResponse
from llm.tool_call_accumulator import InvalidToolCall
from mcp_client.manager import ConnectionManager
from observability import add_error, bind_turn, get_logger, new_session_id, set_state
from tools.schema import FunctionDeclaration, tool_to_declaration
from tools.tool_result_codec import error_text, function_response, not_found_text, result_images, result_text

from .events import EventType, StreamEvent
from .graph_state import TurnState

ImageResolver = Callable[[ToolImage], Awaitable[ToolImage]]


@dataclass(slots=True)
class TurnOutput:
    assistant_text: str
    tool_calls: list[ToolCallRecord]
    turns: list[Turn] = field(default_factory=list)
    error: str | None = None
    iteration_limit_reached: bool = False


class GraphOrchestrator:
    """LangGraph-based COLLECT_TOOLS → CALL_MODEL ⇄ EXECUTE_TOOLS → FINALIZE turn loop.

    Each turn is streamed as StreamEvents: `tool_call`/`tool_result` pairs in
    model emission order, the closing `text`, then `done` with every ToolCall
    record. A model or transport failure ends the stream with one `error`.

    The function-call cycle is bounded by `tools_cfg.max_iterations`; when the
    budget runs out the latest response's text is emitted as final, followed
    by `done` flagged `iterationLimitReached`.
    """

    def __init__(
        self,
        *,
        model: ModelClient,
        manager: ConnectionManager,
        tools_cfg: ToolsConfig,
        image_resolver: ImageResolver | None = None,
    ) -> None:
        self._model = model
        self._manager = manager
        self._tools_cfg = tools_cfg
        self._image_resolver = image_resolver

        self._session_id = new_session_id()
        self._turn_id = 0
        self._log = get_logger("mcpchat.orchestrator")
        self._graph = self._build_graph()

    async def stream_turn(self, message: str, history: Sequence[Turn] = ()) -> AsyncIterator[StreamEvent]:
        async with aclosing(self._run(message, history)) as chunks:
            async for mode, chunk in chunks:
                if mode == "custom":
                    yield chunk

    async def run_turn(self, message: str, history: Sequence[Turn] = ()) -> TurnOutput:
        """Run a turn to completion and collect its outcome."""

        out = TurnOutput(assistant_text="", tool_calls=[])
        text_parts: list[str] = []
        async with aclosing(self._run(message, history)) as chunks:
            async for mode, chunk in chunks:
                if mode == "values":
                    out.turns = list(chunk.get("turns", []))
                    out.tool_calls = list(chunk.get("records", []))
                    continue
                if chunk.type is EventType.TEXT:
                    text_parts.append(str(chunk.data.get("text", "")))
                elif chunk.type is EventType.ERROR:
                    out.error = str(chunk.data.get("message", ""))
                elif chunk.type is EventType.DONE:
                    out.iteration_limit_reached = bool(chunk.data.get("iterationLimitReached"))

        out.assistant_text = "".join(text_parts)
        if out.error is None and out.turns and out.assistant_text:
            out.turns.append(Turn.model(out.assistant_text))
        return out

    def run_turn_sync(self, message: str, history: Sequence[Turn] = ()) -> TurnOutput:
        return asyncio.run(self.run_turn(message, history))

    async def _run(self, message: str, history: Sequence[Turn]) -> AsyncIterator[tuple[str, Any]]:
        self._turn_id += 1
        bind_turn(session_id=self._session_id, turn_id=self._turn_id)

        initial: TurnState = {
            "turns": [*history, Turn.user(message)],
            "tool_table": {},
            "declarations": [],
            "iterations": 0,
            "records": [],
            "assistant_text": "",
            "iteration_limit_reached": False,
        }
        max_iter = max(0, int(self._tools_cfg.max_iterations))
        config = {"recursion_limit": 2 * max_iter + 10}

        t0 = time.perf_counter()
        records = 0
        try:
            async with aclosing(
                self._graph.astream(initial, config=config, stream_mode=["custom", "values"])
            ) as stream:
                async for mode, chunk in stream:
                    if mode == "values":
                        records = len(chunk.get("records", []))
                    yield mode, chunk
        except asyncio.CancelledError:
            self._log.info("turn_cancelled", latency_ms=round((time.perf_counter() - t0) * 1000, 2))
            raise
        except Exception as e:  # noqa: BLE001
            set_state("ERROR")
            add_error(str(e))
            # Unexpected failures keep their traceback.
            log_failure = self._log.error if isinstance(e, McpChatError) else self._log.exception
            log_failure(
                "turn_failed",
                error_type=getattr(e, "error_type", type(e).__name__),
                error=str(e),
                latency_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            yield "custom", StreamEvent.error(e)
            return

        self._log.info(
            "turn_done",
            latency_ms=round((time.perf_counter() - t0) * 1000, 2),
            tool_calls=records,
        )

    def _build_graph(self):
        tools_cfg = self._tools_cfg
        max_iter = max(0, int(tools_cfg.max_iterations))
        max_conc = max(1, int(tools_cfg.max_concurrency))

        async def collect_tools_node(state: TurnState) -> dict[str, Any]:
            set_state("COLLECT_TOOLS")
            if not tools_cfg.enabled:
                return {"tool_table": {}, "declarations": []}

            table: dict[str, str] = {}
            declarations: dict[str, FunctionDeclaration] = {}
            for server_id in self._manager.get_connected_ids():
                try:
                    tools = await self._manager.list_tools(server_id)
                except McpChatError as e:
                    self._log.warning("tool_listing_failed", server_id=server_id, error_type=e.error_type, error=e.message)
                    continue

                for tool in tools:
                    previous = table.get(tool.name)
                    if previous is not None and previous != server_id:
                        self._log.warning("tool_name_shadowed", tool=tool.name, previous=previous, server_id=server_id)
                    table[tool.name] = server_id
                    declarations[tool.name] = tool_to_declaration(tool)

            self._log.info("tools_collected", tools=len(table), servers=len(set(table.values())))
            return {"tool_table": table, "declarations": list(declarations.values())}

        def route_after_collect(state: TurnState) -> str:
            return "call_model" if state.get("tool_table") else "stream_reply"

        async def stream_reply_node(state: TurnState, writer: StreamWriter) -> dict[str, Any]:
            set_state("CHAT")
            parts: list[str] = []
            async with aclosing(self._model.stream_text(list(state.get("turns", [])))) as chunks:
                async for chunk in chunks:
                    parts.append(chunk)
                    writer(StreamEvent.text(chunk))
            writer(StreamEvent.done([]))
            return {"assistant_text": "".join(parts)}

        async def call_model_node(state: TurnState) -> dict[str, Any]:
            set_state("CALL_MODEL")
            t0 = time.perf_counter()
            response = await self._model.generate(list(state.get("turns", [])), list(state.get("declarations", [])))
            self._log.info(
                "model_call_done",
                iteration=int(state.get("iterations", 0)),
                latency_ms=round((time.perf_counter() - t0) * 1000, 2),
                tool_calls=len(response.calls),
                invalid_tool_calls=response.invalid_count,
            )
            return {"response": response}

        def route_after_model(state: TurnState) -> str:
            response = state.get("response")
            if response is not None and response.has_calls and int(state.get("iterations", 0)) < max_iter:
                return "execute_tools"
            return "finalize"

        async def execute_tools_node(state: TurnState, writer: StreamWriter) -> dict[str, Any]:
            set_state("EXECUTE_TOOLS")
            response: ModelResponse = state["response"]
            table = dict(state.get("tool_table", {}))

            # (record, call as appended to the conversation, runnable) in emission order
            entries: list[tuple[ToolCallRecord, FunctionCall, bool]] = []
            for call in response.calls:
                if isinstance(call, InvalidToolCall):
                    entries.append((*self._invalid_record(call, table), False))
                else:
                    record = ToolCallRecord(
                        call_id=call.id, name=call.name, server_id=table.get(call.name), args=dict(call.args)
                    )
                    entries.append((record, call, True))

            results: list[FunctionResult] = []
            if max_conc == 1:
                for record, _, runnable in entries:
                    writer(StreamEvent.tool_call(record))
                    results.append(await self._execute(record) if runnable else self._rejected(record))
                    writer(StreamEvent.tool_result(record))
            else:
                sem = asyncio.Semaphore(max_conc)

                async def bounded(record: ToolCallRecord) -> FunctionResult:
                    async with sem:
                        return await self._execute(record)

                tasks = {id(r): asyncio.create_task(bounded(r)) for r, _, runnable in entries if runnable}
                try:
                    for record, _, runnable in entries:
                        writer(StreamEvent.tool_call(record))
                        results.append(await tasks[id(record)] if runnable else self._rejected(record))
                        writer(StreamEvent.tool_result(record))
                except BaseException:
                    for task in tasks.values():
                        task.cancel()
                    raise

            parts: list[Part] = [TextPart(response.text)] if response.text else []
            parts.extend(call for _, call, _ in entries)
            model_turn = Turn(role=Role.MODEL, parts=tuple(parts))
            function_turn = Turn(role=Role.FUNCTION, parts=tuple(results))
            return {
                "turns": [*state.get("turns", []), model_turn, function_turn],
                "records": [record for record, _, _ in entries],
                "iterations": int(state.get("iterations", 0)) + 1,
            }

        async def finalize_node(state: TurnState, writer: StreamWriter) -> dict[str, Any]:
            set_state("FINALIZE")
            response = state.get("response")
            text = response.text if response is not None else ""
            limit_reached = bool(response is not None and response.has_calls)
            if limit_reached:
                self._log.warning("iteration_limit_reached", max_iterations=max_iter)
            if text:
                writer(StreamEvent.text(text))
            writer(StreamEvent.done(list(state.get("records", [])), iteration_limit_reached=limit_reached))
            return {"assistant_text": text, "iteration_limit_reached": limit_reached}

        builder = StateGraph(TurnState)
        builder.add_node("collect_tools", collect_tools_node)
        builder.add_node("stream_reply", stream_reply_node)
        builder.add_node("call_model", call_model_node)
        builder.add_node("execute_tools", execute_tools_node)
        builder.add_node("finalize", finalize_node)

        builder.add_edge(START, "collect_tools")
        builder.add_conditional_edges("collect_tools", route_after_collect, ["call_model", "stream_reply"])
        builder.add_conditional_edges("call_model", route_after_model, ["execute_tools", "finalize"])
        builder.add_edge("execute_tools", "call_model")
        builder.add_edge("stream_reply", END)
        builder.add_edge("finalize", END)

        return builder.compile()

    def _invalid_record(self, ic: InvalidToolCall, table: dict[str, str]) -> tuple[ToolCallRecord, FunctionCall]:
        name = ic.name or "unknown"
        record = ToolCallRecord(
            call_id=ic.id,
            name=name,
            server_id=table.get(name),
            args={},
            result=f"Error: invalid arguments for tool {name!r}: {ic.error}",
            duration_ms=0,
        )
        return record, FunctionCall(id=ic.id, name=name, args={})

    def _rejected(self, record: ToolCallRecord) -> FunctionResult:
        return FunctionResult(
            id=record.call_id, name=record.name, response=function_response(text=record.result or "", ok=False)
        )

    async def _execute(self, record: ToolCallRecord) -> FunctionResult:
        """Run one tool call and fill in `record`. Tool failures become result text."""

        t0 = time.perf_counter()
        ok = True
        images: list[ToolImage] = []

        if record.server_id is None:
            ok = False
            text = not_found_text(record.name)
        else:
            try:
                # An in-flight call is allowed to finish even if the turn is cancelled.
                result = await asyncio.shield(
                    self._manager.call_tool(
                        record.server_id,
                        record.name,
                        record.args,
                        timeout_s=self._tools_cfg.call_timeout_s,
                    )
                )
                text = result_text(result)
                images = await self._resolve_images(result_images(result))
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                ok = False
                text = error_text(e)
                self._log.warning(
                    "tool_call_failed",
                    tool=record.name,
                    server_id=record.server_id,
                    error_type=getattr(e, "error_type", type(e).__name__),
                    error=str(e),
                )

        record.result = text
        record.images = images
        record.duration_ms = int((time.perf_counter() - t0) * 1000)
        self._log.info(
            "tool_call_done",
            tool=record.name,
            server_id=record.server_id,
            ok=ok,
            images=len(images),
            latency_ms=record.duration_ms,
        )
        return FunctionResult(
            id=record.call_id,
            name=record.name,
            response=function_response(text=text, images=images, ok=ok),
        )

    async def _resolve_images(self, images: list[ToolImage]) -> list[ToolImage]:
        if self._image_resolver is None or not images:
            return images
        out: list[ToolImage] = []
        for img in images:
            try:
                out.append(await self._image_resolver(img))
            except Exception as e:  # noqa: BLE001
                # Keep the inline image rather than losing it.
                self._log.warning("image_resolve_failed", mime_type=img.mime_type, error=str(e))
                out.append(img)
        return out