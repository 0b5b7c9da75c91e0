from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Sequence

import pytest

from core.config import ToolsConfig
from core.errors import ModelCallError, ServerNotConnectedError, ToolExecutionError
from core.types import FunctionCall, FunctionResult, Role, ToolImage, Turn
from llm.client import ModelResponse
from llm.tool_call_accumulator import InvalidToolCall, ToolCallAccumulator
from mcp_client.manager import ConnectionManager
from mcp_client.types import ContentItem, ServerConfig, ToolCallResult, ToolDescriptor, TransportKind
from orchestrator.events import EventType, StreamEvent
from orchestrator.graph_orchestrator import GraphOrchestrator
from tools.schema import FunctionDeclaration


class ScriptedModel:
    """Returns the scripted responses in order; the last one repeats."""

    def __init__(self, *responses: ModelResponse, chunks: Sequence[str] = ("Hel", "lo")) -> None:
        self._responses = list(responses)
        self._chunks = list(chunks)
        self.generate_calls: list[tuple[list[Turn], list[FunctionDeclaration]]] = []
        self.stream_calls: list[list[Turn]] = []

    async def generate(self, turns: Sequence[Turn], declarations: Sequence[FunctionDeclaration]) -> ModelResponse:
        self.generate_calls.append((list(turns), list(declarations)))
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]

    async def stream_text(self, turns: Sequence[Turn]) -> AsyncIterator[str]:
        self.stream_calls.append(list(turns))
        for chunk in self._chunks:
            yield chunk


class FailingModel(ScriptedModel):
    async def generate(self, turns: Sequence[Turn], declarations: Sequence[FunctionDeclaration]) -> ModelResponse:
        raise ModelCallError("model call failed: 503 Service Unavailable")


class FakeManager:
    """Duck-typed ConnectionManager over in-process tool functions."""

    def __init__(self, servers: dict[str, dict[str, Any]]) -> None:
        self.servers = servers
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.failing_listings: set[str] = set()

    def get_connected_ids(self) -> list[str]:
        return list(self.servers)

    async def list_tools(self, server_id: str) -> list[ToolDescriptor]:
        if server_id in self.failing_listings:
            raise ToolExecutionError("tools/list", "listing failed")
        return [
            ToolDescriptor(name=name, description=f"{name} tool", input_schema={"type": "object", "properties": {}})
            for name in self.servers[server_id]
        ]

    async def call_tool(
        self,
        server_id: str,
        name: str,
        args: dict[str, Any] | None = None,
        *,
        timeout_s: float | None = None,
    ) -> ToolCallResult:
        self.calls.append((server_id, name, dict(args or {})))
        fn = self.servers[server_id][name]
        out = fn(**(args or {}))
        if asyncio.iscoroutine(out):
            out = await out
        if isinstance(out, ToolCallResult):
            return out
        return ToolCallResult(content=(ContentItem(type="text", text=str(out)),))


def _call(name: str, call_id: str, **args: Any) -> FunctionCall:
    return FunctionCall(id=call_id, name=name, args=args)


def _collect(orch: GraphOrchestrator, message: str, history: Sequence[Turn] = ()) -> list[StreamEvent]:
    async def run() -> list[StreamEvent]:
        return [ev async for ev in orch.stream_turn(message, history)]

    return asyncio.run(run())


def _orch(model: Any, manager: Any, **tools: Any) -> GraphOrchestrator:
    return GraphOrchestrator(model=model, manager=manager, tools_cfg=ToolsConfig(**tools))


def test_calls_stream_in_emission_order() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!", "b": lambda: "B!"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("a", "c1"), _call("b", "c2")]),
        ModelResponse(text="done"),
    )

    events = _collect(_orch(model, manager), "run a and b")

    assert [(e.type.value, e.data.get("name")) for e in events] == [
        ("tool_call", "a"),
        ("tool_result", "a"),
        ("tool_call", "b"),
        ("tool_result", "b"),
        ("text", None),
        ("done", None),
    ]
    assert events[1].data["result"] == "A!"
    assert events[1].data["serverId"] == "util"
    assert events[4].data == {"text": "done"}
    assert [r["name"] for r in events[5].data["toolCalls"]] == ["a", "b"]
    assert events[5].data["iterationLimitReached"] is False


def test_conversation_order_is_appended_before_next_model_call() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!", "b": lambda: "B!"}})
    model = ScriptedModel(
        ModelResponse(text="Working.", calls=[_call("a", "c1"), _call("b", "c2")]),
        ModelResponse(text="done"),
    )
    history = [Turn.user("earlier"), Turn.model("ok")]

    _collect(_orch(model, manager), "run a and b", history)

    turns, declarations = model.generate_calls[1]
    assert [t.role for t in turns] == [Role.USER, Role.MODEL, Role.USER, Role.MODEL, Role.FUNCTION]
    assert turns[2].text == "run a and b"
    assert turns[3].text == "Working."
    assert [c.id for c in turns[3].function_calls] == ["c1", "c2"]
    results = turns[4].function_results
    assert [(r.id, r.response) for r in results] == [("c1", {"result": "A!"}), ("c2", {"result": "B!"})]
    assert sorted(d.name for d in declarations) == ["a", "b"]


def test_iteration_cap_stops_after_max_iterations() -> None:
    manager = FakeManager({"util": {"again": lambda: "more"}})
    model = ScriptedModel(ModelResponse(text="still going", calls=[_call("again", "c")]))

    events = _collect(_orch(model, manager, max_iterations=10), "loop forever")

    assert len(model.generate_calls) == 11
    assert len(manager.calls) == 10
    assert [e.type for e in events if e.type is EventType.ERROR] == []
    assert events[-2].type is EventType.TEXT
    assert events[-2].data["text"] == "still going"
    done = events[-1]
    assert done.type is EventType.DONE
    assert len(done.data["toolCalls"]) == 10
    assert done.data["iterationLimitReached"] is True


def test_unknown_tool_yields_not_found_result() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("gen_video", "c1")]),
        ModelResponse(text="sorry"),
    )

    events = _collect(_orch(model, manager), "make a video")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert "not found" in result.data["result"]
    assert result.data["serverId"] is None
    assert manager.calls == []


def test_disconnected_server_yields_not_found_result() -> None:
    class DroppingManager(FakeManager):
        async def call_tool(self, server_id: str, name: str, args: Any = None, *, timeout_s: Any = None) -> Any:
            raise ServerNotConnectedError(server_id)

    manager = DroppingManager({"img": {"gen_image": lambda prompt: "unused"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("gen_image", "c1", prompt="x")]),
        ModelResponse(text="the image server went away"),
    )

    events = _collect(_orch(model, manager), "draw")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert "not found" in result.data["result"]
    assert events[-1].type is EventType.DONE


def test_tool_failure_is_folded_into_the_result() -> None:
    def explode() -> str:
        raise ToolExecutionError("explode", "boom")

    manager = FakeManager({"util": {"explode": explode}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("explode", "c1")]),
        ModelResponse(text="it failed"),
    )

    events = _collect(_orch(model, manager), "explode")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert result.data["result"] == "Error: boom"
    fn_turn = model.generate_calls[1][0][-1]
    assert fn_turn.function_results == [FunctionResult(id="c1", name="explode", response={"error": "Error: boom"})]
    assert [e.type for e in events][-2:] == [EventType.TEXT, EventType.DONE]


def test_model_failure_ends_stream_with_one_error() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!"}})

    events = _collect(_orch(FailingModel(), manager), "hi")

    assert [e.type for e in events] == [EventType.ERROR]
    assert events[0].data["type"] == "model_error"
    assert "503" in events[0].data["message"]


def test_chat_only_when_no_tools() -> None:
    model = ScriptedModel(ModelResponse(text="unused"), chunks=["Hel", "lo", "!"])

    events = _collect(_orch(model, FakeManager({})), "hi")

    assert [e.type for e in events] == [EventType.TEXT, EventType.TEXT, EventType.TEXT, EventType.DONE]
    assert "".join(e.data["text"] for e in events[:-1]) == "Hello!"
    assert events[-1].data["toolCalls"] == []
    assert model.generate_calls == []
    assert [t.text for t in model.stream_calls[0]] == ["hi"]


def test_tools_disabled_goes_chat_only() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!"}})
    model = ScriptedModel(ModelResponse(text="unused"))

    events = _collect(_orch(model, manager, enabled=False), "hi")

    assert events[-1].type is EventType.DONE
    assert model.generate_calls == []


def test_concurrent_calls_keep_emission_order() -> None:
    async def slow() -> str:
        await asyncio.sleep(0.05)
        return "slow"

    async def fast() -> str:
        return "fast"

    manager = FakeManager({"util": {"slow": slow, "fast": fast}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("slow", "c1"), _call("fast", "c2")]),
        ModelResponse(text="done"),
    )

    events = _collect(_orch(model, manager, max_concurrency=4), "both")

    pairs = [(e.type.value, e.data.get("result")) for e in events[:4]]
    assert pairs == [("tool_call", None), ("tool_result", "slow"), ("tool_call", None), ("tool_result", "fast")]
    results = model.generate_calls[1][0][-1].function_results
    assert [r.id for r in results] == ["c1", "c2"]


def test_name_collision_last_server_wins() -> None:
    manager = FakeManager({"first": {"search": lambda: "from first"}, "second": {"search": lambda: "from second"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("search", "c1")]),
        ModelResponse(text="done"),
    )

    events = _collect(_orch(model, manager), "search")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert result.data["serverId"] == "second"
    assert result.data["result"] == "from second"


def test_failed_listing_skips_that_server() -> None:
    manager = FakeManager({"broken": {"x": lambda: "x"}, "util": {"a": lambda: "A!"}})
    manager.failing_listings.add("broken")
    model = ScriptedModel(ModelResponse(text="hello"))

    events = _collect(_orch(model, manager), "hi")

    assert [d.name for d in model.generate_calls[0][1]] == ["a"]
    assert [e.type for e in events] == [EventType.TEXT, EventType.DONE]


def test_invalid_arguments_are_reported_without_executing() -> None:
    manager = FakeManager({"util": {"echo": lambda text: text}})
    model = ScriptedModel(
        ModelResponse(
            text="",
            calls=[InvalidToolCall(id="c1", name="echo", raw_args="{\"text\":", error="Expecting value")],
        ),
        ModelResponse(text="retrying"),
    )

    events = _collect(_orch(model, manager), "echo")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert "invalid arguments" in result.data["result"]
    assert manager.calls == []
    model_turn = model.generate_calls[1][0][-2]
    assert [c.id for c in model_turn.function_calls] == ["c1"]


def test_image_resolver_turns_inline_images_into_urls() -> None:
    image_result = ToolCallResult(content=(ContentItem(type="image", data="AAAA", mime_type="image/png"),))
    manager = FakeManager({"img": {"gen_image": lambda prompt: image_result}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("gen_image", "c1", prompt="a parrot")]),
        ModelResponse(text="here"),
    )

    async def upload(img: ToolImage) -> ToolImage:
        return ToolImage(mime_type=img.mime_type, url="https://cdn.example/parrot.png")

    orch = GraphOrchestrator(model=model, manager=manager, tools_cfg=ToolsConfig(), image_resolver=upload)
    events = _collect(orch, "draw")

    result = next(e for e in events if e.type is EventType.TOOL_RESULT)
    assert result.data["images"] == [{"mimeType": "image/png", "url": "https://cdn.example/parrot.png"}]


def test_run_turn_collects_text_records_and_turns() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("a", "c1")]),
        ModelResponse(text="all done"),
    )

    out = _orch(model, manager).run_turn_sync("do a")

    assert out.error is None
    assert out.assistant_text == "all done"
    assert [r.result for r in out.tool_calls] == ["A!"]
    assert [t.role for t in out.turns] == [Role.USER, Role.MODEL, Role.FUNCTION, Role.MODEL]
    assert out.turns[-1].text == "all done"


def test_parrot_end_to_end(demo_server: Any, memory_transport: Any) -> None:
    manager = ConnectionManager(transport_factory=lambda cfg, timeout_s: memory_transport(demo_server, timeout_s=timeout_s))
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("gen_image", "c1", prompt="a parrot")]),
        ModelResponse(text="Here is your parrot."),
    )
    orch = _orch(model, manager)

    async def scenario() -> list[StreamEvent]:
        status = await manager.connect(
            ServerConfig(id="img", name="Image generator", transport=TransportKind.STDIO, command="unused")
        )
        assert status.connected
        try:
            return [ev async for ev in orch.stream_turn("generate an image of a parrot")]
        finally:
            await manager.disconnect_all()

    events = asyncio.run(scenario())

    assert [e.type for e in events] == [EventType.TOOL_CALL, EventType.TOOL_RESULT, EventType.TEXT, EventType.DONE]
    assert events[0].data["args"] == {"prompt": "a parrot"}
    images = events[1].data["images"]
    assert len(images) == 1
    assert images[0]["mimeType"] == "image/png"
    assert images[0]["data"]
    assert events[2].data["text"] == "Here is your parrot."
    assert len(events[3].data["toolCalls"]) == 1


@pytest.mark.parametrize("max_iterations", [0, 1])
def test_small_iteration_limits(max_iterations: int) -> None:
    manager = FakeManager({"util": {"again": lambda: "more"}})
    model = ScriptedModel(ModelResponse(text="", calls=[_call("again", "c")]))

    events = _collect(_orch(model, manager, max_iterations=max_iterations), "loop")

    assert len(manager.calls) == max_iterations
    assert len(model.generate_calls) == max_iterations + 1
    assert events[-1].type is EventType.DONE
    assert events[-1].data["iterationLimitReached"] is True


def test_invalid_call_keeps_its_position_among_valid_calls() -> None:
    manager = FakeManager({"util": {"echo": lambda text: text}})
    acc = ToolCallAccumulator()
    acc.add_chunk({"id": "c1", "index": 0, "name": "echo", "args": "{\"text\":"})
    acc.add_chunk({"id": "c2", "index": 1, "name": "echo", "args": "{\"text\": \"b\"}"})
    calls = [
        c if isinstance(c, InvalidToolCall) else FunctionCall(id=c.id, name=c.name, args=c.args)
        for c in acc.finalize()
    ]
    model = ScriptedModel(ModelResponse(text="", calls=calls), ModelResponse(text="done"))

    events = _collect(_orch(model, manager), "echo twice")

    assert [(e.type.value, e.data["id"]) for e in events[:4]] == [
        ("tool_call", "c1"),
        ("tool_result", "c1"),
        ("tool_call", "c2"),
        ("tool_result", "c2"),
    ]
    assert "invalid arguments" in events[1].data["result"]
    assert events[3].data["result"] == "b"
    assert [r["name"] for r in events[-1].data["toolCalls"]] == ["echo", "echo"]
    model_turn, function_turn = model.generate_calls[1][0][-2:]
    assert [c.id for c in model_turn.function_calls] == ["c1", "c2"]
    assert [r.id for r in function_turn.function_results] == ["c1", "c2"]
    assert manager.calls == [("util", "echo", {"text": "b"})]


def test_invalid_call_keeps_its_position_when_running_concurrently() -> None:
    manager = FakeManager({"util": {"a": lambda: "A!"}})
    model = ScriptedModel(
        ModelResponse(
            text="",
            calls=[
                _call("a", "c1"),
                InvalidToolCall(id="c2", name="a", raw_args="[", error="Expecting value"),
                _call("a", "c3"),
            ],
        ),
        ModelResponse(text="done"),
    )

    events = _collect(_orch(model, manager, max_concurrency=3), "go")

    assert [e.data["id"] for e in events if e.type is EventType.TOOL_CALL] == ["c1", "c2", "c3"]
    results = model.generate_calls[1][0][-1].function_results
    assert [r.id for r in results] == ["c1", "c2", "c3"]
    assert "error" in results[1].response


def test_unexpected_tool_exception_is_folded_and_the_turn_continues() -> None:
    def bad() -> str:
        raise RuntimeError("Invalid structured content returned by tool bad")

    manager = FakeManager({"util": {"bad": bad, "a": lambda: "A!"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("bad", "c1"), _call("a", "c2")]),
        ModelResponse(text="recovered"),
    )

    events = _collect(_orch(model, manager), "try both")

    assert [e.type for e in events] == [
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.TEXT,
        EventType.DONE,
    ]
    assert events[1].data["result"] == "Error: RuntimeError: Invalid structured content returned by tool bad"
    assert events[3].data["result"] == "A!"
    assert len(events[-1].data["toolCalls"]) == 2


def test_closing_the_stream_lets_the_running_tool_finish() -> None:
    finished: list[str] = []

    async def slow() -> str:
        await asyncio.sleep(0.05)
        finished.append("slow")
        return "slow"

    manager = FakeManager({"util": {"slow": slow, "fast": lambda: "fast"}})
    model = ScriptedModel(
        ModelResponse(text="", calls=[_call("slow", "c1"), _call("fast", "c2")]),
        ModelResponse(text="done"),
    )
    orch = _orch(model, manager)

    async def scenario() -> list[StreamEvent]:
        seen: list[StreamEvent] = []
        stream = orch.stream_turn("run both")
        async for ev in stream:
            seen.append(ev)
            if ev.type is EventType.TOOL_CALL:
                break
        await stream.aclose()
        # Give the shielded call time to complete.
        await asyncio.sleep(0.2)
        return seen

    seen = asyncio.run(scenario())

    assert [(e.type, e.data["name"]) for e in seen] == [(EventType.TOOL_CALL, "slow")]
    assert finished == ["slow"]
    assert manager.calls[0][1] == "slow"
    assert len(model.generate_calls) == 1
