"""OpenAI-compatible model client.

The default endpoint is Gemini's OpenAI-compatible API, but any provider that
speaks chat completions with streaming tool calls works.

Both operations stream (`stream=True`): tool-call arguments are accumulated
from the streamed deltas, and the chat-only path forwards text chunks as they
arrive. Closing the async iterator closes the underlying HTTP stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from core.config import ModelConfig
from core.errors import ConfigError, ModelCallError
from core.types import FunctionCall, Turn
from observability.logging import get_logger
from tools.schema import FunctionDeclaration

from .messages import build_messages
from .tool_call_accumulator import InvalidToolCall, ToolCallAccumulator


@dataclass(frozen=True)
class ModelResponse:
    """Text plus the requested calls in emission order.

    Calls whose streamed arguments did not parse stay in their position as
    InvalidToolCall entries.
    """

    text: str
    calls: list[FunctionCall | InvalidToolCall] = field(default_factory=list)

    @property
    def has_calls(self) -> bool:
        return bool(self.calls)

    @property
    def invalid_count(self) -> int:
        return sum(1 for c in self.calls if isinstance(c, InvalidToolCall))


class ModelClient(Protocol):
    """What the turn loop needs from a model."""

    async def generate(self, turns: Sequence[Turn], declarations: Sequence[FunctionDeclaration]) -> ModelResponse:
        ...

    def stream_text(self, turns: Sequence[Turn]) -> AsyncIterator[str]:
        ...


def _delta_tool_chunks(delta: Any) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        out.append(
            {
                "index": getattr(tc, "index", None),
                "id": getattr(tc, "id", None),
                "name": getattr(fn, "name", None) if fn is not None else None,
                "args": getattr(fn, "arguments", None) if fn is not None else None,
            }
        )
    return out


class OpenAIModelClient:
    """Chat-completions adapter over `openai.AsyncOpenAI`."""

    def __init__(self, cfg: ModelConfig, *, client: AsyncOpenAI | None = None) -> None:
        self._cfg = cfg
        self._log = get_logger("mcpchat.llm")
        if client is None:
            if cfg.api_key is None:
                raise ConfigError("must be set (or set GEMINI_API_KEY)", path="model.api_key")
            client = AsyncOpenAI(
                api_key=cfg.api_key.get_secret_value(),
                base_url=cfg.base_url,
                timeout=cfg.timeout_s,
                max_retries=cfg.max_retries,
            )
        self._client = client

    async def generate(self, turns: Sequence[Turn], declarations: Sequence[FunctionDeclaration]) -> ModelResponse:
        messages = build_messages(turns, system_prompt=self._cfg.system_prompt)
        kwargs: dict[str, Any] = {}
        if declarations:
            kwargs["tools"] = [d.to_openai() for d in declarations]
            kwargs["tool_choice"] = "auto"

        acc = ToolCallAccumulator()
        text_parts: list[str] = []

        try:
            stream = await self._client.chat.completions.create(
                model=self._cfg.model,
                messages=messages,  # type: ignore[arg-type]
                stream=True,
                **kwargs,
            )
            async with stream:
                async for ev in stream:
                    choices = getattr(ev, "choices", None) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0], "delta", None)
                    if delta is None:
                        continue

                    content = getattr(delta, "content", None)
                    if isinstance(content, str) and content:
                        text_parts.append(content)

                    chunks = _delta_tool_chunks(delta)
                    if chunks:
                        acc.add_chunks(chunks)
        except openai.OpenAIError as e:
            raise ModelCallError(f"model call failed: {e}", details={"exc": type(e).__name__}) from e

        calls: list[FunctionCall | InvalidToolCall] = [
            c if isinstance(c, InvalidToolCall) else FunctionCall(id=c.id, name=c.name, args=c.args)
            for c in acc.finalize()
        ]
        response = ModelResponse(text="".join(text_parts), calls=calls)

        self._log.info(
            "model_generate_complete",
            model=self._cfg.model,
            assistant_text_len=len("".join(text_parts)),
            tool_calls=len(calls),
            invalid_tool_calls=response.invalid_count,
        )
        return response

    async def stream_text(self, turns: Sequence[Turn]) -> AsyncIterator[str]:
        messages = build_messages(turns, system_prompt=self._cfg.system_prompt)
        try:
            stream = await self._client.chat.completions.create(
                model=self._cfg.model,
                messages=messages,  # type: ignore[arg-type]
                stream=True,
            )
            async with stream:
                async for ev in stream:
                    choices = getattr(ev, "choices", None) or []
                    if not choices:
                        continue
                    delta = getattr(choices[0], "delta", None)
                    text = getattr(delta, "content", None) if delta is not None else None
                    if isinstance(text, str) and text:
                        yield text
        except openai.OpenAIError as e:
            raise ModelCallError(f"model call failed: {e}", details={"exc": type(e).__name__}) from e


class FakeModelClient:
    """Offline stub for running the turn loop without network/API."""

    async def generate(self, turns: Sequence[Turn], declarations: Sequence[FunctionDeclaration]) -> ModelResponse:
        _ = declarations
        last = turns[-1].text if turns else ""
        return ModelResponse(text=f"(fake) {last}")

    async def stream_text(self, turns: Sequence[Turn]) -> AsyncIterator[str]:
        last = turns[-1].text if turns else ""
        yield "(fake) "
        yield last
