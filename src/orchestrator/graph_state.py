from __future__ import annotations

import operator
from typing import Annotated
from typing_extensions import TypedDict

from core.types import ToolCallRecord, Turn
from llm.client import ModelResponse
from tools.schema import FunctionDeclaration


class TurnState(TypedDict, total=False):
    # Conversation so far, ending with the new user turn; grows by one
    # model turn + one function turn per cycle.
    turns: list[Turn]

    # COLLECT_TOOLS outputs
    tool_table: dict[str, str]
    declarations: list[FunctionDeclaration]

    # Latest model response
    response: ModelResponse

    # Completed function-call cycles
    iterations: int

    # Accumulated tool artifacts
    records: Annotated[list[ToolCallRecord], operator.add]

    # Final output
    assistant_text: str
    iteration_limit_reached: bool
