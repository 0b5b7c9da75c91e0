"""Function-calling turn loop (LangGraph state machine) and its event stream."""

from __future__ import annotations

from .events import EventType, StreamEvent
from .graph_orchestrator import GraphOrchestrator, ImageResolver, TurnOutput

__all__ = [
    "EventType",
    "GraphOrchestrator",
    "ImageResolver",
    "StreamEvent",
    "TurnOutput",
]
