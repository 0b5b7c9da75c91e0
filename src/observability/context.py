"""Per-turn logging context.

Every record logged while a turn runs carries the turn's trace id, the owning
orchestrator's session id, the turn counter, the node currently running and
the errors seen so far in the turn.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar

_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)
_turn_id: ContextVar[int | None] = ContextVar("turn_id", default=None)
_state: ContextVar[str | None] = ContextVar("state", default=None)
_errors: ContextVar[tuple[str, ...]] = ContextVar("errors", default=())

_FIELDS: tuple[tuple[str, ContextVar], ...] = (
    ("trace_id", _trace_id),
    ("session_id", _session_id),
    ("turn_id", _turn_id),
    ("state", _state),
)


def new_session_id() -> str:
    return uuid.uuid4().hex[:24]


def bind_turn(*, session_id: str, turn_id: int) -> str:
    """Start a fresh context for one turn and return its trace id."""

    trace_id = uuid.uuid4().hex
    _trace_id.set(trace_id)
    _session_id.set(session_id)
    _turn_id.set(turn_id)
    _state.set(None)
    _errors.set(())
    return trace_id


def set_state(state: str) -> None:
    """Record the turn-loop node currently running (COLLECT_TOOLS, CALL_MODEL, ...)."""

    _state.set(state)


def add_error(message: str) -> None:
    _errors.set((*_errors.get(), message))


def snapshot() -> dict[str, object]:
    out: dict[str, object] = {key: value for key, var in _FIELDS if (value := var.get()) is not None}
    out["errors"] = list(_errors.get())
    return out
