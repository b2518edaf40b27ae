"""
Chain trace events.

With ``verbose`` enabled, a chain emits a ChainEvent at every state
transition.  Events are a diagnostics side channel: they are created after
the fact and never influence the run.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from turnchain.llm.types import Message, ModelResult, ToolCall
from turnchain.types import FunctionResult


# ---------------------------------------------------------------------------
# Base event
# ---------------------------------------------------------------------------


@dataclass
class ChainEvent:
    """
    A single trace event.

    Attributes
    ----------
    event_type:
        One of the event types below.
    payload:
        Event-specific data as a JSON-compatible dict.
    run_id:
        Groups events emitted by the same ``Chain.run`` call.
    round:
        Model round the event belongs to (1-based).
    """

    event_type: str
    payload: dict[str, Any]
    run_id: str = ""
    round: int = 0
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

EVENT_MODEL_REQUEST = "model_request"
EVENT_MODEL_RESULT = "model_result"
EVENT_TOOL_CALL_STARTED = "tool_call_started"
EVENT_TOOL_CALL_FINISHED = "tool_call_finished"
EVENT_RUN_COMPLETE = "run_complete"
EVENT_RUN_ERROR = "run_error"


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def model_request_event(
    run_id: str, round: int, message_count: int, function_names: list[str]
) -> ChainEvent:
    return ChainEvent(
        event_type=EVENT_MODEL_REQUEST,
        payload={"message_count": message_count, "functions": function_names},
        run_id=run_id,
        round=round,
    )


def model_result_event(run_id: str, round: int, result: ModelResult) -> ChainEvent:
    """Summarize the raw model result; errors carry their message."""
    payload: dict[str, Any]
    if result.is_ok:
        payload = {
            "ok": True,
            "messages": [
                {
                    "status": m.status.value,
                    "content": m.content,
                    "tool_call": m.tool_call_name,
                }
                for m in result.messages
            ],
        }
    else:
        payload = {"ok": False, "error": str(result.error)}
    return ChainEvent(
        event_type=EVENT_MODEL_RESULT, payload=payload, run_id=run_id, round=round
    )


def tool_call_started_event(run_id: str, round: int, call: ToolCall) -> ChainEvent:
    return ChainEvent(
        event_type=EVENT_TOOL_CALL_STARTED,
        payload={
            "tool_call_id": call.id,
            "name": call.name,
            "arguments": call.arguments,
        },
        run_id=run_id,
        round=round,
    )


def tool_call_finished_event(
    run_id: str, round: int, call: ToolCall, result: FunctionResult
) -> ChainEvent:
    return ChainEvent(
        event_type=EVENT_TOOL_CALL_FINISHED,
        payload={
            "tool_call_id": call.id,
            "name": call.name,
            "success": result.success,
            "content": result.content,
            "error_code": result.error_code,
            "duration_ms": result.duration_ms,
        },
        run_id=run_id,
        round=round,
    )


def run_complete_event(run_id: str, round: int, last: Message) -> ChainEvent:
    return ChainEvent(
        event_type=EVENT_RUN_COMPLETE,
        payload={"role": last.role.value, "status": last.status.value},
        run_id=run_id,
        round=round,
    )


def run_error_event(run_id: str, round: int, error: Exception) -> ChainEvent:
    return ChainEvent(
        event_type=EVENT_RUN_ERROR,
        payload={"error_type": type(error).__name__, "error": str(error)},
        run_id=run_id,
        round=round,
    )
