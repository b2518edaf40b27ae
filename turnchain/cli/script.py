"""
Replay scripts: a chain run described entirely in YAML.

Example::

    mode: while_needs_response
    stream: true
    messages:
      - {role: system, content: "You are terse."}
      - {role: user, content: "What is the weather in Paris?"}
    functions:
      get_weather:
        description: Current weather for a city
        result: "Sunny in {city}"
    responses:
      - tool_call: {name: get_weather, arguments: {city: Paris}}
      - content: "It is sunny in Paris."

Each entry of ``responses`` is consumed by one model call.  An entry is a
message mapping, a list of message mappings (parallel tool calls), or
``{error: "..."}`` for a provider failure.  A function's ``result`` is a
``str.format`` template filled with the call arguments.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from turnchain.errors import ProviderError, ValidationError
from turnchain.functions.base import FunctionSpec
from turnchain.llm.override import CannedResponses
from turnchain.llm.types import Message, ModelResult, Role, ToolCall


@dataclass
class ReplayScript:
    messages: list[Message]
    responses: CannedResponses
    functions: list[FunctionSpec] = field(default_factory=list)
    mode: str = "single"
    stream: bool = False
    context: Any = None


def message_from_dict(data: dict, index: int = 0) -> Message:
    if not isinstance(data, dict):
        raise ValidationError(f"Expected a message mapping, got {data!r}")
    tool_call = None
    raw_call = data.get("tool_call")
    if raw_call is not None:
        tool_call = ToolCall(
            id=raw_call.get("id") or f"call_{index}",
            name=raw_call.get("name", ""),
            arguments=raw_call.get("arguments") or {},
        )
    return Message(
        role=data.get("role", Role.ASSISTANT),
        content=data.get("content"),
        status=data.get("status"),
        tool_call=tool_call,
        tool_call_id=data.get("tool_call_id"),
        name=data.get("name"),
        is_error=bool(data.get("is_error", False)),
        index=index,
    )


def _response_from(entry: Any) -> ModelResult:
    if isinstance(entry, list):
        return ModelResult.ok([message_from_dict(m, i) for i, m in enumerate(entry)])
    if isinstance(entry, dict) and "error" in entry:
        return ModelResult.failed(ProviderError(str(entry["error"])))
    return ModelResult.ok(message_from_dict(entry))


def _template_executor(template: str):
    def execute(arguments: dict, context: Any) -> str:
        return template.format(**arguments)

    return execute


def _function_from(name: str, data: Any) -> FunctionSpec:
    if isinstance(data, str):
        data = {"result": data}
    elif not isinstance(data, dict):
        raise ValidationError(f"Function {name!r} must be a template string or a mapping")
    return FunctionSpec(
        name=name,
        description=data.get("description", ""),
        executor=_template_executor(str(data.get("result", ""))),
        parameters=data.get("parameters"),
    )


def load_script(path: str | Path) -> ReplayScript:
    """Parse a replay script; raises ``ValidationError`` on malformed input."""
    with Path(path).open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValidationError("Replay script must be a mapping")

    messages = [message_from_dict(m) for m in raw.get("messages") or []]
    responses = CannedResponses(
        [_response_from(r) for r in raw.get("responses") or []],
        chunk_size=int(raw.get("chunk_size", 8)),
    )
    functions = [
        _function_from(name, data) for name, data in (raw.get("functions") or {}).items()
    ]
    return ReplayScript(
        messages=messages,
        responses=responses,
        functions=functions,
        mode=raw.get("mode", "single"),
        stream=bool(raw.get("stream", False)),
        context=raw.get("context"),
    )
