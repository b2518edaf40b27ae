"""
Reduction of streamed ``MessageDelta`` fragments into complete messages.

Fragments are buffered per ``index``.  Content is concatenated in arrival
order; tool-call argument text is concatenated too and parsed as JSON only
once the whole message has been seen.  A fragment carrying a terminal
status (anything but ``incomplete``) closes its buffer: further fragments
for that index are a protocol violation.
"""

from __future__ import annotations

import json
from typing import Iterable

from turnchain.errors import MergeError, ValidationError
from turnchain.llm.types import (
    Message,
    MessageDelta,
    MessageStatus,
    Role,
    TokenUsage,
    ToolCall,
)


class _MessageBuffer:
    """Accumulates the fragments of a single message."""

    def __init__(self, index: int) -> None:
        self.index = index
        self.role: Role | None = None
        self.status: MessageStatus | None = None
        self.content: list[str] = []
        self.has_content = False
        self.call_id: str | None = None
        self.tool_name = ""
        self.args: list[str] = []
        self.name: str | None = None
        self.is_error = False
        self.usage: TokenUsage | None = None
        self.closed = False

    def feed(self, delta: MessageDelta) -> None:
        if self.closed:
            raise MergeError(
                f"Delta received after terminal status at index {self.index}"
            )
        if delta.role is not None:
            if self.role is not None and delta.role is not self.role:
                raise MergeError(
                    f"Conflicting roles at index {self.index}: "
                    f"{self.role.value} then {delta.role.value}"
                )
            self.role = delta.role
        if delta.content is not None:
            self.content.append(delta.content)
            self.has_content = True
        if delta.tool_call_id and not self.call_id:
            self.call_id = delta.tool_call_id
        if delta.tool_name:
            self.tool_name += delta.tool_name
        if delta.arguments_delta:
            self.args.append(delta.arguments_delta)
        if delta.name:
            self.name = delta.name
        if delta.is_error:
            self.is_error = True
        if delta.usage is not None:
            self.usage = delta.usage
        if delta.status is not None:
            self.status = delta.status
            if delta.status is not MessageStatus.INCOMPLETE:
                self.closed = True

    def build(self, *, done: bool = False, usage: TokenUsage | None = None) -> Message:
        status = self.status or MessageStatus.INCOMPLETE
        if done and status is MessageStatus.INCOMPLETE:
            status = MessageStatus.COMPLETE
        role = self.role or Role.ASSISTANT

        tool_call: ToolCall | None = None
        tool_call_id: str | None = None
        if role is Role.TOOL:
            tool_call_id = self.call_id
        elif self.tool_name.strip():
            tool_call = ToolCall(
                id=self.call_id or f"call_{self.index}",
                name=self.tool_name.strip(),
                arguments=self._parse_arguments(),
            )
        elif self.args or self.call_id:
            raise MergeError(
                f"Tool-call data without a function name at index {self.index}"
            )

        try:
            return Message(
                role=role,
                content="".join(self.content) if self.has_content else None,
                status=status,
                tool_call=tool_call,
                tool_call_id=tool_call_id,
                name=self.name,
                is_error=self.is_error,
                index=self.index,
                usage=usage if usage is not None else self.usage,
            )
        except ValidationError as exc:
            raise MergeError(f"Merged message at index {self.index} is invalid: {exc}") from exc

    def _parse_arguments(self) -> dict:
        raw = "".join(self.args) or "{}"
        try:
            args = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as exc:
            raise MergeError(
                f"Tool-call arguments at index {self.index} are not valid JSON: {exc}"
            ) from exc
        if not isinstance(args, dict):
            raise MergeError(
                f"Tool-call arguments at index {self.index} must be a JSON object"
            )
        return args


def merge_deltas(
    deltas: Iterable[MessageDelta],
    *,
    done: bool = False,
    usage: TokenUsage | None = None,
) -> Message:
    """
    Merge the fragments of one message.

    *done* signals that the stream ended with a terminal marker: a message
    whose fragments never set a terminal status is then marked complete.
    *usage* overrides any usage carried on the fragments.
    """
    deltas = list(deltas)
    if not deltas:
        raise MergeError("No deltas to merge")
    indices = sorted({d.index for d in deltas})
    if len(indices) > 1:
        raise MergeError(
            f"Deltas span several indices {indices}; use merge_delta_groups"
        )
    buf = _MessageBuffer(indices[0])
    for delta in deltas:
        buf.feed(delta)
    return buf.build(done=done, usage=usage)


def merge_delta_groups(
    deltas: Iterable[MessageDelta],
    *,
    done: bool = False,
    usage: TokenUsage | None = None,
) -> list[Message]:
    """
    Merge interleaved fragments of several messages (parallel tool calls).

    Indices must run contiguously from 0.  Terminal *usage* is attached to
    the last message.
    """
    buffers: dict[int, _MessageBuffer] = {}
    for delta in deltas:
        buffers.setdefault(delta.index, _MessageBuffer(delta.index)).feed(delta)
    if not buffers:
        raise MergeError("No deltas to merge")

    indices = sorted(buffers)
    if indices != list(range(len(indices))):
        raise MergeError(f"Delta indices are not contiguous from 0: {indices}")

    last = indices[-1]
    return [
        buffers[i].build(done=done, usage=usage if i == last else None)
        for i in indices
    ]


def _chunks(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)] or [""]


def split_message(message: Message, chunk_size: int = 8) -> list[MessageDelta]:
    """
    Split *message* into deltas of at most *chunk_size* characters.

    Inverse of ``merge_deltas``: merging the result yields *message* again.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    pieces: list[MessageDelta] = []
    if message.content is not None:
        pieces.extend(
            MessageDelta(index=message.index, content=chunk)
            for chunk in _chunks(message.content, chunk_size)
        )
    if message.tool_call is not None:
        pieces.extend(
            MessageDelta(index=message.index, arguments_delta=chunk)
            for chunk in _chunks(json.dumps(message.tool_call.arguments), chunk_size)
        )
    if not pieces:
        pieces.append(MessageDelta(index=message.index))

    first, last = pieces[0], pieces[-1]
    first.role = message.role
    if message.tool_call is not None:
        first.tool_call_id = message.tool_call.id
        first.tool_name = message.tool_call.name
    else:
        first.tool_call_id = message.tool_call_id
    first.name = message.name
    first.is_error = message.is_error
    last.status = message.status
    last.usage = message.usage
    return pieces
