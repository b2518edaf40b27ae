"""Core message types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from turnchain.errors import ProviderError, ValidationError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MessageStatus(str, Enum):
    """
    Completion state of a message.

    ``TOOL_CALL`` marks an assistant message that asks the chain to run a
    function before the model can continue.
    """

    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    LENGTH = "length"
    TOOL_CALL = "tool_call"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


def _coerce_enum(enum_cls: type[Enum], value: Any, what: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {what} {value!r}; expected one of: {allowed}") from None


@dataclass
class Message:
    """
    A single message in a conversation.

    ``status`` defaults to ``TOOL_CALL`` when a tool call is attached and to
    ``COMPLETE`` otherwise.  Invalid role/field combinations raise
    ``ValidationError`` at construction time.
    """

    role: Role
    content: str | None = None
    status: MessageStatus | None = None
    tool_call: ToolCall | None = None
    tool_call_id: str | None = None  # tool results: originating call
    name: str | None = None  # tool results: function name
    is_error: bool = False
    index: int = 0
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        self.role = _coerce_enum(Role, self.role, "role")
        if self.status is None:
            self.status = (
                MessageStatus.TOOL_CALL if self.tool_call else MessageStatus.COMPLETE
            )
        self.status = _coerce_enum(MessageStatus, self.status, "status")
        if self.tool_call is not None and self.status is MessageStatus.COMPLETE:
            self.status = MessageStatus.TOOL_CALL
        self._validate()

    def _validate(self) -> None:
        if self.content is not None and not isinstance(self.content, str):
            raise ValidationError(
                f"content must be a string, got {type(self.content).__name__}"
            )
        if self.index < 0:
            raise ValidationError("index must be non-negative")

        if self.tool_call is not None:
            if self.role is not Role.ASSISTANT:
                raise ValidationError(
                    f"Only assistant messages may request a tool call (role={self.role.value})"
                )
            if not self.tool_call.name:
                raise ValidationError("Tool call requires a function name")
            if not isinstance(self.tool_call.arguments, dict):
                raise ValidationError("Tool call arguments must be a mapping")
        elif self.status is MessageStatus.TOOL_CALL:
            raise ValidationError("Status 'tool_call' requires a tool call")

        if self.role is Role.TOOL:
            if not self.name:
                raise ValidationError("Tool result requires the originating function name")
            if self.content is None:
                raise ValidationError("Tool result requires content")
        elif self.role in (Role.SYSTEM, Role.USER):
            if self.content is None:
                raise ValidationError(f"{self.role.value} message requires content")
        elif (
            self.content is None
            and self.tool_call is None
            and self.status is MessageStatus.COMPLETE
        ):
            raise ValidationError("Complete assistant message requires content or a tool call")

        if self.role is not Role.TOOL and (self.tool_call_id or self.is_error):
            raise ValidationError("tool_call_id and is_error apply to tool results only")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def system(cls, content: str = "You are a helpful assistant.") -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        status: MessageStatus | str | None = None,
        **kwargs: Any,
    ) -> Message:
        return cls(role=Role.ASSISTANT, content=content, status=status, **kwargs)

    @classmethod
    def tool_call_request(
        cls,
        name: str,
        arguments: dict[str, Any] | None = None,
        call_id: str | None = None,
        content: str | None = None,
        index: int = 0,
    ) -> Message:
        """Build an assistant message asking for *name* to be called."""
        call = ToolCall(
            id=call_id or f"call_{index}",
            name=name,
            arguments={} if arguments is None else arguments,
        )
        return cls(role=Role.ASSISTANT, content=content, tool_call=call, index=index)

    @classmethod
    def tool_result(
        cls, call: ToolCall, content: str, *, is_error: bool = False
    ) -> Message:
        """Build the ``tool`` message answering *call*."""
        return cls(
            role=Role.TOOL,
            content=content,
            tool_call_id=call.id,
            name=call.name,
            is_error=is_error,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_tool_call(self) -> bool:
        return self.status is MessageStatus.TOOL_CALL

    @property
    def tool_call_name(self) -> str | None:
        return self.tool_call.name if self.tool_call else None

    @property
    def tool_call_arguments(self) -> dict[str, Any] | None:
        return self.tool_call.arguments if self.tool_call else None


@dataclass
class MessageDelta:
    """
    One increment of a streamed message.

    Deltas sharing an ``index`` belong to the same eventual ``Message``.
    ``arguments_delta`` carries raw JSON text; it is only parsed once every
    fragment has been concatenated.
    """

    index: int = 0
    role: Role | None = None
    content: str | None = None
    status: MessageStatus | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    name: str | None = None
    is_error: bool = False
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        if self.role is not None:
            self.role = _coerce_enum(Role, self.role, "role")
        if self.status is not None:
            self.status = _coerce_enum(MessageStatus, self.status, "status")


@dataclass
class StreamDone:
    """Terminal end-of-stream marker, optionally carrying token counts."""

    usage: TokenUsage | None = None


@dataclass
class ModelResult:
    """
    Outcome of one model call: either ``messages`` or an ``error``.

    Build with ``ModelResult.ok`` / ``ModelResult.failed``.
    """

    messages: list[Message] = field(default_factory=list)
    error: ProviderError | None = None

    @classmethod
    def ok(cls, messages: Message | Sequence[Message]) -> ModelResult:
        if isinstance(messages, Message):
            messages = [messages]
        return cls(messages=list(messages))

    @classmethod
    def failed(cls, error: ProviderError | str) -> ModelResult:
        if isinstance(error, str):
            error = ProviderError(error)
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None
