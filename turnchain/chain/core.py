"""
Chain core -- the loop that drives a conversation with a model.

A run:
1. Flushes queued messages into the transcript
2. Sends the transcript and the registered function specs to the model
3. Appends the returned assistant messages
4. Executes every requested tool call, in the order the model returned them,
   and appends one ``tool`` message per call
5. Repeats from 2 while the model still owes a response, if the run mode
   asks for it; otherwise stops after the first round

Tool failures become ``tool`` messages so the model can react to them.
Provider and merge failures end the run; the partial transcript is kept.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from turnchain.chain.events import (
    ChainEvent,
    model_request_event,
    model_result_event,
    run_complete_event,
    run_error_event,
    tool_call_finished_event,
    tool_call_started_event,
)
from turnchain.errors import ChainError, MergeError, ProviderError, ValidationError
from turnchain.functions.base import FunctionSpec
from turnchain.functions.registry import FunctionRegistry
from turnchain.llm.assembler import DeltaCallback
from turnchain.llm.models.base import ChatModel
from turnchain.llm.override import CannedResponses
from turnchain.llm.types import Message, MessageDelta, ModelResult, Role, ToolCall

if TYPE_CHECKING:
    from turnchain.config import RunConfig

logger = logging.getLogger(__name__)


class RunMode(str, Enum):
    SINGLE = "single"
    WHILE_NEEDS_RESPONSE = "while_needs_response"


class ChainState(str, Enum):
    AWAITING_SEND = "awaiting_send"
    SENT_AWAITING_RESULT = "sent_awaiting_result"
    TOOL_CALL_PENDING = "tool_call_pending"
    TOOL_EXECUTED = "tool_executed"
    RESPONSE_COMPLETE = "response_complete"
    ERROR = "error"


def _coerce_mode(mode: RunMode | str) -> RunMode:
    try:
        return RunMode(mode)
    except ValueError:
        raise ValidationError(
            f"Invalid run mode {mode!r}; expected 'single' or 'while_needs_response'"
        ) from None


@dataclass
class ChainConfig:
    """
    Everything a chain needs, checked once at construction.

    Parameters
    ----------
    model : ChatModel
        Client used for every round.  May be omitted when ``override``
        supplies canned responses.
    functions : FunctionRegistry or list of FunctionSpec
        Functions offered to the model.
    context : any
        Passed verbatim to every executor; never sent to the model.
    stream : bool
        Ask the model for incremental delivery and forward deltas to
        ``on_delta``.
    verbose : bool
        Emit a ``ChainEvent`` at every transition.
    mode : RunMode
        ``SINGLE`` performs one model call per run; ``WHILE_NEEDS_RESPONSE``
        keeps going until the model stops requesting tool calls.
    max_rounds : int, optional
        Hard cap on model calls per run.  Unbounded by default.
    on_delta, on_message, on_event : callable, optional
        Observers for streamed deltas, appended messages and trace events.
    override : CannedResponses, optional
        Chain-scoped canned responses replacing the model call.
    """

    model: ChatModel | None = None
    functions: FunctionRegistry | list[FunctionSpec] | None = None
    context: Any = None
    stream: bool = False
    verbose: bool = False
    mode: RunMode = RunMode.SINGLE
    max_rounds: int | None = None
    on_delta: DeltaCallback | None = None
    on_message: Callable[[Message], None] | None = None
    on_event: Callable[[ChainEvent], None] | None = None
    override: CannedResponses | None = None

    def __post_init__(self) -> None:
        if self.model is None and self.override is None:
            raise ValidationError("A chain needs a model or canned responses")
        if self.model is not None and not isinstance(self.model, ChatModel):
            raise ValidationError(
                f"model must be a ChatModel, got {type(self.model).__name__}"
            )
        if self.functions is None:
            self.functions = FunctionRegistry()
        elif not isinstance(self.functions, FunctionRegistry):
            self.functions = FunctionRegistry(list(self.functions))
        self.mode = _coerce_mode(self.mode)
        if self.max_rounds is not None and self.max_rounds < 1:
            raise ValidationError("max_rounds must be at least 1")
        if self.on_delta is not None and not self.stream:
            raise ValidationError("on_delta requires stream=True")

    @classmethod
    def from_run_config(cls, run: RunConfig, **kwargs: Any) -> ChainConfig:
        """Build a config from the file/env ``run`` section plus runtime objects."""
        return cls(
            stream=run.stream,
            verbose=run.verbose,
            mode=run.mode,
            max_rounds=run.max_rounds,
            **kwargs,
        )


@dataclass
class ChainResult:
    """
    Outcome of ``Chain.run``.

    On failure ``error`` is set and ``last_message`` is ``None``; ``messages``
    holds the transcript up to the last successful append either way.
    """

    messages: list[Message]
    last_message: Message | None = None
    error: Exception | None = None
    rounds: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Message:
        """Return the last message, raising the run's error if it failed."""
        if self.error is not None:
            raise self.error
        assert self.last_message is not None
        return self.last_message


class Chain:
    """
    Owns a transcript and drives it through the model/tool loop.

    A chain is not safe for concurrent runs; each run is one sequential
    pass of rounds.
    """

    def __init__(self, config: ChainConfig) -> None:
        self.config = config
        self.registry: FunctionRegistry = config.functions  # type: ignore[assignment]
        self.state = ChainState.AWAITING_SEND
        self._messages: list[Message] = []
        self._queued: list[Message] = []
        self._run_id = ""
        self._round = 0

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def queued(self) -> list[Message]:
        return list(self._queued)

    @property
    def last_message(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    @property
    def needs_response(self) -> bool:
        """True when the last message is something the model should answer."""
        last = self.last_message
        if last is None:
            return False
        return last.role in (Role.USER, Role.TOOL) or last.is_tool_call

    def add_message(self, message: Message) -> Chain:
        if not isinstance(message, Message):
            raise ValidationError(f"Expected a Message, got {type(message).__name__}")
        self._queued.append(message)
        return self

    def add_messages(self, messages: Iterable[Message]) -> Chain:
        for message in messages:
            self.add_message(message)
        return self

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run(self, mode: RunMode | str | None = None) -> ChainResult:
        """
        Run rounds according to *mode* (defaults to ``config.mode``).

        Raises ``ValidationError`` before contacting the model when there
        is nothing to send.  Every other failure is returned on the result.
        """
        mode = self.config.mode if mode is None else _coerce_mode(mode)
        self._messages.extend(self._queued)
        self._queued.clear()
        if not self._messages:
            raise ValidationError("Cannot run a chain without messages")

        self._run_id = uuid.uuid4().hex[:12]
        self._round = 0
        try:
            while True:
                await self._run_round()
                if mode is RunMode.SINGLE or not self.needs_response:
                    break
                if (
                    self.config.max_rounds is not None
                    and self._round >= self.config.max_rounds
                ):
                    raise ChainError(
                        f"Reached maximum of {self.config.max_rounds} rounds "
                        "with tool calls still pending"
                    )
        except (ProviderError, MergeError, ChainError) as exc:
            self._set_state(ChainState.ERROR)
            logger.warning("Chain run %s failed: %s", self._run_id, exc)
            self._trace(run_error_event, exc)
            return ChainResult(
                messages=self.messages, error=exc, rounds=self._round
            )

        self._set_state(ChainState.RESPONSE_COMPLETE)
        last = self._messages[-1]
        self._trace(run_complete_event, last)
        return ChainResult(messages=self.messages, last_message=last, rounds=self._round)

    async def _run_round(self) -> None:
        self._round += 1
        self._set_state(ChainState.AWAITING_SEND)
        specs = self.registry.list()
        self._trace(model_request_event, len(self._messages), [f.name for f in specs])

        self._set_state(ChainState.SENT_AWAITING_RESULT)
        on_delta = self._handle_delta if self.config.stream else None
        if self.config.override is not None:
            result = self.config.override.replay(on_delta)
        else:
            assert self.config.model is not None
            result = await self.config.model.send(self._messages, specs, on_delta)
        self._trace(model_result_event, result)

        for msg in self._check_result(result):
            self._append(msg)

        for msg in result.messages:
            if msg.is_tool_call:
                self._set_state(ChainState.TOOL_CALL_PENDING)
                await self._execute_tool_call(msg.tool_call)
                self._set_state(ChainState.TOOL_EXECUTED)

    def _check_result(self, result: ModelResult) -> list[Message]:
        if result.error is not None:
            raise result.error
        if not result.messages:
            raise ProviderError("Model returned no messages")
        for msg in result.messages:
            if msg.role is not Role.ASSISTANT:
                raise ProviderError(
                    f"Model returned a {msg.role.value} message; expected assistant"
                )
        return result.messages

    async def _execute_tool_call(self, call: ToolCall) -> None:
        self._trace(tool_call_started_event, call)
        result = await self.registry.execute(call.name, call.arguments, self.config.context)
        if not result.success:
            logger.warning(
                "Tool call %s (%s) failed: %s", call.name, call.id, result.content
            )
        self._append(Message.tool_result(call, result.content, is_error=not result.success))
        self._trace(tool_call_finished_event, call, result)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        if self.config.on_message is not None:
            self.config.on_message(message)

    def _handle_delta(self, delta: MessageDelta) -> None:
        if self.config.on_delta is not None:
            self.config.on_delta(delta)

    def _set_state(self, state: ChainState) -> None:
        logger.debug("Chain %s: %s -> %s", self._run_id, self.state.value, state.value)
        self.state = state

    def _trace(self, factory: Callable[..., ChainEvent], *args: Any) -> None:
        if not self.config.verbose:
            return
        event = factory(self._run_id, self._round, *args)
        logger.info("[%s] round=%d %s %s", self._run_id, self._round, event.event_type, event.payload)
        if self.config.on_event is not None:
            self.config.on_event(event)
