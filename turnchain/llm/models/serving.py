"""
Chat model backed by a local inference "serving" callable.

The serving receives the rendered prompt and a seed and returns either:

  - a mapping ``{"text": str, "token_summary": {...}}`` for a complete,
    non-streamed generation, or
  - an iterable (sync or async) of text chunks, ideally ending with a
    ``StreamDone`` marker carrying token counts.

Streamed output is assembled with ``StreamAssembler``: buffered when the
caller did not ask for deltas, live otherwise.  Either way the chain gets a
single complete assistant message.

Prompt rendering depends on the model family and is injected as
``prompt_formatter``.  Functions are accepted and ignored: local models
served this way do not expose tool calling.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, AsyncIterator, Callable, Iterator, Mapping

from turnchain.errors import ProviderError
from turnchain.functions.base import FunctionSpec
from turnchain.llm.assembler import DeltaCallback, StreamAssembler, StreamItem
from turnchain.llm.models.base import ChatModel
from turnchain.llm.types import (
    Message,
    MessageDelta,
    MessageStatus,
    Role,
    StreamDone,
    TokenUsage,
)

logger = logging.getLogger(__name__)

Serving = Callable[..., Any]
PromptFormatter = Callable[[list[Message]], str]


def format_plain_prompt(messages: list[Message]) -> str:
    """Render messages as ``role: content`` lines, ending with an assistant cue."""
    lines: list[str] = []
    for msg in messages:
        if msg.tool_call is not None:
            args = json.dumps(msg.tool_call.arguments)
            lines.append(f"assistant: [call {msg.tool_call.name}({args})]")
        elif msg.role is Role.TOOL:
            lines.append(f"tool {msg.name}: {msg.content}")
        elif msg.content is not None:
            lines.append(f"{msg.role.value}: {msg.content}")
    lines.append("assistant:")
    return "\n".join(lines)


def usage_from_summary(summary: Any) -> TokenUsage | None:
    """Accept a ``TokenUsage`` or a mapping with input/output counts."""
    if summary is None or isinstance(summary, TokenUsage):
        return summary
    if isinstance(summary, Mapping):
        return TokenUsage(
            input_tokens=int(summary.get("input", summary.get("input_tokens", 0)) or 0),
            output_tokens=int(summary.get("output", summary.get("output_tokens", 0)) or 0),
        )
    logger.warning("Ignoring unrecognised token summary: %r", summary)
    return None


class ServingChatModel(ChatModel):
    """
    Parameters
    ----------
    serving:
        Callable ``(prompt, seed) -> output``; may be a coroutine function.
    prompt_formatter:
        Renders the transcript into the model's prompt format.
    seed:
        Passed through to the serving for reproducible generations.
    """

    def __init__(
        self,
        serving: Serving,
        prompt_formatter: PromptFormatter | None = None,
        seed: int | None = None,
        name: str = "serving",
    ) -> None:
        if not callable(serving):
            raise TypeError("serving must be callable")
        self._serving = serving
        self._format = prompt_formatter or format_plain_prompt
        self.seed = seed
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def _call(
        self,
        messages: list[Message],
        functions: list[FunctionSpec],
        on_delta: DeltaCallback | None,
    ) -> list[Message]:
        if functions:
            logger.debug("%s ignores %d offered functions", self._name, len(functions))
        prompt = self._format(messages)
        output = self._serving(prompt, self.seed)
        if inspect.isawaitable(output):
            output = await output
        return await self._process_output(output, on_delta)

    async def _process_output(
        self, output: Any, on_delta: DeltaCallback | None
    ) -> list[Message]:
        if isinstance(output, Mapping):
            return [self._complete_message(output)]

        assembler = StreamAssembler(on_delta)
        if hasattr(output, "__aiter__"):
            return await assembler.aassemble(self._async_items(output))
        if hasattr(output, "__iter__") and not isinstance(output, (str, bytes)):
            return assembler.assemble(self._items(output))
        raise ProviderError(f"Unsupported serving output: {type(output).__name__}")

    def _complete_message(self, output: Mapping) -> Message:
        text = output.get("text")
        if not isinstance(text, str):
            raise ProviderError("Serving result has no text")
        return Message(
            role=Role.ASSISTANT,
            content=text,
            status=MessageStatus.COMPLETE,
            usage=usage_from_summary(output.get("token_summary")),
        )

    def _items(self, chunks: Any) -> Iterator[StreamItem]:
        for chunk in chunks:
            yield self._to_item(chunk)

    async def _async_items(self, chunks: Any) -> AsyncIterator[StreamItem]:
        async for chunk in chunks:
            yield self._to_item(chunk)

    @staticmethod
    def _to_item(chunk: Any) -> StreamItem:
        if isinstance(chunk, (StreamDone, MessageDelta)):
            return chunk
        if isinstance(chunk, str):
            return MessageDelta(
                role=Role.ASSISTANT, content=chunk, status=MessageStatus.INCOMPLETE
            )
        raise ProviderError(f"Unexpected stream chunk from serving: {chunk!r}")
