"""
Reduces a stream of ``MessageDelta`` fragments into complete messages.

Two modes share one code path:
  - buffered: no callback; fragments are collected and merged once the
    stream is exhausted.
  - live: every fragment is handed to ``on_delta`` synchronously, in arrival
    order, and the same merge runs at the end to produce the canonical
    message for the transcript.

Deltas must arrive in non-decreasing ``index`` order: parallel messages
are streamed one after another.  The stream may end with a ``StreamDone``
marker.  It must be the final element; its token usage is attached to the
merged result.
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, Callable, Iterable, Union

from turnchain.errors import MergeError
from turnchain.llm.deltas import merge_delta_groups
from turnchain.llm.types import Message, MessageDelta, StreamDone, TokenUsage

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[MessageDelta], None]
StreamItem = Union[MessageDelta, StreamDone]


class StreamAssembler:
    """Buffers deltas (optionally forwarding them live) and emits messages."""

    def __init__(self, on_delta: DeltaCallback | None = None) -> None:
        self.on_delta = on_delta
        self._deltas: list[MessageDelta] = []
        self._done = False
        self._usage: TokenUsage | None = None
        self._index = 0

    @property
    def live(self) -> bool:
        return self.on_delta is not None

    @property
    def done(self) -> bool:
        return self._done

    @property
    def delta_count(self) -> int:
        return len(self._deltas)

    def feed(self, item: StreamItem) -> None:
        if self._done:
            raise MergeError("Stream item received after the done marker")
        if isinstance(item, StreamDone):
            self._done = True
            self._usage = item.usage
            return
        if not isinstance(item, MessageDelta):
            raise MergeError(f"Unexpected stream item: {type(item).__name__}")
        if item.index < self._index:
            raise MergeError(
                f"Delta for index {item.index} arrived after index {self._index}"
            )
        self._index = item.index
        self._deltas.append(item)
        if self.on_delta is not None:
            self.on_delta(item)

    def finish(self) -> list[Message]:
        """Merge everything fed so far into messages ordered by index."""
        if not self._deltas:
            raise MergeError("Stream ended without any content")
        if not self._done:
            logger.debug("Stream ended without a done marker")
        return merge_delta_groups(self._deltas, done=self._done, usage=self._usage)

    def assemble(self, stream: Iterable[StreamItem]) -> list[Message]:
        for item in stream:
            self.feed(item)
        return self.finish()

    async def aassemble(self, stream: AsyncIterable[StreamItem]) -> list[Message]:
        async for item in stream:
            self.feed(item)
        return self.finish()

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._deltas.clear()
        self._done = False
        self._usage = None
        self._index = 0
