"""
Canned model responses that stand in for a live model call.

A ``CannedResponses`` queue can be installed process-wide with
``set_api_override`` / ``api_override`` (every ``ChatModel.send`` then
replays it) or attached to a single chain through ``ChainConfig.override``.
Replays still fire the delta callback so streaming consumers observe the
same side effects as with a live call.
"""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from typing import Iterable, Iterator, Union

from turnchain.errors import ProviderError
from turnchain.llm.assembler import DeltaCallback
from turnchain.llm.deltas import split_message
from turnchain.llm.types import Message, ModelResult

logger = logging.getLogger(__name__)

CannedItem = Union[ModelResult, Message, list, ProviderError]


def _to_result(item: CannedItem) -> ModelResult:
    if isinstance(item, ModelResult):
        return item
    if isinstance(item, ProviderError):
        return ModelResult.failed(item)
    if isinstance(item, Message):
        return ModelResult.ok(item)
    if isinstance(item, list) and all(isinstance(m, Message) for m in item):
        return ModelResult.ok(item)
    raise TypeError(f"Unsupported canned response: {item!r}")


class CannedResponses:
    """
    A FIFO of model results, one consumed per model call.

    Accepts ``ModelResult`` objects, bare ``Message`` objects, lists of
    messages (parallel tool calls) or ``ProviderError`` instances.
    """

    def __init__(self, responses: Iterable[CannedItem], chunk_size: int = 8) -> None:
        self._queue: deque[ModelResult] = deque(_to_result(r) for r in responses)
        self.chunk_size = chunk_size
        self.call_count = 0

    def __len__(self) -> int:
        return len(self._queue)

    def push(self, item: CannedItem) -> None:
        self._queue.append(_to_result(item))

    def replay(self, on_delta: DeltaCallback | None = None) -> ModelResult:
        """Pop the next result, firing *on_delta* for each of its deltas."""
        self.call_count += 1
        if not self._queue:
            logger.warning("Canned responses exhausted after %d calls", self.call_count - 1)
            return ModelResult.failed("No canned response left to replay")
        result = self._queue.popleft()
        if on_delta is not None and result.is_ok:
            for msg in result.messages:
                for delta in split_message(msg, self.chunk_size):
                    on_delta(delta)
        return result


_override: CannedResponses | None = None


def set_api_override(responses: CannedResponses | Iterable[CannedItem]) -> CannedResponses:
    """Install canned responses for every model call in this process."""
    global _override
    if not isinstance(responses, CannedResponses):
        responses = CannedResponses(responses)
    _override = responses
    return responses


def clear_api_override() -> None:
    global _override
    _override = None


def get_api_override() -> CannedResponses | None:
    return _override


def override_api_return() -> bool:
    """Return ``True`` when a process-wide override is installed."""
    return _override is not None


@contextmanager
def api_override(
    responses: CannedResponses | Iterable[CannedItem],
) -> Iterator[CannedResponses]:
    """Install canned responses for the duration of the ``with`` block."""
    previous = _override
    canned = set_api_override(responses)
    try:
        yield canned
    finally:
        if previous is None:
            clear_api_override()
        else:
            set_api_override(previous)
