"""Abstract base class for chat model clients."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

import httpx

from turnchain.errors import ProviderError
from turnchain.llm import override
from turnchain.llm.assembler import DeltaCallback
from turnchain.llm.types import Message, ModelResult, Role

if TYPE_CHECKING:
    from turnchain.functions.base import FunctionSpec

logger = logging.getLogger(__name__)


class ChatModel(ABC):
    """
    A model client turns a transcript into assistant messages.

    Implementations must support:
      - A single-shot call returning the complete response.
      - Incremental delivery through ``on_delta`` when one is supplied.

    Subclasses implement ``_call`` and may raise ``ProviderError`` (or let
    ``httpx`` errors escape); ``send`` converts those into a failed
    ``ModelResult`` so callers only ever see the tagged result.  A
    ``MergeError`` from a corrupt stream is not a provider failure and
    propagates.
    """

    async def send(
        self,
        messages: Sequence[Message] | str,
        functions: Sequence[FunctionSpec] = (),
        on_delta: DeltaCallback | None = None,
    ) -> ModelResult:
        """
        Call the model with the transcript and the functions it may request.

        A bare string is sent as a user prompt after the default system
        message.  With *on_delta* the response is streamed and each delta is
        passed to the callback before the assembled result is returned.
        """
        if isinstance(messages, str):
            messages = [Message.system(), Message.user(messages)]

        canned = override.get_api_override()
        if canned is not None:
            logger.warning("Found override API response. Will not make live API call.")
            return canned.replay(on_delta)

        try:
            result = await self._call(list(messages), list(functions), on_delta)
        except ProviderError as exc:
            logger.warning("%s call failed: %s", self.name, exc)
            return ModelResult.failed(exc)
        except httpx.HTTPError as exc:
            logger.warning("%s transport failure: %s", self.name, exc)
            return ModelResult.failed(ProviderError(f"{type(exc).__name__}: {exc}"))

        if not result:
            return ModelResult.failed(f"{self.name} returned no messages")
        for msg in result:
            if msg.role is not Role.ASSISTANT:
                return ModelResult.failed(
                    f"{self.name} returned a {msg.role.value} message; expected assistant"
                )
        return ModelResult.ok(result)

    @abstractmethod
    async def _call(
        self,
        messages: list[Message],
        functions: list[FunctionSpec],
        on_delta: DeltaCallback | None,
    ) -> list[Message]:
        """Perform the request and return the assistant messages."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable client name (e.g. ``"openai-compat"``)."""
        ...
