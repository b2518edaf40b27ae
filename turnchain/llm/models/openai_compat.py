"""
OpenAI-compatible chat-completion client.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

Parallel tool calls come back as one assistant message per tool-call index;
any text content is attached to the message at index 0.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from turnchain.errors import ProviderError, ValidationError
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
    ToolCall,
)

logger = logging.getLogger(__name__)


def _finish_status(reason: str | None) -> MessageStatus:
    if reason == "length":
        return MessageStatus.LENGTH
    return MessageStatus.COMPLETE


def _arguments(func: dict) -> dict:
    """Tool-call arguments arrive as JSON text; some servers send an object."""
    raw = func.get("arguments")
    if isinstance(raw, dict):
        return raw
    try:
        args = json.loads(raw or "{}")
    except (TypeError, ValueError) as exc:
        raise ProviderError(
            f"Malformed arguments for tool call {func.get('name')!r}: {exc}"
        ) from exc
    if not isinstance(args, dict):
        raise ProviderError(
            f"Arguments for tool call {func.get('name')!r} must be a JSON object"
        )
    return args


def _usage(data: dict | None) -> TokenUsage | None:
    if not isinstance(data, dict) or not data:
        return None
    return TokenUsage(
        input_tokens=data.get("prompt_tokens", 0) or 0,
        output_tokens=data.get("completion_tokens", 0) or 0,
    )


class OpenAICompatModel(ChatModel):
    """
    Stream-capable client for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"`` or
        ``"http://localhost:8080/v1"``.
    model:
        Model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429).
    temperature:
        Sampling temperature; omitted from the request when ``None``.
    transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: str = "",
        timeout: float = 120.0,
        max_retries: int = 2,
        temperature: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max_retries
        self._temperature = temperature
        self._transport = transport

    @property
    def name(self) -> str:
        return "openai-compat"

    async def _call(
        self,
        messages: list[Message],
        functions: list[FunctionSpec],
        on_delta: DeltaCallback | None,
    ) -> list[Message]:
        stream = on_delta is not None
        body = self._build_body(messages, functions, stream)
        if stream:
            assembler = StreamAssembler(on_delta)
            async with aclosing(self._stream_request(body)) as items:
                return await assembler.aassemble(items)
        data = await self._post(body)
        return self._parse_non_stream(data)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _wire_messages(self, messages: list[Message]) -> list[dict]:
        """
        Convert messages to the wire format.

        Consecutive tool-call messages are folded into a single assistant
        message, since the API expects all calls of a round together.
        """
        wire: list[dict] = []
        for msg in messages:
            if msg.tool_call is not None:
                call = {
                    "id": msg.tool_call.id,
                    "type": "function",
                    "function": {
                        "name": msg.tool_call.name,
                        "arguments": json.dumps(msg.tool_call.arguments),
                    },
                }
                prev = wire[-1] if wire else None
                if prev is not None and prev["role"] == "assistant" and "tool_calls" in prev:
                    prev["tool_calls"].append(call)
                else:
                    wire.append({"role": "assistant", "content": msg.content, "tool_calls": [call]})
                continue

            m: dict = {"role": msg.role.value, "content": msg.content or ""}
            if msg.role is Role.TOOL and msg.tool_call_id:
                m["tool_call_id"] = msg.tool_call_id
            wire.append(m)
        return wire

    def _build_body(
        self,
        messages: list[Message],
        functions: list[FunctionSpec],
        stream: bool,
    ) -> dict:
        body: dict = {
            "model": self._model,
            "messages": self._wire_messages(messages),
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        if self._temperature is not None:
            body["temperature"] = self._temperature
        if functions:
            body["tools"] = [f.to_openai_schema() for f in functions]
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: model=%s tools=%d messages=%d stream=%s",
            self._model,
            len(functions),
            len(body["messages"]),
            stream,
        )
        return body

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_request(self, body: dict) -> AsyncIterator[StreamItem]:
        url = f"{self._url}/chat/completions"
        headers = self._build_headers()

        last_error: Exception | None = None
        yielded = False
        for attempt in range(1 + self._max_retries):
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST", url, json=body, headers=headers
                    ) as response:
                        if response.status_code == 429 or response.status_code >= 500:
                            # Retryable -- read body so the connection is released.
                            await response.aread()
                            last_error = httpx.HTTPStatusError(
                                f"HTTP {response.status_code}",
                                request=response.request,
                                response=response,
                            )
                            continue

                        response.raise_for_status()

                        async for item in self._parse_sse_stream(response):
                            yielded = True
                            yield item
                        return
            except httpx.TransportError as exc:
                # Deltas already reached the caller: a retry would replay them.
                if yielded or attempt >= self._max_retries:
                    raise
                last_error = exc

        if last_error is not None:
            raise last_error

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamItem]:
        """
        Parse Server-Sent Events from the response line stream.

        Each SSE event has the form::

            data: {json}\\n\\n

        The sentinel ``data: [DONE]`` terminates the stream.
        """
        usage: TokenUsage | None = None
        open_indices: set[int] = set()

        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if not line.startswith("data:"):
                continue
            data_str = line[len("data:"):].strip()

            if data_str == "[DONE]":
                yield StreamDone(usage=usage)
                return

            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue
            if not isinstance(data, dict):
                logger.warning("Ignoring non-object SSE data: %s", data_str[:200])
                continue

            usage = _usage(data.get("usage")) or usage
            for delta in self._sse_data_to_deltas(data, open_indices):
                yield delta

        # Stream ended without [DONE].
        yield StreamDone(usage=usage)

    def _sse_data_to_deltas(
        self, data: dict, open_indices: set[int]
    ) -> list[MessageDelta]:
        """
        Translate one SSE chunk into deltas, in non-decreasing index order.

        Only the highest open index receives the finish status; earlier
        messages are closed by the done marker.  A reply that finishes
        without content or tool calls becomes an empty message at index 0,
        as in the non-streamed response.
        """
        choices = data.get("choices")
        if not choices or not isinstance(choices, list) or not isinstance(choices[0], dict):
            return []

        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        deltas: list[MessageDelta] = []

        text = delta.get("content")
        if isinstance(text, str) and (text or 0 not in open_indices):
            deltas.append(MessageDelta(index=0, role=Role.ASSISTANT, content=text))
            open_indices.add(0)

        for raw_tc in delta.get("tool_calls") or []:
            if not isinstance(raw_tc, dict):
                continue
            idx = raw_tc.get("index", 0)
            func = raw_tc.get("function")
            if not isinstance(func, dict):
                func = {}
            args = func.get("arguments")
            if isinstance(args, dict):
                args = json.dumps(args)
            deltas.append(
                MessageDelta(
                    index=idx,
                    role=Role.ASSISTANT,
                    tool_call_id=raw_tc.get("id"),
                    tool_name=func.get("name") or None,
                    arguments_delta=args or None,
                )
            )
            open_indices.add(idx)

        finish_reason = choice.get("finish_reason")
        if finish_reason is not None:
            status = _finish_status(finish_reason)
            if open_indices:
                deltas.append(
                    MessageDelta(index=max(open_indices), role=Role.ASSISTANT, status=status)
                )
            else:
                deltas.append(
                    MessageDelta(index=0, role=Role.ASSISTANT, content="", status=status)
                )
            open_indices.clear()

        return deltas

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _post(self, body: dict) -> dict:
        url = f"{self._url}/chat/completions"
        headers = self._build_headers()

        last_error: Exception | None = None
        for attempt in range(1 + self._max_retries):
            try:
                async with self._client() as client:
                    resp = await client.post(url, json=body, headers=headers)

                    if resp.status_code == 429 or resp.status_code >= 500:
                        last_error = httpx.HTTPStatusError(
                            f"HTTP {resp.status_code}",
                            request=resp.request,
                            response=resp,
                        )
                        continue

                    resp.raise_for_status()
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise ProviderError(
                            f"Response body is not valid JSON: {resp.text[:200]!r}"
                        ) from exc
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise

        if last_error is not None:
            raise last_error
        raise ProviderError("No response received")  # pragma: no cover

    def _parse_non_stream(self, data: dict) -> list[Message]:
        if not isinstance(data, dict):
            raise ProviderError(f"Expected a JSON object, got {type(data).__name__}")
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices:
            raise ProviderError("Response contained no choices")

        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise ProviderError(f"Response choice has no message: {choice!r}")
        content = message.get("content")
        status = _finish_status(choice.get("finish_reason"))
        usage = _usage(data.get("usage"))

        raw_tcs = message.get("tool_calls") or []
        try:
            if not raw_tcs:
                return [Message(role=Role.ASSISTANT, content=content or "", status=status, usage=usage)]
            return self._tool_call_messages(raw_tcs, content, usage)
        except ValidationError as exc:
            raise ProviderError(f"Malformed response: {exc}") from exc

    def _tool_call_messages(
        self, raw_tcs: list[dict], content: str | None, usage: TokenUsage | None
    ) -> list[Message]:
        results: list[Message] = []
        for idx, raw_tc in enumerate(raw_tcs):
            func = raw_tc.get("function") if isinstance(raw_tc, dict) else None
            if not isinstance(func, dict):
                raise ProviderError(f"Tool call {idx} has no function: {raw_tc!r}")
            results.append(
                Message(
                    role=Role.ASSISTANT,
                    content=content if idx == 0 else None,
                    tool_call=ToolCall(
                        id=raw_tc.get("id") or f"call_{idx}",
                        name=func.get("name") or "",
                        arguments=_arguments(func),
                    ),
                    index=idx,
                    usage=usage if idx == len(raw_tcs) - 1 else None,
                )
            )
        return results
