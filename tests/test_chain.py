"""Tests for the chain core."""

from __future__ import annotations

import httpx
import pytest

from tests.mock_functions import echo_spec, failing_spec, whoami_spec
from tests.mock_models import (
    MockModel,
    make_parallel_calls_model,
    make_text_model,
    make_tool_then_text_model,
)
from turnchain.chain.core import Chain, ChainConfig, ChainState, RunMode
from turnchain.chain.events import (
    EVENT_MODEL_REQUEST,
    EVENT_MODEL_RESULT,
    EVENT_RUN_COMPLETE,
    EVENT_RUN_ERROR,
    EVENT_TOOL_CALL_FINISHED,
    EVENT_TOOL_CALL_STARTED,
)
from turnchain.config import RunConfig
from turnchain.errors import ChainError, MergeError, ProviderError, ValidationError
from turnchain.functions.registry import FunctionRegistry
from turnchain.llm.override import CannedResponses, api_override, clear_api_override
from turnchain.llm.types import Message, MessageStatus, ModelResult, Role, TokenUsage


@pytest.fixture(autouse=True)
def _no_override():
    clear_api_override()
    yield
    clear_api_override()


def _initial() -> list[Message]:
    return [Message.system("You are terse."), Message.user("Echo hi, please.")]


def _chain(model, **kwargs) -> Chain:
    kwargs.setdefault("functions", [echo_spec()])
    chain = Chain(ChainConfig(model=model, **kwargs))
    chain.add_messages(_initial())
    return chain


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestChainConfig:
    def test_requires_model_or_override(self):
        with pytest.raises(ValidationError, match="model or canned"):
            ChainConfig()

    def test_model_type_checked(self):
        with pytest.raises(ValidationError, match="ChatModel"):
            ChainConfig(model="gpt-4o")

    def test_function_list_becomes_registry(self):
        cfg = ChainConfig(model=make_text_model("x"), functions=[echo_spec()])
        assert isinstance(cfg.functions, FunctionRegistry)
        assert "echo" in cfg.functions

    def test_mode_string_is_coerced(self):
        cfg = ChainConfig(model=make_text_model("x"), mode="while_needs_response")
        assert cfg.mode is RunMode.WHILE_NEEDS_RESPONSE

    def test_unknown_mode(self):
        with pytest.raises(ValidationError, match="Invalid run mode"):
            ChainConfig(model=make_text_model("x"), mode="forever")

    def test_max_rounds_positive(self):
        with pytest.raises(ValidationError, match="max_rounds"):
            ChainConfig(model=make_text_model("x"), max_rounds=0)

    def test_on_delta_requires_stream(self):
        with pytest.raises(ValidationError, match="stream=True"):
            ChainConfig(model=make_text_model("x"), on_delta=lambda d: None)

    def test_from_run_config(self):
        run = RunConfig(mode="while_needs_response", stream=True, max_rounds=4)
        cfg = ChainConfig.from_run_config(run, model=make_text_model("x"))
        assert cfg.mode is RunMode.WHILE_NEEDS_RESPONSE
        assert cfg.stream
        assert cfg.max_rounds == 4


# ---------------------------------------------------------------------------
# Transcript handling
# ---------------------------------------------------------------------------


class TestTranscript:
    def test_add_message_queues_until_run(self):
        chain = Chain(ChainConfig(model=make_text_model("x")))
        assert chain.add_message(Message.user("hi")) is chain
        assert chain.messages == []
        assert len(chain.queued) == 1

    def test_add_message_rejects_non_messages(self):
        chain = Chain(ChainConfig(model=make_text_model("x")))
        with pytest.raises(ValidationError, match="Expected a Message"):
            chain.add_message({"role": "user", "content": "hi"})

    async def test_empty_chain_raises(self):
        model = make_text_model("x")
        chain = Chain(ChainConfig(model=model))
        with pytest.raises(ValidationError, match="without messages"):
            await chain.run()
        assert model.call_count == 0

    def test_needs_response(self):
        chain = Chain(ChainConfig(model=make_text_model("x")))
        assert not chain.needs_response
        chain.add_message(Message.user("hi"))
        chain._messages.extend(chain._queued)
        assert chain.needs_response
        chain._messages.append(Message.assistant("hello"))
        assert not chain.needs_response
        chain._messages.append(Message.tool_call_request("echo"))
        assert chain.needs_response


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


class TestTextOnly:
    async def test_single_answer(self):
        model = make_text_model("Hello!")
        chain = _chain(model)
        result = await chain.run()

        assert result.ok
        assert result.rounds == 1
        assert result.last_message.content == "Hello!"
        assert [m.role for m in result.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert chain.state is ChainState.RESPONSE_COMPLETE
        assert result.unwrap() is result.last_message

    async def test_functions_are_offered(self):
        model = make_text_model("Hello!")
        await _chain(model, functions=[echo_spec(), whoami_spec()]).run()
        assert [f.name for f in model.last_functions] == ["echo", "whoami"]

    async def test_while_mode_stops_after_text(self):
        model = make_text_model("Hello!")
        result = await _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE).run()
        assert result.rounds == 1
        assert model.call_count == 1

    async def test_follow_up_run_continues_transcript(self):
        model = MockModel([[Message.assistant("first")], [Message.assistant("second")]])
        chain = _chain(model)
        await chain.run()
        result = await chain.add_message(Message.user("again")).run()
        assert result.last_message.content == "second"
        assert len(result.messages) == 5
        assert model.calls[1][-1].content == "again"


class TestToolCalls:
    async def test_tool_then_text_appends_three_messages(self):
        model = make_tool_then_text_model("echo", {"message": "hi"})
        chain = _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE)
        result = await chain.run()

        assert result.ok
        assert len(result.messages) == len(_initial()) + 3
        call_msg, tool_msg, final = result.messages[-3:]
        assert call_msg.is_tool_call
        assert tool_msg.role is Role.TOOL
        assert tool_msg.content == "hi"
        assert tool_msg.tool_call_id == call_msg.tool_call.id
        assert tool_msg.name == "echo"
        assert not tool_msg.is_error
        assert final.role is Role.ASSISTANT
        assert final.status is MessageStatus.COMPLETE
        assert final.content
        assert result.rounds == 2

    async def test_second_call_sees_tool_result(self):
        model = make_tool_then_text_model("echo", {"message": "hi"})
        await _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE).run()
        assert model.calls[1][-1].role is Role.TOOL

    async def test_single_mode_makes_one_call(self):
        model = make_tool_then_text_model("echo", {"message": "hi"})
        result = await _chain(model, mode=RunMode.SINGLE).run()

        assert model.call_count == 1
        assert result.ok
        assert result.rounds == 1
        assert result.last_message.role is Role.TOOL
        assert result.last_message.content == "hi"

    async def test_run_mode_argument_overrides_config(self):
        model = make_tool_then_text_model("echo", {"message": "hi"})
        result = await _chain(model).run(mode="while_needs_response")
        assert model.call_count == 2
        assert result.last_message.content == "All done."

    async def test_raising_executor_becomes_error_message(self):
        model = make_tool_then_text_model("explode", {}, final_text="Sorry, that failed.")
        chain = _chain(model, functions=[failing_spec()], mode=RunMode.WHILE_NEEDS_RESPONSE)
        result = await chain.run()

        assert result.ok
        tool_msg = result.messages[-2]
        assert tool_msg.role is Role.TOOL
        assert tool_msg.is_error
        assert "kaboom" in tool_msg.content
        assert result.last_message.content == "Sorry, that failed."

    async def test_unknown_function_is_reported_to_model(self):
        model = make_tool_then_text_model("nope", {})
        result = await _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE).run()

        tool_msg = result.messages[-2]
        assert tool_msg.is_error
        assert tool_msg.content == "ERROR: FunctionNotFoundError: Unknown function: nope"
        assert result.ok

    async def test_context_reaches_executor(self):
        model = make_tool_then_text_model("whoami", {})
        chain = _chain(
            model,
            functions=[whoami_spec()],
            context={"user": "grace"},
            mode=RunMode.WHILE_NEEDS_RESPONSE,
        )
        result = await chain.run()
        assert result.messages[-2].content == "user=grace"
        assert all("grace" not in (m.content or "") for m in model.calls[0])

    async def test_parallel_calls_run_in_order(self):
        model = make_parallel_calls_model([
            ("echo", {"message": "first"}, "call_1"),
            ("echo", {"message": "second"}, "call_2"),
        ])
        result = await _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE).run()

        roles = [m.role for m in result.messages[2:]]
        assert roles == [Role.ASSISTANT, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT]
        tool_msgs = [m for m in result.messages if m.role is Role.TOOL]
        assert [(m.tool_call_id, m.content) for m in tool_msgs] == [
            ("call_1", "first"),
            ("call_2", "second"),
        ]

    async def test_on_message_sees_every_append(self):
        seen = []
        model = make_tool_then_text_model("echo", {"message": "hi"})
        result = await _chain(
            model, on_message=seen.append, mode=RunMode.WHILE_NEEDS_RESPONSE
        ).run()
        assert seen == result.messages[2:]

    async def test_max_rounds_stops_endless_tool_calls(self):
        model = MockModel([
            [Message.tool_call_request("echo", {"message": str(i)})] for i in range(5)
        ])
        chain = _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE, max_rounds=2)
        result = await chain.run()

        assert not result.ok
        assert isinstance(result.error, ChainError)
        assert result.rounds == 2
        assert model.call_count == 2
        assert result.last_message is None
        assert result.messages[-1].role is Role.TOOL


class TestFailures:
    async def test_provider_error_keeps_partial_transcript(self):
        model = MockModel([
            [Message.tool_call_request("echo", {"message": "hi"})],
            ProviderError("rate limited"),
        ])
        chain = _chain(model, mode=RunMode.WHILE_NEEDS_RESPONSE)
        result = await chain.run()

        assert not result.ok
        assert isinstance(result.error, ProviderError)
        assert result.last_message is None
        assert len(result.messages) == len(_initial()) + 2
        assert chain.state is ChainState.ERROR
        with pytest.raises(ProviderError, match="rate limited"):
            result.unwrap()

    async def test_transport_error_is_provider_error(self):
        model = MockModel([httpx.ConnectError("refused")])
        result = await _chain(model).run()
        assert isinstance(result.error, ProviderError)
        assert "ConnectError" in str(result.error)

    async def test_merge_error_ends_run(self):
        model = MockModel([MergeError("garbled stream")])
        result = await _chain(model).run()
        assert isinstance(result.error, MergeError)
        assert len(result.messages) == len(_initial())

    async def test_non_assistant_reply_rejected(self):
        canned = CannedResponses([ModelResult.ok(Message.user("I am the user now"))])
        chain = Chain(ChainConfig(override=canned))
        result = await chain.add_messages(_initial()).run()
        assert isinstance(result.error, ProviderError)
        assert len(result.messages) == len(_initial())


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_deltas_forwarded_live(self):
        seen = []
        model = MockModel([[Message.assistant("Hello from the stream")]], chunk_size=5)
        result = await _chain(model, stream=True, on_delta=seen.append).run()

        assert model.streamed == [True]
        assert "".join(d.content for d in seen) == "Hello from the stream"
        assert len(seen) == 5
        assert result.last_message.content == "Hello from the stream"
        assert result.last_message.status is MessageStatus.COMPLETE

    async def test_no_deltas_without_stream(self):
        model = make_text_model("quiet")
        await _chain(model).run()
        assert model.streamed == [False]

    async def test_streamed_tool_call_round(self):
        seen = []
        model = make_tool_then_text_model("echo", {"message": "streamed"})
        model.usage = TokenUsage(input_tokens=9, output_tokens=4)
        result = await _chain(
            model, stream=True, on_delta=seen.append, mode=RunMode.WHILE_NEEDS_RESPONSE
        ).run()

        assert result.messages[-2].content == "streamed"
        assert result.last_message.usage == TokenUsage(input_tokens=9, output_tokens=4)
        assert any(d.tool_name == "echo" for d in seen)


# ---------------------------------------------------------------------------
# Override
# ---------------------------------------------------------------------------


class TestOverride:
    async def test_chain_scoped_override_needs_no_model(self):
        canned = CannedResponses([
            Message.tool_call_request("echo", {"message": "canned"}),
            Message.assistant("Canned answer."),
        ])
        chain = Chain(ChainConfig(
            functions=[echo_spec()], override=canned, mode=RunMode.WHILE_NEEDS_RESPONSE
        ))
        result = await chain.add_messages(_initial()).run()

        assert result.ok
        assert result.messages[-2].content == "canned"
        assert result.last_message.content == "Canned answer."
        assert canned.call_count == 2

    async def test_chain_override_wins_over_model(self):
        model = make_text_model("live")
        canned = CannedResponses([Message.assistant("canned")])
        result = await _chain(model, override=canned).run()
        assert result.last_message.content == "canned"
        assert model.call_count == 0

    async def test_process_override_bypasses_model(self):
        model = make_text_model("live")
        with api_override([Message.assistant("canned")]):
            result = await _chain(model).run()
        assert result.last_message.content == "canned"
        assert model.call_count == 0

    async def test_override_replays_deltas_when_streaming(self):
        seen = []
        canned = CannedResponses([Message.assistant("twelve chars")], chunk_size=4)
        chain = Chain(ChainConfig(override=canned, stream=True, on_delta=seen.append))
        await chain.add_messages(_initial()).run()
        assert [d.content for d in seen] == ["twel", "ve c", "hars"]

    async def test_exhausted_override_fails_run(self):
        canned = CannedResponses([Message.tool_call_request("echo", {"message": "x"})])
        chain = Chain(ChainConfig(
            functions=[echo_spec()], override=canned, mode=RunMode.WHILE_NEEDS_RESPONSE
        ))
        result = await chain.add_messages(_initial()).run()
        assert isinstance(result.error, ProviderError)
        assert result.messages[-1].role is Role.TOOL


# ---------------------------------------------------------------------------
# Verbose tracing
# ---------------------------------------------------------------------------


class TestVerbose:
    async def test_events_follow_transitions(self):
        events = []
        model = make_tool_then_text_model("echo", {"message": "hi"})
        await _chain(
            model, verbose=True, on_event=events.append, mode=RunMode.WHILE_NEEDS_RESPONSE
        ).run()

        assert [e.event_type for e in events] == [
            EVENT_MODEL_REQUEST,
            EVENT_MODEL_RESULT,
            EVENT_TOOL_CALL_STARTED,
            EVENT_TOOL_CALL_FINISHED,
            EVENT_MODEL_REQUEST,
            EVENT_MODEL_RESULT,
            EVENT_RUN_COMPLETE,
        ]
        assert len({e.run_id for e in events}) == 1
        assert [e.round for e in events] == [1, 1, 1, 1, 2, 2, 2]
        assert events[0].payload["functions"] == ["echo"]
        assert events[3].payload["success"] is True

    async def test_error_event(self):
        events = []
        model = MockModel([ProviderError("down")])
        await _chain(model, verbose=True, on_event=events.append).run()
        assert [e.event_type for e in events][-1] == EVENT_RUN_ERROR
        assert events[-1].payload == {"error_type": "ProviderError", "error": "down"}

    async def test_quiet_by_default(self):
        events = []
        await _chain(make_text_model("x"), on_event=events.append).run()
        assert events == []

    async def test_event_to_dict_is_serialisable(self):
        events = []
        await _chain(make_text_model("x"), verbose=True, on_event=events.append).run()
        d = events[-1].to_dict()
        assert isinstance(d["timestamp"], str)
        assert d["payload"] == {"role": "assistant", "status": "complete"}
