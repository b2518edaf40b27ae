"""Tests for merging and splitting message deltas."""

from __future__ import annotations

import pytest

from turnchain.errors import MergeError
from turnchain.llm.deltas import merge_delta_groups, merge_deltas, split_message
from turnchain.llm.types import (
    Message,
    MessageDelta,
    MessageStatus,
    Role,
    TokenUsage,
    ToolCall,
)


def _sample_messages() -> list[Message]:
    return [
        Message.assistant("The quick brown fox jumps over the lazy dog."),
        Message.assistant("cut off mid", status=MessageStatus.LENGTH),
        Message.assistant("", status=MessageStatus.COMPLETE),
        Message.tool_call_request(
            "get_weather", {"city": "Paris", "units": ["C", "F"]}, call_id="call_w1"
        ),
        Message.tool_call_request("ping", content="Checking first.", index=2),
        Message.tool_result(ToolCall(id="call_w1", name="get_weather"), "Sunny", is_error=True),
        Message.assistant("counted", usage=TokenUsage(input_tokens=5, output_tokens=2)),
    ]


class TestMergeDeltas:
    def test_concatenates_content_in_order(self):
        msg = merge_deltas([
            MessageDelta(role=Role.ASSISTANT, content="Hel"),
            MessageDelta(content="lo, "),
            MessageDelta(content="world", status=MessageStatus.COMPLETE),
        ])
        assert msg.role is Role.ASSISTANT
        assert msg.content == "Hello, world"
        assert msg.status is MessageStatus.COMPLETE

    def test_role_defaults_to_assistant(self):
        msg = merge_deltas([MessageDelta(content="hi", status="complete")])
        assert msg.role is Role.ASSISTANT

    def test_without_terminal_status_is_incomplete(self):
        msg = merge_deltas([MessageDelta(content="partial")])
        assert msg.status is MessageStatus.INCOMPLETE

    def test_done_marks_incomplete_as_complete(self):
        msg = merge_deltas([MessageDelta(content="whole")], done=True)
        assert msg.status is MessageStatus.COMPLETE

    def test_done_keeps_length_status(self):
        msg = merge_deltas(
            [MessageDelta(content="trunc", status=MessageStatus.LENGTH)], done=True
        )
        assert msg.status is MessageStatus.LENGTH

    def test_arguments_parsed_only_after_concatenation(self):
        msg = merge_deltas([
            MessageDelta(role="assistant", tool_call_id="c1", tool_name="get_weather"),
            MessageDelta(arguments_delta='{"ci'),
            MessageDelta(arguments_delta='ty": "Par'),
            MessageDelta(arguments_delta='is"}', status=MessageStatus.COMPLETE),
        ])
        assert msg.status is MessageStatus.TOOL_CALL
        assert msg.tool_call == ToolCall(id="c1", name="get_weather", arguments={"city": "Paris"})

    def test_tool_call_without_arguments(self):
        msg = merge_deltas([MessageDelta(tool_name="ping")], done=True)
        assert msg.tool_call.arguments == {}
        assert msg.tool_call.id == "call_0"

    def test_usage_argument_overrides_fragment_usage(self):
        msg = merge_deltas(
            [MessageDelta(content="x", usage=TokenUsage(1, 1))],
            done=True,
            usage=TokenUsage(7, 3),
        )
        assert msg.usage == TokenUsage(7, 3)

    def test_invalid_json_arguments(self):
        with pytest.raises(MergeError, match="not valid JSON"):
            merge_deltas([
                MessageDelta(tool_name="echo"),
                MessageDelta(arguments_delta='{"message": '),
            ], done=True)

    def test_non_object_arguments(self):
        with pytest.raises(MergeError, match="JSON object"):
            merge_deltas([MessageDelta(tool_name="echo", arguments_delta="[1, 2]")], done=True)

    def test_arguments_without_name(self):
        with pytest.raises(MergeError, match="without a function name"):
            merge_deltas([MessageDelta(arguments_delta="{}")], done=True)

    def test_delta_after_terminal_status(self):
        with pytest.raises(MergeError, match="after terminal status"):
            merge_deltas([
                MessageDelta(content="done", status=MessageStatus.COMPLETE),
                MessageDelta(content="more"),
            ])

    def test_incomplete_status_does_not_close(self):
        msg = merge_deltas([
            MessageDelta(content="a", status=MessageStatus.INCOMPLETE),
            MessageDelta(content="b", status=MessageStatus.COMPLETE),
        ])
        assert msg.content == "ab"

    def test_conflicting_roles(self):
        with pytest.raises(MergeError, match="Conflicting roles"):
            merge_deltas([
                MessageDelta(role=Role.ASSISTANT, content="a"),
                MessageDelta(role=Role.USER, content="b"),
            ])

    def test_mixed_indices_rejected(self):
        with pytest.raises(MergeError, match="merge_delta_groups"):
            merge_deltas([MessageDelta(index=0, content="a"), MessageDelta(index=1, content="b")])

    def test_empty_input(self):
        with pytest.raises(MergeError, match="No deltas"):
            merge_deltas([])

    def test_invalid_merged_message_becomes_merge_error(self):
        with pytest.raises(MergeError, match="invalid"):
            merge_deltas([MessageDelta(role=Role.USER)], done=True)


class TestMergeDeltaGroups:
    def test_interleaved_parallel_calls(self):
        deltas = [
            MessageDelta(index=0, tool_call_id="a", tool_name="first"),
            MessageDelta(index=1, tool_call_id="b", tool_name="second"),
            MessageDelta(index=1, arguments_delta='{"n": 2}'),
            MessageDelta(index=0, arguments_delta='{"n": 1}'),
        ]
        first, second = merge_delta_groups(deltas, done=True)
        assert (first.index, first.tool_call.name, first.tool_call.arguments) == (0, "first", {"n": 1})
        assert (second.index, second.tool_call.name, second.tool_call.arguments) == (1, "second", {"n": 2})
        assert first.is_tool_call and second.is_tool_call

    def test_usage_attached_to_last_message(self):
        messages = merge_delta_groups(
            [
                MessageDelta(index=0, tool_name="a"),
                MessageDelta(index=1, tool_name="b"),
            ],
            done=True,
            usage=TokenUsage(10, 4),
        )
        assert messages[0].usage is None
        assert messages[1].usage == TokenUsage(10, 4)

    def test_non_contiguous_indices(self):
        with pytest.raises(MergeError, match="not contiguous"):
            merge_delta_groups([
                MessageDelta(index=0, content="a"),
                MessageDelta(index=2, content="c"),
            ])

    def test_indices_must_start_at_zero(self):
        with pytest.raises(MergeError, match="not contiguous"):
            merge_delta_groups([MessageDelta(index=1, content="b")])

    def test_empty_input(self):
        with pytest.raises(MergeError):
            merge_delta_groups([])


class TestSplitMessage:
    @pytest.mark.parametrize("chunk_size", [1, 3, 8, 1000])
    def test_merge_inverts_split(self, chunk_size):
        for msg in _sample_messages():
            assert merge_deltas(split_message(msg, chunk_size)) == msg

    def test_chunks_respect_size(self):
        deltas = split_message(Message.assistant("abcdefghij"), 4)
        assert [d.content for d in deltas] == ["abcd", "efgh", "ij"]
        assert deltas[0].role is Role.ASSISTANT
        assert deltas[-1].status is MessageStatus.COMPLETE
        assert all(d.status is None for d in deltas[:-1])

    def test_tool_call_identity_on_first_delta(self):
        deltas = split_message(Message.tool_call_request("echo", {"m": "x"}, call_id="c7"), 2)
        assert deltas[0].tool_call_id == "c7"
        assert deltas[0].tool_name == "echo"
        assert all(d.tool_name is None for d in deltas[1:])

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            split_message(Message.assistant("x"), 0)
