"""LLM subsystem -- message model, delta merging, stream assembly and model clients."""

from turnchain.llm.assembler import StreamAssembler
from turnchain.llm.deltas import merge_delta_groups, merge_deltas, split_message
from turnchain.llm.override import CannedResponses, api_override
from turnchain.llm.types import (
    Message,
    MessageDelta,
    MessageStatus,
    ModelResult,
    Role,
    StreamDone,
    TokenUsage,
    ToolCall,
)

__all__ = [
    "CannedResponses",
    "Message",
    "MessageDelta",
    "MessageStatus",
    "ModelResult",
    "Role",
    "StreamAssembler",
    "StreamDone",
    "TokenUsage",
    "ToolCall",
    "api_override",
    "merge_delta_groups",
    "merge_deltas",
    "split_message",
]
