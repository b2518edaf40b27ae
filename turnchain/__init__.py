"""turnchain -- a chain that drives LLM conversations and their tool calls."""

from turnchain.chain.core import Chain, ChainConfig, ChainResult, ChainState, RunMode
from turnchain.errors import (
    ChainError,
    DuplicateNameError,
    ExecutionError,
    FunctionNotFoundError,
    MergeError,
    ProviderError,
    TurnchainError,
    ValidationError,
)
from turnchain.functions.base import FunctionSpec
from turnchain.functions.registry import FunctionRegistry
from turnchain.llm.types import Message, MessageDelta, MessageStatus, ModelResult, Role

__version__ = "0.1.0"

__all__ = [
    "Chain",
    "ChainConfig",
    "ChainError",
    "ChainResult",
    "ChainState",
    "DuplicateNameError",
    "ExecutionError",
    "FunctionNotFoundError",
    "FunctionRegistry",
    "FunctionSpec",
    "MergeError",
    "Message",
    "MessageDelta",
    "MessageStatus",
    "ModelResult",
    "ProviderError",
    "Role",
    "RunMode",
    "TurnchainError",
    "ValidationError",
]
