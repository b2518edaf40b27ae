"""Model clients."""

from turnchain.llm.models.base import ChatModel
from turnchain.llm.models.openai_compat import OpenAICompatModel
from turnchain.llm.models.serving import ServingChatModel

__all__ = ["ChatModel", "OpenAICompatModel", "ServingChatModel"]
