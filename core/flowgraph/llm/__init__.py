"""LLM agent client abstraction."""

from flowgraph.llm.litellm import EmptyResponseError, LiteLLMAgentClient
from flowgraph.llm.provider import AgentClient, AgentOptions, AgentResponse, TokenUsage

__all__ = [
    "AgentClient",
    "AgentOptions",
    "AgentResponse",
    "EmptyResponseError",
    "LiteLLMAgentClient",
    "TokenUsage",
]
