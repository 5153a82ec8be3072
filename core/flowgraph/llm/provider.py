"""Agent client abstraction for pluggable LLM backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentOptions:
    """Per-call generation settings. None means use the client's default."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str | None = None


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class AgentResponse:
    """Response from an agent call."""

    content: str
    model: str
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    raw_response: Any = field(default=None, repr=False)


class AgentClient(ABC):
    """
    Abstract LLM agent client - plug in any LLM backend.

    Implementations should handle:
    - API authentication
    - Prompt interpolation against the supplied context
    - Token usage reporting

    Failures must be raised, not returned, so the engine can classify and
    retry them.
    """

    @abstractmethod
    async def call(
        self,
        prompt: str,
        context: dict[str, Any] | None = None,
        options: AgentOptions | None = None,
    ) -> AgentResponse:
        """
        Run one completion.

        Args:
            prompt: Prompt template; ``{{name}}``/``${name}`` are filled from context
            context: Values available to the template
            options: Model, temperature, max tokens and system prompt overrides

        Returns:
            AgentResponse with content and metadata
        """
