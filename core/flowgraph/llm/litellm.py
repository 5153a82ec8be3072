"""LiteLLM-backed agent client.

Routes to any provider LiteLLM supports (Groq, Anthropic, OpenAI, ...) using
``provider/model`` strings such as ``groq/llama-3.1-70b-versatile``.
"""

import logging
from typing import Any

import litellm

from flowgraph.config import RuntimeConfig
from flowgraph.graph.safe_eval import interpolate
from flowgraph.llm.provider import AgentClient, AgentOptions, AgentResponse, TokenUsage

logger = logging.getLogger(__name__)


class EmptyResponseError(Exception):
    """The provider returned no content."""


class LiteLLMAgentClient(AgentClient):
    """
    Agent client using ``litellm.acompletion``.

    Example:
        client = LiteLLMAgentClient()
        response = await client.call(
            "Summarise {{ticket}}",
            {"ticket": "Printer on fire"},
            AgentOptions(temperature=0.2),
        )
    """

    def __init__(self, config: RuntimeConfig | None = None):
        self.config = config or RuntimeConfig()

    async def call(
        self,
        prompt: str,
        context: dict[str, Any] | None = None,
        options: AgentOptions | None = None,
    ) -> AgentResponse:
        options = options or AgentOptions()
        model = options.model or self.config.model
        processed_prompt = interpolate(prompt, context or {}, as_json=False)

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": options.system_prompt or self.config.system_prompt},
                {"role": "user", "content": processed_prompt},
            ],
            "temperature": (
                options.temperature if options.temperature is not None else self.config.temperature
            ),
            "max_tokens": options.max_tokens or self.config.max_tokens,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        logger.debug(f"LLM call model={model} prompt_chars={len(processed_prompt)}")
        completion = await litellm.acompletion(**kwargs)

        choice = completion.choices[0] if completion.choices else None
        content = choice.message.content if choice is not None else None
        if not content:
            raise EmptyResponseError("No content returned from LLM")

        usage = getattr(completion, "usage", None)
        return AgentResponse(
            content=content,
            model=getattr(completion, "model", None) or model,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens or 0,
                completion_tokens=usage.completion_tokens or 0,
                total_tokens=usage.total_tokens or 0,
            )
            if usage
            else None,
            finish_reason=choice.finish_reason,
            raw_response=completion,
        )
