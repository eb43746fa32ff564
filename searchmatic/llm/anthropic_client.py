"""Anthropic Claude client implementation."""

import logging

import anthropic

from config.settings import MODEL_PRICING
from .base_client import BaseLLMClient, LLMResponse, sanitize_messages

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = (
    "You must respond with valid JSON only. "
    "Do not include any text outside the JSON object."
)


class AnthropicClient(BaseLLMClient):
    """Anthropic API client for Claude models."""

    SUPPORTED_MODELS = [
        "claude-sonnet-4-20250514",
        "claude-opus-4-20250514",
        "claude-3-7-sonnet-latest",
        "claude-3-5-sonnet-latest",
        "claude-3-5-haiku-latest",
    ]

    # Claude has no public tokenizer
    CHARS_PER_TOKEN = 4.0

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514", max_retries: int = 3):
        super().__init__(api_key, model)
        if model not in self.SUPPORTED_MODELS:
            raise ValueError(
                f"Model {model} not supported. Choose from: {self.SUPPORTED_MODELS}"
            )
        self.client = anthropic.Anthropic(api_key=api_key, max_retries=max_retries)

    def chat(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False
    ) -> LLMResponse:
        """
        Send a message request to Claude.

        System messages are lifted into the `system` parameter, since the
        Messages API only accepts user/assistant turns.
        """
        system_parts = []
        chat_messages = []
        for msg in sanitize_messages(messages):
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                chat_messages.append(msg)

        if json_mode:
            system_parts.append(JSON_INSTRUCTION)

        kwargs = {
            "model": self.model,
            "messages": chat_messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        response = self.client.messages.create(**kwargs)

        content = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        logger.debug(f"Claude call used {input_tokens}+{output_tokens} tokens")

        return LLMResponse(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost=self.estimate_cost(input_tokens, output_tokens),
            model=self.model,
        )

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        pricing = MODEL_PRICING.get(self.model, MODEL_PRICING["claude-sonnet-4-20250514"])
        return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]

    def count_tokens(self, text: str) -> int:
        """Character-based estimate of the token count."""
        return int(len(text) / self.CHARS_PER_TOKEN)

    @property
    def provider_name(self) -> str:
        return "Anthropic"

    @property
    def supported_models(self) -> list[str]:
        return self.SUPPORTED_MODELS
