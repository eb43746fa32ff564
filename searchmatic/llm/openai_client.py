"""OpenAI chat client with retry on rate limits and transient errors."""

import re
import time
import logging

import tiktoken
from openai import OpenAI, RateLimitError, APIError

from config.settings import MODEL_PRICING
from .base_client import BaseLLMClient, LLMResponse, sanitize_messages

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (500, 502, 503, 529)


def parse_retry_after(error_message: str) -> float:
    """Parse retry delay from a rate limit error message."""
    # Pattern: "try again in Xms" or "try again in Xs"
    match = re.search(r'try again in (\d+(?:\.\d+)?)(ms|s)', str(error_message), re.IGNORECASE)
    if match:
        value = float(match.group(1))
        if match.group(2).lower() == 'ms':
            return value / 1000.0
        return value
    return 5.0


class OpenAIClient(BaseLLMClient):
    """OpenAI API client used for protocol guidance, chat and extraction."""

    SUPPORTED_MODELS = [
        "gpt-4.1",
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-3.5-turbo",
    ]

    def __init__(self, api_key: str, model: str = "gpt-4o", max_retries: int = 3):
        super().__init__(api_key, model)
        if model not in self.SUPPORTED_MODELS:
            raise ValueError(f"Model {model} not supported. Choose from: {self.SUPPORTED_MODELS}")
        self.client = OpenAI(api_key=api_key)
        self.max_retries = max_retries
        self._tokenizer = None

    @property
    def tokenizer(self):
        if self._tokenizer is None:
            try:
                self._tokenizer = tiktoken.encoding_for_model(self.model)
            except KeyError:
                self._tokenizer = tiktoken.get_encoding("cl100k_base")
        return self._tokenizer

    def chat(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Send a chat completion request to OpenAI.

        Rate limit errors wait for the delay the API suggests; 5xx errors
        back off exponentially. Anything else propagates immediately.
        """
        kwargs = {
            "model": self.model,
            "messages": sanitize_messages(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        for attempt in range(self.max_retries + 1):
            try:
                response = self.client.chat.completions.create(**kwargs)
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Rate limit: max retries ({self.max_retries}) exceeded")
                    raise
                wait_time = parse_retry_after(str(e))
                logger.warning(f"Rate limit hit. Waiting {wait_time:.1f}s before retry {attempt + 1}/{self.max_retries}")
                time.sleep(wait_time)
                continue
            except APIError as e:
                status = getattr(e, "status_code", None)
                if attempt >= self.max_retries or status not in RETRYABLE_STATUS:
                    raise
                wait_time = min(2 ** attempt, 30)
                logger.warning(f"API error {status}. Waiting {wait_time}s before retry")
                time.sleep(wait_time)
                continue

            usage = response.usage
            return LLMResponse(
                content=response.choices[0].message.content or "",
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost=self.estimate_cost(usage.prompt_tokens, usage.completion_tokens),
                model=self.model,
            )

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        pricing = MODEL_PRICING.get(self.model, MODEL_PRICING["gpt-4o"])
        return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]

    def count_tokens(self, text: str) -> int:
        return len(self.tokenizer.encode(text))

    @property
    def provider_name(self) -> str:
        return "OpenAI"

    @property
    def supported_models(self) -> list[str]:
        return self.SUPPORTED_MODELS
