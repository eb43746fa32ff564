"""Base LLM client interface for Searchmatic AI features."""

import json
import re
from abc import ABC, abstractmethod
from typing import Optional
from dataclasses import dataclass, asdict


VALID_ROLES = ("system", "user", "assistant")


@dataclass
class LLMResponse:
    """Structured response from an LLM call."""
    content: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    model: str

    def usage_metadata(self) -> dict:
        """Token and cost fields stored alongside chat messages."""
        data = asdict(self)
        data.pop("content")
        return data


def sanitize_messages(messages: list[dict]) -> list[dict]:
    """Drop messages without a known role or with empty content."""
    return [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") in VALID_ROLES and m.get("content")
    ]


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, api_key: str, model: str):
        self.api_key = api_key
        self.model = model

    @abstractmethod
    def chat(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False
    ) -> LLMResponse:
        """
        Send a chat request to the LLM.

        Args:
            messages: List of message dicts with 'role' and 'content' keys
            temperature: Sampling temperature (0.0-1.0)
            max_tokens: Maximum tokens in response
            json_mode: If True, request a JSON object response

        Returns:
            LLMResponse with content, token counts, and cost
        """

    def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 3000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Single-turn helper around chat()."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return self.chat(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )

    @abstractmethod
    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Estimated cost in USD for a token count."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        """Number of tokens in a text string."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the LLM provider."""

    @property
    @abstractmethod
    def supported_models(self) -> list[str]:
        """Return list of supported model names."""


def extract_json(text: Optional[str]) -> Optional[dict]:
    """
    Parse a JSON object from an LLM reply.

    Tries the whole reply first, then the outermost {...} span (models
    often wrap JSON in prose or code fences). Returns None if neither parses.
    """
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r'\{[\s\S]*\}', text)
        if not match:
            return None
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None
