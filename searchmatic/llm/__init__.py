"""LLM client module for Searchmatic."""

import logging
from typing import Optional

from .base_client import BaseLLMClient, LLMResponse, extract_json
from .openai_client import OpenAIClient
from .anthropic_client import AnthropicClient
from .cost_tracker import CostTracker, CostEntry, CostEstimate, OperationType, BudgetExceededError
from . import prompts

logger = logging.getLogger(__name__)

__all__ = [
    "BaseLLMClient",
    "LLMResponse",
    "extract_json",
    "OpenAIClient",
    "AnthropicClient",
    "CostTracker",
    "CostEntry",
    "CostEstimate",
    "OperationType",
    "BudgetExceededError",
    "prompts",
    "create_client",
    "get_llm_client",
]


def create_client(provider: str, api_key: str, model: str = None, max_retries: int = 3) -> BaseLLMClient:
    """
    Factory function to get appropriate LLM client.

    Args:
        provider: "openai" or "anthropic"
        api_key: API key for the provider
        model: Optional model name (uses default if not provided)
        max_retries: Retries on rate limits and transient errors

    Returns:
        Configured LLM client
    """
    if provider.lower() == "openai":
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o", max_retries=max_retries)
    elif provider.lower() == "anthropic":
        return AnthropicClient(api_key=api_key, model=model or "claude-sonnet-4-20250514", max_retries=max_retries)
    else:
        raise ValueError(f"Unknown provider: {provider}. Choose 'openai' or 'anthropic'")


def get_llm_client(settings) -> Optional[BaseLLMClient]:
    """
    Build the client for the configured provider.

    Falls back to whichever provider has a key; returns None when no key
    is configured so AI features can be disabled in the UI.
    """
    llm = settings.llm
    keys = {"openai": llm.openai_api_key, "anthropic": llm.anthropic_api_key}
    models = {"openai": llm.openai_default_model, "anthropic": llm.anthropic_default_model}

    provider = llm.default_provider if keys.get(llm.default_provider) else None
    if provider is None:
        provider = next((name for name, key in keys.items() if key), None)
    if provider is None:
        logger.info("No LLM API key configured; AI features disabled")
        return None

    return create_client(provider, keys[provider], models[provider], max_retries=llm.max_retries)
