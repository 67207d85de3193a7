"""LLM provider implementations."""

from .base_provider import LLMProvider, LLMResponse, TokenUsage
from .openai_provider import OpenAIProvider
from .anthropic_provider import AnthropicProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "TokenUsage",
    "OpenAIProvider",
    "AnthropicProvider",
]
