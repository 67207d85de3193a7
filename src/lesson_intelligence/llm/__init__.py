"""
LLM integration modules for the Lesson Intelligence System.

This package contains the LLM gateway, prompt library and providers.
"""

from .llm_gateway import LLMGateway, LLMConfig, ProviderConfig, SpeechConfig
from .prompt_library import PromptLibrary, PromptTemplate
from .providers.base_provider import LLMProvider, LLMResponse
from .providers.openai_provider import OpenAIProvider
from .providers.anthropic_provider import AnthropicProvider

__all__ = [
    "LLMGateway",
    "LLMConfig",
    "ProviderConfig",
    "SpeechConfig",
    "LLMResponse",
    "PromptLibrary",
    "PromptTemplate",
    "LLMProvider",
    "OpenAIProvider",
    "AnthropicProvider",
]
