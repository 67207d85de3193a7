"""
LLM Gateway - unified interface to LLM providers for the pipeline.

This module exposes the vision transcription, structured generation and
speech synthesis capabilities on top of configurable providers (OpenAI,
Anthropic) with automatic fallback from the primary to the secondary
provider.

Typical usage example:

    config = LLMConfig(
        primary_provider=ProviderConfig(
            name="openai", api_key_env="OPENAI_API_KEY", model="gpt-4o"
        ),
        fallback_provider=ProviderConfig(
            name="anthropic",
            api_key_env="ANTHROPIC_API_KEY",
            model="claude-sonnet-4-20250514",
        ),
    )
    gateway = LLMGateway(config)
    text = gateway.transcribe(png_bytes, page_number=1, language="en")
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..capabilities.base import ContentGenerator, SpeechSynthesizer, VisionTranscriber
from ..models.data_structures import VoiceParams
from ..utils.error_handlers import (
    CapabilityError,
    ConfigurationError,
    PermanentCapabilityError,
)
from ..utils.text_utils import strip_code_fences
from .prompt_library import PromptLibrary
from .providers.anthropic_provider import AnthropicProvider
from .providers.base_provider import LLMProvider, LLMResponse
from .providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
}


def language_name(code: str) -> str:
    """English name of an ISO 639-1 code, or the code itself."""
    return LANGUAGE_NAMES.get(code.lower(), code)


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider.

    Attributes:
        name: Provider name ('openai', 'anthropic').
        api_key_env: Environment variable name containing API key.
        model: Model used for text and vision calls.
        base_url: Optional custom base URL for proxies (OpenAI only).
        timeout_seconds: Per-request timeout; a timeout is a transient error.
    """

    name: str
    api_key_env: str
    model: str
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        return cls(
            name=data["name"],
            api_key_env=data["api_key_env"],
            model=data["model"],
            base_url=data.get("base_url"),
            timeout_seconds=float(data.get("timeout_seconds", 60.0)),
        )


@dataclass
class SpeechConfig:
    """Speech synthesis settings.

    Attributes:
        provider: Name of the provider used for speech.
        model: Speech model identifier.
        voices: Voice names per language and gender; the 'default' language
            entry applies to languages without their own.
    """

    provider: str = "openai"
    model: str = "tts-1"
    voices: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {"default": {"female": "nova", "male": "onyx"}}
    )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SpeechConfig":
        data = data or {}
        defaults = cls()
        return cls(
            provider=data.get("provider", defaults.provider),
            model=data.get("model", defaults.model),
            voices=data.get("voices") or defaults.voices,
        )

    def voice_for(self, voice: VoiceParams) -> str:
        table = self.voices.get(voice.language) or self.voices.get("default") or {}
        name = table.get(voice.gender) or next(iter(table.values()), None)
        if not name:
            raise ConfigurationError(
                f"No voice configured for {voice.language}/{voice.gender}",
                config_key="speech.voices",
            )
        return name


@dataclass
class LLMConfig:
    """Configuration for LLM gateway initialization.

    Attributes:
        primary_provider: Primary provider configuration.
        fallback_provider: Optional fallback provider config.
        temperature: Sampling temperature for generation calls.
        max_tokens_transcription: Response limit of transcription calls.
        max_tokens_generation: Response limit of structured generation calls.
        prompts_dir: Optional directory of YAML prompt overrides.
        speech: Speech synthesis settings.
    """

    primary_provider: ProviderConfig
    fallback_provider: Optional[ProviderConfig] = None
    temperature: float = 0.2
    max_tokens_transcription: int = 4000
    max_tokens_generation: int = 4000
    prompts_dir: Optional[str] = None
    speech: SpeechConfig = field(default_factory=SpeechConfig)

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], speech: Optional[Dict[str, Any]] = None
    ) -> "LLMConfig":
        fallback = data.get("fallback_provider")
        return cls(
            primary_provider=ProviderConfig.from_dict(data["primary_provider"]),
            fallback_provider=ProviderConfig.from_dict(fallback) if fallback else None,
            temperature=float(data.get("temperature", 0.2)),
            max_tokens_transcription=int(data.get("max_tokens_transcription", 4000)),
            max_tokens_generation=int(data.get("max_tokens_generation", 4000)),
            prompts_dir=data.get("prompts_dir"),
            speech=SpeechConfig.from_dict(speech),
        )


class ProviderFactory:
    """Factory for creating LLM provider instances."""

    _providers: Dict[str, Callable[[str, ProviderConfig], LLMProvider]] = {
        "openai": lambda api_key, config: OpenAIProvider(
            api_key=api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        ),
        "anthropic": lambda api_key, config: AnthropicProvider(
            api_key=api_key,
            timeout=config.timeout_seconds,
        ),
    }

    @classmethod
    def create(cls, config: ProviderConfig, api_key: str) -> LLMProvider:
        """Create a provider instance by name.

        Raises:
            ConfigurationError: If provider name is unknown.
        """
        provider_key = config.name.lower()
        if provider_key not in cls._providers:
            raise ConfigurationError(
                f"Unknown provider: {config.name}. "
                f"Available: {', '.join(cls._providers.keys())}",
                config_key="llm.provider.name",
            )
        return cls._providers[provider_key](api_key, config)


class LLMGateway(VisionTranscriber, ContentGenerator, SpeechSynthesizer):
    """Capability facade over the configured LLM providers.

    Every public method performs one logical call: the primary provider is
    tried first and, on a capability error, the fallback provider (if any) is
    tried once. Errors of the last provider tried propagate unchanged so the
    caller's retry policy can tell transient from permanent failures.

    Attributes:
        config: LLMConfig instance defining provider settings.
        prompt_library: PromptLibrary supplying prompt templates.
    """

    def __init__(
        self,
        config: LLMConfig,
        prompt_library: Optional[PromptLibrary] = None,
        providers: Optional[Dict[str, LLMProvider]] = None,
    ) -> None:
        """Initialize LLM gateway.

        Args:
            config: LLM configuration including provider settings.
            prompt_library: Optional prompt library; defaults to built-ins
                plus config.prompts_dir overrides.
            providers: Pre-built providers keyed by name. When omitted,
                providers are created from API keys in the environment.

        Raises:
            ConfigurationError: If the primary provider cannot be initialized.
        """
        self.config = config
        self.prompt_library = prompt_library or PromptLibrary(config.prompts_dir)

        if providers is not None:
            self._providers = dict(providers)
        else:
            self._providers = {}
            self._init_provider(config.primary_provider, is_primary=True)
            if config.fallback_provider:
                self._init_provider(config.fallback_provider, is_primary=False)
            speech_provider = config.speech.provider.lower()
            if speech_provider not in self._providers:
                logger.warning(
                    f"Speech provider {speech_provider} is not configured; "
                    f"audio enrichment will fail"
                )

        if config.primary_provider.name.lower() not in self._providers:
            raise ConfigurationError(
                f"Primary provider {config.primary_provider.name} not available",
                config_key="llm.primary_provider",
            )

        logger.info("LLMGateway initialized successfully")

    def _init_provider(self, provider_config: ProviderConfig, is_primary: bool) -> None:
        """Initialize a single provider from configuration.

        Raises:
            ConfigurationError: If primary provider initialization fails.
        """
        provider_name = provider_config.name.lower()
        api_key = os.getenv(provider_config.api_key_env, "").strip()

        if not api_key:
            error_msg = f"API key not found: {provider_config.api_key_env}"
            if is_primary:
                raise ConfigurationError(error_msg, config_key=provider_config.api_key_env)
            logger.warning(f"{provider_name}: {error_msg}")
            return

        self._providers[provider_name] = ProviderFactory.create(provider_config, api_key)
        logger.info(
            f"Initialized {'primary' if is_primary else 'fallback'} "
            f"provider: {provider_name}"
        )

    def _provider_chain(self) -> List[ProviderConfig]:
        chain = [self.config.primary_provider]
        fallback = self.config.fallback_provider
        if fallback and fallback.name.lower() in self._providers:
            chain.append(fallback)
        return chain

    def _call_with_fallback(
        self, description: str, func: Callable[[LLMProvider, ProviderConfig], T]
    ) -> T:
        chain = self._provider_chain()
        for position, provider_config in enumerate(chain):
            provider = self._providers[provider_config.name.lower()]
            try:
                return func(provider, provider_config)
            except CapabilityError as e:
                if position == len(chain) - 1:
                    raise
                logger.warning(
                    f"{description} failed on {provider_config.name}, "
                    f"falling back to {chain[position + 1].name}: {e}"
                )
        # The loop always returns or raises
        raise ConfigurationError("No LLM provider configured")

    def _complete(
        self,
        prompt_name: str,
        context: Dict[str, Any],
        image: Optional[bytes],
        max_tokens: int,
    ) -> LLMResponse:
        template = self.prompt_library.get_prompt(prompt_name)
        prompt = self.prompt_library.render(prompt_name, context)

        return self._call_with_fallback(
            prompt_name,
            lambda provider, provider_config: provider.call(
                prompt=prompt,
                image=image,
                model=provider_config.model,
                max_tokens=template.max_tokens or max_tokens,
                temperature=self.config.temperature,
                json_mode=template.json_output,
                system_prompt=template.system_prompt,
            ),
        )

    def transcribe(self, image: bytes, page_number: int, language: str) -> str:
        response = self._complete(
            "page_transcription",
            {"page_number": page_number, "language_name": language_name(language)},
            image=image,
            max_tokens=self.config.max_tokens_transcription,
        )
        return response.content.strip()

    def generate_structured(
        self,
        text: str,
        schema_hint: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        context: Dict[str, Any] = {"text": text}
        context.update(variables or {})
        if "language" in context and "language_name" not in context:
            context["language_name"] = language_name(context["language"])

        response = self._complete(
            schema_hint, context, image=None, max_tokens=self.config.max_tokens_generation
        )
        return parse_json_object(response.content, capability=response.provider)

    def synthesize(self, text: str, voice: VoiceParams) -> bytes:
        speech = self.config.speech
        provider = self._providers.get(speech.provider.lower())
        if provider is None or not provider.supports_speech:
            raise PermanentCapabilityError(
                f"Speech provider {speech.provider} is not available",
                capability=speech.provider,
            )
        return provider.synthesize_speech(
            text, voice=speech.voice_for(voice), model=speech.model
        )

    def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if callable(close):
                close()

    def __enter__(self) -> "LLMGateway":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def parse_json_object(content: str, capability: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a model response into a JSON object.

    Accepts bare JSON, fenced JSON and JSON embedded in surrounding prose.

    Raises:
        PermanentCapabilityError: If no JSON object can be recovered.
    """
    candidate = strip_code_fences(content)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", candidate, re.DOTALL)
        if not match:
            raise PermanentCapabilityError(
                "Model response is not valid JSON", capability=capability
            ) from None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise PermanentCapabilityError(
                f"Model response is not valid JSON: {e}",
                capability=capability,
                original_error=e,
            ) from e

    if not isinstance(parsed, dict):
        raise PermanentCapabilityError(
            f"Expected a JSON object, got {type(parsed).__name__}", capability=capability
        )
    return parsed
