"""
OpenAI LLM provider implementation for text, vision and speech.

This module implements the LLMProvider interface for OpenAI's GPT models and
the text-to-speech endpoint. Each method performs a single API call with the
SDK's built-in retries disabled; errors are translated into transient or
permanent capability errors.

Example:
    >>> provider = OpenAIProvider(api_key="sk-proj-...", timeout=60.0)
    >>> response = provider.call(
    ...     prompt="Transcribe this page",
    ...     image=png_bytes,
    ...     model="gpt-4o",
    ...     max_tokens=4000,
    ...     temperature=0.0,
    ... )
    >>> print(response.content)

Note:
    Requires 'openai' package: pip install openai>=1.0.0
"""

import base64
import logging
import threading
from typing import Any, Dict, List, Optional

import openai

from ...utils.error_handlers import (
    CapabilityError,
    PermanentCapabilityError,
    TransientCapabilityError,
)
from .base_provider import LLMProvider, LLMResponse, TokenUsage, detect_image_media_type

logger = logging.getLogger(__name__)

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = {408, 409, 429}


class OpenAIProvider(LLMProvider):
    """
    OpenAI API provider for completions and speech synthesis.

    Attributes:
        api_key: OpenAI API authentication key.
        base_url: Optional custom API endpoint URL.
        timeout: Request timeout in seconds.
    """

    PROVIDER_NAME = "openai"

    VISION_MODELS = {"gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4.1", "gpt-4.1-mini"}

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        if not api_key:
            raise ValueError("OpenAI API key required")

        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[openai.OpenAI] = None
        self._client_lock = threading.Lock()

        logger.info(f"OpenAIProvider initialized (timeout: {timeout}s)")

    def _get_client(self) -> openai.OpenAI:
        """Lazy, thread-safe initialization of the OpenAI client."""
        with self._client_lock:
            if self._client is None:
                self._client = openai.OpenAI(
                    api_key=self.api_key,
                    base_url=self.base_url,
                    timeout=self.timeout,
                    max_retries=0,
                )
            return self._client

    def call(
        self,
        prompt: str,
        image: Optional[bytes],
        model: str,
        max_tokens: int,
        temperature: float,
        json_mode: bool = False,
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        messages = self._build_messages(prompt, image, system_prompt)
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self._get_client().chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise self._translate_error(e) from e

        choice = response.choices[0]
        content = choice.message.content or ""
        if not content.strip():
            raise PermanentCapabilityError(
                f"Empty response from {model}", capability=self.PROVIDER_NAME
            )

        usage = response.usage
        tokens_used = TokenUsage(
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            image_count=1 if image else 0,
        )
        logger.debug(
            f"OpenAI call completed: model={model}, "
            f"tokens={tokens_used.input_tokens}/{tokens_used.output_tokens}"
        )

        return LLMResponse(
            content=content,
            tokens_used=tokens_used,
            model_used=response.model or model,
            provider=self.PROVIDER_NAME,
            finish_reason=choice.finish_reason,
        )

    @property
    def supports_speech(self) -> bool:
        return True

    def synthesize_speech(self, text: str, voice: str, model: str = "tts-1") -> bytes:
        """
        Synthesize MP3 speech with the audio speech endpoint.

        Args:
            text: Text to narrate
            voice: OpenAI voice name (e.g. 'nova', 'onyx')
            model: Speech model identifier

        Returns:
            MP3 bytes
        """
        try:
            response = self._get_client().audio.speech.create(
                model=model, voice=voice, input=text, response_format="mp3"
            )
        except openai.OpenAIError as e:
            raise self._translate_error(e) from e

        audio = response.content
        if not audio:
            raise PermanentCapabilityError(
                "Speech synthesis returned no audio", capability=self.PROVIDER_NAME
            )
        return audio

    def _build_messages(
        self, prompt: str, image: Optional[bytes], system_prompt: Optional[str]
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        if image:
            media_type = detect_image_media_type(image)
            encoded = base64.b64encode(image).decode("utf-8")
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{media_type};base64,{encoded}",
                                "detail": "high",
                            },
                        },
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    def _translate_error(self, error: openai.OpenAIError) -> CapabilityError:
        """Map an SDK exception to a transient or permanent capability error."""
        status_code = getattr(error, "status_code", None)

        if isinstance(
            error,
            (
                openai.RateLimitError,
                openai.APIConnectionError,
                openai.InternalServerError,
            ),
        ):
            transient = True
        elif isinstance(error, openai.APIStatusError):
            transient = status_code in TRANSIENT_STATUS_CODES or (
                status_code is not None and status_code >= 500
            )
        else:
            transient = False

        message = f"OpenAI API error: {error}"
        if transient:
            logger.warning(message)
            return TransientCapabilityError(
                message,
                capability=self.PROVIDER_NAME,
                status_code=status_code,
                original_error=error,
            )
        logger.error(message)
        return PermanentCapabilityError(
            message,
            capability=self.PROVIDER_NAME,
            status_code=status_code,
            original_error=error,
        )

    def get_available_models(self) -> List[str]:
        return sorted(self.VISION_MODELS)

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
