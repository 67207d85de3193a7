"""Anthropic (Claude) API Provider Implementation.

This module provides integration with Anthropic's Claude API, supporting both
text-only and vision-enabled prompts. Implements the LLMProvider interface
with token usage tracking and error translation.

Note:
    Anthropic's API does not support a JSON response mode; json_mode is
    expressed as an instruction appended to the prompt.
"""

import base64
import logging
from functools import cached_property
from typing import Any, Dict, List, Optional

import anthropic

from ...utils.error_handlers import (
    CapabilityError,
    PermanentCapabilityError,
    TransientCapabilityError,
)
from .base_provider import LLMProvider, LLMResponse, TokenUsage, detect_image_media_type

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "\n\nRespond with a single JSON object and nothing else."


class AnthropicProvider(LLMProvider):
    """Concrete implementation of LLMProvider for Anthropic's Claude models.

    Attributes:
        api_key: The API key for Anthropic authentication.
        timeout: Request timeout in seconds.
        PROVIDER_NAME: Constant identifier for this provider.
    """

    PROVIDER_NAME = "anthropic"

    # Image constraints per Anthropic API documentation
    MAX_IMAGE_SIZE_BYTES = 5 * 1024 * 1024

    MODELS = [
        "claude-sonnet-4-20250514",
        "claude-3-7-sonnet-20250219",
        "claude-3-5-haiku-20241022",
    ]

    def __init__(self, api_key: str, timeout: float = 60.0) -> None:
        if not api_key:
            raise ValueError("Anthropic API key required")

        self.api_key = api_key
        self.timeout = timeout

        logger.info("AnthropicProvider initialized")

    @cached_property
    def client(self) -> anthropic.Anthropic:
        """Lazy-loaded Anthropic API client with SDK retries disabled."""
        return anthropic.Anthropic(
            api_key=self.api_key, timeout=self.timeout, max_retries=0
        )

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
        if json_mode:
            prompt = prompt + JSON_INSTRUCTION

        if image:
            if len(image) > self.MAX_IMAGE_SIZE_BYTES:
                raise PermanentCapabilityError(
                    f"Image exceeds {self.MAX_IMAGE_SIZE_BYTES} bytes",
                    capability=self.PROVIDER_NAME,
                )
            content: Any = [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": detect_image_media_type(image),
                        "data": base64.b64encode(image).decode("utf-8"),
                    },
                },
                {"type": "text", "text": prompt},
            ]
        else:
            content = prompt

        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise self._translate_error(e) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text.strip():
            raise PermanentCapabilityError(
                f"Empty response from {model}", capability=self.PROVIDER_NAME
            )

        return LLMResponse(
            content=text,
            tokens_used=TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                image_count=1 if image else 0,
            ),
            model_used=model,
            provider=self.PROVIDER_NAME,
            finish_reason=response.stop_reason,
        )

    def _translate_error(self, error: anthropic.AnthropicError) -> CapabilityError:
        """Map an SDK exception to a transient or permanent capability error."""
        status_code = getattr(error, "status_code", None)

        if isinstance(
            error,
            (
                anthropic.RateLimitError,
                anthropic.APIConnectionError,
                anthropic.InternalServerError,
            ),
        ):
            transient = True
        elif isinstance(error, anthropic.APIStatusError):
            transient = status_code in (408, 409, 429) or (
                status_code is not None and status_code >= 500
            )
        else:
            transient = False

        message = f"Anthropic API error: {error}"
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
        return list(self.MODELS)

    def __repr__(self) -> str:
        return f"AnthropicProvider(timeout={self.timeout})"
