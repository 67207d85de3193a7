"""
Base provider interface for LLM integrations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from ...utils.error_handlers import PermanentCapabilityError


@dataclass
class TokenUsage:
    """
    Token usage tracking.

    Attributes:
        input_tokens: Number of input tokens
        output_tokens: Number of output tokens
        image_count: Number of images in request
    """

    input_tokens: int
    output_tokens: int
    image_count: int = 0


@dataclass
class LLMResponse:
    """
    Standardized LLM response.

    Attributes:
        content: Response text content
        tokens_used: Token usage information
        model_used: Model identifier
        provider: Provider name
        finish_reason: Provider reported stop reason, if any
    """

    content: str
    tokens_used: TokenUsage
    model_used: str
    provider: str
    finish_reason: Optional[str] = None


# Magic numbers of the image formats accepted by vision models
IMAGE_SIGNATURES = {
    b"\x89PNG": "image/png",
    b"\xff\xd8\xff": "image/jpeg",
    b"RIFF": "image/webp",
    b"GIF87a": "image/gif",
    b"GIF89a": "image/gif",
}


def detect_image_media_type(image: bytes) -> str:
    """
    Detect image MIME type from byte signature.

    Raises:
        PermanentCapabilityError: If the format is not recognized.
    """
    for signature, media_type in IMAGE_SIGNATURES.items():
        if image.startswith(signature):
            return media_type
    raise PermanentCapabilityError("Unsupported image format", capability="llm")


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Providers make exactly one API call per invocation. Failures are raised
    as TransientCapabilityError or PermanentCapabilityError; retrying is the
    caller's responsibility.
    """

    PROVIDER_NAME = "base"

    @abstractmethod
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
        """
        Make API call to LLM provider.

        Args:
            prompt: Text prompt
            image: Optional image bytes
            model: Model identifier
            max_tokens: Maximum response tokens
            temperature: Temperature (0.0-1.0)
            json_mode: Request a JSON object response where supported
            system_prompt: Optional system instructions

        Returns:
            LLMResponse with content and metadata

        Raises:
            TransientCapabilityError: Rate limits, timeouts, 5xx responses
            PermanentCapabilityError: Authentication, bad requests, empty output
        """
        pass

    @abstractmethod
    def get_available_models(self) -> List[str]:
        """
        Get list of models known to work with this provider.

        Returns:
            List of model identifiers
        """
        pass

    @property
    def supports_speech(self) -> bool:
        return False

    def synthesize_speech(self, text: str, voice: str, model: str) -> bytes:
        """
        Synthesize MP3 speech for `text`.

        Raises:
            PermanentCapabilityError: If the provider has no speech endpoint.
        """
        raise PermanentCapabilityError(
            f"Provider {self.PROVIDER_NAME} does not support speech synthesis",
            capability=self.PROVIDER_NAME,
        )
