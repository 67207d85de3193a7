"""
Capability interfaces consumed by the stage executors.

Every external collaborator of the pipeline is reached through one of these
narrow interfaces. Implementations raise TransientCapabilityError for failures
worth retrying and PermanentCapabilityError for everything else; they never
retry internally.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..models.data_structures import RasterizedPage, VoiceParams


class Rasterizer(ABC):
    """Renders pages of a PDF document to images."""

    @abstractmethod
    def page_count(self, document: bytes) -> int:
        """
        Count the pages of a document.

        Raises:
            DocumentParseError: If the document cannot be opened.
        """
        pass

    @abstractmethod
    def rasterize(self, document: bytes, page_number: int) -> RasterizedPage:
        """
        Render one page (1-based) to a PNG image.

        Raises:
            DocumentParseError: If the page cannot be rendered.
        """
        pass


class VisionTranscriber(ABC):
    """Turns a page image into text."""

    @abstractmethod
    def transcribe(self, image: bytes, page_number: int, language: str) -> str:
        pass


class ContentGenerator(ABC):
    """Produces structured JSON content from text."""

    @abstractmethod
    def generate_structured(
        self,
        text: str,
        schema_hint: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Generate a JSON object for `text`.

        Args:
            text: Source text the content is derived from.
            schema_hint: Name of the expected output shape
                ('document_structure', 'section_quiz').
            variables: Extra values for the prompt (language, counts, ...).

        Returns:
            Parsed JSON object.
        """
        pass


class SpeechSynthesizer(ABC):
    """Turns text into spoken audio."""

    @abstractmethod
    def synthesize(self, text: str, voice: VoiceParams) -> bytes:
        """Return MP3 audio for `text`."""
        pass
