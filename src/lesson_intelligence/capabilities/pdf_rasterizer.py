"""
PDF rasterization for the Lesson Intelligence System.

This module renders pages of in-memory PDF documents to PNG images using
PyMuPDF (fitz). Oversized renderings are downscaled with Pillow so that page
images stay within the limits of the vision models that transcribe them.

Classes:
    RasterConfig: Immutable configuration for page rendering.
    PyMuPDFRasterizer: Rasterizer implementation backed by PyMuPDF.

Typical usage example:
    rasterizer = PyMuPDFRasterizer(RasterConfig(dpi=144))
    count = rasterizer.page_count(pdf_bytes)
    page = rasterizer.rasterize(pdf_bytes, 1)
"""

from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image

from ..models.data_structures import RasterizedPage
from ..utils.error_handlers import DocumentParseError
from .base import Rasterizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RasterConfig:
    """Immutable configuration for page rendering.

    Attributes:
        dpi: Rendering resolution. 72 DPI is the PDF native resolution.
            Must be between 36 and 600.
        max_pages: Maximum number of pages processed per document. Later
            pages are ignored with a warning.
        max_file_size_mb: Documents larger than this are rejected.
        max_image_dimension: Longest side in pixels of a rendered page;
            larger renderings are downscaled.
    """

    dpi: int = 144
    max_pages: int = 200
    max_file_size_mb: int = 50
    max_image_dimension: int = 2048

    def __post_init__(self) -> None:
        """Validate configuration parameters after initialization.

        Raises:
            ValueError: If any parameter is outside acceptable range.
        """
        if not 36 <= self.dpi <= 600:
            raise ValueError(f"DPI must be between 36 and 600, got {self.dpi}")
        if self.max_pages <= 0:
            raise ValueError(f"max_pages must be positive, got {self.max_pages}")
        if self.max_file_size_mb <= 0:
            raise ValueError(
                f"max_file_size_mb must be positive, got {self.max_file_size_mb}"
            )
        if self.max_image_dimension < 64:
            raise ValueError(
                f"max_image_dimension must be at least 64, "
                f"got {self.max_image_dimension}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> RasterConfig:
        data = data or {}
        return cls(
            dpi=int(data.get("dpi", 144)),
            max_pages=int(data.get("max_pages", 200)),
            max_file_size_mb=int(data.get("max_file_size_mb", 50)),
            max_image_dimension=int(data.get("max_image_dimension", 2048)),
        )


class PyMuPDFRasterizer(Rasterizer):
    """Renders PDF pages to PNG with PyMuPDF.

    The rasterizer is stateless apart from its configuration and may be
    shared between worker threads; every call opens its own document handle.

    Attributes:
        config: Rendering configuration.
    """

    def __init__(self, config: Optional[RasterConfig] = None) -> None:
        self.config = config or RasterConfig()
        logger.info(
            f"PyMuPDFRasterizer initialized (DPI: {self.config.dpi}, "
            f"max pages: {self.config.max_pages})"
        )

    @contextmanager
    def _open_document(self, document: bytes) -> Generator[fitz.Document, None, None]:
        """Context manager for validated in-memory PDF handling.

        Args:
            document: Raw PDF bytes.

        Yields:
            Opened fitz.Document object.

        Raises:
            DocumentParseError: If the document is empty, too large,
                encrypted, corrupted or has no pages.
        """
        if not document:
            raise DocumentParseError("Document is empty")

        size_mb = len(document) / (1024 * 1024)
        if size_mb > self.config.max_file_size_mb:
            raise DocumentParseError(
                f"Document size {size_mb:.1f} MB exceeds limit of "
                f"{self.config.max_file_size_mb} MB"
            )

        try:
            doc = fitz.open(stream=document, filetype="pdf")
        except Exception as e:
            raise DocumentParseError(
                f"Failed to open PDF document: {e}", original_error=e
            ) from e

        try:
            if doc.is_encrypted:
                raise DocumentParseError("PDF is encrypted or password-protected")
            if len(doc) == 0:
                raise DocumentParseError("PDF contains no pages")
            yield doc
        finally:
            doc.close()

    def page_count(self, document: bytes) -> int:
        """Count the pages that will be processed.

        Args:
            document: Raw PDF bytes.

        Returns:
            Number of pages, capped at config.max_pages.

        Raises:
            DocumentParseError: If the document cannot be opened.
        """
        with self._open_document(document) as doc:
            total = len(doc)

        if total > self.config.max_pages:
            logger.warning(
                f"Document has {total} pages, processing only the first "
                f"{self.config.max_pages}"
            )
            return self.config.max_pages
        return total

    def rasterize(self, document: bytes, page_number: int) -> RasterizedPage:
        """Render one page to PNG.

        Args:
            document: Raw PDF bytes.
            page_number: 1-based page number.

        Returns:
            RasterizedPage with PNG bytes and final pixel dimensions.

        Raises:
            DocumentParseError: If the page does not exist or cannot be
                rendered.
        """
        with self._open_document(document) as doc:
            if not 1 <= page_number <= len(doc):
                raise DocumentParseError(
                    f"Page {page_number} out of range (document has {len(doc)} pages)",
                    page_number=page_number,
                )
            try:
                zoom = self.config.dpi / 72.0
                pix = doc[page_number - 1].get_pixmap(
                    matrix=fitz.Matrix(zoom, zoom), alpha=False
                )
                png = pix.tobytes("png")
                width, height = pix.width, pix.height
            except Exception as e:
                raise DocumentParseError(
                    f"Page rendering failed: {e}",
                    page_number=page_number,
                    original_error=e,
                ) from e

        if max(width, height) > self.config.max_image_dimension:
            png, width, height = self._downscale(png)
            logger.debug(
                f"Page {page_number} downscaled to {width}x{height}"
            )

        return RasterizedPage(
            page_number=page_number, image=png, width=width, height=height
        )

    def _downscale(self, png: bytes) -> Tuple[bytes, int, int]:
        """Shrink a PNG so its longest side fits max_image_dimension."""
        limit = self.config.max_image_dimension
        with Image.open(io.BytesIO(png)) as image:
            image.thumbnail((limit, limit), Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            image.save(buffer, format="PNG", optimize=True)
            return buffer.getvalue(), image.width, image.height
