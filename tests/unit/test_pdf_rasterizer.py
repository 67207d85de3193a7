"""
Unit tests for the PyMuPDF rasterizer.
"""

import io

import fitz
import pytest
from PIL import Image

from lesson_intelligence.capabilities.pdf_rasterizer import PyMuPDFRasterizer, RasterConfig
from lesson_intelligence.utils.error_handlers import DocumentParseError


@pytest.fixture
def three_page_pdf(fakes):
    return fakes.make_pdf(["Page one", "Page two", "Page three"])


class TestRasterConfig:
    """Tests for RasterConfig validation."""

    def test_defaults(self):
        config = RasterConfig.from_dict(None)
        assert config.dpi == 144
        assert config.max_pages == 200

    @pytest.mark.parametrize(
        "kwargs",
        [{"dpi": 10}, {"dpi": 1200}, {"max_pages": 0}, {"max_image_dimension": 10}],
    )
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            RasterConfig(**kwargs)


class TestPageCount:
    """Tests for page_count."""

    def test_counts_pages(self, three_page_pdf):
        assert PyMuPDFRasterizer().page_count(three_page_pdf) == 3

    def test_caps_at_max_pages(self, three_page_pdf):
        rasterizer = PyMuPDFRasterizer(RasterConfig(max_pages=2))
        assert rasterizer.page_count(three_page_pdf) == 2

    @pytest.mark.parametrize("document", [b"", b"not a pdf at all", b"\x00" * 64])
    def test_unreadable_documents_raise(self, document):
        with pytest.raises(DocumentParseError):
            PyMuPDFRasterizer().page_count(document)

    def test_oversized_document_raises(self, three_page_pdf):
        rasterizer = PyMuPDFRasterizer(RasterConfig(max_file_size_mb=1))
        with pytest.raises(DocumentParseError, match="exceeds limit"):
            rasterizer.page_count(three_page_pdf + b"\n%" + b"x" * (2 * 1024 * 1024))

    def test_encrypted_document_raises(self, three_page_pdf):
        doc = fitz.open(stream=three_page_pdf, filetype="pdf")
        encrypted = doc.tobytes(
            encryption=fitz.PDF_ENCRYPT_AES_256, owner_pw="owner", user_pw="user"
        )
        doc.close()

        with pytest.raises(DocumentParseError, match="encrypted"):
            PyMuPDFRasterizer().page_count(encrypted)


class TestRasterize:
    """Tests for rasterize."""

    def test_renders_png_at_configured_dpi(self, three_page_pdf):
        page = PyMuPDFRasterizer(RasterConfig(dpi=144)).rasterize(three_page_pdf, 2)

        assert page.page_number == 2
        assert page.content_type == "image/png"
        assert page.image.startswith(b"\x89PNG")
        # 300x400 pt at 2x zoom
        assert (page.width, page.height) == (600, 800)

    def test_large_pages_are_downscaled(self, three_page_pdf):
        rasterizer = PyMuPDFRasterizer(RasterConfig(dpi=144, max_image_dimension=200))

        page = rasterizer.rasterize(three_page_pdf, 1)

        assert max(page.width, page.height) == 200
        with Image.open(io.BytesIO(page.image)) as image:
            assert image.size == (page.width, page.height)

    @pytest.mark.parametrize("page_number", [0, 4])
    def test_out_of_range_page_raises(self, three_page_pdf, page_number):
        with pytest.raises(DocumentParseError) as exc_info:
            PyMuPDFRasterizer().rasterize(three_page_pdf, page_number)
        assert exc_info.value.page_number == page_number
