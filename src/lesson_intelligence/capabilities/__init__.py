"""Capability interfaces and their local implementations."""

from .base import ContentGenerator, Rasterizer, SpeechSynthesizer, VisionTranscriber
from .pdf_rasterizer import PyMuPDFRasterizer, RasterConfig
from .retry import RetryPolicy, call_with_retry

__all__ = [
    "ContentGenerator",
    "Rasterizer",
    "SpeechSynthesizer",
    "VisionTranscriber",
    "PyMuPDFRasterizer",
    "RasterConfig",
    "RetryPolicy",
    "call_with_retry",
]
