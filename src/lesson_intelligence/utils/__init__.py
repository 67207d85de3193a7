"""Utility functions for lesson intelligence system."""

from .file_utils import ensure_directory, generate_unique_id, atomic_write_bytes
from .text_utils import truncate_text, detect_visual_content

__all__ = [
    "ensure_directory",
    "generate_unique_id",
    "atomic_write_bytes",
    "truncate_text",
    "detect_visual_content",
]
