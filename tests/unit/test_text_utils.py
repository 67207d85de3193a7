"""
Unit tests for text_utils module.
"""

import pytest

from lesson_intelligence.utils import text_utils


class TestDetectVisualContent:
    """Tests for detect_visual_content function."""

    @pytest.mark.parametrize(
        "text",
        [
            "The table below summarizes the results.",
            "See Figure 3 for the circuit.",
            "Le schéma montre le cycle de l'eau.",
            "Voir le tableau 2.",
        ],
    )
    def test_detects_keywords(self, text):
        assert text_utils.detect_visual_content(text)

    def test_requires_whole_words(self):
        assert not text_utils.detect_visual_content("A comfortable chair")
        assert not text_utils.detect_visual_content("Imagery and graphology")

    def test_empty_text(self):
        assert not text_utils.detect_visual_content("")


class TestPageBlocks:
    """Tests for format_page_block and bound_page_blocks."""

    def test_format_page_block(self):
        assert text_utils.format_page_block(2, "  Hello  ") == "Page 2:\nHello"

    def test_missing_page_gets_placeholder(self):
        block = text_utils.format_page_block(4, None)
        assert block == "Page 4:\n[Page 4 could not be transcribed]"

    def test_blocks_within_limit_are_kept(self):
        text, truncated = text_utils.bound_page_blocks(["a", "b"], 100, separator="|")
        assert text == "a|b"
        assert not truncated

    def test_oldest_blocks_are_dropped_first(self):
        blocks = ["one" * 10, "two" * 10, "three"]

        text, truncated = text_utils.bound_page_blocks(blocks, 40, separator="\n")

        assert truncated
        assert text == "two" * 10 + "\nthree"

    def test_single_oversized_block_keeps_tail(self):
        text, truncated = text_utils.bound_page_blocks(["abcdefghij"], 4)
        assert text == "ghij"
        assert truncated

    def test_empty_input(self):
        assert text_utils.bound_page_blocks([], 10) == ("", False)


class TestHelpers:
    """Tests for the small string helpers."""

    def test_truncate_text(self):
        assert text_utils.truncate_text("hello world", 8) == "hello..."
        assert text_utils.truncate_text("short", 8) == "short"

    def test_strip_code_fences(self):
        assert text_utils.strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert text_utils.strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_count_words(self):
        assert text_utils.count_words("one two  three\nfour") == 4
