"""
Text utilities for the Lesson Intelligence System.

Provides functions for transcript inspection, page block assembly and
bounding of generator input.
"""

import re
from typing import List, Optional, Sequence, Tuple


PAGE_SEPARATOR = "\n\n---\n\n"

# Keywords suggesting that a page carries non-textual content (English, French)
VISUAL_CONTENT_KEYWORDS = [
    "table",
    "tables",
    "diagram",
    "diagrams",
    "figure",
    "figures",
    "chart",
    "charts",
    "graph",
    "graphs",
    "image",
    "images",
    "illustration",
    "illustrations",
    "tableau",
    "tableaux",
    "diagramme",
    "diagrammes",
    "schéma",
    "schémas",
    "graphique",
    "graphiques",
]

_VISUAL_CONTENT_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in VISUAL_CONTENT_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


def truncate_text(text: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate text to maximum length with suffix.

    Args:
        text: Input text
        max_length: Maximum length including suffix
        suffix: Suffix to append if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[: max(max_length - len(suffix), 0)].rstrip() + suffix


def detect_visual_content(text: str) -> bool:
    """
    Check whether transcribed text mentions tables, diagrams or figures.

    Args:
        text: Transcribed page text

    Returns:
        True if any visual content keyword appears as a whole word
    """
    if not text:
        return False
    return _VISUAL_CONTENT_PATTERN.search(text) is not None


def format_page_block(page_number: int, text: Optional[str]) -> str:
    """
    Format one page of transcript for document-level prompts.

    Args:
        page_number: 1-based page number
        text: Transcribed text, or None when the page could not be transcribed

    Returns:
        Block of the form 'Page N:\\n<text>'
    """
    if text is None:
        body = f"[Page {page_number} could not be transcribed]"
    else:
        body = text.strip()
    return f"Page {page_number}:\n{body}"


def bound_page_blocks(
    blocks: Sequence[str], max_chars: int, separator: str = PAGE_SEPARATOR
) -> Tuple[str, bool]:
    """
    Join page blocks and bound the result to `max_chars`.

    Whole blocks are dropped from the start of the document until the joined
    text fits. If the last remaining block alone is still too long, only its
    tail is kept.

    Args:
        blocks: Page blocks in page order
        max_chars: Maximum length of the joined text
        separator: String placed between blocks

    Returns:
        Tuple of (joined text, whether anything was dropped)
    """
    kept: List[str] = list(blocks)
    truncated = False

    def joined_length(items: List[str]) -> int:
        if not items:
            return 0
        return sum(len(b) for b in items) + len(separator) * (len(items) - 1)

    while len(kept) > 1 and joined_length(kept) > max_chars:
        kept.pop(0)
        truncated = True

    text = separator.join(kept)
    if len(text) > max_chars:
        text = text[len(text) - max_chars :]
        truncated = True

    return text, truncated


def strip_code_fences(text: str) -> str:
    """
    Remove a surrounding markdown code fence (```json ... ```) if present.

    Args:
        text: Raw model output

    Returns:
        Text without the fence
    """
    stripped = text.strip()
    match = re.match(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", stripped, re.DOTALL)
    if match:
        return match.group(1).strip()
    return stripped


def count_words(text: str) -> int:
    """Count words in text."""
    return len(text.split())
