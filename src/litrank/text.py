# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Text normalization and tokenization shared by the scoring stages."""

import re
import unicodedata
from typing import Optional

# Tokenization pattern
TOKEN_PATTERN = re.compile(r"\b\w+\b", re.UNICODE)

_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^\w\s]", re.UNICODE)

# Stop words to exclude from scoring
STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "by",
        "for",
        "from",
        "has",
        "how",
        "in",
        "into",
        "is",
        "it",
        "its",
        "not",
        "of",
        "on",
        "or",
        "that",
        "the",
        "their",
        "this",
        "to",
        "was",
        "were",
        "what",
        "which",
        "will",
        "with",
    }
)


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip accents and collapse whitespace.

    Args:
        text: Raw text, possibly None.

    Returns:
        Normalized text, empty string for missing input.
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _WHITESPACE.sub(" ", stripped.lower()).strip()


def normalize_key_text(text: Optional[str]) -> str:
    """Normalize text for use inside a cache key (punctuation removed)."""
    return _WHITESPACE.sub(" ", _NON_ALNUM.sub(" ", normalize_text(text))).strip()


def tokenize(text: Optional[str], min_term_length: int = 2) -> list[str]:
    """Tokenize text into lowercase content terms.

    Args:
        text: Text to tokenize.
        min_term_length: Minimum token length to keep.

    Returns:
        List of lowercase tokens with stop words removed.
    """
    if not text:
        return []
    tokens = TOKEN_PATTERN.findall(normalize_text(text))
    return [t for t in tokens if len(t) >= min_term_length and t not in STOP_WORDS]
