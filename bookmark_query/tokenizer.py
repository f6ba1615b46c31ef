"""Tokenizer shared by the record store (write time) and the query parser."""
import re
from typing import FrozenSet, Iterable, List

# Write-time settings for BookmarkRecord.text_tokens
INDEX_MIN_TOKEN_LENGTH = 3
INDEX_MAX_TOKENS = 100

DEFAULT_STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should",
})

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(
    text: str,
    min_length: int,
    max_tokens: int,
    stop_words: FrozenSet[str] = frozenset(),
) -> List[str]:
    """Split text into lowercase search tokens.

    Punctuation becomes whitespace, short tokens are dropped and the list is
    truncated to ``max_tokens`` before stop-words are removed.

    Args:
        text: Raw text
        min_length: Minimum token length to keep
        max_tokens: Maximum number of tokens considered
        stop_words: Tokens to drop after truncation

    Returns:
        List of tokens in text order (may contain duplicates)
    """
    if not text:
        return []

    words = _NON_WORD.sub(" ", text.lower()).split()
    words = [word for word in words if len(word) >= min_length][:max_tokens]
    return [word for word in words if word not in stop_words]


def unique(tokens: Iterable[str]) -> List[str]:
    """De-duplicate while keeping first-seen order."""
    seen = set()
    result = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            result.append(token)
    return result


def tokenize_for_index(text: str) -> List[str]:
    """Tokens stored on a record for the multi-entry token index."""
    return unique(tokenize(text, INDEX_MIN_TOKEN_LENGTH, len(text or "")))[:INDEX_MAX_TOKENS]
