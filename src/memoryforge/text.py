"""
Lightweight text heuristics shared by the tree, the causal graph and the
query engine.

Nothing here loads a model: every helper is a regex or set operation so the
core stays fast and deterministic.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import Iterable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Words ignored when extracting topic keywords.
TOPIC_STOPWORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "been", "be",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "can", "this", "that", "i", "you", "it", "we", "they",
    }
)

#: Words ignored when extracting query keywords.
QUERY_STOPWORDS: frozenset[str] = frozenset(
    {
        "a", "an", "the", "is", "are", "was", "were", "be", "been",
        "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "can", "may", "might", "must",
        "i", "you", "he", "she", "it", "we", "they",
        "me", "him", "her", "us", "them",
        "my", "your", "his", "its", "our", "their",
        "this", "that", "these", "those",
        "what", "which", "who", "when", "where", "why", "how",
        "and", "or", "but", "if", "because", "as", "until", "while",
        "of", "at", "by", "for", "with", "about", "against", "between",
        "into", "through", "during", "before", "after", "above", "below",
        "to", "from", "up", "down", "in", "out", "on", "off", "over", "under",
    }
)

#: Maximum number of topic keywords kept per message.
MAX_TOPIC_KEYWORDS: int = 10

_NON_WORD = re.compile(r"[^\w\s]")


# ---------------------------------------------------------------------------
# Tokenisation
# ---------------------------------------------------------------------------


def tokenize(text: str) -> list[str]:
    """Lower-case *text*, turn punctuation into spaces and split on whitespace."""
    return _NON_WORD.sub(" ", text.lower()).split()


def extract_topic_keywords(text: str, limit: int = MAX_TOPIC_KEYWORDS) -> list[str]:
    """
    Return up to *limit* topic keywords of *text*, most frequent first.

    Only words longer than three characters that are not stop words count.
    Equal frequencies keep their first-seen order.
    """
    words = [w for w in tokenize(text) if len(w) > 3 and w not in TOPIC_STOPWORDS]
    return [word for word, _ in Counter(words).most_common(limit)]


def lexical_words(text: str) -> set[str]:
    """Distinct words of at least four letters, used for overlap scoring."""
    return {w for w in tokenize(text) if len(w) > 3}


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard similarity of two word collections (0.0 when both are empty)."""
    left, right = set(a), set(b)
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def lexical_overlap(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the four-letter-plus vocabularies of two texts."""
    return jaccard(lexical_words(text_a), lexical_words(text_b))


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def stable_hash(text: str, digest_size: int = 8) -> str:
    """Short, process-independent content hash (hex)."""
    return hashlib.blake2b(text.encode("utf-8"), digest_size=digest_size).hexdigest()


def preview(text: str, limit: int = 50) -> str:
    """First *limit* characters of *text*, with an ellipsis when truncated."""
    return text if len(text) <= limit else text[:limit] + "..."
