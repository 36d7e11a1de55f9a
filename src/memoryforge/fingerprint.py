"""
FingerprintIndex: near-duplicate detection for message text.

Text is reduced to a small vector of normalized syntactic features and
hashed into a fixed-width perceptual fingerprint, so similar texts end up a
short Hamming distance apart. A Bloom filter rejects unseen fingerprints
without touching the cache; Bloom hits fall back to a linear scan.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .config import FingerprintSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Feature vocabulary
# ---------------------------------------------------------------------------

TECHNICAL_TERMS: tuple[str, ...] = (
    "api", "database", "server", "client", "framework", "library",
    "algorithm", "function", "class", "method", "variable", "interface",
    "component", "module", "package", "dependency", "configuration",
    "authentication", "authorization", "encryption", "security",
)

PROGRAMMING_KEYWORDS: tuple[str, ...] = (
    "if", "else", "for", "while", "function", "class", "return",
    "const", "let", "var", "async", "await", "try", "catch",
    "import", "export", "default", "new", "this", "super",
)

_KEYWORD_PATTERNS = [re.compile(rf"\b{kw}\b") for kw in PROGRAMMING_KEYWORDS]
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_VERB_SUFFIX = re.compile(r"(ing|ed|en|s|ize|ify)$")
_NUMBER = re.compile(r"\d+")
_URL = re.compile(r"https?://\S+")
_EMAIL = re.compile(r"[\w.-]+@[\w.-]+")

# (feature name, value at which the normalized feature saturates)
FEATURE_SCALES: tuple[tuple[str, float], ...] = (
    ("word_count", 100),
    ("char_count", 1000),
    ("avg_word_length", 10),
    ("question_marks", 5),
    ("exclamations", 5),
    ("code_blocks", 3),
    ("triplet_count", 10),
    ("unique_verbs", 10),
    ("unique_nouns", 20),
    ("numbers", 10),
    ("urls", 3),
    ("emails", 3),
    ("technical_terms", 10),
    ("programming_keywords", 5),
)


def extract_triplets(text: str) -> list[tuple[str, str, str]]:
    """Crude subject-verb-object triplets, verbs spotted by suffix."""
    triplets = []
    for sentence in _SENTENCE_SPLIT.split(text):
        words = re.sub(r"[^\w\s]", "", sentence.lower()).split()
        for index, word in enumerate(words):
            if not _VERB_SUFFIX.search(word):
                continue
            if 0 < index < len(words) - 1:
                triplets.append((words[index - 1], word, words[index + 1]))
    return triplets


def extract_features(text: str) -> list[float]:
    """The 14 raw features of *text*, normalized to [0, 1] in ``FEATURE_SCALES`` order."""
    words = text.split()
    lower = text.lower()
    triplets = extract_triplets(text)
    raw = {
        "word_count": len(words),
        "char_count": len(text),
        "avg_word_length": sum(len(w) for w in words) / len(words) if words else 0.0,
        "question_marks": text.count("?"),
        "exclamations": text.count("!"),
        "code_blocks": text.count("```") / 2,
        "triplet_count": len(triplets),
        "unique_verbs": len({verb for _, verb, _ in triplets}),
        "unique_nouns": len({w for s, _, o in triplets for w in (s, o)}),
        "numbers": len(_NUMBER.findall(text)),
        "urls": len(_URL.findall(text)),
        "emails": len(_EMAIL.findall(text)),
        "technical_terms": sum(1 for term in TECHNICAL_TERMS if term in lower),
        "programming_keywords": sum(1 for p in _KEYWORD_PATTERNS if p.search(lower)),
    }
    return [min(raw[name] / scale, 1.0) for name, scale in FEATURE_SCALES]


def similarity(a: str, b: str) -> float:
    """Fraction of matching bits between two hex fingerprints of equal width."""
    if len(a) != len(b):
        raise ValueError("fingerprints must have the same width")
    total = len(a) * 4
    if total == 0:
        return 1.0
    differing = bin(int(a, 16) ^ int(b, 16)).count("1")
    return (total - differing) / total


# ---------------------------------------------------------------------------
# Bloom filter
# ---------------------------------------------------------------------------


class BloomFilter:
    """Fixed-size bit array probed by *hashes* salted blake2b digests."""

    def __init__(self, size: int, hashes: int) -> None:
        self.size = size
        self.hashes = hashes
        self._bits = bytearray((size + 7) // 8)

    def _positions(self, item: str) -> list[int]:
        data = item.encode("utf-8")
        return [
            int.from_bytes(
                hashlib.blake2b(data, digest_size=8, salt=str(i).encode()).digest(), "big"
            )
            % self.size
            for i in range(self.hashes)
        ]

    def add(self, item: str) -> None:
        for pos in self._positions(item):
            self._bits[pos >> 3] |= 1 << (pos & 7)

    def __contains__(self, item: str) -> bool:
        return all(self._bits[pos >> 3] & (1 << (pos & 7)) for pos in self._positions(item))

    def density(self) -> float:
        set_bits = sum(bin(byte).count("1") for byte in self._bits)
        return set_bits / self.size

    def clear(self) -> None:
        self._bits = bytearray(len(self._bits))

    def to_hex(self) -> str:
        return self._bits.hex()

    @classmethod
    def from_hex(cls, size: int, hashes: int, data: str) -> BloomFilter:
        bloom = cls(size, hashes)
        bits = bytearray.fromhex(data)
        if len(bits) != len(bloom._bits):
            raise ValueError("serialized bloom filter has the wrong size")
        bloom._bits = bits
        return bloom


# ---------------------------------------------------------------------------
# FingerprintIndex
# ---------------------------------------------------------------------------


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    confidence: float
    matches: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "confidence": self.confidence,
            "matches": list(self.matches),
        }


class FingerprintIndex:
    """
    Perceptual fingerprints plus the structures used to find near duplicates.

    Parameters
    ----------
    settings:
        Hash width, Bloom filter shape, duplicate threshold and cache bound;
        defaults to :class:`FingerprintSettings`.
    """

    def __init__(self, settings: FingerprintSettings | None = None) -> None:
        self.settings = settings or FingerprintSettings()
        self.bloom = BloomFilter(self.settings.bloom_filter_size, self.settings.bloom_filter_hashes)
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._counters = {"checks": 0, "bloom_rejections": 0, "duplicates": 0, "evictions": 0}

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def fingerprint(self, text: str, register: bool = True) -> str:
        """
        Return the hex fingerprint of *text*.

        With *register* the fingerprint is cached and added to the Bloom
        filter; otherwise it is only computed (or read from the cache).
        """
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        fp = self._perceptual_hash(extract_features(text))
        if register:
            self.register(text, fp)
        return fp

    def register(self, text: str, fp: str) -> None:
        """Record *fp* as the fingerprint of *text*."""
        self._cache[text] = fp
        self._cache.move_to_end(text)
        self.bloom.add(fp)
        limit = self.settings.max_cache_size
        while limit is not None and len(self._cache) > limit:
            evicted, _ = self._cache.popitem(last=False)
            self._counters["evictions"] += 1
            logger.debug("Evicted fingerprint cache entry %r", evicted[:30])

    def _perceptual_hash(self, features: list[float]) -> str:
        size = self.settings.hash_size
        bits = [0] * size
        mean = sum(features) / len(features)
        for index, value in enumerate(features):
            position = (index * 5) % size
            if value > mean:
                bits[position] = 1
            if value > 0.5:
                bits[(position + 1) % size] = 1
        number = int("".join(map(str, bits)), 2)
        return format(number, f"0{size // 4}x")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def check_duplicate(
        self,
        fp: str,
        threshold: float | None = None,
        text: str | None = None,
    ) -> DuplicateCheck:
        """Find cached fingerprints at least *threshold* similar to *fp*."""
        threshold = self.settings.duplicate_threshold if threshold is None else threshold
        self._counters["checks"] += 1

        if text is not None and self._cache.get(text) == fp:
            self._counters["duplicates"] += 1
            return DuplicateCheck(True, 1.0, [{"text": text, "fingerprint": fp, "similarity": 1.0}])

        if fp not in self.bloom:
            self._counters["bloom_rejections"] += 1
            return DuplicateCheck(False, 0.0, [])

        matches = []
        for cached_text, cached_fp in self._cache.items():
            score = 1.0 if cached_fp == fp else similarity(fp, cached_fp)
            if score >= threshold:
                matches.append({"text": cached_text, "fingerprint": cached_fp, "similarity": score})
        matches.sort(key=lambda m: m["similarity"], reverse=True)

        if not matches:
            return DuplicateCheck(False, 0.0, [])
        self._counters["duplicates"] += 1
        return DuplicateCheck(True, matches[0]["similarity"], matches)

    def similarity(self, a: str, b: str) -> float:
        return similarity(a, b)

    def __contains__(self, text: object) -> bool:
        return text in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def items(self) -> list[tuple[str, str]]:
        """Cached ``(text, fingerprint)`` pairs, least recently used first."""
        return list(self._cache.items())

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Drop every cached fingerprint and reset the Bloom filter."""
        self._cache.clear()
        self.bloom.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "cached_fingerprints": len(self._cache),
            "bloom_filter_density": self.bloom.density(),
            "bloom_filter_size": self.bloom.size,
            "hash_size": self.settings.hash_size,
            **self._counters,
        }

    def serialize(self) -> dict[str, Any]:
        return {
            "version": "1.0",
            "settings": self.settings.model_dump(),
            "cache": [[text, fp] for text, fp in self._cache.items()],
            "bloom": self.bloom.to_hex(),
            "counters": dict(self._counters),
        }

    @classmethod
    def deserialize(
        cls, data: dict[str, Any], settings: FingerprintSettings | None = None
    ) -> FingerprintIndex:
        index = cls(settings or FingerprintSettings.model_validate(data.get("settings", {})))
        if data.get("bloom"):
            index.bloom = BloomFilter.from_hex(
                index.settings.bloom_filter_size, index.settings.bloom_filter_hashes, data["bloom"]
            )
        for text, fp in data.get("cache", []):
            index._cache[text] = fp
            index.bloom.add(fp)
        index._counters.update(data.get("counters") or {})
        return index
