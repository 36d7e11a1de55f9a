"""
Shared pytest fixtures for memoryforge tests.

Uses ChromaDB in ephemeral (in-memory) mode and a deterministic
fake embedding function so that tests run fast without downloading
any ML models.
"""

from __future__ import annotations

import hashlib
import os
import uuid

import chromadb
import pytest

from memoryforge.config import EngineSettings
from memoryforge.engine import ConversationEngine
from memoryforge.semantic import SemanticIndex

#: Fixed "now" so time-dependent behaviour is reproducible.
NOW = 1_700_000_000.0


class FakeEmbeddingFunction:
    """
    Deterministic embedding function that maps text to a unit vector
    derived from its MD5 hash.  Fast and reproducible – no model download.
    Implements both the legacy ``__call__`` interface and the newer
    ``embed_documents`` / ``embed_query`` interface used by ChromaDB ≥ 0.5.
    """

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "fake-md5-embedding"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            digest = hashlib.md5(text.encode()).digest()
            # 16-byte digest → 16-dim float vector in [-1, 1]
            vec = [(b - 128) / 128.0 for b in digest]
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_documents(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_query(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


# A single shared EphemeralClient instance for the test session.
# Each fixture call uses a unique conversation id so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def make_message(content: str, role: str = "user", offset: float = 0.0, **extra) -> dict:
    """Message dict with a fresh id, timestamped *offset* seconds after NOW."""
    return {
        "id": extra.pop("id", uuid.uuid4().hex),
        "role": role,
        "content": content,
        "timestamp": NOW + offset,
        **extra,
    }


@pytest.fixture()
def settings(monkeypatch) -> EngineSettings:
    """Default settings, unaffected by MEMORYFORGE_* variables of the caller."""
    for key in list(os.environ):
        if key.startswith("MEMORYFORGE_"):
            monkeypatch.delenv(key, raising=False)
    return EngineSettings()


@pytest.fixture()
def semantic_index() -> SemanticIndex:
    """In-memory SemanticIndex with the fake embedding function."""
    return SemanticIndex(
        f"test-{uuid.uuid4().hex}",
        _client=_EPHEMERAL_CLIENT,
        _embedding_function=FakeEmbeddingFunction(),
    )


@pytest.fixture()
def engine(settings: EngineSettings) -> ConversationEngine:
    """Engine with duplicate skipping off so tests control their own messages."""
    settings = settings.model_copy(update={"skip_duplicates": False})
    return ConversationEngine(f"conv-{uuid.uuid4().hex}", settings)


@pytest.fixture()
def now() -> float:
    return NOW
