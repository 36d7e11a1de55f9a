"""
Optional embedding index over message content, backed by ChromaDB.

The query engine only consults it when keyword matching finds nothing, so
the rest of the engine works the same with it disabled.
"""

from __future__ import annotations

import logging
from typing import Any

import chromadb
from chromadb.utils import embedding_functions

from .text import stable_hash

logger = logging.getLogger(__name__)


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a sentence-transformer embedding function for ChromaDB."""
    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name
    )


def collection_name_for(conversation_id: str) -> str:
    """A ChromaDB-safe collection name unique to *conversation_id*."""
    return f"memoryforge-{stable_hash(conversation_id)}"


class SemanticIndex:
    """
    One ChromaDB collection per conversation, in cosine space.

    Distances come back in [0, 2] and are turned into similarities with
    ``similarity = 1 - distance``.
    """

    def __init__(
        self,
        conversation_id: str,
        path: str | None = None,
        embedding_model: str = "all-MiniLM-L6-v2",
        _client: Any | None = None,
        _embedding_function: Any | None = None,
    ) -> None:
        if _client is not None:
            self.client = _client
        elif path is not None:
            self.client = chromadb.PersistentClient(path=path)
        else:
            self.client = chromadb.EphemeralClient()
        ef = _embedding_function or get_embedding_function(embedding_model)
        self.collection = self.client.get_or_create_collection(
            name=collection_name_for(conversation_id),
            embedding_function=ef,
            metadata={"hnsw:space": "cosine"},
        )

    def add(self, id: str, document: str, metadata: dict | None = None) -> None:
        """Index *document* under the message id *id*."""
        self.collection.upsert(
            ids=[id],
            documents=[document],
            metadatas=[metadata] if metadata else None,
        )

    def delete(self, id: str) -> None:
        self.collection.delete(ids=[id])

    def query(self, query_text: str, n_results: int = 5) -> list[tuple[str, float]]:
        """``(message_id, similarity)`` pairs, most similar first."""
        n = min(n_results, self.count())
        if n == 0:
            return []
        result = self.collection.query(query_texts=[query_text], n_results=n)
        ids = result["ids"][0]
        distances = result["distances"][0]
        return [(ids[i], 1.0 - distances[i]) for i in range(len(ids))]

    def count(self) -> int:
        return self.collection.count()
