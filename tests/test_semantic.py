"""Tests for the SemanticIndex ChromaDB wrapper."""

from __future__ import annotations

from memoryforge.semantic import SemanticIndex, collection_name_for
from conftest import _EPHEMERAL_CLIENT, FakeEmbeddingFunction


class TestSemanticIndex:
    def test_initial_count_is_zero(self, semantic_index: SemanticIndex):
        assert semantic_index.count() == 0

    def test_add_increases_count(self, semantic_index: SemanticIndex):
        semantic_index.add("id1", "Hello world")
        assert semantic_index.count() == 1

    def test_add_same_id_replaces(self, semantic_index: SemanticIndex):
        semantic_index.add("id1", "Original text", {"role": "user"})
        semantic_index.add("id1", "Updated text", {"role": "assistant"})
        assert semantic_index.count() == 1
        assert semantic_index.collection.get(ids=["id1"])["documents"] == ["Updated text"]

    def test_delete_removes_document(self, semantic_index: SemanticIndex):
        semantic_index.add("id1", "To be deleted")
        semantic_index.delete("id1")
        assert semantic_index.count() == 0

    def test_query_on_empty_index_returns_empty(self, semantic_index: SemanticIndex):
        assert semantic_index.query("anything", n_results=5) == []

    def test_query_returns_ids_with_similarity(self, semantic_index: SemanticIndex):
        semantic_index.add("a", "Python programming language")
        semantic_index.add("b", "JavaScript web development")
        semantic_index.add("c", "Machine learning with neural networks")
        hits = semantic_index.query("programming", n_results=2)
        assert len(hits) == 2
        assert {node_id for node_id, _ in hits} <= {"a", "b", "c"}
        for _, score in hits:
            assert -1.0 <= score <= 1.0

    def test_identical_text_scores_highest(self, semantic_index: SemanticIndex):
        semantic_index.add("a", "Python programming language")
        semantic_index.add("b", "JavaScript web development")
        hits = semantic_index.query("Python programming language", n_results=2)
        assert hits[0][0] == "a"
        assert abs(hits[0][1] - 1.0) < 1e-5

    def test_query_n_results_capped_at_index_size(self, semantic_index: SemanticIndex):
        semantic_index.add("only", "Single document")
        assert len(semantic_index.query("document", n_results=10)) == 1


class TestCollections:
    def test_name_is_stable_and_chroma_safe(self):
        name = collection_name_for("chat / 42")
        assert name == collection_name_for("chat / 42")
        assert name.startswith("memoryforge-")
        assert " " not in name and "/" not in name

    def test_conversations_do_not_share_documents(self):
        ef = FakeEmbeddingFunction()
        first = SemanticIndex("shared-a", _client=_EPHEMERAL_CLIENT, _embedding_function=ef)
        second = SemanticIndex("shared-b", _client=_EPHEMERAL_CLIENT, _embedding_function=ef)
        first.add("x", "Only in the first conversation")
        assert second.count() == 0
        first.delete("x")
