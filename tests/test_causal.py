"""Tests for the CausalGraph."""

from __future__ import annotations

import networkx as nx
import pytest

from memoryforge.causal import DISCOURSE_RULES, CausalGraph, classify
from memoryforge.errors import InvalidMessage
from conftest import NOW, make_message

DAY = 24 * 60 * 60


@pytest.fixture()
def graph() -> CausalGraph:
    return CausalGraph()


@pytest.fixture()
def debugging_thread(graph: CausalGraph) -> tuple[CausalGraph, list[str]]:
    """question -> hypothesis -> follow-up question, one minute apart."""
    q1 = make_message("Why is the build failing?", role="user", offset=0)
    h = make_message("Maybe the cache is stale.", role="assistant", offset=60)
    q2 = make_message("Should I clear it?", role="user", offset=120)
    graph.add_message(q1)
    graph.add_message(h, q1["id"])
    graph.add_message(q2, h["id"])
    return graph, [q1["id"], h["id"], q2["id"]]


class TestClassify:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Why did this happen?", "question"),
            ("I get an error when I run it", "problem"),
            ("Could you please add logging", "request"),
            ("We went with Postgres because of JSONB", "decision"),
            ("I think it's probably the cache", "hypothesis"),
            ("Sounds good.", "general"),
        ],
    )
    def test_types(self, text: str, expected: str):
        assert classify(text) == expected

    def test_tie_goes_to_earlier_rule(self):
        # one request trigger ("add") and one hypothesis trigger ("maybe")
        assert classify("Maybe we should add tests") == "request"

    def test_successor_types_are_classifiable(self):
        known = {rule.type for rule in DISCOURSE_RULES} | {"general"}
        for rule in DISCOURSE_RULES:
            assert set(rule.successors) <= known


class TestAddMessage:
    def test_explicit_edge_for_allowed_successor(self, graph: CausalGraph):
        q = make_message("Why is the build failing?", role="user", offset=0)
        a = make_message("The cache directory is stale, clear it and rebuild.", role="assistant", offset=60)
        graph.add_message(q)
        result = graph.add_message(a, q["id"])

        causes = result.causality["causes"]
        assert causes[0]["node_id"] == q["id"]
        assert causes[0]["edge_type"] == "answers"
        assert causes[0]["confidence"] == pytest.approx(1.0)
        assert result.causality["confidence"] == pytest.approx(1.0)
        assert graph.has_edge(q["id"], a["id"])

    def test_weak_link_not_added(self, graph: CausalGraph):
        q = make_message("Why is the build failing?", role="user", offset=0)
        later = make_message("Lunch was great today.", role="user", offset=2 * 60 * 60)
        graph.add_message(q)
        result = graph.add_message(later, q["id"])
        assert result.causality == {"causes": [], "effects": [], "confidence": 0.0}
        assert graph.edges() == []

    def test_implicit_edge_from_lexical_overlap(self, graph: CausalGraph):
        m1 = make_message("postgres replication grows during nightly backups", offset=0)
        m2 = make_message("postgres replication grows during nightly vacuum", offset=60)
        graph.add_message(m1)
        result = graph.add_message(m2, m1["id"])

        causes = result.causality["causes"]
        assert [c["edge_type"] for c in causes] == ["relates_to"]
        assert causes[0]["confidence"] >= graph.settings.min_confidence

    def test_every_edge_meets_its_threshold(self, debugging_thread):
        graph, _ = debugging_thread
        for edge in graph.edges():
            if edge.type == "relates_to":
                assert edge.confidence >= graph.settings.min_confidence
            else:
                assert edge.confidence >= graph.settings.inference_threshold

    def test_unknown_previous_id_is_ignored(self, graph: CausalGraph):
        result = graph.add_message(make_message("Hello there"), "missing")
        assert result.causality["causes"] == []

    def test_duplicate_id_rejected(self, graph: CausalGraph):
        m = make_message("Hello there")
        graph.add_message(m)
        with pytest.raises(InvalidMessage):
            graph.add_message(dict(m))

    def test_invalid_message_rejected(self, graph: CausalGraph):
        with pytest.raises(InvalidMessage):
            graph.add_message({"role": "user", "content": ""})
        assert len(graph) == 0


class TestChains:
    def test_chain_runs_from_deepest_cause(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        chain = graph.get_causal_chain(q2)
        assert [link.node.id for link in chain] == [q1, h, q2]
        assert [link.depth for link in chain] == [2, 1, 0]
        assert chain[-1].causes[0]["node_id"] == h
        assert chain[-1].causes[0]["type"] == "tests"

    def test_chain_depth_bounded(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        assert [link.node.id for link in graph.get_causal_chain(q2, max_depth=2)] == [h, q2]

    def test_unknown_node_has_empty_chain(self, graph: CausalGraph):
        assert graph.get_causal_chain("missing") == []

    def test_zero_depth_chain_is_empty(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        assert graph.get_causal_chain(q2, max_depth=0) == []
        assert graph.get_related_nodes(q2) == [q1, h]

    def test_explain_why(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        lines = graph.explain_why(q2).split("\n-> ")
        assert lines[0] == 'Tests "Maybe the cache is stale." (confidence: 100%)'
        assert lines[1] == 'Answers "Why is the build failing?" (confidence: 100%)'

    def test_explain_without_history(self, graph: CausalGraph):
        assert graph.explain_why("missing") == "No causal history found."

    def test_related_nodes(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        assert graph.get_related_nodes(q2) == [q1, h]


class TestDecay:
    def test_old_edges_dropped(self, debugging_thread):
        graph, _ = debugging_thread
        assert len(graph.edges()) == 2
        dropped = graph.apply_decay(now=NOW + 10 * DAY)
        assert dropped == 2
        assert graph.edges() == []
        assert graph.outgoing(debugging_thread[1][0]) == []

    def test_no_edge_below_minimum_after_decay(self, debugging_thread):
        graph, _ = debugging_thread
        for days in (1, 3, 5, 8):
            graph.apply_decay(now=NOW + days * DAY)
            assert all(e.confidence >= graph.settings.min_confidence for e in graph.edges())

    def test_repeated_decay_does_not_compound(self, debugging_thread):
        graph, _ = debugging_thread
        graph.apply_decay(now=NOW + DAY)
        before = [e.confidence for e in graph.edges()]
        graph.apply_decay(now=NOW + DAY)
        assert [e.confidence for e in graph.edges()] == before

    def test_recent_edges_survive(self, debugging_thread):
        graph, _ = debugging_thread
        assert graph.apply_decay(now=NOW + 120) == 0
        assert len(graph.edges()) == 2


class TestStatsAndSerialization:
    def test_stats(self, debugging_thread):
        graph, _ = debugging_thread
        stats = graph.stats()
        assert stats["node_count"] == 3
        assert stats["edge_count"] == 2
        assert stats["type_counts"] == {"question": 2, "hypothesis": 1}

    def test_round_trip(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        restored = CausalGraph.deserialize(graph.serialize())
        assert restored.stats() == graph.stats()
        assert restored.explain_why(q2) == graph.explain_why(q2)


class TestGraphStorage:
    def test_edges_carry_attributes(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        assert isinstance(graph.graph, nx.DiGraph)
        assert set(graph.graph.nodes) == {q1, h, q2}
        data = graph.graph.edges[q1, h]
        assert data["type"] == "answers"
        assert data["confidence"] == pytest.approx(1.0)
        assert data["timestamp"] == NOW + 60
        assert data["decayed_at"] is None

    def test_incoming_and_outgoing(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        assert [e.from_id for e in graph.incoming(h)] == [q1]
        assert [e.to_id for e in graph.outgoing(h)] == [q2]
        assert graph.incoming("missing") == []
        assert graph.outgoing("missing") == []

    def test_decay_removes_edges_from_graph(self, debugging_thread):
        graph, (q1, h, q2) = debugging_thread
        graph.apply_decay(now=NOW + 10 * DAY)
        assert graph.graph.number_of_edges() == 0
        assert graph.graph.number_of_nodes() == 3
        assert q1 in graph
