"""
CausalGraph: why did one message follow another?

Each message is classified into a discourse type by a declarative rule
table. Edges come from two sources:

* explicit: the previous message's rule allows the new type as a successor
  and the scored confidence reaches ``inference_threshold``;
* implicit: strong lexical overlap with a recent message, decayed by the
  time between them, reaching ``min_confidence``.

Edge confidence decays with age; :meth:`CausalGraph.apply_decay` is the only
way edges leave the graph.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import networkx as nx

from .config import CausalSettings
from .errors import InvalidMessage
from .models import Message, coerce_message
from .text import lexical_overlap, preview

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DiscourseRule:
    """A discourse type, what triggers it, and what may follow it.

    ``successors`` maps an allowed successor type to the edge type the link
    produces.
    """

    type: str
    triggers: tuple[re.Pattern[str], ...]
    successors: dict[str, str]


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


DISCOURSE_RULES: tuple[DiscourseRule, ...] = (
    DiscourseRule(
        "question",
        (_rx(r"\?\s*$"), _rx(r"^\s*(what|how|why|when|where|who|which)\b")),
        {"general": "answers", "hypothesis": "answers", "decision": "answers", "question": "clarifies"},
    ),
    DiscourseRule(
        "problem",
        (
            _rx(r"\b(error|bug|issue|problem|fail|doesn't work|not working)\b"),
            _rx(r"\b(how do i|how to|help with)\b"),
        ),
        {"general": "solves", "hypothesis": "diagnoses", "decision": "solves"},
    ),
    DiscourseRule(
        "request",
        (
            _rx(r"\b(can you|could you|please|would you)\b"),
            _rx(r"\b(create|make|build|implement|add|update|fix)\b"),
        ),
        {"general": "implements", "decision": "plans", "question": "clarifies"},
    ),
    DiscourseRule(
        "decision",
        (
            _rx(r"\b(i chose|decided to|went with|opted for)\b"),
            _rx(r"\b(because|since|due to|reason)\b"),
        ),
        {"general": "justifies", "hypothesis": "results_in"},
    ),
    DiscourseRule(
        "hypothesis",
        (
            _rx(r"\b(i think|maybe|possibly|likely|probably)\b"),
            _rx(r"\b(if|assume|suppose)\b"),
        ),
        {"general": "supports", "question": "tests"},
    ),
)

RULES_BY_TYPE: dict[str, DiscourseRule] = {rule.type: rule for rule in DISCOURSE_RULES}

DEFAULT_TYPE = "general"

EDGE_VERBS: dict[str, str] = {
    "answers": "Answers",
    "clarifies": "Clarifies",
    "solves": "Solves",
    "diagnoses": "Diagnoses",
    "implements": "Implements",
    "plans": "Plans",
    "justifies": "Justifies",
    "results_in": "Results in",
    "supports": "Supports",
    "tests": "Tests",
    "relates_to": "Related to",
}


def classify(content: str) -> str:
    """Discourse type of *content*: most trigger hits, earlier rule on ties."""
    best_type, best_score = DEFAULT_TYPE, 0
    for rule in DISCOURSE_RULES:
        score = sum(1 for trigger in rule.triggers if trigger.search(content))
        if score > best_score:
            best_type, best_score = rule.type, score
    return best_type


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------


@dataclass
class CausalNode:
    id: str
    type: str
    role: str
    content: str
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CausalNode:
        return cls(**{**data, "metadata": dict(data.get("metadata") or {})})


@dataclass
class CausalEdge:
    from_id: str
    to_id: str
    type: str
    confidence: float
    timestamp: float
    decayed_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CausalEdge:
        return cls(**data)

    @classmethod
    def from_graph(cls, from_id: str, to_id: str, data: dict[str, Any]) -> CausalEdge:
        return cls(
            from_id=from_id,
            to_id=to_id,
            type=data["type"],
            confidence=data["confidence"],
            timestamp=data["timestamp"],
            decayed_at=data.get("decayed_at"),
        )


@dataclass
class ChainLink:
    node: CausalNode
    depth: int
    causes: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {**self.node.to_dict(), "depth": self.depth, "causes": list(self.causes)}


@dataclass(frozen=True)
class AddResult:
    node_id: str
    causality: dict[str, Any]


# ---------------------------------------------------------------------------
# CausalGraph
# ---------------------------------------------------------------------------


class CausalGraph:
    """
    Confidence-weighted directed graph of discourse links.

    Edges live in a :class:`networkx.DiGraph` keyed by message id, with
    ``type``, ``confidence``, ``timestamp`` and ``decayed_at`` as edge
    attributes; the full node records are kept alongside in ``_nodes``.

    Parameters
    ----------
    settings:
        Thresholds, decay rate and windows; defaults to
        :class:`CausalSettings`.
    """

    def __init__(self, settings: CausalSettings | None = None) -> None:
        self.settings = settings or CausalSettings()
        self._nodes: dict[str, CausalNode] = {}
        self.graph = nx.DiGraph()

    classify = staticmethod(classify)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def add_message(
        self, message: Message | dict[str, Any], previous_id: str | None = None
    ) -> AddResult:
        """Classify *message*, add it as a node and infer its causes."""
        msg = coerce_message(message)
        if msg.id in self._nodes:
            raise InvalidMessage(f"message {msg.id!r} is already in the causal graph")

        node = CausalNode(
            id=msg.id,
            type=classify(msg.content),
            role=msg.role,
            content=msg.content,
            timestamp=msg.timestamp,
            metadata=dict(msg.metadata),
        )
        self._add_node(node)

        causes = []
        previous = self._nodes.get(previous_id) if previous_id else None
        if previous is not None and previous.id != node.id:
            cause = self._explicit_cause(previous, node)
            if cause is not None:
                causes.append(cause)
        causes.extend(self._implicit_causes(node))

        causality = {
            "causes": causes,
            "effects": [],
            "confidence": max((c["confidence"] for c in causes), default=0.0),
        }
        return AddResult(node_id=node.id, causality=causality)

    def _explicit_cause(self, cause: CausalNode, effect: CausalNode) -> dict[str, Any] | None:
        rule = RULES_BY_TYPE.get(cause.type)
        if rule is None or effect.type not in rule.successors:
            return None
        confidence = self.confidence(cause, effect)
        if confidence < self.settings.inference_threshold:
            return None
        edge_type = rule.successors[effect.type]
        self._add_edge(cause.id, effect.id, edge_type, confidence, effect.timestamp)
        return {
            "node_id": cause.id,
            "type": cause.type,
            "edge_type": edge_type,
            "confidence": confidence,
        }

    def _implicit_causes(self, node: CausalNode) -> list[dict[str, Any]]:
        s = self.settings
        recent = sorted(
            (n for n in self._nodes.values() if n.id != node.id),
            key=lambda n: n.timestamp,
            reverse=True,
        )[: s.implicit_window]

        causes = []
        for other in recent:
            if self.has_edge(other.id, node.id):
                continue
            overlap = lexical_overlap(other.content, node.content)
            if overlap < s.implicit_overlap_threshold:
                continue
            minutes = max(node.timestamp - other.timestamp, 0.0) / 60
            confidence = overlap * math.exp(-minutes / 60)
            if confidence >= s.min_confidence:
                self._add_edge(other.id, node.id, "relates_to", confidence, node.timestamp)
                causes.append(
                    {
                        "node_id": other.id,
                        "type": other.type,
                        "edge_type": "relates_to",
                        "confidence": confidence,
                    }
                )
        return causes

    @staticmethod
    def confidence(cause: CausalNode, effect: CausalNode) -> float:
        """Explicit-link confidence from proximity, role alternation and overlap."""
        score = 0.5
        minutes = (effect.timestamp - cause.timestamp) / 60
        if minutes < 5:
            score += 0.3
        elif minutes < 30:
            score += 0.2
        elif minutes < 60:
            score += 0.1
        if cause.role != effect.role:
            score += 0.2
        score += lexical_overlap(cause.content, effect.content) * 0.2
        return min(score, 1.0)

    def _add_node(self, node: CausalNode) -> None:
        self._nodes[node.id] = node
        self.graph.add_node(node.id, type=node.type, timestamp=node.timestamp)

    def _add_edge(
        self,
        from_id: str,
        to_id: str,
        edge_type: str,
        confidence: float,
        timestamp: float,
        decayed_at: float | None = None,
    ) -> None:
        self.graph.add_edge(
            from_id,
            to_id,
            type=edge_type,
            confidence=confidence,
            timestamp=timestamp,
            decayed_at=decayed_at,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> CausalNode | None:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def nodes(self) -> list[CausalNode]:
        return list(self._nodes.values())

    def edges(self) -> list[CausalEdge]:
        return [CausalEdge.from_graph(u, v, data) for u, v, data in self.graph.edges(data=True)]

    def has_edge(self, from_id: str, to_id: str) -> bool:
        return self.graph.has_edge(from_id, to_id)

    def incoming(self, node_id: str) -> list[CausalEdge]:
        """Edges pointing at *node_id*, most confident first."""
        if node_id not in self.graph:
            return []
        found = [CausalEdge.from_graph(u, v, data) for u, v, data in self.graph.in_edges(node_id, data=True)]
        found.sort(key=lambda e: e.confidence, reverse=True)
        return found

    def outgoing(self, node_id: str) -> list[CausalEdge]:
        if node_id not in self.graph:
            return []
        return [CausalEdge.from_graph(u, v, data) for u, v, data in self.graph.out_edges(node_id, data=True)]

    def get_causal_chain(self, node_id: str, max_depth: int | None = None) -> list[ChainLink]:
        """
        Causes of *node_id*, deepest first, ending with the node itself.

        Follows the most confident incoming edges first and never revisits
        a node.
        """
        if max_depth is None:
            max_depth = self.settings.max_chain_depth
        chain: list[ChainLink] = []
        visited: set[str] = set()

        def traverse(current_id: str, depth: int) -> None:
            if depth >= max_depth or current_id in visited:
                return
            visited.add(current_id)
            node = self._nodes.get(current_id)
            if node is None:
                return
            causes = self.incoming(current_id)
            for edge in causes:
                traverse(edge.from_id, depth + 1)
            chain.append(
                ChainLink(
                    node=node,
                    depth=depth,
                    causes=[
                        {"node_id": e.from_id, "type": e.type, "confidence": e.confidence}
                        for e in causes
                    ],
                )
            )

        traverse(node_id, 0)
        return chain

    def explain_why(self, node_id: str) -> str:
        """A short natural-language account of what led to *node_id*."""
        lines = []
        for link in reversed(self.get_causal_chain(node_id)):
            if not link.causes:
                continue
            cause = link.causes[0]
            cause_node = self._nodes.get(cause["node_id"])
            if cause_node is None:
                continue
            verb = EDGE_VERBS.get(cause["type"], "Related to")
            lines.append(
                f'{verb} "{preview(cause_node.content)}" '
                f"(confidence: {round(cause['confidence'] * 100)}%)"
            )
        if not lines:
            return "No causal history found."
        return "\n-> ".join(lines)

    def get_related_nodes(self, node_id: str) -> list[str]:
        """Ids on the causal chain of *node_id*, excluding itself."""
        return [link.node.id for link in self.get_causal_chain(node_id) if link.node.id != node_id]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def apply_decay(self, now: float | None = None) -> int:
        """
        Decay every edge by the time since its last decay and drop the weak.

        Returns the number of edges removed.
        """
        now = time.time() if now is None else now
        rate = self.settings.decay_rate
        weak = []
        for from_id, to_id, data in self.graph.edges(data=True):
            since = data["timestamp"] if data.get("decayed_at") is None else data["decayed_at"]
            days = max(now - since, 0.0) / _SECONDS_PER_DAY
            data["confidence"] *= math.exp(-rate * days)
            data["decayed_at"] = now
            if data["confidence"] < self.settings.min_confidence:
                weak.append((from_id, to_id))
        for from_id, to_id in weak:
            self.graph.remove_edge(from_id, to_id)
        dropped = len(weak)
        if dropped:
            logger.info("Decay removed %d causal edge(s)", dropped)
        return dropped

    def stats(self) -> dict[str, Any]:
        edges = self.edges()
        type_counts: dict[str, int] = {}
        for node in self._nodes.values():
            type_counts[node.type] = type_counts.get(node.type, 0) + 1
        return {
            "node_count": len(self._nodes),
            "edge_count": len(edges),
            "average_confidence": (
                sum(e.confidence for e in edges) / len(edges) if edges else 0.0
            ),
            "type_counts": type_counts,
        }

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        return {
            "version": "1.0",
            "settings": self.settings.model_dump(),
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges()],
        }

    @classmethod
    def deserialize(cls, data: dict[str, Any], settings: CausalSettings | None = None) -> CausalGraph:
        graph = cls(settings or CausalSettings.model_validate(data.get("settings", {})))
        for raw in data.get("nodes", []):
            graph._add_node(CausalNode.from_dict(raw))
        for raw in data.get("edges", []):
            edge = CausalEdge.from_dict(raw)
            graph._add_edge(
                edge.from_id, edge.to_id, edge.type, edge.confidence, edge.timestamp, edge.decayed_at
            )
        return graph
