"""
QueryEngine: natural-language retrieval over the tree, the causal graph and
the optional collaborators.

A query is parsed (tokens, entities, timeframe, keywords), classified by a
declarative rule table and dispatched to one handler per query type. All
handlers share the same post-processing: fingerprint dedup, rank-based
relevance and a relevance floor.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .causal import CausalGraph
from .config import QuerySettings
from .errors import ModuleUnavailable
from .fingerprint import FingerprintIndex
from .hierarchy import TopicTree, TreeNode
from .models import ImageCollaborator
from .semantic import SemanticIndex
from .text import QUERY_STOPWORDS, tokenize

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryRule:
    type: str
    patterns: tuple[re.Pattern[str], ...]


def _rx(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


QUERY_RULES: tuple[QueryRule, ...] = (
    QueryRule(
        "temporal",
        (
            _rx(r"\b(recent|latest|last|today|yesterday|this week)\b"),
            _rx(r"\b(before|after|between|during)\b"),
            _rx(r"\b(when did|what time)\b"),
        ),
    ),
    QueryRule(
        "causal",
        (
            _rx(r"\b(why|reason|because|cause|led to)\b"),
            _rx(r"\b(explain|justify|rationale)\b"),
            _rx(r"\b(what happened|what led)\b"),
        ),
    ),
    QueryRule(
        "contextual",
        (
            _rx(r"\b(context|background|history|previous)\b"),
            _rx(r"\b(related to|about|regarding)\b"),
            _rx(r"\b(tell me about)\b"),
        ),
    ),
    QueryRule(
        "image",
        (
            _rx(r"\b(image|picture|screenshot|diagram|chart)\b"),
            _rx(r"\b(show me|find|visual)\b"),
        ),
    ),
    QueryRule(
        "code",
        (
            _rx(r"\b(code|function|class|method|implement|implementation)\b"),
            _rx(r"\b(how to|example|snippet)\b"),
        ),
    ),
    QueryRule(
        "summary",
        (
            _rx(r"\b(summary|summarize|overview|key points)\b"),
            _rx(r"\b(what are|list|enumerate)\b"),
        ),
    ),
)

DEFAULT_QUERY_TYPE = "contextual"

QUERY_TYPES: tuple[str, ...] = tuple(rule.type for rule in QUERY_RULES)

_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+\b")
_TECHNICAL = re.compile(r"\b(API|URL|HTTP|JSON|HTML|CSS|JS|SQL|DB)\b")
_QUOTED = re.compile(r'"([^"]+)"')
_CODE_HINT = re.compile(r"\b(function|class|const|let|var)\b")

# (pattern, days back for start, days back for end), first match wins
_TIMEFRAMES: tuple[tuple[re.Pattern[str], int, int], ...] = (
    (_rx(r"\b(today|recent|latest)\b"), 1, 0),
    (_rx(r"\byesterday\b"), 2, 1),
    (_rx(r"\bthis week\b"), 7, 0),
    (_rx(r"\blast week\b"), 14, 7),
    (_rx(r"\bthis month\b"), 30, 0),
)


def classify(text: str) -> str:
    """Query type of *text*: most pattern hits, earlier rule on ties."""
    best_type, best_score = DEFAULT_QUERY_TYPE, 0
    for rule in QUERY_RULES:
        score = sum(1 for pattern in rule.patterns if pattern.search(text))
        if score > best_score:
            best_type, best_score = rule.type, score
    return best_type


@dataclass
class ParsedQuery:
    raw: str
    tokens: list[str]
    entities: list[str]
    timeframe: tuple[float, float] | None
    keywords: list[str] = field(default_factory=list)


def parse(text: str, now: float | None = None) -> ParsedQuery:
    """Split *text* into the pieces the handlers work with."""
    now = time.time() if now is None else now
    entities = _CAPITALIZED.findall(text) + _TECHNICAL.findall(text) + _QUOTED.findall(text)

    timeframe = None
    for pattern, start_days, end_days in _TIMEFRAMES:
        if pattern.search(text):
            timeframe = (now - start_days * _SECONDS_PER_DAY, now - end_days * _SECONDS_PER_DAY)
            break

    tokens = tokenize(text)
    keywords = [t for t in tokens if t not in QUERY_STOPWORDS and len(t) > 2]
    return ParsedQuery(
        raw=text,
        tokens=tokens,
        entities=list(dict.fromkeys(entities)),
        timeframe=timeframe,
        keywords=keywords,
    )


def node_entry(node: TreeNode) -> dict[str, Any]:
    """The dict shape every tree-backed result uses."""
    return {
        "id": node.id,
        "role": node.role,
        "content": node.content,
        "depth": node.depth,
        "importance": node.importance,
        "timestamp": node.timestamp,
    }


# ---------------------------------------------------------------------------
# QueryEngine
# ---------------------------------------------------------------------------


class QueryEngine:
    """
    Answers natural-language queries for one conversation.

    Parameters
    ----------
    tree:
        The conversation's topic tree (required).
    fingerprints:
        Used to drop duplicate results (required).
    causal:
        Causal graph; causal queries degrade without it.
    images:
        External image collaborator; image queries degrade without it.
    semantic:
        Embedding index consulted when keyword search finds nothing.
    settings:
        Result limits and thresholds; defaults to :class:`QuerySettings`.
    """

    def __init__(
        self,
        tree: TopicTree,
        fingerprints: FingerprintIndex,
        causal: CausalGraph | None = None,
        images: ImageCollaborator | None = None,
        semantic: SemanticIndex | None = None,
        settings: QuerySettings | None = None,
    ) -> None:
        self.tree = tree
        self.fingerprints = fingerprints
        self.causal = causal
        self.images = images
        self.semantic = semantic
        self.settings = settings or QuerySettings()
        self.history: deque[dict[str, Any]] = deque(maxlen=self.settings.history_size)
        self.total_queries = 0
        self._handlers: dict[str, Callable[..., dict[str, Any]]] = {
            "temporal": self._handle_temporal,
            "causal": self._handle_causal,
            "contextual": self._handle_contextual,
            "image": self._handle_image,
            "code": self._handle_code,
            "summary": self._handle_summary,
        }

    parse = staticmethod(parse)
    classify = staticmethod(classify)

    def query(
        self,
        text: str,
        token_limit: int | None = None,
        max_results: int | None = None,
        query_type: str | None = None,
        now: float | None = None,
    ) -> dict[str, Any]:
        """
        Run *text* and return ``{"results": [...], "metadata": {...}}``.

        *query_type* bypasses classification; it must be one of
        :data:`QUERY_TYPES`.
        """
        started = time.perf_counter()
        now = time.time() if now is None else now
        parsed = parse(text, now)
        qtype = query_type or classify(text)
        handler = self._handlers.get(qtype)
        if handler is None:
            raise ValueError(f"unknown query type {qtype!r}; expected one of {QUERY_TYPES}")

        if token_limit is None:
            token_limit = self.settings.default_token_limit
        if max_results is None:
            max_results = self.settings.max_results
        try:
            raw = handler(parsed, token_limit=token_limit, max_results=max_results, now=now)
        except Exception as exc:
            logger.exception("%s query handler failed for %r", qtype, text)
            raw = {"results": [], "metadata": {"errors": [f"{qtype} query failed: {exc}"]}}
        result = self._post_process(raw)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result["metadata"].update(
            {"query_type": qtype, "keywords": parsed.keywords, "execution_ms": elapsed_ms}
        )
        self.total_queries += 1
        self.history.append(
            {
                "query": text,
                "type": qtype,
                "timestamp": now,
                "execution_ms": elapsed_ms,
                "result_count": len(result["results"]),
            }
        )
        logger.debug("Query %r classified as %s, %d result(s)", text, qtype, len(result["results"]))
        return result

    # ------------------------------------------------------------------
    # Search helpers
    # ------------------------------------------------------------------

    @staticmethod
    def rank_by_keywords(
        nodes: list[TreeNode], keywords: list[str], keep_unmatched: bool = False
    ) -> list[TreeNode]:
        """
        Order *nodes* by keyword hits boosted by importance.

        Without keywords *nodes* come back unchanged. Nodes without a hit
        are dropped unless *keep_unmatched*, in which case they follow the
        matches in their original order.
        """
        if not keywords:
            return list(nodes)
        patterns = [re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE) for kw in keywords]
        scored = []
        for node in nodes:
            hits = sum(len(p.findall(node.content)) for p in patterns)
            scored.append((hits * (1 + node.importance), node))
        matched = [node for score, node in sorted(
            (s for s in scored if s[0] > 0), key=lambda s: s[0], reverse=True
        )]
        if keep_unmatched:
            matched += [node for score, node in scored if score <= 0]
        return matched

    def search(self, parsed: ParsedQuery, limit: int) -> tuple[list[TreeNode], str]:
        """Candidate nodes for *parsed* and where they came from."""
        nodes = self.tree.message_nodes()
        if not parsed.keywords:
            return list(reversed(nodes)), "recency"

        ranked = self.rank_by_keywords(nodes, parsed.keywords)
        if ranked or self.semantic is None:
            return ranked, "keyword"

        try:
            hits = self.semantic.query(parsed.raw, n_results=limit)
        except Exception:
            logger.exception("Semantic search failed; continuing without it")
            return [], "keyword"
        found = [self.tree.get(node_id) for node_id, _ in hits]
        return [n for n in found if n is not None and not n.is_root], "semantic"

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_temporal(self, parsed: ParsedQuery, *, max_results: int, now: float, **_: Any) -> dict[str, Any]:
        start, end = parsed.timeframe or (0.0, now)
        in_range = [n for n in self.tree.message_nodes() if start <= n.timestamp <= end]
        in_range.reverse()
        ranked = self.rank_by_keywords(in_range, parsed.keywords, keep_unmatched=True)
        return {
            "results": [node_entry(n) for n in ranked[:max_results]],
            "metadata": {
                "timeframe": {"start": start, "end": end},
                "total_matches": len(ranked),
            },
        }

    def _handle_causal(self, parsed: ParsedQuery, *, max_results: int, **_: Any) -> dict[str, Any]:
        candidates, source = self.search(parsed, max_results)
        candidates = candidates[:max_results]
        metadata: dict[str, Any] = {"total_matches": len(candidates), "search": source}

        if self.causal is None:
            metadata["unavailable"] = [str(ModuleUnavailable("causal graph"))]
            return {"results": [node_entry(n) for n in candidates], "metadata": metadata}

        results = []
        for node in candidates:
            entry = node_entry(node)
            entry["chain"] = [link.to_dict() for link in self.causal.get_causal_chain(node.id)]
            entry["explanation"] = self.causal.explain_why(node.id)
            results.append(entry)
        metadata["used_causal_reasoning"] = True
        return {"results": results, "metadata": metadata}

    def _handle_contextual(
        self, parsed: ParsedQuery, *, token_limit: int, max_results: int, **_: Any
    ) -> dict[str, Any]:
        candidates, source = self.search(parsed, max_results)
        if not candidates:
            return {"results": [], "metadata": {"total_matches": 0, "search": source}}
        top = candidates[0]
        context = self.tree.retrieve(
            max_nodes=max_results, max_tokens=token_limit, anchor_id=top.id
        )
        return {
            "results": context,
            "metadata": {"primary_node": top.id, "total_matches": len(candidates), "search": source},
        }

    def _handle_image(self, parsed: ParsedQuery, *, max_results: int, **_: Any) -> dict[str, Any]:
        if self.images is None:
            return {
                "results": [],
                "metadata": {
                    "search_type": "image",
                    "total_matches": 0,
                    "unavailable": [str(ModuleUnavailable("image collaborator"))],
                },
            }
        results: list[dict[str, Any]] = []
        if parsed.keywords:
            results = list(self.images.search_by_text(" ".join(parsed.keywords)))
        if not results and re.search(r"\b(code|screenshot)\b", parsed.raw, re.IGNORECASE):
            results = list(self.images.search_by_type("code"))
        elif not results and re.search(r"\b(diagram|chart)\b", parsed.raw, re.IGNORECASE):
            results = list(self.images.search_by_type("diagram"))
        return {
            "results": results[:max_results],
            "metadata": {"search_type": "image", "total_matches": len(results)},
        }

    def _handle_code(self, parsed: ParsedQuery, *, max_results: int, **_: Any) -> dict[str, Any]:
        code_nodes = [
            n
            for n in reversed(self.tree.message_nodes())
            if "```" in n.content or _CODE_HINT.search(n.content.lower())
        ]
        ranked = self.rank_by_keywords(code_nodes, parsed.keywords, keep_unmatched=True)
        return {
            "results": [node_entry(n) for n in ranked[:max_results]],
            "metadata": {"search_type": "code", "total_matches": len(ranked)},
        }

    def _handle_summary(self, parsed: ParsedQuery, *, max_results: int, **_: Any) -> dict[str, Any]:
        nodes = [
            n for n in self.tree.message_nodes() if n.importance > self.settings.summary_importance
        ]
        if parsed.timeframe:
            start, end = parsed.timeframe
            nodes = [n for n in nodes if start <= n.timestamp <= end]
        nodes.sort(key=lambda n: (-n.importance, n.seq))
        return {
            "results": [node_entry(n) for n in nodes[:max_results]],
            "metadata": {
                "search_type": "summary",
                "total_matches": len(nodes),
                "average_importance": (
                    sum(n.importance for n in nodes) / len(nodes) if nodes else 0.0
                ),
            },
        }

    # ------------------------------------------------------------------
    # Post-processing and output
    # ------------------------------------------------------------------

    def _post_process(self, raw: dict[str, Any]) -> dict[str, Any]:
        results = raw["results"]
        if self.settings.deduplicate_results:
            results = self._deduplicate(results)

        total = max(len(results), 1)
        ranked = [{**r, "relevance": 1 - index / total} for index, r in enumerate(results)]
        kept = [r for r in ranked if r["relevance"] >= self.settings.min_relevance]
        return {"results": kept, "metadata": dict(raw.get("metadata") or {})}

    def _deduplicate(self, results: list[dict[str, Any]]) -> list[dict[str, Any]]:
        seen: set[str] = set()
        unique = []
        for result in results:
            content = result.get("content")
            if not content:
                unique.append(result)
                continue
            fp = self.fingerprints.fingerprint(content, register=False)
            if fp not in seen:
                seen.add(fp)
                unique.append(result)
        return unique

    @staticmethod
    def format_for_consumption(result: dict[str, Any]) -> str:
        """Render a query result as a markdown block with a JSON footer."""
        results = result.get("results", [])
        lines = [f"# Context Results ({len(results)} items)", ""]
        for index, item in enumerate(results, start=1):
            header = f"## Result {index}"
            if item.get("relevance"):
                header += f" ({round(item['relevance'] * 100)}% relevant)"
            lines += [header, ""]
            if item.get("timestamp"):
                stamp = datetime.fromtimestamp(item["timestamp"]).strftime("%Y-%m-%d %H:%M:%S")
                lines.append(f"**Time:** {stamp}")
            if item.get("role"):
                lines.append(f"**Role:** {item['role']}")
            if item.get("importance"):
                lines.append(f"**Importance:** {round(item['importance'] * 100)}%")
            lines += ["", item.get("content") or "", "", "---", ""]
        if result.get("metadata"):
            lines += ["## Metadata", "", json.dumps(result["metadata"], indent=2, default=str)]
        return "\n".join(lines)

    def stats(self) -> dict[str, Any]:
        recent = list(self.history)
        type_counts: dict[str, int] = {}
        for entry in recent:
            type_counts[entry["type"]] = type_counts.get(entry["type"], 0) + 1
        return {
            "total_queries": self.total_queries,
            "recent_queries": len(recent),
            "average_execution_ms": (
                sum(e["execution_ms"] for e in recent) / len(recent) if recent else 0.0
            ),
            "type_counts": type_counts,
        }

    def clear_history(self) -> None:
        self.history.clear()
