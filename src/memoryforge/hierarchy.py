"""
TopicTree: incremental topic hierarchy over a conversation.

Every message becomes a node. Consecutive messages on the same topic form a
chain; when the keyword overlap with the recent thread drops below the
topic-shift threshold the new message branches off the best-matching
ancestor instead. Retrieval mixes the important nodes of the active thread
with the important nodes elsewhere in the tree under a token budget.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any

from .config import TreeSettings
from .errors import InvalidMessage
from .models import ROOT_ID, Message, coerce_message
from .text import estimate_tokens, extract_topic_keywords, jaccard, stable_hash

logger = logging.getLogger(__name__)

#: Words that mark a message as recording a decision.
DECISION_KEYWORDS: tuple[str, ...] = ("decided", "choose", "selected", "using", "instead")

_SECONDS_PER_DAY = 24 * 60 * 60


def compute_importance(content: str) -> float:
    """
    Score how much *content* matters for later context, in [0.5, 1.0].

    Additive bonuses on a 0.5 base:
      - question mark: +0.1
      - decision keyword: +0.2
      - code fence: +0.15
      - moderate length (100-1000 characters): +0.05
    """
    score = 0.5
    if "?" in content:
        score += 0.1
    lower = content.lower()
    if any(keyword in lower for keyword in DECISION_KEYWORDS):
        score += 0.2
    if "```" in content:
        score += 0.15
    if 100 < len(content) < 1000:
        score += 0.05
    return min(1.0, score)


@dataclass
class TreeNode:
    id: str
    parent_id: str | None
    role: str
    content: str
    depth: int
    importance: float = 0.0
    topic_keywords: list[str] = field(default_factory=list)
    semantic_hash: str = ""
    timestamp: float = 0.0
    seq: int = 0
    children: list[str] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TreeNode:
        fields = dict(data)
        fields["children"] = list(fields.get("children") or [])
        fields["topic_keywords"] = list(fields.get("topic_keywords") or [])
        return cls(**fields)


@dataclass(frozen=True)
class InsertResult:
    node_id: str
    parent_id: str
    branched: bool


class TopicTree:
    """
    Conversation hierarchy with topic-shift detection.

    Parameters
    ----------
    settings:
        Thresholds and windows; defaults to :class:`TreeSettings`.
    """

    def __init__(self, settings: TreeSettings | None = None) -> None:
        self.settings = settings or TreeSettings()
        self._nodes: dict[str, TreeNode] = {}
        self._seq = 0
        self.current_path: list[str] = []
        self._init_root()

    def _init_root(self) -> None:
        root = TreeNode(
            id=ROOT_ID,
            parent_id=None,
            role="system",
            content="Conversation Root",
            depth=0,
            timestamp=time.time(),
        )
        self._nodes[ROOT_ID] = root
        self.current_path = [ROOT_ID]

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def insert(self, message: Message | dict[str, Any]) -> InsertResult:
        """
        Place *message* in the tree.

        Raises ``InvalidMessage`` for malformed messages or a reused id;
        nothing is mutated in that case.
        """
        msg = coerce_message(message)
        if msg.id in self._nodes:
            raise InvalidMessage(f"message {msg.id!r} is already in the tree")

        keywords = extract_topic_keywords(msg.content)
        branched = self._detect_topic_shift(keywords)
        parent_id = self._find_branch_point(keywords) if branched else self.current_path[-1]

        node = self._create_node(msg, parent_id, keywords)

        if branched:
            self.current_path = self.path_to(parent_id) + [node.id]
        else:
            self.current_path.append(node.id)
        self._bound_path()

        if branched:
            logger.debug("Topic shift at %s, branching from %s", node.id, parent_id)
        return InsertResult(node_id=node.id, parent_id=parent_id, branched=branched)

    def _create_node(self, msg: Message, parent_id: str, keywords: list[str]) -> TreeNode:
        parent = self._nodes[parent_id]
        self._seq += 1
        node = TreeNode(
            id=msg.id,
            parent_id=parent_id,
            role=msg.role,
            content=msg.content,
            depth=parent.depth + 1,
            importance=compute_importance(msg.content),
            topic_keywords=keywords,
            semantic_hash=stable_hash(msg.content),
            timestamp=msg.timestamp,
            seq=self._seq,
        )
        parent.children.append(node.id)
        self._nodes[node.id] = node
        return node

    def _detect_topic_shift(self, keywords: list[str]) -> bool:
        s = self.settings
        thread = [self._nodes[i] for i in self.current_path if i != ROOT_ID]
        if len(thread) < s.min_shift_history:
            return False
        recent = thread[-s.recent_window:]
        avg = sum(jaccard(keywords, n.topic_keywords) for n in recent) / len(recent)
        return avg < s.topic_shift_threshold

    def _find_branch_point(self, keywords: list[str]) -> str:
        """Best ancestor on the current path (tip excluded), else the root."""
        tip_index = len(self.current_path) - 1
        best_id, best_score = ROOT_ID, -1.0
        for index, node_id in enumerate(self.current_path[:-1]):
            if node_id == ROOT_ID:
                continue
            node = self._nodes[node_id]
            similarity = jaccard(keywords, node.topic_keywords)
            recency = 1.0 / (tip_index - index)
            score = similarity * 0.7 + recency * 0.3
            if score > best_score:
                best_id, best_score = node_id, score
        return best_id if best_score >= self.settings.branch_min_score else ROOT_ID

    def _bound_path(self) -> None:
        span = self.settings.max_branch_span
        if len(self.current_path) > span:
            self.current_path = [ROOT_ID] + self.current_path[-(span - 1):]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> TreeNode | None:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        """Number of message nodes (the root is not counted)."""
        return len(self._nodes) - 1

    @property
    def root(self) -> TreeNode:
        return self._nodes[ROOT_ID]

    def message_nodes(self) -> list[TreeNode]:
        """All message nodes in insertion order."""
        return sorted((n for n in self._nodes.values() if not n.is_root), key=lambda n: n.seq)

    def path_to(self, node_id: str) -> list[str]:
        """Node ids from the root down to *node_id*."""
        path: list[str] = []
        current: str | None = node_id
        while current is not None:
            path.append(current)
            current = self._nodes[current].parent_id
        path.reverse()
        return path

    def subtree(self, node_id: str) -> list[str]:
        """*node_id* and all of its descendants, breadth first."""
        ids: list[str] = []
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            ids.append(current)
            queue.extend(self._nodes[current].children)
        return ids

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve(
        self,
        max_nodes: int = 20,
        max_tokens: int = 2000,
        anchor_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        Token-budgeted context, ordered by time.

        The primary set is the current path, or the path to *anchor_id* plus
        its subtree when given. Roughly ``path_share`` of *max_nodes* comes
        from the primary set and the rest from elsewhere in the tree, each
        ranked by importance. Output stops at the first node that would
        overflow *max_tokens*.
        """
        if anchor_id is not None and anchor_id not in self._nodes:
            raise KeyError(anchor_id)

        if anchor_id is None:
            primary_ids = list(self.current_path)
        else:
            primary_ids = self.path_to(anchor_id) + self.subtree(anchor_id)[1:]
        primary_set = set(primary_ids)

        primary = [self._nodes[i] for i in dict.fromkeys(primary_ids) if i != ROOT_ID]
        others = [n for n in self.message_nodes() if n.id not in primary_set]

        path_quota = math.floor(max_nodes * self.settings.path_share)
        other_quota = max(max_nodes - path_quota, 0)

        by_importance = lambda n: (-n.importance, -n.seq)  # noqa: E731
        chosen = sorted(primary, key=by_importance)[:path_quota]
        chosen += sorted(others, key=by_importance)[:other_quota]
        chosen.sort(key=lambda n: (n.timestamp, n.seq))

        context: list[dict[str, Any]] = []
        token_count = 0
        for node in chosen:
            tokens = estimate_tokens(node.content)
            if token_count + tokens > max_tokens:
                break
            context.append(
                {
                    "id": node.id,
                    "role": node.role,
                    "content": node.content,
                    "depth": node.depth,
                    "importance": node.importance,
                    "timestamp": node.timestamp,
                }
            )
            token_count += tokens
        return context

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune(self, now: float | None = None) -> list[str]:
        """
        Remove old, unimportant leaf nodes.

        Returns the ids of the removed nodes.
        """
        now = time.time() if now is None else now
        max_age = self.settings.prune_age_days * _SECONDS_PER_DAY
        doomed = [
            node.id
            for node in self._nodes.values()
            if not node.is_root
            and not node.children
            and now - node.timestamp > max_age
            and node.importance < self.settings.prune_threshold
        ]
        for node_id in doomed:
            node = self._nodes.pop(node_id)
            parent = self._nodes.get(node.parent_id or "")
            if parent is not None:
                parent.children.remove(node_id)
        if doomed:
            gone = set(doomed)
            self.current_path = [i for i in self.current_path if i not in gone]
            logger.info("Pruned %d tree node(s)", len(doomed))
        return doomed

    def stats(self) -> dict[str, Any]:
        messages = self.message_nodes()
        avg = sum(n.importance for n in messages) / len(messages) if messages else 0.0
        return {
            "total_nodes": len(messages),
            "max_depth": max((n.depth for n in messages), default=0),
            "current_branch": len(self.current_path),
            "average_importance": avg,
        }

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        return {
            "version": "1.0",
            "settings": self.settings.model_dump(),
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "current_path": list(self.current_path),
            "seq": self._seq,
        }

    @classmethod
    def deserialize(cls, data: dict[str, Any], settings: TreeSettings | None = None) -> TopicTree:
        tree = cls(settings or TreeSettings.model_validate(data.get("settings", {})))
        tree._nodes = {n["id"]: TreeNode.from_dict(n) for n in data["nodes"]}
        if ROOT_ID not in tree._nodes:
            raise ValueError("serialized tree has no root node")
        tree.current_path = list(data.get("current_path") or [ROOT_ID])
        tree._seq = int(data.get("seq", len(tree._nodes) - 1))
        return tree
