"""
Per-conversation orchestration.

:class:`ConversationEngine` owns one instance of every subsystem for a single
conversation and sequences message ingestion through them. Mutating calls
hold the engine's lock, so one context never sees two writers at once while
different contexts stay independent. :class:`EngineRegistry` hands out
engines keyed by conversation id.

Usage::

    registry = EngineRegistry()
    engine = registry.get("chat-42")
    engine.process_message({"role": "user", "content": "How do arrays work?"})
    print(engine.format_for_consumption(engine.query("arrays")))
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from .causal import CausalGraph
from .config import EngineSettings
from .errors import InvalidMessage, MemoryForgeError, ModuleUnavailable
from .fingerprint import DuplicateCheck, FingerprintIndex
from .hierarchy import TopicTree
from .models import ROOT_ID, ChangeRecord, ImageCollaborator, Message, coerce_message
from .query import QueryEngine
from .semantic import SemanticIndex
from .text import stable_hash
from .versioning import SaveDecision, VersionStore

logger = logging.getLogger(__name__)

#: Change record type emitted for every ingested message.
MESSAGE_CHANGE = "message"


def _is_exact_repeat(check: DuplicateCheck, text: str) -> bool:
    # Perceptual matches are only flagged; the text itself must repeat to skip.
    return check.is_duplicate and any(m["text"] == text for m in check.matches)


@dataclass
class ProcessResult:
    """Envelope returned by :meth:`ConversationEngine.process_message`."""

    success: bool = True
    fingerprint: str | None = None
    node_id: str | None = None
    causal_node_id: str | None = None
    causality: dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False
    skipped: bool = False
    matches: list[dict[str, Any]] = field(default_factory=list)
    version: int | None = None
    errors: list[str] = field(default_factory=list)
    unavailable: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConversationEngine:
    """
    Memory engine for one conversation.

    Parameters
    ----------
    conversation_id:
        Identifies the conversation; also names its semantic collection.
    settings:
        Engine configuration; defaults to :class:`EngineSettings` (which
        reads ``MEMORYFORGE_*`` environment variables).
    images:
        Optional image collaborator used to enrich messages that carry
        ``metadata["images"]``.
    semantic:
        Optional pre-built :class:`SemanticIndex`. When omitted one is
        created only if ``settings.semantic_enabled`` is set.
    """

    def __init__(
        self,
        conversation_id: str,
        settings: EngineSettings | None = None,
        images: ImageCollaborator | None = None,
        semantic: SemanticIndex | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.settings = settings or EngineSettings()
        self.images = images
        self.unavailable: dict[str, str] = {}

        self.tree = TopicTree(self.settings.tree)
        self.versions = VersionStore(self.settings.versions)
        self.fingerprints = FingerprintIndex(self.settings.fingerprint)
        self.causal = CausalGraph(self.settings.causal)
        self.semantic = semantic if semantic is not None else self._init_semantic()
        self.query_engine = QueryEngine(
            self.tree,
            self.fingerprints,
            causal=self.causal,
            images=images,
            semantic=self.semantic,
            settings=self.settings.query,
        )

        self.enrichments: dict[str, list[dict[str, Any]]] = {}
        self.processed = 0
        self._pending: deque[ChangeRecord] = deque(maxlen=self.settings.max_pending_changes)
        self._lock = threading.RLock()

    def _init_semantic(self) -> SemanticIndex | None:
        if not self.settings.semantic_enabled:
            return None
        try:
            return SemanticIndex(
                self.conversation_id,
                path=self.settings.db_path,
                embedding_model=self.settings.embedding_model,
            )
        except Exception as exc:
            logger.exception("Semantic index unavailable; continuing without it")
            self.unavailable["semantic"] = str(ModuleUnavailable("semantic index", str(exc)))
            return None

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process_message(
        self,
        message: Message | dict[str, Any],
        previous_message_id: str | None = None,
    ) -> ProcessResult:
        """
        Run *message* through every subsystem.

        Never raises: validation problems and subsystem failures are
        reported in the returned envelope.
        """
        with self._lock:
            return self._process(message, previous_message_id, emit=True)

    def _process(
        self,
        message: Message | dict[str, Any],
        previous_message_id: str | None,
        emit: bool,
    ) -> ProcessResult:
        result = ProcessResult(unavailable=list(self.unavailable.values()))
        try:
            msg = coerce_message(message)
            if msg.id in self.tree or msg.id in self.causal:
                raise InvalidMessage(f"message {msg.id!r} was already processed")
        except InvalidMessage as exc:
            logger.warning("Rejected message: %s", exc)
            result.success = False
            result.errors.append(str(exc))
            return result

        fp = self.fingerprints.fingerprint(msg.content, register=False)
        check = self.fingerprints.check_duplicate(fp, text=msg.content)
        result.fingerprint = fp
        result.duplicate = check.is_duplicate
        result.matches = check.matches
        if self.settings.skip_duplicates and _is_exact_repeat(check, msg.content):
            logger.info("Skipping duplicate message %s (confidence %.2f)", msg.id, check.confidence)
            result.skipped = True
            return result
        self.fingerprints.register(msg.content, fp)

        try:
            inserted = self.tree.insert(msg)
        except MemoryForgeError as exc:
            logger.error("Tree insert failed for %s: %s", msg.id, exc)
            result.success = False
            result.errors.append(str(exc))
            return result
        result.node_id = inserted.node_id

        previous = previous_message_id
        if previous is None and inserted.parent_id != ROOT_ID:
            previous = inserted.parent_id
        try:
            added = self.causal.add_message(msg, previous)
            result.causal_node_id = added.node_id
            result.causality = added.causality
        except MemoryForgeError as exc:
            logger.error("Causal linking failed for %s: %s", msg.id, exc)
            result.success = False
            result.errors.append(str(exc))

        if self.semantic is not None:
            try:
                self.semantic.add(msg.id, msg.content, {"role": msg.role, "timestamp": msg.timestamp})
            except Exception as exc:
                logger.exception("Semantic indexing failed for %s", msg.id)
                result.errors.append(f"semantic index: {exc}")

        self._enrich_images(msg, result)

        self.processed += 1
        every = self.settings.snapshot_every
        if every and self.processed % every == 0:
            result.version = self._snapshot().version

        if emit:
            self._pending.append(
                ChangeRecord(
                    id=msg.id,
                    type=MESSAGE_CHANGE,
                    data={
                        "message": msg.model_dump(),
                        "previous_message_id": previous_message_id,
                        "node_id": result.node_id,
                        "causality": result.causality,
                    },
                    version=self.versions.current_version,
                )
            )
        return result

    def _enrich_images(self, msg: Message, result: ProcessResult) -> None:
        sources = msg.metadata.get("images") or []
        if not sources:
            return
        if self.images is None:
            result.unavailable.append(str(ModuleUnavailable("image collaborator")))
            return
        for source in sources:
            try:
                enrichment = self.images.analyze(source)
            except Exception as exc:
                logger.exception("Image analysis failed for %s", msg.id)
                result.errors.append(f"image collaborator: {exc}")
                continue
            self.enrichments.setdefault(msg.id, []).append(enrichment.to_dict())

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def get_context(self, max_nodes: int = 20, max_tokens: int = 2000) -> list[dict[str, Any]]:
        with self._lock:
            return self.tree.retrieve(max_nodes=max_nodes, max_tokens=max_tokens)

    def query(self, text: str, **options: Any) -> dict[str, Any]:
        """
        Run *text* through the query engine.

        Handler failures and unknown query types come back in
        ``metadata["errors"]`` with no results instead of raising.
        """
        try:
            with self._lock:
                result = self.query_engine.query(text, **options)
        except ValueError as exc:
            logger.warning("Rejected query %r: %s", text, exc)
            result = {"results": [], "metadata": {"errors": [str(exc)]}}
        if self.unavailable:
            notes = result["metadata"].setdefault("unavailable", [])
            notes.extend(self.unavailable.values())
        return result

    def format_for_consumption(self, result: dict[str, Any]) -> str:
        return self.query_engine.format_for_consumption(result)

    def explain_why(self, message_id: str) -> str:
        with self._lock:
            return self.causal.explain_why(message_id)

    # ------------------------------------------------------------------
    # Versioning
    # ------------------------------------------------------------------

    def state(self) -> dict[str, Any]:
        """The engine's current state as a diffable snapshot."""
        nodes = [self.tree.root, *self.tree.message_nodes()]
        return {
            "tree_nodes": {n.id: n.to_dict() for n in nodes},
            "current_path": list(self.tree.current_path),
            "causal_nodes": {n.id: n.to_dict() for n in self.causal.nodes()},
            "causal_edges": {f"{e.from_id}->{e.to_id}": e.to_dict() for e in self.causal.edges()},
            "fingerprints": {
                stable_hash(text): {"text": text, "fingerprint": fp}
                for text, fp in self.fingerprints.items()
            },
            "enrichments": {k: list(v) for k, v in self.enrichments.items()},
            "meta": {"conversation_id": self.conversation_id, "processed": self.processed},
        }

    def snapshot(self) -> SaveDecision:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> SaveDecision:
        decision = self.versions.snapshot(self.state())
        logger.debug(
            "Version %s stored as %s (%d bytes)", decision.version, decision.type, decision.size
        )
        return decision

    def reconstruct(self, version: int) -> dict[str, Any]:
        """State recorded as *version*; raises ``VersionOutOfRange``."""
        with self._lock:
            return self.versions.load_version(version)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def maintain(self, now: float | None = None) -> dict[str, Any]:
        """Prune the tree and decay the causal graph."""
        with self._lock:
            pruned = self.tree.prune(now)
            dropped = self.causal.apply_decay(now)
            if self.semantic is not None:
                for node_id in pruned:
                    try:
                        self.semantic.delete(node_id)
                    except Exception:
                        logger.exception("Could not drop %s from the semantic index", node_id)
            return {"pruned": pruned, "decayed_edges": dropped}

    # ------------------------------------------------------------------
    # Sync boundary
    # ------------------------------------------------------------------

    def drain_changes(self) -> list[ChangeRecord]:
        """Pending change records, oldest first; the queue is emptied."""
        with self._lock:
            changes = list(self._pending)
            self._pending.clear()
            return changes

    def apply_change(self, record: ChangeRecord | dict[str, Any]) -> ProcessResult | None:
        """Ingest a change record received from another replica."""
        if isinstance(record, dict):
            record = ChangeRecord.from_dict(record)
        if record.type != MESSAGE_CHANGE:
            logger.warning("Ignoring change record %s of type %r", record.id, record.type)
            return None
        with self._lock:
            return self._process(
                record.data.get("message") or {},
                record.data.get("previous_message_id"),
                emit=False,
            )

    # ------------------------------------------------------------------
    # Stats and persistence
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "conversation_id": self.conversation_id,
                "messages_processed": self.processed,
                "pending_changes": len(self._pending),
                "tree": self.tree.stats(),
                "versions": self.versions.stats(),
                "fingerprints": self.fingerprints.stats(),
                "causal": self.causal.stats(),
                "queries": self.query_engine.stats(),
                "semantic_documents": self.semantic.count() if self.semantic is not None else None,
                "unavailable": list(self.unavailable.values()),
            }

    def serialize(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": "1.0",
                "conversation_id": self.conversation_id,
                "processed": self.processed,
                "tree": self.tree.serialize(),
                "versions": self.versions.serialize(),
                "fingerprints": self.fingerprints.serialize(),
                "causal": self.causal.serialize(),
                "enrichments": {k: list(v) for k, v in self.enrichments.items()},
                "query_history": list(self.query_engine.history),
            }

    @classmethod
    def deserialize(
        cls,
        data: dict[str, Any],
        settings: EngineSettings | None = None,
        images: ImageCollaborator | None = None,
        semantic: SemanticIndex | None = None,
    ) -> ConversationEngine:
        if data.get("version") != "1.0":
            raise ValueError(f"unsupported engine state version {data.get('version')!r}")
        engine = cls(data["conversation_id"], settings, images=images, semantic=semantic)
        s = engine.settings
        engine.tree = TopicTree.deserialize(data["tree"], s.tree)
        engine.versions = VersionStore.deserialize(data["versions"], s.versions)
        engine.fingerprints = FingerprintIndex.deserialize(data["fingerprints"], s.fingerprint)
        engine.causal = CausalGraph.deserialize(data["causal"], s.causal)
        engine.query_engine = QueryEngine(
            engine.tree,
            engine.fingerprints,
            causal=engine.causal,
            images=images,
            semantic=engine.semantic,
            settings=s.query,
        )
        engine.query_engine.history.extend(data.get("query_history") or [])
        engine.query_engine.total_queries = len(engine.query_engine.history)
        engine.enrichments = {k: list(v) for k, v in (data.get("enrichments") or {}).items()}
        engine.processed = int(data.get("processed", 0))
        return engine


class EngineRegistry:
    """
    Creates and holds one :class:`ConversationEngine` per conversation id.

    Parameters
    ----------
    settings:
        Settings handed to engines built by the default factory.
    factory:
        Callable ``(conversation_id) -> ConversationEngine`` overriding the
        default construction.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        factory: Callable[[str], ConversationEngine] | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._factory = factory or (lambda cid: ConversationEngine(cid, self.settings))
        self._engines: dict[str, ConversationEngine] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> ConversationEngine:
        """Return the engine for *conversation_id*, creating it on first use."""
        with self._lock:
            engine = self._engines.get(conversation_id)
            if engine is None:
                engine = self._factory(conversation_id)
                self._engines[conversation_id] = engine
                logger.info("Created engine for conversation %s", conversation_id)
            return engine

    def register(self, engine: ConversationEngine) -> None:
        """Attach an existing (e.g. deserialized) engine."""
        with self._lock:
            self._engines[engine.conversation_id] = engine

    def drop(self, conversation_id: str) -> ConversationEngine | None:
        with self._lock:
            return self._engines.pop(conversation_id, None)

    def conversation_ids(self) -> list[str]:
        with self._lock:
            return list(self._engines)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)
