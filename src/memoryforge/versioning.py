"""
VersionStore: git-style differential snapshots of the engine state.

A snapshot is any JSON-compatible ``dict``. Its top-level keys are either

* **collections**: a dict of dicts (keys are the node ids) or a list of
  dicts with unique ``id`` values, diffed node by node and field by field,
* **document fields**: anything else, compared as whole values.

Patches use JSON-Pointer paths (``/collection/id/field``) and three
operations (``add``, ``replace``, ``remove``). Each conversation keeps one
chain (a base snapshot plus ordered patches) that is collapsed into a new
base once it grows past ``max_patch_chain_length``.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .config import VersionSettings
from .errors import PatchApplyError, ReconstructionMismatch, VersionOutOfRange

logger = logging.getLogger(__name__)


class _Missing:
    """Marks a field absent on one side of a diff."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def encoded_size(obj: Any) -> int:
    """Length of the compact, key-sorted JSON encoding of *obj*."""
    return len(json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str))


def _escape(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def make_pointer(*tokens: Any) -> str:
    """Build a JSON pointer from raw path tokens."""
    return "".join("/" + _escape(str(t)) for t in tokens)


def parse_pointer(path: str) -> list[str]:
    if not path.startswith("/"):
        raise ValueError(f"not a JSON pointer: {path!r}")
    return [_unescape(t) for t in path[1:].split("/")]


def _collection_kind(value: Any) -> str | None:
    if isinstance(value, dict) and all(isinstance(v, dict) for v in value.values()):
        return "dict"
    if isinstance(value, list) and all(isinstance(v, dict) and "id" in v for v in value):
        ids = [str(v["id"]) for v in value]
        if len(set(ids)) == len(ids):
            return "list"
    return None


def _nodes_of(value: Any, kind: str) -> dict[str, dict]:
    if kind == "dict":
        return {str(k): v for k, v in value.items()}
    return {str(v["id"]): v for v in value}


# ---------------------------------------------------------------------------
# Diff and patch records
# ---------------------------------------------------------------------------


@dataclass
class FieldChange:
    field: str
    old: Any = MISSING
    new: Any = MISSING


@dataclass
class Added:
    collection: str | None
    id: str
    node: Any


@dataclass
class Modified:
    collection: str | None
    id: str
    changes: list[FieldChange]


@dataclass
class Deleted:
    collection: str | None
    id: str


@dataclass
class Diff:
    """Structural difference between two snapshots.

    ``collection`` is ``None`` for document fields, in which case ``id`` is
    the field name.
    """

    added: list[Added] = field(default_factory=list)
    modified: list[Modified] = field(default_factory=list)
    deleted: list[Deleted] = field(default_factory=list)
    #: List collections whose final order needs a whole-value replace.
    reordered: dict[str, list] = field(default_factory=dict)

    @property
    def added_nodes(self) -> list[Any]:
        return [a.node for a in self.added]

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted or self.reordered)


@dataclass
class Patch:
    version: int
    base_version: int
    timestamp: float
    operations: list[dict[str, Any]]
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Patch:
        return cls(
            version=int(data["version"]),
            base_version=int(data["base_version"]),
            timestamp=float(data["timestamp"]),
            operations=list(data["operations"]),
            stats=dict(data.get("stats") or {}),
        )


@dataclass
class SaveDecision:
    type: Literal["full", "delta"]
    payload: Any
    size: int
    compression_ratio: float | None = None
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload.to_dict() if isinstance(self.payload, Patch) else self.payload
        return {
            "type": self.type,
            "payload": payload,
            "size": self.size,
            "compression_ratio": self.compression_ratio,
            "version": self.version,
        }


# ---------------------------------------------------------------------------
# VersionStore
# ---------------------------------------------------------------------------


class VersionStore:
    """
    Differential version store for one conversation.

    Parameters
    ----------
    settings:
        Chain length and compression threshold; defaults to
        :class:`VersionSettings`.
    """

    def __init__(self, settings: VersionSettings | None = None) -> None:
        self.settings = settings or VersionSettings()
        self.current_version = 0
        self._base: dict[str, Any] | None = None
        self._base_version = 0
        self._patches: list[Patch] = []
        self._latest: dict[str, Any] | None = None
        self._sizes: dict[int, int] = {}
        self._counts = {"full": 0, "delta": 0, "collapses": 0}

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def diff(self, old: dict[str, Any], new: dict[str, Any]) -> Diff:
        """Compare two snapshots node by node."""
        result = Diff()
        for key in dict.fromkeys([*old, *new]):
            in_old, in_new = key in old, key in new
            kinds = {_collection_kind(old[key])} if in_old else set()
            if in_new:
                kinds.add(_collection_kind(new[key]))
            kind = kinds.pop() if len(kinds) == 1 else None

            if kind is None:
                self._diff_field(result, key, old.get(key, MISSING), new.get(key, MISSING))
                continue

            old_nodes = _nodes_of(old[key], kind) if in_old else {}
            new_nodes = _nodes_of(new[key], kind) if in_new else {}
            if not in_old:
                result.added.append(Added(None, key, copy.deepcopy(new[key])))
                continue
            if not in_new:
                result.deleted.append(Deleted(None, key))
                continue

            for node_id, node in new_nodes.items():
                if node_id not in old_nodes:
                    result.added.append(Added(key, node_id, node))
                else:
                    changes = self._node_changes(old_nodes[node_id], node)
                    if changes:
                        result.modified.append(Modified(key, node_id, changes))
            for node_id in old_nodes:
                if node_id not in new_nodes:
                    result.deleted.append(Deleted(key, node_id))

            if kind == "list":
                kept = [i for i in old_nodes if i in new_nodes]
                appended = [i for i in new_nodes if i not in old_nodes]
                if kept + appended != list(new_nodes):
                    result.reordered[key] = copy.deepcopy(new[key])
        return result

    @staticmethod
    def _diff_field(result: Diff, key: str, old: Any, new: Any) -> None:
        if old is MISSING:
            result.added.append(Added(None, key, new))
        elif new is MISSING:
            result.deleted.append(Deleted(None, key))
        elif old != new:
            result.modified.append(Modified(None, key, [FieldChange(key, old, new)]))

    @staticmethod
    def _node_changes(old: dict, new: dict) -> list[FieldChange]:
        changes = []
        for name in dict.fromkeys([*old, *new]):
            before, after = old.get(name, MISSING), new.get(name, MISSING)
            if before is MISSING or after is MISSING or before != after:
                changes.append(FieldChange(name, before, after))
        return changes

    def to_patch(self, diff: Diff, version: int = 1, base_version: int | None = None) -> Patch:
        """Turn *diff* into an ordered list of JSON-Patch-like operations."""
        ops: list[dict[str, Any]] = []
        skip = set(diff.reordered)

        for added in diff.added:
            if added.collection in skip:
                continue
            path = (
                make_pointer(added.id)
                if added.collection is None
                else make_pointer(added.collection, added.id)
            )
            ops.append({"op": "add", "path": path, "value": copy.deepcopy(added.node)})

        for mod in diff.modified:
            if mod.collection in skip:
                continue
            for change in mod.changes:
                if mod.collection is None:
                    path = make_pointer(mod.id)
                else:
                    path = make_pointer(mod.collection, mod.id, change.field)
                if change.new is MISSING:
                    ops.append({"op": "remove", "path": path})
                elif change.old is MISSING:
                    ops.append({"op": "add", "path": path, "value": copy.deepcopy(change.new)})
                else:
                    ops.append({"op": "replace", "path": path, "value": copy.deepcopy(change.new)})

        for deleted in diff.deleted:
            if deleted.collection in skip:
                continue
            path = (
                make_pointer(deleted.id)
                if deleted.collection is None
                else make_pointer(deleted.collection, deleted.id)
            )
            ops.append({"op": "remove", "path": path})

        for collection, value in diff.reordered.items():
            ops.append({"op": "replace", "path": make_pointer(collection), "value": value})

        return Patch(
            version=version,
            base_version=version - 1 if base_version is None else base_version,
            timestamp=time.time(),
            operations=ops,
            stats={
                "added": len(diff.added),
                "modified": len(diff.modified),
                "deleted": len(diff.deleted),
            },
        )

    def decide_strategy(
        self,
        old: dict[str, Any] | None,
        new: dict[str, Any],
        version: int | None = None,
    ) -> SaveDecision:
        """Persist a delta only when it is small enough relative to the full state."""
        full_size = encoded_size(new)
        if old is None:
            return SaveDecision("full", new, full_size, version=version)

        patch = self.to_patch(self.diff(old, new), version=version or 1)
        patch_size = encoded_size(patch.to_dict())
        ratio = patch_size / full_size if full_size else 1.0
        if ratio < self.settings.compression_threshold:
            return SaveDecision("delta", patch, patch_size, ratio, version=version)
        return SaveDecision("full", new, full_size, ratio, version=version)

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def apply_patch(
        self,
        base: dict[str, Any],
        patch: Patch | dict[str, Any],
        errors: list[PatchApplyError] | None = None,
    ) -> dict[str, Any]:
        """
        Apply *patch* to a deep copy of *base*.

        Operations that reference a missing path are logged, collected in
        *errors* when given, and skipped; the rest of the patch still
        applies.
        """
        if isinstance(patch, dict):
            patch = Patch.from_dict(patch)
        state = copy.deepcopy(base)
        for operation in patch.operations:
            try:
                self._apply_operation(state, operation)
            except PatchApplyError as exc:
                logger.warning("Skipping patch operation (version %s): %s", patch.version, exc)
                if errors is not None:
                    errors.append(exc)
        return state

    def reconstruct(
        self,
        base: dict[str, Any],
        patches: list[Patch] | list[dict[str, Any]],
        errors: list[PatchApplyError] | None = None,
    ) -> dict[str, Any]:
        """Replay *patches* over *base*, left to right."""
        state = copy.deepcopy(base)
        for patch in patches:
            state = self.apply_patch(state, patch, errors)
        return state

    def _apply_operation(self, state: dict[str, Any], operation: dict[str, Any]) -> None:
        op = operation.get("op")
        path = operation.get("path", "")
        if path == "":
            raise PatchApplyError(operation, "cannot target the document root")
        try:
            tokens = parse_pointer(path)
        except ValueError as exc:
            raise PatchApplyError(operation, str(exc)) from exc

        parent = self._navigate(state, tokens[:-1], operation)
        key = tokens[-1]

        if isinstance(parent, dict):
            if op == "add":
                parent[key] = copy.deepcopy(operation["value"])
            elif op == "replace":
                if key not in parent:
                    raise PatchApplyError(operation, "path not found")
                parent[key] = copy.deepcopy(operation["value"])
            elif op == "remove":
                if key not in parent:
                    raise PatchApplyError(operation, "path not found")
                del parent[key]
            else:
                raise PatchApplyError(operation, "unknown operation")
        elif isinstance(parent, list):
            index = self._find_index(parent, key)
            if op == "add":
                if index is None:
                    parent.append(copy.deepcopy(operation["value"]))
                else:
                    parent[index] = copy.deepcopy(operation["value"])
            elif op in ("replace", "remove"):
                if index is None:
                    raise PatchApplyError(operation, "path not found")
                if op == "replace":
                    parent[index] = copy.deepcopy(operation["value"])
                else:
                    del parent[index]
            else:
                raise PatchApplyError(operation, "unknown operation")
        else:
            raise PatchApplyError(operation, "parent is not a container")

    @staticmethod
    def _find_index(items: list, token: str) -> int | None:
        for index, item in enumerate(items):
            if isinstance(item, dict) and str(item.get("id")) == token:
                return index
        return None

    def _navigate(self, state: Any, tokens: list[str], operation: dict[str, Any]) -> Any:
        current = state
        for token in tokens:
            if isinstance(current, dict):
                if token not in current:
                    raise PatchApplyError(operation, "path not found")
                current = current[token]
            elif isinstance(current, list):
                index = self._find_index(current, token)
                if index is None:
                    raise PatchApplyError(operation, "path not found")
                current = current[index]
            else:
                raise PatchApplyError(operation, "path not found")
        return current

    # ------------------------------------------------------------------
    # Chain management
    # ------------------------------------------------------------------

    def snapshot(self, state: dict[str, Any]) -> SaveDecision:
        """Record *state* as the next version, as a full base or a delta."""
        state = copy.deepcopy(state)
        version = self.current_version + 1
        decision = self.decide_strategy(self._latest, state, version=version)
        self.current_version = version
        self._sizes[version] = encoded_size(state)

        if decision.type == "full":
            self._base = state
            self._base_version = version
            self._patches = []
            self._sizes = {version: self._sizes[version]}
        else:
            self._patches.append(decision.payload)
        self._counts[decision.type] += 1
        self._latest = state

        if len(self._patches) > self.settings.max_patch_chain_length:
            self.collapse()
        return decision

    def collapse(self) -> None:
        """Fold the patch chain into a new base snapshot."""
        if self._base is None or not self._patches:
            return
        self._base = self.reconstruct(self._base, self._patches)
        logger.info(
            "Collapsed %d patch(es) into base version %d",
            len(self._patches),
            self.current_version,
        )
        self._base_version = self.current_version
        self._patches = []
        self._sizes = {self.current_version: self._sizes.get(self.current_version, 0)}
        self._counts["collapses"] += 1

    def load_version(self, version: int) -> dict[str, Any]:
        """Reconstruct the state recorded as *version*."""
        lowest = max(self._base_version, 1)
        if self._base is None or not lowest <= version <= self.current_version:
            raise VersionOutOfRange(version, lowest, self.current_version)

        patches = [p for p in self._patches if p.version <= version]
        state = self.reconstruct(self._base, patches)

        expected = self._sizes.get(version)
        actual = encoded_size(state)
        if expected is not None and expected != actual:
            logger.warning("%s", ReconstructionMismatch(version, expected, actual))
        return state

    def latest(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._latest)

    @property
    def base_version(self) -> int:
        return self._base_version

    @property
    def chain_length(self) -> int:
        return len(self._patches)

    def stats(self) -> dict[str, Any]:
        base_size = encoded_size(self._base) if self._base is not None else 0
        patch_size = sum(encoded_size(p.to_dict()) for p in self._patches)
        return {
            "current_version": self.current_version,
            "base_version": self._base_version,
            "chain_length": len(self._patches),
            "full_snapshots": self._counts["full"],
            "delta_patches": self._counts["delta"],
            "collapses": self._counts["collapses"],
            "total_size": base_size + patch_size,
        }

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        return {
            "version": "1.0",
            "settings": self.settings.model_dump(),
            "base": copy.deepcopy(self._base),
            "base_version": self._base_version,
            "current_version": self.current_version,
            "patches": [p.to_dict() for p in self._patches],
            "sizes": {str(k): v for k, v in self._sizes.items()},
            "counts": dict(self._counts),
        }

    @classmethod
    def deserialize(
        cls, data: dict[str, Any], settings: VersionSettings | None = None
    ) -> VersionStore:
        store = cls(settings or VersionSettings.model_validate(data.get("settings", {})))
        store._base = copy.deepcopy(data.get("base"))
        store._base_version = int(data.get("base_version", 0))
        store.current_version = int(data.get("current_version", 0))
        store._patches = [Patch.from_dict(p) for p in data.get("patches", [])]
        store._sizes = {int(k): int(v) for k, v in (data.get("sizes") or {}).items()}
        store._counts.update(data.get("counts") or {})
        if store._base is not None:
            store._latest = store.reconstruct(store._base, store._patches)
        return store
