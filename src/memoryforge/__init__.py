"""
memoryforge: a local-first memory engine for long-running conversations.

Organizes messages into a topic tree, drops near-duplicates, tracks why one
message followed another, versions the evolving state as patch chains and
answers natural-language queries over all of it.
"""

from .causal import CausalGraph
from .config import EngineSettings
from .engine import ConversationEngine, EngineRegistry, ProcessResult
from .errors import (
    InvalidMessage,
    MemoryForgeError,
    ModuleUnavailable,
    PatchApplyError,
    ReconstructionMismatch,
    VersionOutOfRange,
)
from .fingerprint import FingerprintIndex
from .hierarchy import TopicTree
from .models import ChangeRecord, ImageEnrichment, Message
from .query import QueryEngine
from .semantic import SemanticIndex
from .versioning import VersionStore

__all__ = [
    "CausalGraph",
    "ChangeRecord",
    "ConversationEngine",
    "EngineRegistry",
    "EngineSettings",
    "FingerprintIndex",
    "ImageEnrichment",
    "InvalidMessage",
    "MemoryForgeError",
    "Message",
    "ModuleUnavailable",
    "PatchApplyError",
    "ProcessResult",
    "QueryEngine",
    "ReconstructionMismatch",
    "SemanticIndex",
    "TopicTree",
    "VersionOutOfRange",
    "VersionStore",
]
