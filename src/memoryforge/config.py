"""
Engine settings loaded from keyword arguments and environment variables.

Every value can be overridden with a ``MEMORYFORGE_`` prefixed variable;
nested subsystem values use ``__`` as delimiter, e.g.::

    MEMORYFORGE_TREE__TOPIC_SHIFT_THRESHOLD=0.35
    MEMORYFORGE_FINGERPRINT__MAX_CACHE_SIZE=5000
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TreeSettings(BaseModel):
    """Topic tree thresholds."""

    topic_shift_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    #: Messages on the current path compared against a new message.
    recent_window: int = Field(default=5, ge=1)
    #: Messages the current path must hold before shifts are detected.
    min_shift_history: int = Field(default=2, ge=1)
    branch_min_score: float = Field(default=0.3, ge=0.0, le=1.0)
    max_branch_span: int = Field(default=20, ge=2)
    prune_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    prune_age_days: float = Field(default=7.0, ge=0.0)
    #: Share of the retrieval budget spent on the current path.
    path_share: float = Field(default=0.6, ge=0.0, le=1.0)


class VersionSettings(BaseModel):
    """Patch chain settings."""

    max_patch_chain_length: int = Field(default=10, ge=1)
    compression_threshold: float = Field(default=0.3, gt=0.0)


class FingerprintSettings(BaseModel):
    """Perceptual hash, Bloom filter and cache settings."""

    hash_size: int = Field(default=64, ge=4)
    bloom_filter_size: int = Field(default=10000, ge=8)
    bloom_filter_hashes: int = Field(default=3, ge=1)
    duplicate_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    #: ``None`` keeps every fingerprint; otherwise LRU eviction.
    max_cache_size: int | None = Field(default=None, ge=1)

    @field_validator("hash_size")
    @classmethod
    def _multiple_of_four(cls, value: int) -> int:
        if value % 4:
            raise ValueError("hash_size must be a multiple of 4")
        return value


class CausalSettings(BaseModel):
    """Causal inference and decay settings."""

    max_chain_depth: int = Field(default=10, ge=1)
    inference_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    #: Per day.
    decay_rate: float = Field(default=0.1, ge=0.0)
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    implicit_window: int = Field(default=10, ge=0)
    implicit_overlap_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


class QuerySettings(BaseModel):
    """Query engine settings."""

    max_results: int = Field(default=10, ge=1)
    default_token_limit: int = Field(default=4000, ge=1)
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)
    summary_importance: float = Field(default=0.7, ge=0.0, le=1.0)
    deduplicate_results: bool = True
    history_size: int = Field(default=100, ge=0)


class EngineSettings(BaseSettings):
    """memoryforge configuration for one conversation engine."""

    model_config = SettingsConfigDict(
        env_prefix="MEMORYFORGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    tree: TreeSettings = Field(default_factory=TreeSettings)
    versions: VersionSettings = Field(default_factory=VersionSettings)
    fingerprint: FingerprintSettings = Field(default_factory=FingerprintSettings)
    causal: CausalSettings = Field(default_factory=CausalSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)

    # Orchestration
    #: Skip exact-text repeats; perceptual near-duplicates are flagged and kept.
    skip_duplicates: bool = True
    #: Take a version snapshot every N processed messages (0 disables).
    snapshot_every: int = Field(default=1, ge=0)
    max_pending_changes: int = Field(default=1000, ge=0)

    # Semantic search (ChromaDB + sentence-transformers)
    semantic_enabled: bool = False
    db_path: str | None = None
    embedding_model: str = "all-MiniLM-L6-v2"

    log_level: str = "INFO"
