"""Tests for EngineSettings environment handling."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from memoryforge.config import EngineSettings, TreeSettings


class TestEngineSettings:
    def test_defaults(self, settings: EngineSettings):
        assert settings.tree.topic_shift_threshold == 0.4
        assert settings.versions.max_patch_chain_length == 10
        assert settings.fingerprint.hash_size == 64
        assert settings.fingerprint.bloom_filter_size == 10000
        assert settings.causal.inference_threshold == 0.7
        assert settings.query.max_results == 10
        assert settings.skip_duplicates is True
        assert settings.semantic_enabled is False

    def test_nested_environment_override(self, settings, monkeypatch):
        monkeypatch.setenv("MEMORYFORGE_TREE__TOPIC_SHIFT_THRESHOLD", "0.35")
        monkeypatch.setenv("MEMORYFORGE_FINGERPRINT__MAX_CACHE_SIZE", "5000")
        loaded = EngineSettings()
        assert loaded.tree.topic_shift_threshold == 0.35
        assert loaded.fingerprint.max_cache_size == 5000

    def test_flat_environment_override(self, settings, monkeypatch):
        monkeypatch.setenv("MEMORYFORGE_SKIP_DUPLICATES", "false")
        monkeypatch.setenv("MEMORYFORGE_LOG_LEVEL", "debug")
        loaded = EngineSettings()
        assert loaded.skip_duplicates is False
        assert loaded.log_level == "debug"

    def test_keyword_arguments_win(self, settings, monkeypatch):
        monkeypatch.setenv("MEMORYFORGE_SNAPSHOT_EVERY", "5")
        assert EngineSettings(snapshot_every=2).snapshot_every == 2

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            TreeSettings(topic_shift_threshold=1.5)
