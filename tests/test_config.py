"""Tests for configuration loading, env overrides and validation."""

import json

import pytest
import yaml

from context_memory.config import _apply_env_overrides, load_config, validate_config
from context_memory.types import ConfigurationError


class TestLoadConfig:
    def test_load_defaults(self):
        config = load_config(config_dict={}, apply_env=False)
        assert config.version == "1.0"
        assert config.segmentation.recent_threshold == 10
        assert config.segmentation.effective_segment_size == 10
        assert config.assembler.max_context_tokens == 8000
        assert config.assembler.retrieval_timeout_ms == 250
        assert config.importance.threshold == 0.3
        assert config.cache.ttl_minutes == 30
        assert config.cache.max_size == 1000
        assert config.retrieval.provider == "memory"
        assert config.storage.backend == "sqlite"

    def test_load_from_dict(self):
        config = load_config(config_dict={
            "segmentation": {"recent_threshold": 6, "segment_size": 3},
            "assembler": {"max_context_tokens": 4000, "retrieval_top_k": 2},
            "summarization": {"provider": "anthropic", "fallback_extractive": True},
        }, apply_env=False)
        assert config.segmentation.recent_threshold == 6
        assert config.segmentation.effective_segment_size == 3
        assert config.assembler.max_context_tokens == 4000
        assert config.assembler.retrieval_top_k == 2
        assert config.summarization.provider == "anthropic"
        assert config.summarization.fallback_extractive is True

    def test_load_from_yaml_file(self, tmp_path):
        path = tmp_path / "context-memory.yaml"
        path.write_text(yaml.dump({"assembler": {"max_context_tokens": 12000}}))
        config = load_config(config_path=path, apply_env=False)
        assert config.assembler.max_context_tokens == 12000

    def test_load_from_json_file(self, tmp_path):
        path = tmp_path / "context-memory.json"
        path.write_text(json.dumps({"cache": {"ttl_minutes": 10}}))
        config = load_config(config_path=path, apply_env=False)
        assert config.cache.ttl_minutes == 10

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(config_path=tmp_path / "nope.yaml")

    def test_discovers_config_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "context-memory.yaml").write_text("segmentation:\n  recent_threshold: 7\n")
        monkeypatch.chdir(tmp_path)
        config = load_config(apply_env=False)
        assert config.segmentation.recent_threshold == 7

    def test_load_preset(self):
        config = load_config(preset="development", apply_env=False)
        assert config.segmentation.recent_threshold == 4
        assert config.cache.persistent is False

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError):
            load_config(preset="nonexistent")


class TestEnvOverrides:
    def test_overrides_layer_on_top(self):
        raw = {"assembler": {"max_context_tokens": 8000, "retrieval_top_k": 5}}
        merged = _apply_env_overrides(raw, {
            "CONTEXT_MAX_TOKENS": "3000",
            "CONTEXT_MAX_RECENT_MESSAGES": "12",
            "MEMORY_CACHE_ENABLED": "false",
            "CONTEXT_IMPORTANCE_THRESHOLD": "0.4",
        })
        assert merged["assembler"] == {"max_context_tokens": 3000, "retrieval_top_k": 5}
        assert merged["segmentation"]["recent_threshold"] == 12
        assert merged["cache"]["enabled"] is False
        assert merged["importance"]["threshold"] == 0.4
        # Input untouched
        assert raw["assembler"]["max_context_tokens"] == 8000

    def test_empty_values_ignored(self):
        merged = _apply_env_overrides({}, {"CONTEXT_MAX_TOKENS": ""})
        assert merged == {}

    def test_invalid_value_raises(self):
        with pytest.raises(ConfigurationError, match="CONTEXT_MAX_TOKENS"):
            _apply_env_overrides({}, {"CONTEXT_MAX_TOKENS": "lots"})

    def test_load_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("VECTOR_STORE_PROVIDER", "none")
        monkeypatch.setenv("MEMORY_CACHE_TTL_MINUTES", "5")
        config = load_config(config_dict={})
        assert config.retrieval.provider == "none"
        assert config.cache.ttl_minutes == 5

    def test_apply_env_false_ignores_environment(self, monkeypatch):
        monkeypatch.setenv("CONTEXT_MAX_TOKENS", "3000")
        config = load_config(config_dict={}, apply_env=False)
        assert config.assembler.max_context_tokens == 8000


class TestValidateConfig:
    def test_defaults_valid(self):
        assert validate_config(load_config(config_dict={}, apply_env=False)) == []

    def test_bad_ranges(self):
        config = load_config(config_dict={
            "segmentation": {"recent_threshold": 0, "merge_factor": 1},
            "assembler": {"max_context_tokens": 100, "retrieval_timeout_ms": 0},
            "importance": {"threshold": 1.5},
            "cache": {"max_size": 0},
        }, apply_env=False)
        errors = validate_config(config)
        joined = "\n".join(errors)
        assert "recent_threshold" in joined
        assert "merge_factor" in joined
        assert "max_context_tokens" in joined
        assert "retrieval_timeout_ms" in joined
        assert "importance.threshold" in joined
        assert "cache.max_size" in joined

    def test_http_retrieval_requires_endpoint(self):
        config = load_config(config_dict={"retrieval": {"provider": "http"}}, apply_env=False)
        errors = validate_config(config)
        assert any("retrieval.endpoint" in e for e in errors)

    def test_unknown_retrieval_provider(self):
        config = load_config(config_dict={"retrieval": {"provider": "pinecone"}}, apply_env=False)
        errors = validate_config(config)
        assert any("Unknown retrieval provider" in e for e in errors)

    def test_summarization_provider_must_be_declared(self):
        config = load_config(config_dict={
            "summarization": {"provider": "ollama"},
            "providers": {"anthropic": {"type": "anthropic"}},
        }, apply_env=False)
        errors = validate_config(config)
        assert any("ollama" in e for e in errors)
