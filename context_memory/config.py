"""Configuration loading, validation, environment overrides, and defaults."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .types import (
    AnalyticsConfig,
    AssemblerConfig,
    CacheConfig,
    ConfigurationError,
    ImportanceConfig,
    KeyFactConfig,
    MemoryEngineConfig,
    RetrievalConfig,
    SegmentationConfig,
    StorageConfig,
    SummarizationConfig,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = [
    "context-memory.yaml",
    "context-memory.yml",
    "context-memory.json",
]

RETRIEVAL_PROVIDERS = ("http", "memory", "none")

# env var → (section, key, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "CONTEXT_MAX_RECENT_MESSAGES": ("segmentation", "recent_threshold", int),
    "CONTEXT_MAX_TOKENS": ("assembler", "max_context_tokens", int),
    "CONTEXT_VECTOR_SEARCH_LIMIT": ("assembler", "retrieval_top_k", int),
    "CONTEXT_RETRIEVAL_TIMEOUT_MS": ("assembler", "retrieval_timeout_ms", int),
    "CONTEXT_IMPORTANCE_THRESHOLD": ("importance", "threshold", float),
    "CONTEXT_CACHE_EXPIRATION": ("cache", "ttl_minutes", int),
    "MEMORY_CACHE_ENABLED": ("cache", "enabled", bool),
    "MEMORY_CACHE_MAX_SIZE": ("cache", "max_size", int),
    "MEMORY_CACHE_TTL_MINUTES": ("cache", "ttl_minutes", int),
    "VECTOR_STORE_PROVIDER": ("retrieval", "provider", str),
    "VECTOR_STORE_ENDPOINT": ("retrieval", "endpoint", str),
    "VECTOR_STORE_COLLECTION": ("retrieval", "collection", str),
    "CONTEXT_ANALYTICS_ENABLED": ("analytics", "enabled", bool),
    "CONTEXT_ANALYTICS_RETENTION_DAYS": ("analytics", "retention_days", int),
    "CONTEXT_MEMORY_DB": ("storage", "sqlite_path", str),
}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(raw: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Return a copy of *raw* with environment variables layered on top."""
    env = os.environ if environ is None else environ
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for var, (section, key, parser) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            parsed = _parse_bool(value) if parser is bool else parser(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {var}: {value!r}") from e
        merged.setdefault(section, {})[key] = parsed
        logger.debug("Config override from %s: %s.%s", var, section, key)
    return merged


def _build_config(raw: dict[str, Any]) -> MemoryEngineConfig:
    """Build a MemoryEngineConfig from a raw dict."""
    seg_raw = raw.get("segmentation", {})
    segmentation = SegmentationConfig(
        recent_threshold=seg_raw.get("recent_threshold", 10),
        segment_size=seg_raw.get("segment_size"),
        max_medium_segments=seg_raw.get("max_medium_segments", 3),
        max_long_segments=seg_raw.get("max_long_segments", 3),
        merge_factor=seg_raw.get("merge_factor", 2),
    )

    asm_raw = raw.get("assembler", {})
    assembler = AssemblerConfig(
        max_context_tokens=asm_raw.get("max_context_tokens", 8000),
        retrieval_top_k=asm_raw.get("retrieval_top_k", 5),
        retrieval_timeout_ms=asm_raw.get("retrieval_timeout_ms", 250),
        min_similarity=asm_raw.get("min_similarity", 0.0),
        max_workers=asm_raw.get("max_workers", 4),
    )

    imp_raw = raw.get("importance", {})
    importance = ImportanceConfig(
        threshold=imp_raw.get("threshold", 0.3),
        degraded_score=imp_raw.get("degraded_score", 0.2),
        marked_score=imp_raw.get("marked_score", 1.0),
    )

    kf_raw = raw.get("key_facts", {})
    key_facts = KeyFactConfig(
        auto_extract=kf_raw.get("auto_extract", True),
        auto_importance=kf_raw.get("auto_importance", 0.7),
        auto_ttl_days=kf_raw.get("auto_ttl_days"),
    )

    cache_raw = raw.get("cache", {})
    cache = CacheConfig(
        enabled=cache_raw.get("enabled", True),
        max_size=cache_raw.get("max_size", 1000),
        ttl_minutes=cache_raw.get("ttl_minutes", 30),
        persistent=cache_raw.get("persistent", True),
    )

    an_raw = raw.get("analytics", {})
    analytics = AnalyticsConfig(
        enabled=an_raw.get("enabled", True),
        retention_days=an_raw.get("retention_days", 30),
        cost_per_1k_tokens=an_raw.get("cost_per_1k_tokens", 0.01),
    )

    ret_raw = raw.get("retrieval", {})
    retrieval = RetrievalConfig(
        provider=ret_raw.get("provider", "memory"),
        endpoint=ret_raw.get("endpoint", ""),
        api_key=ret_raw.get("api_key", ""),
        api_key_env=ret_raw.get("api_key_env", "VECTOR_STORE_API_KEY"),
        collection=ret_raw.get("collection", "conversation-context"),
        timeout_ms=ret_raw.get("timeout_ms", 2000),
        index_segments=ret_raw.get("index_segments", True),
    )

    summ_raw = raw.get("summarization", {})
    summarization = SummarizationConfig(
        provider=summ_raw.get("provider", ""),
        model=summ_raw.get("model", ""),
        max_tokens=summ_raw.get("max_tokens", 600),
        temperature=summ_raw.get("temperature", 0.3),
        max_summary_chars=summ_raw.get("max_summary_chars", 1200),
        fallback_extractive=summ_raw.get("fallback_extractive", False),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        backend=storage_raw.get("backend", "sqlite"),
        sqlite_path=storage_raw.get("sqlite_path", ".contextmemory/memory.db"),
        retry_backoff_seconds=storage_raw.get("retry_backoff_seconds", 0.05),
    )

    return MemoryEngineConfig(
        version=str(raw.get("version", "1.0")),
        token_counter=raw.get("token_counter", "estimate"),
        segmentation=segmentation,
        assembler=assembler,
        importance=importance,
        key_facts=key_facts,
        cache=cache,
        analytics=analytics,
        retrieval=retrieval,
        summarization=summarization,
        storage=storage,
        providers=raw.get("providers", {}),
    )


def validate_config(config: MemoryEngineConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    seg = config.segmentation
    if seg.recent_threshold < 1:
        errors.append("segmentation.recent_threshold must be >= 1")
    if seg.segment_size is not None and seg.segment_size < 1:
        errors.append("segmentation.segment_size must be >= 1")
    if seg.max_medium_segments < 1:
        errors.append("segmentation.max_medium_segments must be >= 1")
    if seg.max_long_segments < 1:
        errors.append("segmentation.max_long_segments must be >= 1")
    if seg.merge_factor < 2:
        errors.append("segmentation.merge_factor must be >= 2")

    if config.assembler.max_context_tokens < 256:
        errors.append("assembler.max_context_tokens must be >= 256")
    if config.assembler.retrieval_top_k < 0:
        errors.append("assembler.retrieval_top_k must be >= 0")
    if config.assembler.retrieval_timeout_ms <= 0:
        errors.append("assembler.retrieval_timeout_ms must be > 0")

    for name in ("threshold", "degraded_score", "marked_score"):
        value = getattr(config.importance, name)
        if not 0.0 <= value <= 1.0:
            errors.append(f"importance.{name} ({value}) must be between 0 and 1")
    if not 0.0 <= config.key_facts.auto_importance <= 1.0:
        errors.append("key_facts.auto_importance must be between 0 and 1")

    if config.cache.max_size < 1:
        errors.append("cache.max_size must be >= 1")
    if config.cache.ttl_minutes < 1:
        errors.append("cache.ttl_minutes must be >= 1")

    if config.analytics.retention_days < 1:
        errors.append("analytics.retention_days must be >= 1")

    if config.retrieval.provider not in RETRIEVAL_PROVIDERS:
        errors.append(
            f"Unknown retrieval provider '{config.retrieval.provider}' "
            f"(expected one of {', '.join(RETRIEVAL_PROVIDERS)})"
        )
    elif config.retrieval.provider == "http" and not config.retrieval.endpoint:
        errors.append("retrieval.endpoint is required when retrieval.provider is 'http'")

    if config.storage.backend != "sqlite":
        errors.append(f"Unknown storage backend '{config.storage.backend}'")

    # Check that summarization provider exists in providers
    if (
        config.providers
        and config.summarization.provider
        and config.summarization.provider not in config.providers
    ):
        errors.append(
            f"Summarization provider '{config.summarization.provider}' "
            f"not found in providers section"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    preset: str | None = None,
    apply_env: bool = True,
) -> MemoryEngineConfig:
    """Load config from dict, preset, explicit path, or auto-discover.

    Environment variables (see ``ENV_OVERRIDES``) are layered on top of
    whichever source was used unless ``apply_env`` is False.
    """
    if config_dict is not None:
        raw = config_dict
    elif preset is not None:
        from .presets import get_preset

        found = get_preset(preset)
        if found is None:
            raise ConfigurationError(f"Unknown preset: {preset}")
        raw = found.raw_config()
    else:
        path = Path(config_path) if config_path is not None else _discover_config()
        if path is None:
            raw = {}
        elif not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
        else:
            text = path.read_text()
            if path.suffix == ".json":
                raw = json.loads(text)
            else:
                raw = yaml.safe_load(text) or {}

    if apply_env:
        raw = _apply_env_overrides(raw)
    return _build_config(raw)
