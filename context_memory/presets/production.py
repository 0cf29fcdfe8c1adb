"""Production preset: external vector service and LLM summaries."""

from __future__ import annotations

from .base import Preset, register_preset

PRODUCTION_CONFIG: dict = {
    "version": "1.0",
    "token_counter": "estimate",
    "segmentation": {
        "recent_threshold": 20,
        "max_medium_segments": 4,
        "max_long_segments": 4,
        "merge_factor": 2,
    },
    "assembler": {
        "max_context_tokens": 16000,
        "retrieval_top_k": 8,
        "retrieval_timeout_ms": 250,
        "min_similarity": 0.2,
        "max_workers": 8,
    },
    "importance": {"threshold": 0.3},
    "key_facts": {"auto_extract": True, "auto_ttl_days": 90},
    "cache": {"enabled": True, "max_size": 5000, "ttl_minutes": 30, "persistent": True},
    "analytics": {"enabled": True, "retention_days": 30},
    "retrieval": {
        "provider": "http",
        "endpoint": "",
        "api_key_env": "VECTOR_STORE_API_KEY",
        "collection": "conversation-context",
        "timeout_ms": 2000,
    },
    "summarization": {
        "provider": "anthropic",
        "model": "claude-haiku-4-5",
        "max_tokens": 600,
        "temperature": 0.3,
        "fallback_extractive": True,
    },
    "providers": {
        "anthropic": {"type": "anthropic", "api_key_env": "ANTHROPIC_API_KEY"},
    },
    "storage": {"backend": "sqlite", "sqlite_path": ".contextmemory/memory.db"},
}

PRODUCTION_TEMPLATE = """\
# context-memory configuration: production preset
# Generated by: context-memory init production
#
# Requires:
#   VECTOR_STORE_ENDPOINT   base URL of the vector service (or set retrieval.endpoint)
#   VECTOR_STORE_API_KEY    bearer token for the vector service, if it needs one
#   ANTHROPIC_API_KEY       for LLM summaries

version: "1.0"
token_counter: "estimate"

segmentation:
  recent_threshold: 20
  max_medium_segments: 4
  max_long_segments: 4
  merge_factor: 2

assembler:
  max_context_tokens: 16000
  retrieval_top_k: 8
  retrieval_timeout_ms: 250   # degrade to recency + key facts past this
  min_similarity: 0.2
  max_workers: 8

importance:
  threshold: 0.3

key_facts:
  auto_extract: true
  auto_ttl_days: 90

cache:
  enabled: true
  max_size: 5000
  ttl_minutes: 30
  persistent: true

analytics:
  enabled: true
  retention_days: 30

# ---------------------------------------------------------------------------
# Retrieval: external vector service (POST /search, /index, /delete)
# ---------------------------------------------------------------------------

retrieval:
  provider: "http"
  endpoint: ""
  api_key_env: "VECTOR_STORE_API_KEY"
  collection: "conversation-context"
  timeout_ms: 2000

# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------

summarization:
  provider: "anthropic"
  model: "claude-haiku-4-5"
  max_tokens: 600
  temperature: 0.3
  fallback_extractive: true   # keep rolling history if the LLM call fails

providers:
  anthropic:
    type: "anthropic"
    api_key_env: "ANTHROPIC_API_KEY"

storage:
  backend: "sqlite"
  sqlite_path: ".contextmemory/memory.db"
"""

register_preset(Preset(
    name="production",
    description="External vector service, Anthropic summaries with extractive fallback.",
    config_dict=PRODUCTION_CONFIG,
    template=PRODUCTION_TEMPLATE,
))
