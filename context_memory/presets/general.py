"""General preset: local-only defaults, no external services required."""

from __future__ import annotations

from .base import Preset, register_preset

GENERAL_CONFIG: dict = {
    "version": "1.0",
    "token_counter": "estimate",
    "segmentation": {
        "recent_threshold": 10,
        "max_medium_segments": 3,
        "max_long_segments": 3,
        "merge_factor": 2,
    },
    "assembler": {
        "max_context_tokens": 8000,
        "retrieval_top_k": 5,
        "retrieval_timeout_ms": 250,
    },
    "importance": {"threshold": 0.3},
    "key_facts": {"auto_extract": True},
    "cache": {"enabled": True, "max_size": 1000, "ttl_minutes": 30, "persistent": True},
    "analytics": {"enabled": True, "retention_days": 30},
    "retrieval": {"provider": "memory"},
    "summarization": {"provider": "", "max_summary_chars": 1200},
    "storage": {"backend": "sqlite", "sqlite_path": ".contextmemory/memory.db"},
}

GENERAL_TEMPLATE = """\
# context-memory configuration: general preset
# Generated by: context-memory init general

version: "1.0"
token_counter: "estimate"     # "estimate" (chars/4) or "tiktoken"

# ---------------------------------------------------------------------------
# Segmentation: recent (raw) -> medium -> long -> ancient (summaries)
# ---------------------------------------------------------------------------

segmentation:
  recent_threshold: 10        # N raw messages kept verbatim
  max_medium_segments: 3
  max_long_segments: 3
  merge_factor: 2

# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

assembler:
  max_context_tokens: 8000
  retrieval_top_k: 5
  retrieval_timeout_ms: 250

importance:
  threshold: 0.3

key_facts:
  auto_extract: true

# ---------------------------------------------------------------------------
# Caching & analytics
# ---------------------------------------------------------------------------

cache:
  enabled: true
  max_size: 1000
  ttl_minutes: 30
  persistent: true

analytics:
  enabled: true
  retention_days: 30

# ---------------------------------------------------------------------------
# Retrieval: in-process lexical index
# ---------------------------------------------------------------------------

retrieval:
  provider: "memory"

# ---------------------------------------------------------------------------
# Summarization: extractive (no LLM)
# ---------------------------------------------------------------------------

summarization:
  provider: ""
  max_summary_chars: 1200

storage:
  backend: "sqlite"
  sqlite_path: ".contextmemory/memory.db"
"""

register_preset(Preset(
    name="general",
    description="Local defaults: extractive summaries, in-process retrieval, SQLite storage.",
    config_dict=GENERAL_CONFIG,
    template=GENERAL_TEMPLATE,
))
