"""Development preset: small tiers so segmentation is visible after a few turns."""

from __future__ import annotations

from .base import Preset, register_preset

DEVELOPMENT_CONFIG: dict = {
    "version": "1.0",
    "token_counter": "estimate",
    "segmentation": {
        "recent_threshold": 4,
        "segment_size": 4,
        "max_medium_segments": 2,
        "max_long_segments": 2,
        "merge_factor": 2,
    },
    "assembler": {
        "max_context_tokens": 2000,
        "retrieval_top_k": 3,
        "retrieval_timeout_ms": 500,
    },
    "cache": {"enabled": True, "max_size": 100, "ttl_minutes": 5, "persistent": False},
    "analytics": {"enabled": True, "retention_days": 7},
    "retrieval": {"provider": "memory"},
    "summarization": {"provider": "", "max_summary_chars": 600},
    "storage": {"backend": "sqlite", "sqlite_path": ".contextmemory/dev.db"},
}

DEVELOPMENT_TEMPLATE = """\
# context-memory configuration: development preset
# Generated by: context-memory init development

version: "1.0"
token_counter: "estimate"

segmentation:
  recent_threshold: 4
  segment_size: 4
  max_medium_segments: 2
  max_long_segments: 2
  merge_factor: 2

assembler:
  max_context_tokens: 2000
  retrieval_top_k: 3
  retrieval_timeout_ms: 500

cache:
  enabled: true
  max_size: 100
  ttl_minutes: 5
  persistent: false           # in-process only

analytics:
  enabled: true
  retention_days: 7

retrieval:
  provider: "memory"

summarization:
  provider: ""
  max_summary_chars: 600

storage:
  backend: "sqlite"
  sqlite_path: ".contextmemory/dev.db"
"""

register_preset(Preset(
    name="development",
    description="Tiny tiers and short cache TTL for exercising segmentation locally.",
    config_dict=DEVELOPMENT_CONFIG,
    template=DEVELOPMENT_TEMPLATE,
))
