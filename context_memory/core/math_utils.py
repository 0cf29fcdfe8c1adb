"""Shared math utilities."""

from __future__ import annotations

from collections.abc import Mapping


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Compute cosine similarity between two sparse vectors."""
    if len(a) > len(b):
        a, b = b, a
    dot = sum(v * b.get(k, 0.0) for k, v in a.items())
    norm_a = sum(v * v for v in a.values()) ** 0.5
    norm_b = sum(v * v for v in b.values()) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
