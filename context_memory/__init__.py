"""context-memory: tiered conversation memory and token-budgeted context assembly."""

from .config import load_config
from .engine import ContextMemoryEngine
from .types import (
    AppendResult,
    ContextWindow,
    FactType,
    KeyFact,
    MemoryEngineConfig,
    Message,
    Segment,
    SegmentType,
)

__version__ = "0.1.0"

__all__ = [
    "ContextMemoryEngine",
    "load_config",
    "AppendResult",
    "ContextWindow",
    "FactType",
    "KeyFact",
    "MemoryEngineConfig",
    "Message",
    "Segment",
    "SegmentType",
]
