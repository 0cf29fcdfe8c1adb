"""ContextCache: two-tier (memory LRU + store) cache of assembled context windows."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..types import (
    AssemblyCancelled,
    CacheConfig,
    CacheError,
    CacheStats,
    ContextCacheEntry,
    ContextWindow,
    ConversationCacheStats,
    PersistenceError,
)
from .store import MemoryStore

logger = logging.getLogger(__name__)

NO_QUERY_FINGERPRINT = "noquery"
EVICTION_FRACTION = 0.1


@dataclass
class _MemoryEntry:
    conversation_id: str
    payload: str  # JSON-serialized ContextWindow
    expires_at: datetime
    created_at: float  # time.monotonic()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decode(payload: str) -> ContextWindow:
    try:
        return ContextWindow.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError) as e:
        raise CacheError(f"Corrupt cache entry: {e}") from e


class ContextCache:
    """Cache of assembled windows keyed by conversation and query fingerprint.

    Lifecycle is explicit: ``init()`` before use, ``cleanup()`` on shutdown.
    Every invalidation bumps a per-conversation generation so a window
    computed before an append can never be stored after it.
    """

    def __init__(self, config: CacheConfig | None = None, store: MemoryStore | None = None) -> None:
        self.config = config or CacheConfig()
        self.store = store if self.config.persistent else None
        self._entries: OrderedDict[str, _MemoryEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._generations: dict[str, int] = {}
        # Persisted rows are scoped to this instance; generations are not durable
        self._epoch = uuid.uuid4().hex[:8]
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._conversation_hits: dict[str, int] = {}
        self._conversation_misses: dict[str, int] = {}
        self._initialized = False

    # -- lifecycle --

    def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        purged = self.purge_expired()
        logger.info(
            "Context cache ready (max_size=%d, ttl=%dm, persistent=%s, purged=%d)",
            self.config.max_size, self.config.ttl_minutes, self.store is not None, purged,
        )

    def cleanup(self) -> None:
        with self._lock:
            self._entries.clear()
        self._initialized = False

    # -- keys --

    @staticmethod
    def fingerprint(query: str | None) -> str:
        if query is None or not query.strip():
            return NO_QUERY_FINGERPRINT
        normalized = " ".join(query.lower().split())
        return hashlib.sha256(normalized.encode()).hexdigest()[:16]

    @staticmethod
    def cache_key(conversation_id: str, query_fingerprint: str) -> str:
        return f"context:{conversation_id}:{query_fingerprint}"

    # -- main entry point --

    def get_or_compute(
        self,
        conversation_id: str,
        query_fingerprint: str,
        compute_fn: Callable[[], ContextWindow],
        cancel_event: threading.Event | None = None,
    ) -> ContextWindow:
        if not self.config.enabled:
            return compute_fn()

        key = self.cache_key(conversation_id, query_fingerprint)
        cached = self._lookup(key, conversation_id)
        if cached is not None:
            self._count(conversation_id, hit=True)
            cached.cache_hit = True
            return cached

        self._count(conversation_id, hit=False)
        generation = self._generation(conversation_id)

        window = compute_fn()

        if cancel_event is not None and cancel_event.is_set():
            raise AssemblyCancelled(f"Context assembly for {conversation_id} cancelled")

        if not self._store_window(key, conversation_id, window, generation):
            logger.debug("Not caching stale window for %s (computed at generation %d)", conversation_id, generation)
        return window

    def _generation(self, conversation_id: str) -> int:
        with self._lock:
            return self._generations.get(conversation_id, 0)

    def _persisted_key(self, key: str, generation: int) -> str:
        # Rows written before an invalidation carry an older generation and
        # can never be looked up again, even if deleting them failed
        return f"{key}:{self._epoch}.{generation}"

    def _count(self, conversation_id: str, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
                self._conversation_hits[conversation_id] = self._conversation_hits.get(conversation_id, 0) + 1
            else:
                self._misses += 1
                self._conversation_misses[conversation_id] = self._conversation_misses.get(conversation_id, 0) + 1

    def _lookup(self, key: str, conversation_id: str) -> ContextWindow | None:
        now = _now()
        with self._lock:
            generation = self._generations.get(conversation_id, 0)
            entry = self._entries.get(key)
            if entry is not None:
                if entry.expires_at > now:
                    self._entries.move_to_end(key)
                    payload = entry.payload
                else:
                    del self._entries[key]
                    entry = None
        stored_key = self._persisted_key(key, generation)
        if entry is not None:
            try:
                window = _decode(payload)
            except CacheError as e:
                logger.warning("%s; dropping %s", e, key)
                self._drop(key)
                return None
            self._persist_hit(stored_key)
            return window

        if self.store is None:
            return None
        try:
            stored = self.store.get_cache_entry(stored_key)
        except PersistenceError as e:
            logger.warning("Persistent cache read failed, treating as miss: %s", e)
            return None
        if stored is None or stored.expires_at <= now:
            return None
        try:
            window = _decode(stored.window_json)
        except CacheError as e:
            logger.warning("%s; ignoring persisted %s", e, key)
            return None
        if not self._remember(key, conversation_id, stored.window_json, stored.expires_at, generation):
            return None
        self._persist_hit(stored_key)
        return window

    def _persist_hit(self, stored_key: str) -> None:
        if self.store is None:
            return
        try:
            self.store.increment_cache_hit(stored_key)
        except PersistenceError as e:
            logger.warning("Persistent cache hit count not updated: %s", e)

    def _expiry_for(self, window: ContextWindow) -> datetime:
        expires_at = _now() + timedelta(minutes=self.config.ttl_minutes)
        fact_expiries = [f.expires_at for f in window.key_facts if f.expires_at is not None]
        if fact_expiries:
            expires_at = min(expires_at, min(fact_expiries))
        return expires_at

    def _store_window(self, key: str, conversation_id: str, window: ContextWindow, generation: int) -> bool:
        """Cache a window computed at ``generation``; False if an invalidation got there first."""
        payload = json.dumps(window.to_dict())
        expires_at = self._expiry_for(window)
        if not self._remember(key, conversation_id, payload, expires_at, generation):
            return False
        if self.store is None:
            return True
        try:
            self.store.put_cache_entry(ContextCacheEntry(
                cache_key=self._persisted_key(key, generation),
                conversation_id=conversation_id,
                window_json=payload,
                token_count=window.total_tokens,
                expires_at=expires_at,
            ))
        except PersistenceError as e:
            logger.warning("Persistent cache write failed, keeping memory entry only: %s", e)
        return True

    def _remember(
        self, key: str, conversation_id: str, payload: str, expires_at: datetime, generation: int,
    ) -> bool:
        """Insert into the LRU unless the conversation moved past ``generation``."""
        with self._lock:
            if self._generations.get(conversation_id, 0) != generation:
                return False
            if key not in self._entries and len(self._entries) >= self.config.max_size:
                self._evict_locked()
            self._entries[key] = _MemoryEntry(
                conversation_id=conversation_id,
                payload=payload,
                expires_at=expires_at,
                created_at=time.monotonic(),
            )
            self._entries.move_to_end(key)
            return True

    def _evict_locked(self) -> None:
        count = min(max(1, int(self.config.max_size * EVICTION_FRACTION)), len(self._entries))
        for _ in range(count):
            self._entries.popitem(last=False)
        self._evictions += count
        logger.debug("Evicted %d least recently used cache entries", count)

    def _drop(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    # -- invalidation & maintenance --

    def invalidate(self, conversation_id: str) -> int:
        """Drop every entry for a conversation. Returns memory entries removed.

        Deleting persisted rows is housekeeping only: the generation bump
        already makes them unreachable, so a failed delete is logged and the
        rows age out through ``purge_expired``.
        """
        with self._lock:
            self._generations[conversation_id] = self._generations.get(conversation_id, 0) + 1
            keys = [k for k, e in self._entries.items() if e.conversation_id == conversation_id]
            for k in keys:
                del self._entries[k]
            self._invalidations += 1
        if self.store is not None:
            try:
                self.store.delete_cache_entries(conversation_id)
            except PersistenceError as e:
                logger.warning("Persistent cache invalidation for %s failed: %s", conversation_id, e)
        return len(keys)

    def clear(self) -> None:
        """Empty both tiers and reset counters."""
        with self._lock:
            for cid in {e.conversation_id for e in self._entries.values()}:
                self._generations[cid] = self._generations.get(cid, 0) + 1
            self._entries.clear()
            self._hits = self._misses = self._evictions = self._invalidations = 0
            self._conversation_hits.clear()
            self._conversation_misses.clear()
        if self.store is not None:
            try:
                self.store.delete_cache_entries()
            except PersistenceError as e:
                logger.warning("Persistent cache clear failed: %s", e)

    def purge_expired(self) -> int:
        now = _now()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        purged = len(expired)
        if self.store is not None:
            try:
                purged += self.store.delete_expired_cache_entries(now)
            except PersistenceError as e:
                logger.warning("Persistent cache purge failed: %s", e)
        return purged

    # -- stats --

    def stats(self) -> CacheStats:
        now = time.monotonic()
        with self._lock:
            total = self._hits + self._misses
            ages = [now - e.created_at for e in self._entries.values()]
            return CacheStats(
                total_items=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                hit_rate=round(self._hits / total, 4) if total else 0.0,
                evictions=self._evictions,
                invalidations=self._invalidations,
                memory_bytes=sum(len(e.payload) + len(k) for k, e in self._entries.items()),
                oldest_item_age_s=round(max(ages), 3) if ages else 0.0,
                newest_item_age_s=round(min(ages), 3) if ages else 0.0,
            )

    def conversation_stats(self, conversation_id: str) -> ConversationCacheStats:
        with self._lock:
            hits = self._conversation_hits.get(conversation_id, 0)
            misses = self._conversation_misses.get(conversation_id, 0)
        total = hits + misses
        return ConversationCacheStats(
            conversation_id=conversation_id,
            hits=hits,
            misses=misses,
            hit_rate=round(hits / total, 4) if total else 0.0,
        )
