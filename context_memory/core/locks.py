"""Per-conversation lock registry."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ConversationLocks:
    """Hands out one re-entrant lock per conversation id.

    Writes to a conversation (append, mark, forget, purge) hold its lock so
    they are observed in order; different conversations never contend.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> threading.RLock:
        with self._lock:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[conversation_id] = lock
            return lock

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        lock = self.get(conversation_id)
        with lock:
            yield

    def discard(self, conversation_id: str) -> None:
        with self._lock:
            self._locks.pop(conversation_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)
