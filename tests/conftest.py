"""Shared fixtures for context-memory tests."""

from __future__ import annotations

import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from context_memory.config import load_config
from context_memory.storage.ledger import SQLiteLedger
from context_memory.storage.sqlite import SQLiteStore
from context_memory.types import (
    MemoryEngineConfig,
    Message,
    RetrievalGatewayError,
    RetrievalHit,
)


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def planning_messages(ts) -> list[Message]:
    return [
        Message(role="user", content="I'm planning a trip to Lisbon in May with a budget of $3,000.", timestamp=ts),
        Message(role="assistant", content="Lisbon in May is lovely. Flights from Boston run about $700 round trip.", timestamp=ts + timedelta(seconds=30)),
        Message(role="user", content="Please remember that I am vegetarian.", timestamp=ts + timedelta(minutes=1)),
        Message(role="assistant", content="Noted. Alfama has several vegetarian restaurants worth booking ahead.", timestamp=ts + timedelta(minutes=1, seconds=30)),
    ]


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "test_memory.db"


@pytest.fixture
def store(tmp_sqlite_db):
    s = SQLiteStore(db_path=tmp_sqlite_db)
    yield s
    s.close()


@pytest.fixture
def ledger(tmp_sqlite_db):
    lg = SQLiteLedger(tmp_sqlite_db)
    yield lg
    lg.close()


def make_config(tmp_sqlite_db, **sections) -> MemoryEngineConfig:
    """Engine config rooted at a temp database, env overrides ignored."""
    raw = {"storage": {"sqlite_path": str(tmp_sqlite_db)}}
    for section, values in sections.items():
        raw.setdefault(section, {}).update(values)
    return load_config(config_dict=raw, apply_env=False)


class FakeGateway:
    """Retrieval gateway with canned hits that records every call."""

    def __init__(self, hits: list[RetrievalHit] | None = None):
        self.hits = list(hits or [])
        self.indexed: dict[str, dict[str, str]] = {}
        self.deleted: list[tuple[str, list[str] | None]] = []
        self.searches: list[tuple[str, str, int]] = []

    def search(self, conversation_id: str, query: str, top_k: int) -> list[RetrievalHit]:
        self.searches.append((conversation_id, query, top_k))
        return self.hits[:top_k]

    def index(self, conversation_id: str, item_id: str, text: str, item_type: str) -> str:
        self.indexed.setdefault(conversation_id, {})[item_id] = text
        return f"ref-{item_id}"

    def delete(self, conversation_id: str, item_ids: list[str] | None = None) -> None:
        self.deleted.append((conversation_id, item_ids))
        items = self.indexed.get(conversation_id, {})
        if item_ids is None:
            items.clear()
            return
        for item_id in item_ids:
            items.pop(item_id, None)


class FailingGateway(FakeGateway):
    """Every call raises RetrievalGatewayError."""

    def search(self, conversation_id, query, top_k):
        raise RetrievalGatewayError("vector service down")

    def index(self, conversation_id, item_id, text, item_type):
        raise RetrievalGatewayError("vector service down")

    def delete(self, conversation_id, item_ids=None):
        raise RetrievalGatewayError("vector service down")


class SlowGateway(FakeGateway):
    """Search blocks until released (or a long timeout passes)."""

    def __init__(self, hits=None):
        super().__init__(hits)
        self.release = threading.Event()

    def search(self, conversation_id, query, top_k):
        self.release.wait(timeout=5)
        return super().search(conversation_id, query, top_k)


class MockLLMProvider:
    """Mock LLM provider returning a canned JSON summary."""

    def __init__(self, response: str | None = None):
        self.calls: list[dict] = []
        self.response = response or (
            '{"summary": "Test summary", "entities": ["Lisbon"], "key_decisions": ["book Alfama"]}'
        )

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        return self.response


class FakeSummarizer:
    """Deterministic summarizer: message count plus the head of the first message."""

    def __init__(self):
        self.calls: list[list[Message]] = []
        self.fail = False

    def summarize(self, messages: list[Message], style: str = "brief") -> str:
        self.calls.append(list(messages))
        if self.fail:
            raise RuntimeError("summarizer unavailable")
        head = messages[0].content[:30] if messages else ""
        return f"Summary of {len(messages)} messages: {head}"


@pytest.fixture
def fake_summarizer():
    return FakeSummarizer()


@pytest.fixture
def mock_llm():
    return MockLLMProvider()
