"""Integration tests for ContextMemoryEngine over a real SQLite store."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import FailingGateway, FakeGateway, FakeSummarizer, make_config
from context_memory.core.locks import ConversationLocks
from context_memory.engine import ContextMemoryEngine
from context_memory.retrieval.memory import InMemoryRetrievalGateway
from context_memory.types import (
    AssemblyCancelled,
    ConfigurationError,
    FactType,
    Message,
    PersistenceError,
    RetrievalHit,
    SegmentType,
)

CID = "chat-1"


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(tmp_sqlite_db, gateway):
    config = make_config(tmp_sqlite_db, segmentation={"recent_threshold": 4})
    eng = ContextMemoryEngine(config=config, gateway=gateway, summarizer=FakeSummarizer())
    yield eng
    eng.cleanup()


@pytest.fixture
def trip(engine, planning_messages):
    """Six-message Lisbon conversation: positions 1-2 medium, 3-6 recent."""
    results = [engine.append_message(CID, m) for m in planning_messages]
    results.append(engine.append_message(CID, Message(role="user", content="Which neighborhood is best for a first visit?")))
    results.append(engine.append_message(CID, Message(role="assistant", content="Baixa and Chiado are central and walkable.")))
    return results


class TestAppend:
    def test_ids_positions_and_importance(self, trip):
        assert [r.message_id for r in trip] == [1, 2, 3, 4, 5, 6]
        assert [r.metadata.position for r in trip] == [1, 2, 3, 4, 5, 6]
        assert trip[0].metadata.importance_score == 0.6
        assert trip[2].metadata.importance_score == 0.75
        assert not any(r.degraded for r in trip)

    def test_explicit_importance(self, engine):
        result = engine.append_message(CID, Message(role="user", content="hi"), importance=0.95)
        assert result.metadata.importance_score == 0.95

    def test_fact_extracted_from_user_message(self, engine, trip):
        (fact,) = trip[2].extracted_facts
        assert fact.text == "I am vegetarian"
        assert fact.source == "auto"
        assert fact.source_message_id == 3
        assert [f.text for f in engine.list_key_facts(CID)] == ["I am vegetarian"]

    def test_segments_after_overflow(self, engine, trip):
        segments = engine.get_segments(CID)
        shape = [(s.segment_type, s.start_position, s.end_position) for s in segments]
        assert shape == [(SegmentType.MEDIUM, 1, 2), (SegmentType.RECENT, 3, 6)]
        assert segments[0].summary
        assert not segments[0].sealed

    def test_messages_and_summaries_indexed(self, gateway, engine, trip):
        indexed = gateway.indexed[CID]
        assert all(f"message:{i}" in indexed for i in range(1, 7))
        medium = engine.get_segments(CID)[0]
        assert f"segment:{medium.segment_id}" in indexed

    def test_add_message_with_external_ledger_id(self, engine):
        result = engine.add_message("external", 1001, Message(role="user", content="Recorded elsewhere"))
        assert result.metadata.position == 1
        assert engine.list_conversations()[0].conversation_id == "external"

    def test_create_conversation_updates_fields(self, engine):
        engine.create_conversation(CID, user_id="u1", title="Lisbon")
        conv = engine.create_conversation(CID, max_context_tokens=500)
        assert (conv.user_id, conv.title, conv.max_context_tokens) == ("u1", "Lisbon", 500)


class TestOptimizedContext:
    def test_recent_tier_and_facts(self, engine, trip, planning_messages):
        window = engine.get_optimized_context(CID)
        assert [m.content for m in window.recent_messages] == [
            planning_messages[2].content,
            planning_messages[3].content,
            "Which neighborhood is best for a first visit?",
            "Baixa and Chiado are central and walkable.",
        ]
        assert [f.text for f in window.key_facts] == ["I am vegetarian"]
        assert window.relevant_history == []
        assert not window.degraded
        assert window.compression_ratio >= 1.0

    def test_cache_hit_and_invalidation(self, engine, trip):
        first = engine.get_optimized_context(CID)
        second = engine.get_optimized_context(CID)
        assert not first.cache_hit
        assert second.cache_hit
        assert second.total_tokens == first.total_tokens

        engine.append_message(CID, Message(role="user", content="Any day trips?"))
        third = engine.get_optimized_context(CID)
        assert not third.cache_hit
        assert third.recent_messages[-1].content == "Any day trips?"

    def test_explicit_budget_cached_separately(self, engine, trip):
        engine.get_optimized_context(CID)
        window = engine.get_optimized_context(CID, max_context_tokens=20)
        assert not window.cache_hit
        assert window.total_tokens <= 20

    def test_conversation_budget_override(self, engine, trip):
        engine.create_conversation(CID, max_context_tokens=15)
        window = engine.get_optimized_context(CID)
        assert window.total_tokens <= 15
        assert window.recent_messages

    def test_retrieval_brings_back_older_message(self, gateway, engine, trip, planning_messages):
        gateway.hits = [RetrievalHit(item_id="message:1", similarity=0.9)]
        window = engine.get_optimized_context(CID, query="what was my budget?")
        assert [m.content for m in window.relevant_history] == [planning_messages[0].content]
        assert [s.segment_type for s in window.summaries] == [SegmentType.MEDIUM]
        assert gateway.searches[-1] == (CID, "what was my budget?", 5)

    def test_marked_message_survives_outside_recent(self, engine, trip, planning_messages):
        engine.mark_message_important(2)
        window = engine.get_optimized_context(CID)
        assert window.relevant_history[0].content == planning_messages[1].content

    def test_query_injected_for_empty_conversation(self, engine):
        window = engine.get_optimized_context("fresh", query="Plan a weekend in Porto")
        assert window.query_injected
        assert window.recent_messages[0].content == "Plan a weekend in Porto"

    def test_cancelled(self, engine, trip):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(AssemblyCancelled):
            engine.get_optimized_context(CID, cancel_event=cancel)

    def test_retrieval_records_analytics(self, engine, trip):
        engine.get_optimized_context(CID)
        engine.get_optimized_context(CID)
        stats = engine.get_conversation_stats(CID)
        assert stats.retrievals == 2
        assert stats.cache_hits == 1
        assert stats.total_messages == 6


class TestDegradation:
    def test_failing_gateway(self, tmp_sqlite_db, planning_messages):
        config = make_config(tmp_sqlite_db)
        with ContextMemoryEngine(config=config, gateway=FailingGateway(), summarizer=FakeSummarizer()) as eng:
            for m in planning_messages:
                eng.append_message(CID, m)
            window = eng.get_optimized_context(CID, query="vegetarian food")
        assert window.degraded
        assert window.degradation_reasons == ["retrieval failed: vector service down"]
        assert len(window.recent_messages) == 4

    def test_retrieval_disabled(self, tmp_sqlite_db, planning_messages):
        config = make_config(tmp_sqlite_db, retrieval={"provider": "none"})
        with ContextMemoryEngine(config=config, summarizer=FakeSummarizer()) as eng:
            eng.append_message(CID, planning_messages[0])
            window = eng.get_optimized_context(CID, query="budget")
            assert eng.search_memory(CID, "budget") == []
        assert window.degradation_reasons == ["retrieval gateway not configured"]

    def test_misconfigured_http_retrieval_runs_recency_only(self, tmp_sqlite_db, planning_messages):
        config = make_config(tmp_sqlite_db)
        config.retrieval.provider = "http"
        config.retrieval.endpoint = ""
        eng = ContextMemoryEngine(config=config, summarizer=FakeSummarizer())
        try:
            with pytest.raises(ConfigurationError):
                eng.initialize()
            eng.append_message(CID, planning_messages[0])
            window = eng.get_optimized_context(CID, query="budget")
            assert window.recent_messages[0].content == planning_messages[0].content
            assert "retrieval gateway not configured" in window.degradation_reasons
        finally:
            eng.cleanup()

    def test_degraded_append_backfilled_on_next_append(self, engine):
        engine.append_message(CID, Message(role="user", content="first"))
        with patch.object(engine._store, "append_message_metadata", side_effect=PersistenceError("disk full")):
            second = engine.append_message(CID, Message(role="user", content="the secret word is banana"))
        assert second.degraded

        third = engine.append_message(CID, Message(role="user", content="third"))
        assert not third.degraded
        assert third.metadata.position == 3
        assert engine._metadata.get(second.message_id).position == 2
        assert engine._segmenter.validate_contiguity(CID)

        window = engine.get_optimized_context(CID)
        assert [m.content for m in window.recent_messages] == [
            "first", "the secret word is banana", "third",
        ]

    def test_summarizer_failure_keeps_messages_recent(self, tmp_sqlite_db):
        summarizer = FakeSummarizer()
        summarizer.fail = True
        config = make_config(tmp_sqlite_db, segmentation={"recent_threshold": 2}, retrieval={"provider": "none"})
        with ContextMemoryEngine(config=config, summarizer=summarizer) as eng:
            for i in range(4):
                eng.append_message(CID, Message(role="user", content=f"Note number {i}"))
            segments = eng.get_segments(CID)
        assert [(s.segment_type, s.start_position, s.end_position) for s in segments] == [
            (SegmentType.RECENT, 1, 4),
        ]


class TestFacts:
    def test_add_and_list(self, engine):
        engine.add_key_fact(CID, "Flying out of Boston", fact_type="goal", importance=0.9)
        engine.add_key_fact(CID, "Prefers trams", fact_type=FactType.PREFERENCE, importance=0.4)
        facts = engine.list_key_facts(CID)
        assert [f.text for f in facts] == ["Flying out of Boston", "Prefers trams"]
        assert facts[0].fact_type == FactType.GOAL

    def test_invalid_fact_type(self, engine):
        with pytest.raises(ValueError):
            engine.add_key_fact(CID, "Something", fact_type="rumor")

    def test_adding_fact_invalidates_cache(self, engine, trip):
        engine.get_optimized_context(CID)
        engine.add_key_fact(CID, "Hotel booked in Alfama")
        window = engine.get_optimized_context(CID)
        assert not window.cache_hit
        assert "Hotel booked in Alfama" in [f.text for f in window.key_facts]

    def test_mark_unknown_message(self, engine):
        with pytest.raises(KeyError):
            engine.mark_message_important(404)

    def test_unmark(self, engine, trip):
        engine.mark_message_important(2)
        meta = engine.mark_message_important(2, important=False)
        assert not meta.user_marked


class TestSearchAndSummaries:
    def test_search_memory_results(self, gateway, engine, trip, planning_messages):
        medium = engine.get_segments(CID)[0]
        gateway.hits = [
            RetrievalHit(item_id="message:1", similarity=0.91234),
            RetrievalHit(item_id=f"segment:{medium.segment_id}", similarity=0.5),
            RetrievalHit(item_id="message:999", similarity=0.4),
        ]
        results = engine.search_memory(CID, "budget", limit=5)
        assert [r["type"] for r in results] == ["message", "summary"]
        assert results[0]["content"] == planning_messages[0].content
        assert results[0]["similarity"] == 0.9123
        assert results[1]["segment_id"] == medium.segment_id

    def test_search_threshold_and_truncation(self, gateway, engine):
        result = engine.append_message(CID, Message(role="user", content="x" * 300))
        gateway.hits = [
            RetrievalHit(item_id=f"message:{result.message_id}", similarity=0.8),
            RetrievalHit(item_id="message:1", similarity=0.1),
        ]
        (hit,) = engine.search_memory(CID, "xxx", threshold=0.5)
        assert hit["content"] == "x" * 200 + "..."

    def test_search_gateway_failure_is_empty(self, tmp_sqlite_db):
        with ContextMemoryEngine(config=make_config(tmp_sqlite_db), gateway=FailingGateway()) as eng:
            assert eng.search_memory(CID, "anything") == []

    def test_in_memory_gateway_end_to_end(self, tmp_sqlite_db, planning_messages):
        with ContextMemoryEngine(config=make_config(tmp_sqlite_db)) as eng:
            for m in planning_messages:
                eng.append_message(CID, m)
            assert isinstance(eng._gateway, InMemoryRetrievalGateway)
            results = eng.search_memory(CID, "vegetarian restaurants")
        assert {r["message_id"] for r in results} >= {3, 4}

    def test_summarize_range(self, engine, trip):
        summary = engine.summarize_range(CID, 1, 3)
        assert summary.startswith("Summary of 3 messages: I'm planning a trip")
        with pytest.raises(ValueError):
            engine.summarize_range(CID, 4, 2)


class TestForgetAndPurge:
    def test_forget_by_importance(self, gateway, engine, trip):
        engine.mark_message_important(1)
        engine.add_key_fact(CID, "Maybe visit Porto", importance=0.2)
        result = engine.forget_context(CID, importance_threshold=0.65)
        assert result == {"conversation_id": CID, "facts_removed": 1, "messages_unindexed": 3}
        assert gateway.deleted[-1] == (CID, ["message:2", "message:4", "message:6"])
        assert [f.text for f in engine.list_key_facts(CID)] == ["I am vegetarian"]

    def test_forget_defaults_to_importance_threshold(self, engine, trip):
        engine.add_key_fact(CID, "Low value fact", importance=0.1)
        result = engine.forget_context(CID)
        assert result["facts_removed"] == 1
        assert result["messages_unindexed"] == 0

    def test_forget_keeps_ledger_and_segments(self, engine, trip):
        before = engine.get_segments(CID)
        engine.forget_context(CID, importance_threshold=1.0)
        assert [s.segment_id for s in engine.get_segments(CID)] == [s.segment_id for s in before]
        assert len(engine._ledger.read_recent(CID, 10)) == 6

    def test_purge(self, gateway, engine, trip):
        engine.get_optimized_context(CID)
        assert engine.purge_conversation(CID) is True
        assert engine.get_segments(CID) == []
        assert engine.list_key_facts(CID) == []
        assert engine._ledger.read_recent(CID, 10) == []
        assert (CID, None) in gateway.deleted
        with pytest.raises(KeyError):
            engine.get_conversation_stats(CID)
        assert engine.purge_conversation(CID) is False


class TestStatsAndMaintenance:
    def test_system_metrics_and_report(self, engine, trip):
        engine.get_optimized_context(CID)
        system = engine.get_system_metrics()
        assert system.total_conversations == 1
        assert system.total_messages == 6
        assert engine.generate_report().startswith("# Context Memory Analytics Report")

    def test_cache_stats_and_clear(self, engine, trip):
        engine.get_optimized_context(CID)
        engine.get_optimized_context(CID)
        assert engine.get_memory_cache_stats().hits == 1
        assert engine.get_conversation_cache_stats(CID).hit_rate == 0.5
        engine.clear_memory_cache()
        assert engine.get_memory_cache_stats().total_items == 0

    def test_cleanup_old_data(self, engine, trip):
        assert engine.cleanup_old_data() == {"cache_entries_removed": 0, "analytics_records_removed": 0}

    def test_context_manager_initializes(self, tmp_sqlite_db):
        with ContextMemoryEngine(config=make_config(tmp_sqlite_db)) as eng:
            assert eng._initialized
        assert not eng._initialized


class TestScenarios:
    @pytest.fixture
    def memory_engine(self, tmp_sqlite_db):
        eng = ContextMemoryEngine(config=make_config(tmp_sqlite_db), summarizer=FakeSummarizer())
        eng.initialize()
        yield eng
        eng.cleanup()

    def test_short_conversation_is_all_recent(self, memory_engine):
        for i in range(1, 9):
            memory_engine.append_message(CID, Message(role="user", content=f"Short note {i}"))
        window = memory_engine.get_optimized_context(CID)
        assert len(window.recent_messages) == 8
        assert window.relevant_history == []
        assert window.compression_ratio == 1.0

    def test_long_conversation_recalls_early_message(self, memory_engine):
        for i in range(1, 26):
            content = (
                "The passport renewal appointment is on Tuesday at the consulate."
                if i == 3 else f"Filler message {i} about packing lists."
            )
            memory_engine.append_message(CID, Message(role="user", content=content))

        mediums = [s for s in memory_engine.get_segments(CID) if s.segment_type == SegmentType.MEDIUM]
        assert len(mediums) == 2

        window = memory_engine.get_optimized_context(CID, query="when is the passport renewal appointment?")
        assert len(window.recent_messages) == 10
        assert any("passport renewal" in m.content for m in window.relevant_history)
        assert any(s.start_position == 1 and s.end_position == 10 for s in window.summaries)
        assert window.compression_ratio > 1.0

    def test_fact_included_for_unrelated_query(self, memory_engine):
        memory_engine.append_message(CID, Message(role="user", content="Let's plan the trip."))
        memory_engine.add_key_fact(CID, "Budget is $5000", "fact")
        window = memory_engine.get_optimized_context(CID, query="what is the weather tomorrow?")
        assert "Budget is $5000" in [f.text for f in window.key_facts]

    def test_expired_fact_absent(self, memory_engine):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        memory_engine.append_message(CID, Message(role="user", content="Any deals?"))
        memory_engine.add_key_fact(CID, "Promo code SPRING ends today", expires_at=past)
        window = memory_engine.get_optimized_context(CID)
        assert window.key_facts == []


class TestConcurrency:
    def test_concurrent_appends_get_contiguous_positions(self, engine):
        def worker(n):
            for i in range(5):
                engine.append_message(CID, Message(role="user", content=f"Worker {n} note {i}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        ledger = engine._ledger.read_recent(CID, 100)
        assert len(ledger) == 40
        positions = [engine._metadata.get(lm.message_id).position for lm in ledger]
        assert positions == list(range(1, 41))

        segments = engine.get_segments(CID)
        assert engine._segmenter.validate_contiguity(CID)
        assert segments[0].start_position == 1
        assert segments[-1].end_position == 40

    def test_context_read_racing_appends_is_not_stale(self, engine):
        engine.append_message(CID, Message(role="user", content="Opening note"))
        done = threading.Event()

        def appender():
            try:
                for i in range(20):
                    engine.append_message(CID, Message(role="user", content=f"Update {i}"))
            finally:
                done.set()

        def reader():
            while not done.is_set():
                engine.get_optimized_context(CID)

        readers = [threading.Thread(target=reader, daemon=True) for _ in range(3)]
        for t in readers:
            t.start()
        writer = threading.Thread(target=appender)
        writer.start()
        writer.join(timeout=60)
        for t in readers:
            t.join(timeout=60)

        window = engine.get_optimized_context(CID)
        expected = [lm.content for lm in engine._ledger.read_recent(CID, 4)]
        assert [m.content for m in window.recent_messages] == expected
        assert expected[-1] == "Update 19"

    def test_conversation_locks_are_independent(self):
        locks = ConversationLocks()
        acquired = threading.Event()
        release = threading.Event()

        def hold_a():
            with locks.hold("a"):
                acquired.set()
                release.wait(timeout=10)

        holder = threading.Thread(target=hold_a)
        holder.start()
        try:
            assert acquired.wait(timeout=5)
            assert locks.get("b").acquire(timeout=1)
            locks.get("b").release()
            assert not locks.get("a").acquire(timeout=0.1)
        finally:
            release.set()
            holder.join(timeout=5)
        assert len(locks) == 2

    def test_append_to_other_conversation_while_locked(self, engine):
        acquired = threading.Event()
        release = threading.Event()

        def hold_chat():
            with engine._locks.hold(CID):
                acquired.set()
                release.wait(timeout=10)

        holder = threading.Thread(target=hold_chat)
        holder.start()
        try:
            assert acquired.wait(timeout=5)
            result = engine.append_message("chat-2", Message(role="user", content="Unblocked"))
            assert result.metadata.position == 1
        finally:
            release.set()
            holder.join(timeout=5)
