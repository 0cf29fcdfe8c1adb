"""Tests for KeyFactStore."""

from datetime import datetime, timedelta, timezone

import pytest

from context_memory.core.key_facts import KeyFactStore
from context_memory.types import FactType, KeyFactConfig


@pytest.fixture
def facts(store):
    return KeyFactStore(store)


class TestAddKeyFact:
    def test_add_and_list(self, facts):
        fact = facts.add_key_fact("chat-1", "  Budget is $3,000  ", fact_type="decision", importance=0.9)
        assert fact.text == "Budget is $3,000"
        assert fact.fact_type == FactType.DECISION
        listed = facts.list_facts("chat-1")
        assert [f.fact_id for f in listed] == [fact.fact_id]

    def test_empty_text_rejected(self, facts):
        with pytest.raises(ValueError):
            facts.add_key_fact("chat-1", "   ")

    def test_unknown_type_rejected(self, facts):
        with pytest.raises(ValueError, match="Unknown fact type"):
            facts.add_key_fact("chat-1", "x", fact_type="rumor")

    def test_importance_clamped(self, facts):
        assert facts.add_key_fact("chat-1", "x", importance=7).importance_score == 1.0

    def test_ordered_by_importance(self, facts):
        facts.add_key_fact("chat-1", "low", importance=0.2)
        facts.add_key_fact("chat-1", "high", importance=0.9)
        assert [f.text for f in facts.active_facts("chat-1")] == ["high", "low"]


class TestExpiry:
    def test_expired_facts_hidden(self, facts):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        facts.add_key_fact("chat-1", "Old promo code", expires_at=past)
        facts.add_key_fact("chat-1", "Vegetarian")
        assert [f.text for f in facts.active_facts("chat-1")] == ["Vegetarian"]
        assert len(facts.list_facts("chat-1", include_expired=True)) == 2

    def test_naive_expiry_treated_as_utc(self, facts):
        fact = facts.add_key_fact("chat-1", "x", expires_at=datetime(2099, 1, 1))
        assert fact.expires_at.tzinfo is not None

    def test_active_as_of_given_time(self, facts):
        expiry = datetime(2026, 6, 1, tzinfo=timezone.utc)
        facts.add_key_fact("chat-1", "Summer offer", expires_at=expiry)
        assert len(facts.active_facts("chat-1", now=expiry - timedelta(days=1))) == 1
        assert facts.active_facts("chat-1", now=expiry + timedelta(days=1)) == []


class TestExtractFacts:
    def test_extracts_marker_phrases(self, facts):
        found = facts.extract_facts(
            "chat-1", 1,
            "Please remember that my passport expires in June. I prefer window seats.",
        )
        by_type = {f.fact_type: f for f in found}
        assert by_type[FactType.FACT].text == "My passport expires in June"
        assert by_type[FactType.PREFERENCE].text == "Window seats"
        assert all(f.source == "auto" and f.source_message_id == 1 for f in found)
        assert all(f.importance_score == 0.7 for f in found)

    def test_decision_and_goal(self, facts):
        found = facts.extract_facts(
            "chat-1", 2, "We decided to stay in Alfama. My goal is to see Sintra.",
        )
        types = {f.fact_type for f in found}
        assert types == {FactType.DECISION, FactType.GOAL}

    def test_assistant_messages_ignored(self, facts):
        assert facts.extract_facts("chat-1", 1, "Remember that it rains", role="assistant") == []

    def test_duplicates_skipped(self, facts):
        facts.extract_facts("chat-1", 1, "Remember that I am vegetarian.")
        again = facts.extract_facts("chat-1", 2, "remember that I am vegetarian!")
        assert again == []
        assert len(facts.list_facts("chat-1")) == 1

    def test_disabled(self, store):
        facts = KeyFactStore(store, KeyFactConfig(auto_extract=False))
        assert facts.extract_facts("chat-1", 1, "Remember that I am vegetarian.") == []

    def test_auto_ttl(self, store):
        facts = KeyFactStore(store, KeyFactConfig(auto_ttl_days=30))
        found = facts.extract_facts("chat-1", 1, "Remember that I am vegetarian.")
        assert found[0].expires_at is not None
        assert found[0].expires_at > datetime.now(timezone.utc) + timedelta(days=29)


class TestForget:
    def test_forget_below_importance(self, facts):
        facts.add_key_fact("chat-1", "keep", importance=0.9)
        facts.add_key_fact("chat-1", "drop", importance=0.1)
        assert facts.forget("chat-1", importance_below=0.5) == 1
        assert [f.text for f in facts.list_facts("chat-1")] == ["keep"]

    def test_forget_older_than(self, facts):
        facts.add_key_fact("chat-1", "recent")
        future_cutoff = datetime.now(timezone.utc) + timedelta(minutes=1)
        assert facts.forget("chat-1", older_than=datetime.now(timezone.utc) - timedelta(days=1)) == 0
        assert facts.forget("chat-1", older_than=future_cutoff) == 1
