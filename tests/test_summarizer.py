"""Tests for the extractive and LLM summarizers."""

import pytest

from conftest import MockLLMProvider
from context_memory.core.summarizer import ExtractiveSummarizer, LLMSummarizer, format_conversation
from context_memory.types import LLMProviderError, Message, SummarizationError


@pytest.fixture
def trip_messages():
    return [
        Message(role="user", content="I want to visit Lisbon in May. My budget is around $3,000 for the week."),
        Message(role="assistant", content="Great choice. We decided to book a hotel in Alfama near the castle."),
        Message(role="user", content="ok"),
        Message(role="assistant", content="Remember to reserve the Sintra day trip early, it is important."),
    ]


class FailingProvider:
    def complete(self, system, user, max_tokens):
        raise LLMProviderError("HTTP 500", provider="test", status_code=500)


class TestExtractiveSummarizer:
    def test_brief_keeps_informative_sentences(self, trip_messages):
        summary = ExtractiveSummarizer().summarize(trip_messages)
        assert "Lisbon" in summary
        assert "Sintra" in summary
        assert "ok" not in summary.split()

    def test_respects_max_chars(self, trip_messages):
        summary = ExtractiveSummarizer(max_chars=80).summarize(trip_messages)
        assert 0 < len(summary) <= 80

    def test_key_points_style(self, trip_messages):
        summary = ExtractiveSummarizer().summarize(trip_messages, style="key_points")
        lines = summary.split("\n")
        assert len(lines) >= 2
        assert all(line.startswith("- ") for line in lines)

    def test_detailed_lists_entities(self, trip_messages):
        summary = ExtractiveSummarizer().summarize(trip_messages, style="detailed")
        assert "Entities:" in summary
        assert "Decisions:" in summary

    def test_unknown_style(self, trip_messages):
        with pytest.raises(ValueError, match="Unknown summary style"):
            ExtractiveSummarizer().summarize(trip_messages, style="haiku")

    def test_empty_input(self):
        assert ExtractiveSummarizer().summarize([]) == ""

    def test_only_short_messages(self):
        summary = ExtractiveSummarizer().summarize([
            Message(role="user", content="ok"),
            Message(role="assistant", content="sure"),
        ])
        assert summary == "ok sure"

    def test_duplicate_sentences_once(self):
        repeated = "The flight leaves at nine in the morning."
        summary = ExtractiveSummarizer().summarize([
            Message(role="user", content=repeated),
            Message(role="assistant", content=repeated),
        ])
        assert summary == repeated

    def test_score_sentence(self):
        plain = ExtractiveSummarizer.score_sentence("we talked a bit about things")
        decided = ExtractiveSummarizer.score_sentence("We decided to book the 3 pm flight to Porto.")
        assert decided > plain


class TestLLMSummarizer:
    def test_parses_json_summary(self, trip_messages, mock_llm):
        summary = LLMSummarizer(mock_llm, max_tokens=300).summarize(trip_messages)
        assert summary == "Test summary"
        call = mock_llm.calls[0]
        assert call["max_tokens"] == 300
        assert "User: I want to visit Lisbon" in call["user"]
        assert "valid JSON" in call["system"]

    def test_style_instruction_in_prompt(self, trip_messages, mock_llm):
        LLMSummarizer(mock_llm).summarize(trip_messages, style="key_points")
        assert "bullet points" in mock_llm.calls[0]["user"]

    def test_fenced_response(self, trip_messages):
        llm = MockLLMProvider('```json\n{"summary": "Fenced summary"}\n```')
        assert LLMSummarizer(llm).summarize(trip_messages) == "Fenced summary"

    def test_think_tags_and_embedded_json(self, trip_messages):
        llm = MockLLMProvider('<think>hmm</think>Here you go: {"summary": "Embedded"} thanks')
        assert LLMSummarizer(llm).summarize(trip_messages) == "Embedded"

    def test_plain_text_response(self, trip_messages):
        llm = MockLLMProvider("Planning a Lisbon trip in May.")
        assert LLMSummarizer(llm).summarize(trip_messages) == "Planning a Lisbon trip in May."

    def test_truncated_to_max_chars(self, trip_messages):
        llm = MockLLMProvider('{"summary": "' + "x" * 500 + '"}')
        assert len(LLMSummarizer(llm, max_chars=100).summarize(trip_messages)) == 100

    def test_provider_error_raises(self, trip_messages):
        with pytest.raises(SummarizationError):
            LLMSummarizer(FailingProvider()).summarize(trip_messages)

    def test_empty_summary_raises(self, trip_messages):
        with pytest.raises(SummarizationError):
            LLMSummarizer(MockLLMProvider('{"summary": ""}')).summarize(trip_messages)

    def test_fallback_used_on_error(self, trip_messages):
        summarizer = LLMSummarizer(FailingProvider(), fallback=ExtractiveSummarizer())
        assert "Lisbon" in summarizer.summarize(trip_messages)

    def test_empty_input_skips_llm(self, mock_llm):
        assert LLMSummarizer(mock_llm).summarize([]) == ""
        assert mock_llm.calls == []


def test_format_conversation():
    text = format_conversation([
        Message(role="user", content="hi"),
        Message(role="assistant", content="hello"),
    ])
    assert text == "User: hi\n\nAssistant: hello"
