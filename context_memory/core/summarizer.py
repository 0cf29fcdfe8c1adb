"""Summarizers: LLM-backed (JSON prompt) and local extractive."""

from __future__ import annotations

import json
import logging
import re

from ..patterns import DECISION_SENTENCE_PATTERNS, KEY_SENTENCE_WORDS
from ..types import LLMProvider, LLMProviderError, Message, Summarizer, SummarizationError
from .metadata import extract_entities

logger = logging.getLogger(__name__)

SUMMARY_STYLES = ("brief", "detailed", "key_points")

STYLE_INSTRUCTIONS = {
    "brief": "Write a concise prose summary.",
    "detailed": "Write a thorough summary that keeps the chronological progression.",
    "key_points": "Write the summary as short bullet points, one per line, each starting with '- '.",
}

SUMMARY_PROMPT = """\
Summarize the following conversation excerpt so the conversation could be
resumed from the summary alone. If it starts with an earlier summary, fold
that summary and the new messages into one updated summary.
Preserve key decisions, stated preferences, goals, entities mentioned, and
specific data points (numbers, dates, names, amounts) exactly as given.
{style_instruction}
Keep it under {max_chars} characters.

Conversation:
{conversation_text}

Respond with JSON:
{{
  "summary": "...",
  "entities": ["..."],
  "key_decisions": ["..."]
}}"""

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")
_DECISION_RE = [re.compile(p, re.IGNORECASE) for p in DECISION_SENTENCE_PATTERNS]
_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")


def format_conversation(messages: list[Message]) -> str:
    """Format messages as 'Role: content' blocks."""
    return "\n\n".join(f"{m.role.capitalize()}: {m.content}" for m in messages)


def _check_style(style: str) -> None:
    if style not in SUMMARY_STYLES:
        raise ValueError(f"Unknown summary style: {style} (expected one of {', '.join(SUMMARY_STYLES)})")


class ExtractiveSummarizer:
    """Deterministic summarizer: keeps the highest scoring sentences."""

    def __init__(self, max_chars: int = 1200) -> None:
        self.max_chars = max_chars

    @staticmethod
    def _sentences(messages: list[Message]) -> list[str]:
        sentences: list[str] = []
        for m in messages:
            for raw in _SENTENCE_SPLIT_RE.split(m.content):
                s = raw.strip()
                if len(s) > 10:
                    sentences.append(s)
        return sentences

    @staticmethod
    def score_sentence(sentence: str) -> float:
        score = 0.0
        words = len(sentence.split())
        if 5 <= words <= 25:
            score += 0.3
        lowered = sentence.lower()
        score += 0.2 * sum(1 for w in KEY_SENTENCE_WORDS if w in lowered)
        if "?" in sentence:
            score += 0.1
        if any(ch.isdigit() for ch in sentence):
            score += 0.1
        if _CAPITALIZED_RE.search(sentence[1:]):
            score += 0.1
        if any(p.search(sentence) for p in _DECISION_RE):
            score += 0.2
        return score

    def _select(self, sentences: list[str], budget: int) -> list[str]:
        ranked = sorted(
            enumerate(sentences),
            key=lambda pair: (-self.score_sentence(pair[1]), pair[0]),
        )
        chosen: list[tuple[int, str]] = []
        used = 0
        for idx, sentence in ranked:
            if used + len(sentence) + 1 > budget:
                continue
            chosen.append((idx, sentence))
            used += len(sentence) + 1
        # Original order reads better than score order
        return [s for _, s in sorted(chosen)]

    def summarize(self, messages: list[Message], style: str = "brief") -> str:
        _check_style(style)
        if not messages:
            return ""
        sentences = list(dict.fromkeys(self._sentences(messages)))
        if not sentences:
            text = " ".join(m.content.strip() for m in messages if m.content.strip())
            return text[: self.max_chars]

        if style == "detailed":
            entities = sorted(extract_entities(" ".join(m.content for m in messages)))[:8]
            decisions = [s for s in sentences if any(p.search(s) for p in _DECISION_RE)][:3]
            tail_parts = []
            if entities:
                tail_parts.append("Entities: " + ", ".join(entities) + ".")
            if decisions:
                tail_parts.append("Decisions: " + "; ".join(decisions))
            tail = " ".join(tail_parts)
            body = self._select(sentences, max(self.max_chars - len(tail) - 1, self.max_chars // 2))
            return (" ".join(body) + (" " + tail if tail else "")).strip()[: self.max_chars]

        selected = self._select(sentences, self.max_chars)
        if not selected:
            selected = [sentences[0][: self.max_chars]]
        if style == "key_points":
            return "\n".join(f"- {s}" for s in selected)
        return " ".join(selected)


class LLMSummarizer:
    """Summarize through an LLM provider using a JSON response contract."""

    def __init__(
        self,
        llm_provider: LLMProvider,
        max_tokens: int = 600,
        max_chars: int = 1200,
        fallback: Summarizer | None = None,
    ) -> None:
        self.llm = llm_provider
        self.max_tokens = max_tokens
        self.max_chars = max_chars
        self.fallback = fallback

    def summarize(self, messages: list[Message], style: str = "brief") -> str:
        _check_style(style)
        if not messages:
            return ""
        prompt = SUMMARY_PROMPT.format(
            style_instruction=STYLE_INSTRUCTIONS[style],
            max_chars=self.max_chars,
            conversation_text=format_conversation(messages),
        )
        system = (
            "You are a conversation summarizer. Output valid JSON only. "
            "No markdown fences, no extra text."
        )
        try:
            response_text = self.llm.complete(system=system, user=prompt, max_tokens=self.max_tokens)
        except LLMProviderError as e:
            return self._fail(messages, style, f"LLM summarization failed: {e}")

        parsed = self._parse_response(response_text)
        summary = str(parsed.get("summary", "")).strip()
        if not summary:
            return self._fail(messages, style, "LLM returned an empty summary")
        return summary[: self.max_chars]

    def _fail(self, messages: list[Message], style: str, reason: str) -> str:
        if self.fallback is not None:
            logger.warning("%s; using fallback summarizer", reason)
            return self.fallback.summarize(messages, style=style)
        raise SummarizationError(reason)

    @staticmethod
    def _parse_response(response: str) -> dict:
        """Parse LLM JSON response with fallback for malformed output."""
        text = response.strip()

        # Strip markdown fences if present
        if text.startswith("```"):
            lines = text.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines)

        # Strip thinking tags
        if "<think>" in text:
            text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

        try:
            parsed = json.loads(text)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        start = text.find("{")
        end = text.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                return json.loads(text[start:end])
            except json.JSONDecodeError:
                pass

        # Plain-text answer: treat the whole response as the summary
        return {"summary": text}
